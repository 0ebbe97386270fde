"""CLI entrypoint for Worldbook Forge."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote

import requests
import typer

app = typer.Typer(name="wbf", help="Worldbook Forge command-line interface")
history_app = typer.Typer(name="history")
rolls_app = typer.Typer(name="rolls")
state_app = typer.Typer(name="state")
entries_app = typer.Typer(name="entries")
app.add_typer(history_app, name="history")
app.add_typer(rolls_app, name="rolls")
app.add_typer(state_app, name="state")
app.add_typer(entries_app, name="entries")

DEFAULT_HOST = "http://127.0.0.1:5175"
REQUEST_TIMEOUT_S = 600


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip("/")
    env_host = os.environ.get("WBF_HOST")
    if env_host:
        return env_host.rstrip("/")
    return DEFAULT_HOST


def _request(method: str, path: str, host: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    try:
        resp = requests.request(method, url, timeout=REQUEST_TIMEOUT_S, **kwargs)
    except requests.RequestException as exc:
        typer.echo(f"Request failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _echo(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@app.command()
def extract(
    files: List[Path] = typer.Argument(..., help="Text files, one chunk per file, in reading order"),
    start_index: int = typer.Option(0, "--start-index", help="Memory index of the first file"),
    incremental: Optional[bool] = typer.Option(
        None, "--incremental/--full", help="Override the configured merge mode"
    ),
    resume: bool = typer.Option(False, "--resume", help="Skip chunks already merged in the saved state"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Extract worldbook entries from pre-chunked text files."""
    chunks = [
        {
            "index": start_index + offset,
            "title": path.stem,
            "content": path.expanduser().read_text(encoding="utf-8"),
        }
        for offset, path in enumerate(files)
    ]
    body: dict[str, object] = {"chunks": chunks, "resume": resume}
    if incremental is not None:
        body["incremental"] = incremental
    _echo(_request("POST", "/extract", host=host, json=body).json())


@app.command()
def abort(host: Optional[str] = typer.Option(None, "--host", help="Override backend host")) -> None:
    """Abort the running extraction or duplicate check."""
    _echo(_request("POST", "/abort", host=host).json())


@app.command()
def show(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the worldbook JSON to a file"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Print the merged worldbook or save it as raw JSON."""
    payload = _request("GET", "/worldbook", host=host).json()
    if output is None:
        _echo(payload)
        return
    output.expanduser().write_text(json.dumps(payload["worldbook"], indent=2, ensure_ascii=False), encoding="utf-8")
    typer.echo(f"Wrote {payload['entry_count']} entries to {output}")


@app.command()
def duplicates(
    category: str = typer.Argument(..., help="Category to scan, e.g. 角色"),
    apply: bool = typer.Option(False, "--apply", help="Merge confirmed groups"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Find aliased entries in a category and optionally merge them."""
    _echo(_request("POST", "/duplicates", host=host, json={"category": category, "apply": apply}).json())


@app.command("export")
def export_worldbook(
    output: Path = typer.Argument(..., help="Destination file"),
    fmt: str = typer.Option("tavern", "--format", "-f", help="tavern, json or txt"),
    name: Optional[str] = typer.Option(None, "--name", help="Worldbook name; defaults to the file stem"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Download the worldbook as SillyTavern world info, JSON or text."""
    params = {"format": fmt, "name": name or output.stem}
    resp = _request("GET", "/export", host=host, params=params)
    output.expanduser().write_bytes(resp.content)
    typer.echo(f"Wrote {fmt} export to {output}")


@state_app.command("show")
def show_state(host: Optional[str] = typer.Option(None, "--host", help="Override backend host")) -> None:
    """Show which chunks the saved state has merged or failed."""
    _echo(_request("GET", "/state", host=host).json())


@state_app.command("clear")
def clear_state(
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Drop the live worldbook and saved state; history and rolls are kept."""
    if not yes:
        typer.confirm("Clear the worldbook and saved state?", abort=True)
    _request("DELETE", "/state", host=host)
    typer.echo("Cleared saved state")


@entries_app.command("reroll")
def reroll_entry(
    category: str = typer.Argument(..., help="Entry category, e.g. 角色"),
    entry_name: str = typer.Argument(..., help="Entry name"),
    instructions: str = typer.Option("", "--instructions", "-i", help="Extra requirements for the model"),
    apply: bool = typer.Option(False, "--apply", help="Overwrite the entry in the worldbook"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Regenerate one entry from its current keywords and content."""
    body = {"instructions": instructions, "apply": apply}
    path = f"/worldbook/{quote(category, safe='')}/{quote(entry_name, safe='')}/reroll"
    _echo(_request("POST", path, host=host, json=body).json())


@history_app.command("list")
def list_history(
    memory_index: Optional[int] = typer.Option(None, "--index", help="Only records for this chunk"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """List merge history records."""
    params = {"memory_index": memory_index} if memory_index is not None else None
    _echo(_request("GET", "/history", host=host, params=params).json())


@history_app.command("rollback")
def rollback(
    history_id: int = typer.Argument(..., help="History record to undo"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Restore the worldbook as it was before a history record."""
    payload = _request("POST", f"/history/{history_id}/rollback", host=host).json()
    typer.echo(f"Restored state before history {history_id} ({payload['entry_count']} entries)")


@rolls_app.command("list")
def list_rolls(
    memory_index: int = typer.Argument(..., help="Chunk memory index"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """List stored rolls for a chunk."""
    _echo(_request("GET", f"/rolls/{memory_index}", host=host).json())


@rolls_app.command("new")
def new_roll(
    memory_index: int = typer.Argument(..., help="Chunk memory index"),
    file: Path = typer.Argument(..., help="Chunk text file"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Regenerate a chunk and store the result as a roll."""
    body = {"title": file.stem, "content": file.expanduser().read_text(encoding="utf-8")}
    _echo(_request("POST", f"/rolls/{memory_index}", host=host, json=body).json())


@rolls_app.command("apply")
def apply_roll(
    roll_id: int = typer.Argument(..., help="Roll identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Merge a stored roll into the worldbook."""
    _echo(_request("POST", f"/rolls/apply/{roll_id}", host=host).json())


if __name__ == "__main__":
    app()
