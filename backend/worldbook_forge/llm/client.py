"""Model-call collaborators.

The pipeline only needs ``invoke(messages) -> text``. Provider request and
response shapes stay behind this boundary; failures come out as the
:mod:`worldbook_forge.core.errors` taxonomy.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Protocol, Sequence

import requests

from worldbook_forge.core.config import Settings
from worldbook_forge.core.errors import ModelTimeoutError, NetworkError, ProviderError, TokenLimitError
from worldbook_forge.core.logging import get_logger
from worldbook_forge.parsing.response import filter_response_tags, is_token_limit_error
from worldbook_forge.utils.text import truncate

logger = get_logger(__name__)

Message = Mapping[str, str]


class ModelClient(Protocol):
    async def invoke(self, messages: Sequence[Message]) -> str: ...


class OpenAICompatClient:
    """Blocking ``/chat/completions`` client run in a worker thread."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 120.0,
        max_tokens: int = 8192,
        temperature: float = 0.7,
        filter_tags: str = "thinking,/think",
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.filter_tags = filter_tags
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAICompatClient":
        return cls(
            base_url=settings.api_base_url,
            model=settings.api_model,
            api_key=settings.api_key,
            timeout=settings.api_timeout_s,
            max_tokens=settings.api_max_tokens,
            temperature=settings.api_temperature,
            filter_tags=settings.filter_tags,
        )

    async def invoke(self, messages: Sequence[Message]) -> str:
        return await asyncio.to_thread(self._post, [dict(message) for message in messages])

    def _post(self, messages: list[dict[str, str]]) -> str:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            resp = self.session.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ModelTimeoutError(f"model call timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"model call failed: {exc}") from exc

        if not resp.ok:
            detail = truncate(resp.text, 500)
            if is_token_limit_error(detail):
                raise TokenLimitError(f"context length exceeded: {detail}", status=resp.status_code)
            raise ProviderError(f"provider returned {resp.status_code}: {detail}", status=resp.status_code)

        try:
            payload = resp.json()
            text = payload["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"unexpected provider payload: {truncate(resp.text, 200)}") from exc
        logger.debug("Model returned %s characters", len(text), extra={"ctx_model": self.model})
        return filter_response_tags(text, self.filter_tags)


__all__ = ["Message", "ModelClient", "OpenAICompatClient"]
