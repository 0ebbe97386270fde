"""Worldbook Forge: resilient LLM extraction into a versioned worldbook."""

__version__ = "0.1.0"
