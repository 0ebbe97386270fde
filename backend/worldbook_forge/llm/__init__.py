"""Model-call collaborators."""

from .client import Message, ModelClient, OpenAICompatClient

__all__ = ["Message", "ModelClient", "OpenAICompatClient"]
