"""Adapters for the page-control and inference collaborators."""

from .inference import InferenceBackend, InferenceClient, InferenceError
from .page_agent import PageAgent, PageAgentError, PageHandle, PlaywrightPageAgent

__all__ = [
    "InferenceBackend",
    "InferenceClient",
    "InferenceError",
    "PageAgent",
    "PageAgentError",
    "PageHandle",
    "PlaywrightPageAgent",
]
