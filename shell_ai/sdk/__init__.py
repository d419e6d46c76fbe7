"""
SDK for shell-ai.

Provides the streaming chat client that records every request.
"""

from .llm_client import LLMClient, TransportError

__all__ = ["LLMClient", "TransportError"]
