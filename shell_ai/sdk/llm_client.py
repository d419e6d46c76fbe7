"""
Streaming chat client.

Sends a query to a chat completions endpoint, decodes the streamed answer and
records every attempt, successful or not, in the request ledger.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlsplit, urlunsplit

import httpx
import openai
from openai import OpenAI

from ..config.loader import ModelConfig
from ..core.pricing import CostEstimator
from ..core.stream_decoder import StreamDecoder, StreamResult, StreamSink
from ..storage.ledger import (
    ConfigError,
    DisabledLedger,
    LedgerWriteError,
    RequestLedger,
    open_ledger,
)
from ..storage.models import LedgerEntry, Message, Role

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 120.0
AZURE_HOST_MARKER = "openai.azure.com"
CHAT_COMPLETIONS_PATH = "/chat/completions"


class TransportError(Exception):
    """The request failed: connection error, timeout or non-success status."""


@dataclass(frozen=True)
class RequestPayload:
    """Body of a streamed chat completion request."""
    model: str
    messages: Tuple[Message, ...]
    temperature: float = 0.0
    stream: bool = True
    include_usage: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [message.to_dict() for message in self.messages],
            "temperature": self.temperature,
            "stream": self.stream,
            "stream_options": {"include_usage": self.include_usage},
        }


class AzureKeyOpenAI(OpenAI):
    """OpenAI client that authenticates with Azure's ``api-key`` header."""

    @property
    def auth_headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"api-key": self.api_key}


def split_endpoint(endpoint: str) -> Tuple[str, Dict[str, str]]:
    """Split a full chat completions URL into SDK base URL and query params.

    ``https://host/v1/chat/completions?api-version=x`` becomes
    ``("https://host/v1", {"api-version": "x"})``.
    """
    parts = urlsplit(endpoint.strip())
    path = parts.path.rstrip("/")
    if path.endswith(CHAT_COMPLETIONS_PATH):
        path = path[:-len(CHAT_COMPLETIONS_PATH)]
    base_url = urlunsplit((parts.scheme, parts.netloc, path, "", ""))
    return base_url, dict(parse_qsl(parts.query))


def build_openai_client(
    endpoint: str,
    api_key: str,
    organization: Optional[str] = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS
) -> OpenAI:
    """Create an SDK client for the endpoint.

    Azure hosts get the ``api-key`` header, everything else a bearer token.
    Retries are disabled.
    """
    base_url, query = split_endpoint(endpoint)
    client_class = AzureKeyOpenAI if AZURE_HOST_MARKER in endpoint else OpenAI
    return client_class(
        api_key=api_key,
        organization=organization,
        base_url=base_url,
        default_query=query or None,
        timeout=timeout,
        max_retries=0,
    )


def describe_transport_error(error: Exception, timeout: float = REQUEST_TIMEOUT_SECONDS) -> str:
    """Human readable message for a failed request."""
    if isinstance(error, openai.APIStatusError):
        reason = error.response.reason_phrase
        return f"API request failed: {error.status_code} {reason}".rstrip()
    if isinstance(error, openai.APITimeoutError):
        return f"API request timed out after {timeout:g}s"
    if isinstance(error, openai.APIConnectionError):
        cause = error.__cause__ or error
        return f"failed to make the API request: {cause}"
    if isinstance(error, httpx.HTTPError):
        return f"stream interrupted: {error}"
    return str(error)


def _open_ledger_quietly() -> RequestLedger:
    try:
        return open_ledger()
    except ConfigError as e:
        logger.debug("Request logging unavailable: %s", e)
        return DisabledLedger()


class LLMClient:
    """Chat client that keeps a running conversation and logs every request.

    The conversation starts from the model profile's prompt messages and
    grows with each successful exchange. One instance owns its conversation
    and is not meant to be shared.

    Args:
        config: Model profile (name, endpoint, credential source, prompt)
        api_key: Credential, read from ``config.auth_env_var`` when omitted
        ledger: Ledger for request records, opened from the environment when omitted
        cost_estimator: Cost model, default pricing when omitted
        client: Pre-built SDK client, mostly for tests
    """

    def __init__(
        self,
        config: ModelConfig,
        api_key: Optional[str] = None,
        ledger: Optional[RequestLedger] = None,
        cost_estimator: Optional[CostEstimator] = None,
        client: Optional[OpenAI] = None
    ):
        self.config = config
        self.messages: List[Message] = list(config.prompt)
        self.cost_estimator = cost_estimator or CostEstimator()

        self._owns_ledger = ledger is None
        self.ledger = ledger if ledger is not None else _open_ledger_quietly()

        if client is None:
            client = build_openai_client(
                config.endpoint,
                api_key if api_key is not None else config.api_key(),
                config.org_id(),
            )
        self.client = client

    def query(self, text: str, sink: Optional[StreamSink] = None) -> str:
        """Send a query and return the full answer.

        Exactly one ledger entry is written per call, on success and on
        failure. Ledger failures are logged and never fail the query.

        Args:
            text: The user's query
            sink: Called with the accumulated answer as it streams in

        Returns:
            The assistant's answer

        Raises:
            TransportError: If the request fails or the stream is interrupted.
                Anything else raised during the stream, such as an error
                from ``sink``, is recorded and re-raised unchanged.
        """
        start = time.perf_counter()
        messages = self.messages + [Message(role=Role.USER, content=text)]
        payload = RequestPayload(model=self.config.name, messages=tuple(messages))
        decoder = StreamDecoder(sink)

        try:
            with self.client.chat.completions.with_streaming_response.create(
                **payload.to_dict()
            ) as response:
                result = decoder.decode(response.iter_lines())
        except (openai.APIError, httpx.HTTPError) as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            message = describe_transport_error(e)
            self._record(messages, decoder.result(), duration_ms, error=message)
            raise TransportError(message) from e
        except BaseException as e:
            # Sink failures and interrupts still leave one entry behind.
            duration_ms = int((time.perf_counter() - start) * 1000)
            self._record(messages, decoder.result(), duration_ms,
                         error=str(e) or type(e).__name__)
            raise

        duration_ms = int((time.perf_counter() - start) * 1000)
        self._record(messages, result, duration_ms)

        self.messages = messages + [Message(role=Role.ASSISTANT, content=result.text)]
        return result.text

    def _record(
        self,
        messages: Sequence[Message],
        result: StreamResult,
        duration_ms: int,
        error: str = ""
    ) -> LedgerEntry:
        usage = result.usage
        entry = LedgerEntry(
            id=result.request_id,
            model=self.config.name,
            prompt_text=_last_content(messages, Role.USER),
            system_text=_last_content(messages, Role.SYSTEM),
            response_text="" if error else result.text,
            timestamp=datetime.now(timezone.utc),
            duration_ms=duration_ms,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            estimated_cost=self.cost_estimator.estimate_cost(
                self.config.name, usage.prompt_tokens, usage.completion_tokens
            ),
            error=error,
        )
        try:
            self.ledger.persist(entry)
        except LedgerWriteError as e:
            logger.warning("Failed to write log: %s", e)
        return entry

    def close(self) -> None:
        self.client.close()
        if self._owns_ledger:
            self.ledger.close()

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _last_content(messages: Sequence[Message], role: Role) -> str:
    for message in reversed(messages):
        if message.role is role:
            return message.content
    return ""
