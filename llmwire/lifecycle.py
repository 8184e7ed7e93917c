"""
One logical send: state machine, credential rotation and bounded retry.
"""
import dataclasses
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, Optional, Set, Tuple

from .config import GenerationConfig
from .context import ConversationContext
from .credentials import CredentialStore
from .errors import (
    ROTATION_STATUS_CODES, ErrorKind, HTTPError, LLMWireError, ParseError,
    ProviderAPIError, RequestCancelled,
)
from .providers.base import BaseProviderAdapter
from .replies import error_kind_of, error_reply
from .transport import CancelToken, HttpTransport, TransportResponse
from .types import Reply, StreamEvent

logger = logging.getLogger(__name__)

MAX_HISTORY = 20

_IMAGE_SIZE_HINTS = (
    "image exceeds",
    "image too large",
    "image is too large",
    "image size",
    "exceeds 5 mb",
    "maximum image size",
)


class LifecycleState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


VALID_TRANSITIONS: Dict[LifecycleState, Set[LifecycleState]] = {
    LifecycleState.IDLE: {LifecycleState.SENDING},
    LifecycleState.SENDING: {
        LifecycleState.STREAMING,
        LifecycleState.COMPLETED,
        LifecycleState.ERROR,
        LifecycleState.CANCELLED,
    },
    LifecycleState.STREAMING: {
        LifecycleState.COMPLETED,
        LifecycleState.ERROR,
        LifecycleState.CANCELLED,
    },
    LifecycleState.COMPLETED: {LifecycleState.IDLE},
    LifecycleState.ERROR: {LifecycleState.IDLE},
    LifecycleState.CANCELLED: {LifecycleState.IDLE},
}

TERMINAL_STATES = frozenset({LifecycleState.COMPLETED, LifecycleState.ERROR, LifecycleState.CANCELLED})


class RetryReason(str, Enum):
    PAYLOAD_TOO_LARGE = "payload_too_large"


def retry_reason(error: LLMWireError) -> Optional[RetryReason]:
    """Why a failed attempt may be retried, or None."""
    if error_kind_of(error) is ErrorKind.PAYLOAD_TOO_LARGE:
        return RetryReason.PAYLOAD_TOO_LARGE
    if getattr(error, "status_code", None) == 413:
        return RetryReason.PAYLOAD_TOO_LARGE
    message = str(error).lower()
    if any(hint in message for hint in _IMAGE_SIZE_HINTS):
        return RetryReason.PAYLOAD_TOO_LARGE
    return None


def should_rotate(error: Optional[BaseException]) -> bool:
    """True for errors that mean the current key is unusable (401/403/429)."""
    if isinstance(error, ProviderAPIError):
        return error.should_rotate
    if isinstance(error, HTTPError):
        return error.status_code in ROTATION_STATUS_CODES
    return False


def response_error(adapter: BaseProviderAdapter, response: TransportResponse) -> LLMWireError:
    """Error for a non-2xx response: the provider's envelope when it has one."""
    body = response.json()
    error = adapter.extract_error(body, response.status_code) if body is not None else None
    if error is None:
        snippet = response.text[:200] if response.text else ""
        error = HTTPError(f"HTTP {response.status_code}: {snippet}".rstrip(": "),
                          status_code=response.status_code, body=body)
    return error


class RequestLifecycle:
    """
    Drives one logical send from IDLE to a terminal state.

    Owns the CancelToken of the send. On 401/403/429 the credential store is
    rotated before the error reply is returned; the request is not retried.
    Requests rejected as too large are rebuilt once with every image routed
    through the adapter's image resolver.

    Args:
        adapter (BaseProviderAdapter): Adapter of the target provider.
        transport (HttpTransport): HTTP transport.
        credentials (CredentialStore): Key store for the provider.
        max_retries (int): Upper bound on rebuild-and-resend attempts.
        timeout (float, optional): Wall-clock limit; cancels the token.
        rotate_on_error (bool): Rotate keys on 401/403/429. The orchestrator
            turns this off and rotates once for all of its branches.
        session_id (str, optional): Correlation id for logs.
    """

    def __init__(
        self,
        adapter: BaseProviderAdapter,
        transport: HttpTransport,
        credentials: CredentialStore,
        *,
        max_retries: int = 1,
        timeout: Optional[float] = None,
        rotate_on_error: bool = True,
        session_id: Optional[str] = None,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.adapter = adapter
        self.transport = transport
        self.credentials = credentials
        self.max_retries = max_retries
        self.timeout = timeout
        self.rotate_on_error = rotate_on_error
        self.session_id = session_id
        self.state = LifecycleState.IDLE
        self.history: Deque[Dict[str, Any]] = deque(maxlen=MAX_HISTORY)
        self.cancel_token = CancelToken()
        self.last_error: Optional[LLMWireError] = None
        self.rotation_needed = False
        self.retries: Deque[RetryReason] = deque(maxlen=MAX_HISTORY)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def can_transition(self, new_state: LifecycleState) -> bool:
        return new_state in VALID_TRANSITIONS[self.state]

    def transition(self, new_state: LifecycleState, **metadata: Any) -> bool:
        """
        Move to ``new_state``. Illegal transitions are logged and rejected.

        Returns:
            bool: Whether the transition happened.
        """
        if not self.can_transition(new_state):
            logger.error(
                "[%s] Illegal lifecycle transition %s -> %s",
                self.session_id, self.state.value, new_state.value,
            )
            return False
        old_state, self.state = self.state, new_state
        self.history.append({
            "from": old_state,
            "to": new_state,
            "timestamp": time.time(),
            "metadata": metadata,
        })
        logger.debug("[%s] %s -> %s", self.session_id, old_state.value, new_state.value)
        return True

    def force_reset(self) -> None:
        """Return to IDLE from any state, dropping the old CancelToken."""
        if self.state is not LifecycleState.IDLE:
            logger.warning("[%s] Forcing lifecycle reset from %s", self.session_id, self.state.value)
            self.history.append({
                "from": self.state,
                "to": LifecycleState.IDLE,
                "timestamp": time.time(),
                "metadata": {"forced": True},
            })
        self.state = LifecycleState.IDLE
        self.cancel_token.clear_timeout()
        self.cancel_token = CancelToken()

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def _begin(self) -> None:
        if self.state in TERMINAL_STATES:
            self.transition(LifecycleState.IDLE)
            self.cancel_token = CancelToken()
        elif self.state is not LifecycleState.IDLE:
            self.force_reset()
        self.last_error = None
        self.rotation_needed = False
        self.transition(LifecycleState.SENDING, provider=self.adapter.provider_id)
        if self.timeout:
            self.cancel_token.cancel_after(self.timeout)

    def _retry(self, error: LLMWireError, attempt: int) -> Optional[RetryReason]:
        """Reason to rebuild and resend after ``error``, re-entering SENDING."""
        reason = retry_reason(error)
        if reason is None or attempt >= self.max_retries:
            return None
        logger.warning(
            "[%s] Retrying %s request (%s, attempt %d of %d)",
            self.session_id, self.adapter.provider_id, reason.value, attempt + 1, self.max_retries,
        )
        self.retries.append(reason)
        self.transition(LifecycleState.ERROR, retry=reason.value)
        self.transition(LifecycleState.IDLE)
        self.transition(LifecycleState.SENDING, retry=reason.value)
        return reason

    def _fail(self, error: LLMWireError) -> None:
        self.last_error = error
        if should_rotate(error):
            self.rotation_needed = True
            if self.rotate_on_error:
                self.credentials.rotate(self.adapter.provider_id)
        self.transition(LifecycleState.ERROR, kind=error_kind_of(error).value)

    def _cancelled(self, started: float) -> RequestCancelled:
        self.transition(LifecycleState.CANCELLED)
        elapsed = time.monotonic() - started
        if self.timeout and elapsed >= self.timeout:
            return RequestCancelled(
                f"Request timed out after {self.timeout:g}s",
                hint="Increase the timeout or try again later.",
            )
        return RequestCancelled("Request cancelled")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        context: ConversationContext,
        generation: Optional[GenerationConfig] = None,
        *,
        model: str,
    ) -> Reply:
        """
        Non-streaming send.

        Returns:
            Reply: The parsed reply, or an error reply for provider errors.

        Raises:
            TransportError: On network failures.
            RequestCancelled: If cancelled or timed out.
            ValueError: If the context has no messages.
        """
        generation = dataclasses.replace(generation or GenerationConfig(), stream=False)
        started = time.monotonic()
        self._begin()
        provider = self.adapter.provider_id
        try:
            attempt = 0
            while True:
                request = await self._build(context, generation, model, force_upload=attempt > 0)
                response = await self.transport.send(request, self.cancel_token)
                if response.ok:
                    break
                error = response_error(self.adapter, response)
                if self._retry(error, attempt):
                    attempt += 1
                    continue
                self._fail(error)
                return error_reply(error, provider=provider, model=model)

            data = response.json()
            if data is None:
                error = ParseError("Response body is not valid JSON")
                self._fail(error)
                return error_reply(error, provider=provider, model=model)
            error = self.adapter.extract_error(data, response.status_code)
            if error is not None:
                self._fail(error)
                return error_reply(error, provider=provider, model=model)

            reply = self.adapter.parse_response(data, context)
            if reply is None:
                error = ProviderAPIError(
                    "The model returned no content", kind=ErrorKind.EMPTY_RESPONSE, provider=provider
                )
                self._fail(error)
                return error_reply(error, provider=provider, model=model)
            reply.setdefault("model", model)
            self.transition(LifecycleState.COMPLETED)
            return reply
        except RequestCancelled:
            raise self._cancelled(started) from None
        except Exception as exc:
            self.last_error = exc if isinstance(exc, LLMWireError) else None
            if self.state not in TERMINAL_STATES:
                self.transition(LifecycleState.ERROR, kind=error_kind_of(exc).value)
            raise
        finally:
            self.cancel_token.clear_timeout()

    async def stream(
        self,
        context: ConversationContext,
        generation: Optional[GenerationConfig] = None,
        *,
        model: str,
    ) -> AsyncIterator[StreamEvent]:
        """
        Streaming send. Yields canonical events ending with one ``done``.

        Non-2xx responses yield a terminal ``error`` event and a ``done``
        carrying the error reply.

        Raises:
            TransportError: On network failures.
            RequestCancelled: If cancelled or timed out; no ``done`` follows.
        """
        generation = dataclasses.replace(generation or GenerationConfig(), stream=True)
        started = time.monotonic()
        self._begin()
        provider = self.adapter.provider_id
        try:
            attempt = 0
            while True:
                request = await self._build(context, generation, model, force_upload=attempt > 0)
                async with self.transport.open_stream(request, self.cancel_token) as response:
                    if not response.ok:
                        error = response_error(self.adapter, await response.read())
                        if self._retry(error, attempt):
                            attempt += 1
                            continue
                        self._fail(error)
                        for event in self._error_events(error, model):
                            yield event
                        return

                    self.transition(LifecycleState.STREAMING)
                    parser = self.adapter.stream_parser(context, model=model)
                    async for event in parser.parse(response.iter_bytes(), self.cancel_token):
                        if self.state is LifecycleState.STREAMING:
                            # Settle state and credentials before the caller can stop reading
                            if event["type"] == "error" and event.get("terminal") and parser.error is not None:
                                self._fail(parser.error)
                            elif event["type"] == "done":
                                self.transition(LifecycleState.COMPLETED)
                        yield event

                if self.state is LifecycleState.STREAMING:
                    if parser.error is not None:
                        self._fail(parser.error)
                    else:
                        self.transition(LifecycleState.COMPLETED)
                return
        except GeneratorExit:
            if self.state in (LifecycleState.SENDING, LifecycleState.STREAMING):
                self.transition(LifecycleState.CANCELLED, reason="consumer closed the stream")
            raise
        except RequestCancelled:
            raise self._cancelled(started) from None
        except Exception as exc:
            self.last_error = exc if isinstance(exc, LLMWireError) else None
            if self.state not in TERMINAL_STATES:
                self.transition(LifecycleState.ERROR, kind=error_kind_of(exc).value)
            raise
        finally:
            self.cancel_token.clear_timeout()

    async def execute(
        self,
        context: ConversationContext,
        generation: Optional[GenerationConfig] = None,
        *,
        model: str,
        on_event=None,
    ) -> Reply:
        """
        Send with the streaming mode of ``generation`` and return the final
        Reply. ``on_event`` receives every streamed event.
        """
        generation = generation or GenerationConfig()
        if not generation.stream:
            return await self.send(context, generation, model=model)
        reply: Optional[Reply] = None
        async for event in self.stream(context, generation, model=model):
            if on_event is not None:
                on_event(event)
            if event["type"] == "done":
                reply = event["reply"]
        return reply

    async def _build(self, context: ConversationContext, generation: GenerationConfig, model: str, *, force_upload: bool):
        api_key = self.credentials.current_key(self.adapter.provider_id)
        return await self.adapter.build(
            context, generation, api_key=api_key, model=model, force_image_upload=force_upload
        )

    def _error_events(self, error: LLMWireError, model: str) -> Tuple[StreamEvent, StreamEvent]:
        reply = error_reply(error, provider=self.adapter.provider_id, model=model)
        return (
            {
                "type": "error",
                "error_kind": error_kind_of(error).value,
                "message": str(error),
                "status_code": getattr(error, "status_code", None),
                "retryable": bool(getattr(error, "retryable", False)),
                "terminal": True,
            },
            {"type": "done", "reply": reply},
        )
