"""
Fan-out of one request into several independent replies ("branches").
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .config import GenerationConfig, ProviderConfig
from .context import ConversationContext
from .credentials import CredentialStore
from .errors import ErrorKind, LLMWireError, RequestCancelled
from .lifecycle import RequestLifecycle
from .providers import BaseProviderAdapter, ImageResolver, create_adapter
from .replies import error_reply
from .transport import HttpTransport
from .types import Reply, StreamEvent

logger = logging.getLogger(__name__)

LIVE_BRANCH = 0


@dataclass
class RequestTemplate:
    """Everything needed to issue the same request several times."""
    provider: ProviderConfig
    model: str
    context: ConversationContext
    generation: GenerationConfig = field(default_factory=GenerationConfig)


def summarize_failures(replies: List[Reply]) -> Optional[Reply]:
    """
    One humanized error reply when every branch failed, listing each
    branch's error in ``all_errors``. None if any branch succeeded.
    """
    if not replies or not all(r.get("is_error") for r in replies):
        return None
    errors: List[Dict[str, Any]] = []
    for index, reply in enumerate(replies):
        errors.append({
            "branch": index,
            "kind": reply.get("error_kind", ErrorKind.UNKNOWN.value),
            "message": reply.get("error_message", ""),
        })
    first = replies[0]
    summary: Reply = {
        "content": "",
        "has_tool_calls": False,
        "is_error": True,
        "error_kind": first.get("error_kind", ErrorKind.UNKNOWN.value),
        "error_message": f"All {len(replies)} replies failed. {first.get('error_message', '')}".strip(),
        "all_errors": errors,
    }
    for key in ("provider", "model"):
        if first.get(key):
            summary[key] = first[key]
    return summary


class MultiStreamOrchestrator:
    """
    Runs ``n`` copies of a request concurrently.

    Every branch gets its own RequestLifecycle and stream parser; only branch
    0 forwards incremental events. A failing branch never affects the others:
    it yields an error reply in its slot. Keys are rotated at most once per
    run, after every branch has settled.

    Args:
        transport (HttpTransport): Shared HTTP transport.
        credentials (CredentialStore): Key store.
        image_resolver (ImageResolver, optional): Passed to created adapters.
        max_retries (int): Per-branch retry bound.
    """

    def __init__(
        self,
        transport: HttpTransport,
        credentials: CredentialStore,
        *,
        image_resolver: Optional[ImageResolver] = None,
        max_retries: int = 1,
    ):
        self.transport = transport
        self.credentials = credentials
        self.image_resolver = image_resolver
        self.max_retries = max_retries
        self._adapters: Dict[str, BaseProviderAdapter] = {}
        self._lifecycles: List[RequestLifecycle] = []

    def adapter_for(self, config: ProviderConfig) -> BaseProviderAdapter:
        adapter = self._adapters.get(config.id)
        if adapter is None or adapter.config is not config:
            adapter = create_adapter(
                config, image_resolver=self.image_resolver, http_client=self.transport.client
            )
            self._adapters[config.id] = adapter
        return adapter

    def cancel(self) -> None:
        """Cancel every running branch."""
        for lifecycle in self._lifecycles:
            lifecycle.cancel()

    async def stream(self, template: RequestTemplate, n: int) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield ``{"type": "live", "event": ...}`` for branch 0's events as they
        arrive, then one ``{"type": "replies", "replies": [...]}`` with
        exactly ``n`` replies in branch order.

        Raises:
            ValueError: If ``n`` is less than 1.
            RequestCancelled: If the run was cancelled.
        """
        if n < 1:
            raise ValueError("n must be >= 1")
        adapter = self.adapter_for(template.provider)
        lifecycles = [
            RequestLifecycle(
                adapter,
                self.transport,
                self.credentials,
                max_retries=self.max_retries,
                rotate_on_error=False,
                session_id=f"{template.context.session_id}#{i}",
            )
            for i in range(n)
        ]
        self._lifecycles = lifecycles
        live: asyncio.Queue = asyncio.Queue()

        async def run_branch(index: int) -> Reply:
            lifecycle = lifecycles[index]
            on_event = live.put_nowait if index == LIVE_BRANCH else None
            try:
                reply = await lifecycle.execute(
                    template.context,
                    template.generation,
                    model=template.model,
                    on_event=on_event,
                )
            except RequestCancelled:
                raise
            except (LLMWireError, ValueError) as exc:
                logger.warning("Branch %d of %d failed: %s", index, n, exc)
                return error_reply(exc, provider=adapter.provider_id, model=template.model)
            except Exception as exc:
                logger.exception("Branch %d of %d failed unexpectedly", index, n)
                return error_reply(exc, provider=adapter.provider_id, model=template.model)
            if reply is None:
                reply = error_reply(
                    LLMWireError("Stream ended without a reply"),
                    provider=adapter.provider_id,
                    model=template.model,
                )
            return reply

        gathered = asyncio.ensure_future(asyncio.gather(*(run_branch(i) for i in range(n))))
        try:
            while True:
                getter = asyncio.ensure_future(live.get())
                done, _ = await asyncio.wait({getter, gathered}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield {"type": "live", "event": getter.result()}
                    continue
                getter.cancel()
                break
            while not live.empty():
                yield {"type": "live", "event": live.get_nowait()}
            replies: List[Reply] = gathered.result()
        finally:
            if not gathered.done():
                self.cancel()
                gathered.cancel()

        self._rotate_once(adapter, lifecycles)
        failed = sum(1 for r in replies if r.get("is_error"))
        if failed:
            logger.warning("%d of %d branches failed", failed, n)
        yield {"type": "replies", "replies": replies}

    async def run(
        self,
        template: RequestTemplate,
        n: int,
        on_live: Optional[Callable[[StreamEvent], Any]] = None,
    ) -> List[Reply]:
        """
        Run ``n`` branches and return their replies. ``on_live`` (sync or
        async) receives branch 0's events.
        """
        replies: List[Reply] = []
        async for item in self.stream(template, n):
            if item["type"] == "live":
                if on_live is not None:
                    result = on_live(item["event"])
                    if inspect.isawaitable(result):
                        await result
            else:
                replies = item["replies"]
        return replies

    def _rotate_once(self, adapter: BaseProviderAdapter, lifecycles: List[RequestLifecycle]) -> None:
        failing = [lc for lc in lifecycles if lc.rotation_needed]
        if not failing:
            return
        logger.info(
            "%d branch(es) hit a key error (%s); rotating once", len(failing), failing[0].last_error
        )
        self.credentials.rotate(adapter.provider_id)

