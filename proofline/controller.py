from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .analyzer import BaseAnalyzer
from .chunker import TextChunker
from .config import CheckerConfig
from .scheduler import ChunkScheduler, SessionHandle, SessionSnapshot
from .schemas import CheckState, Finding, Progress, Span

logger = logging.getLogger(__name__)


class TriggerState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    DISPATCHED = "dispatched"


class TriggerController:
    """Turns a stream of edits into analysis rounds.

    Edits are debounced, dispatches are throttled, and findings are always
    reported in document-absolute offsets. Changing the scope drops
    everything computed against the old one.
    """

    def __init__(
        self,
        analyzer: BaseAnalyzer,
        config: CheckerConfig,
        *,
        chunker: Optional[TextChunker] = None,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[Callable[[CheckState], None]] = None,
    ) -> None:
        self._config = config
        self._chunker = chunker or TextChunker(
            config.chunk_size,
            config.chunk_overlap,
            respect_sentences=config.respect_sentences,
        )
        self._scheduler = ChunkScheduler(
            analyzer,
            max_concurrency=config.max_concurrency,
            min_overlap=config.dedup_min_overlap,
            text_similarity=config.dedup_text_similarity,
            on_update=self._on_snapshot,
        )
        self._clock = clock
        self._on_change = on_change
        self._text = ""
        self._scope: Optional[Span] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._session: Optional[SessionHandle] = None
        self._last_dispatch: Optional[float] = None
        self._published = CheckState()

    @property
    def state(self) -> TriggerState:
        if self._timer is not None:
            return TriggerState.DEBOUNCING
        if self._session is not None and not self._session.done:
            return TriggerState.DISPATCHED
        return TriggerState.IDLE

    @property
    def scope(self) -> Optional[Span]:
        return self._scope

    @property
    def session(self) -> Optional[SessionHandle]:
        return self._session

    @property
    def scheduler(self) -> ChunkScheduler:
        return self._scheduler

    def snapshot(self) -> CheckState:
        return self._published.model_copy()

    def update(self, text: Optional[str], scope: Optional[Span] = None) -> None:
        """Feed the latest document text; ``scope`` None means the whole document.

        Must be called from a running event loop.
        """
        if scope != self._scope:
            self.set_scope(scope)
        self._text = text or ""

        if not self._text:
            self._cancel_timer()
            self._cancel_session()
            self._publish([], is_checking=False, progress=Progress())
            return

        loop = asyncio.get_running_loop()
        self._cancel_timer()
        self._timer = loop.call_later(self._config.debounce_seconds, self._on_timer)

    def set_scope(self, scope: Optional[Span]) -> None:
        if scope == self._scope:
            return
        previous, self._scope = self._scope, scope
        self._cancel_timer()
        self._cancel_session()
        self._publish([], is_checking=False, progress=Progress())
        logger.info("Scope changed from %s to %s; findings cleared", previous, scope)

    def flush(self) -> bool:
        """Run a pending debounce now. Returns True if a session was started."""
        if self._timer is None:
            return False
        self._cancel_timer()
        return self._dispatch()

    async def wait_idle(self) -> None:
        while self._session is not None:
            session = self._session
            await session.wait()
            if self._session is session:
                return

    def close(self) -> None:
        self._cancel_timer()
        self._cancel_session()

    def _on_timer(self) -> None:
        self._timer = None
        self._dispatch()

    def _dispatch(self) -> bool:
        region, offset = self._scoped_region()
        if len(region) < self._config.min_text_length:
            logger.debug("Scoped text has %s chars; nothing to analyze", len(region))
            self._cancel_session()
            self._publish([], is_checking=False, progress=Progress())
            return False

        now = self._clock()
        if self._last_dispatch is not None and now - self._last_dispatch < self._config.throttle_seconds:
            logger.debug(
                "Throttled dispatch %.0f ms after the previous one",
                (now - self._last_dispatch) * 1000,
            )
            return False
        self._last_dispatch = now

        if len(region) <= self._config.chunk_threshold:
            chunks = self._chunker.whole(region)
        else:
            chunks = self._chunker.split(region)
        logger.info(
            "Checking %s chars at offset %s in %s chunk(s)",
            len(region),
            offset,
            len(chunks),
        )
        self._session = self._scheduler.start_session(chunks, offset=offset)
        self._publish([], is_checking=True, progress=self._session.progress)
        return True

    def _on_snapshot(self, snapshot: SessionSnapshot) -> None:
        session = self._session
        if session is None or session.session_id != snapshot.session_id or not session.is_current():
            return
        self._publish(snapshot.findings, is_checking=not snapshot.done, progress=snapshot.progress)

    def _scoped_region(self) -> Tuple[str, int]:
        if self._scope is None:
            return self._text, 0
        length = len(self._text)
        start = max(0, min(self._scope.start, length))
        end = max(start, min(self._scope.end, length))
        return self._text[start:end], start

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_session(self) -> None:
        if self._session is not None:
            self._session.cancel()
            self._session = None

    def _publish(self, findings: List[Finding], *, is_checking: bool, progress: Progress) -> None:
        state = CheckState(findings=list(findings), is_checking=is_checking, progress=progress)
        if state == self._published:
            return
        self._published = state
        if self._on_change is not None:
            self._on_change(state)
