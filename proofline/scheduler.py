from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence

from .analyzer import BaseAnalyzer
from .chunker import deduplicate, map_to_original
from .schemas import Chunk, Finding, Progress, RawFinding, Span

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: int
    findings: List[Finding]
    progress: Progress
    done: bool = False


class SessionHandle:
    """One analysis round. Superseded or cancelled handles never publish again."""

    def __init__(
        self,
        scheduler: "ChunkScheduler",
        session_id: int,
        chunks: Sequence[Chunk],
        offset: int,
    ) -> None:
        self.session_id = session_id
        self.chunks = list(chunks)
        self.offset = offset
        self.findings: List[Finding] = []
        self._scheduler = scheduler
        self._pending: Deque[Chunk] = deque(self.chunks)
        self._settled: Dict[int, List[Finding]] = {}
        self._in_flight = 0
        self._cancelled = False
        self._done = asyncio.Event()
        self._task: Optional["asyncio.Task[None]"] = None

    def is_current(self) -> bool:
        return not self._cancelled and self._scheduler.current_session_id == self.session_id

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def progress(self) -> Progress:
        return Progress(
            total_chunks=len(self.chunks),
            completed_chunks=len(self._settled),
            in_flight_chunks=self._in_flight,
            is_active=not self.done,
        )

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._scheduler._release(self)
        self._discard()
        logger.debug("Session %s cancelled", self.session_id)

    async def wait(self) -> None:
        await self._done.wait()

    def _discard(self) -> None:
        self._pending.clear()
        self._done.set()


class ChunkScheduler:
    """Runs analysis calls for one session at a time, at most ``max_concurrency`` at once."""

    def __init__(
        self,
        analyzer: BaseAnalyzer,
        *,
        max_concurrency: int = 2,
        min_overlap: float = 0.5,
        text_similarity: float = 0.85,
        on_update: Optional[Callable[[SessionSnapshot], None]] = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._analyzer = analyzer
        self._max_concurrency = max_concurrency
        self._min_overlap = min_overlap
        self._text_similarity = text_similarity
        self._on_update = on_update
        self._ids = itertools.count(1)
        self._current: Optional[SessionHandle] = None

    @property
    def current(self) -> Optional[SessionHandle]:
        return self._current

    @property
    def current_session_id(self) -> Optional[int]:
        return self._current.session_id if self._current is not None else None

    def start_session(self, chunks: Sequence[Chunk], *, offset: int = 0) -> SessionHandle:
        """Start a new round; every earlier handle stops being current right away.

        Must be called from a running event loop.
        """
        previous = self._current
        handle = SessionHandle(self, next(self._ids), chunks, offset)
        self._current = handle
        if previous is not None and not previous.done:
            logger.info(
                "Session %s superseded by %s with %s chunks outstanding",
                previous.session_id,
                handle.session_id,
                len(previous.chunks) - len(previous._settled),
            )
            previous._discard()
        logger.debug("Session %s started with %s chunks", handle.session_id, len(handle.chunks))
        handle._task = asyncio.get_running_loop().create_task(self._run(handle))
        handle._task.add_done_callback(self._on_task_done)
        return handle

    def cancel(self) -> None:
        if self._current is not None:
            self._current.cancel()

    def _release(self, handle: SessionHandle) -> None:
        if self._current is handle:
            self._current = None

    @staticmethod
    def _on_task_done(task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session task ended with an error", exc_info=exc)

    async def _run(self, handle: SessionHandle) -> None:
        workers = min(self._max_concurrency, len(handle.chunks))
        try:
            await asyncio.gather(*(self._worker(handle) for _ in range(workers)))
            if handle.is_current():
                handle.findings = self._merge(handle)
                handle._done.set()
                logger.info(
                    "Session %s finished: %s chunks, %s findings",
                    handle.session_id,
                    len(handle.chunks),
                    len(handle.findings),
                )
                self._publish(handle)
        finally:
            handle._done.set()

    async def _worker(self, handle: SessionHandle) -> None:
        loop = asyncio.get_running_loop()
        while handle.is_current() and handle._pending:
            chunk = handle._pending.popleft()
            handle._in_flight += 1
            try:
                raw = await self._analyzer.analyze(chunk.text)
                findings = self._localise(handle, chunk, raw, loop.time())
            except Exception as exc:
                logger.warning(
                    "Analysis of %s in session %s failed: %s",
                    chunk.chunk_id,
                    handle.session_id,
                    exc,
                )
                findings = []
            finally:
                handle._in_flight -= 1

            if not handle.is_current():
                logger.debug(
                    "Discarding %s result from stale session %s",
                    chunk.chunk_id,
                    handle.session_id,
                )
                return

            handle._settled[chunk.index] = findings
            handle.findings = self._merge(handle)
            self._publish(handle)

    def _merge(self, handle: SessionHandle) -> List[Finding]:
        return deduplicate(
            itertools.chain.from_iterable(handle._settled.values()),
            min_overlap=self._min_overlap,
            text_similarity=self._text_similarity,
        )

    def _publish(self, handle: SessionHandle) -> None:
        if self._on_update is None:
            return
        self._on_update(
            SessionSnapshot(
                session_id=handle.session_id,
                findings=list(handle.findings),
                progress=handle.progress,
                done=handle.done,
            )
        )

    @staticmethod
    def _localise(
        handle: SessionHandle,
        chunk: Chunk,
        raw: Iterable[RawFinding],
        discovered_at: float,
    ) -> List[Finding]:
        findings: List[Finding] = []
        for ordinal, item in enumerate(raw):
            local = _locate(item, chunk.text)
            if local is None:
                logger.debug(
                    "Dropped malformed finding %s-%s from %s",
                    item.start,
                    item.end,
                    chunk.chunk_id,
                )
                continue
            span = map_to_original(local, chunk)
            findings.append(
                Finding(
                    id=f"{handle.session_id}-{chunk.index}-{ordinal}",
                    start=handle.offset + span.start,
                    end=handle.offset + span.end,
                    matched_text=chunk.text[local.start:local.end],
                    category=item.category,
                    severity=item.severity,
                    suggestions=list(item.suggestions),
                    explanation=item.explanation,
                    chunk_index=chunk.index,
                    ordinal=ordinal,
                    discovered_at=discovered_at,
                )
            )
        return findings


def _locate(item: RawFinding, text: str) -> Optional[Span]:
    """Chunk-local span for ``item``, or None when it cannot be placed.

    Spans outside the chunk text are dropped. When an in-bounds span
    disagrees with ``matched_text`` the nearest occurrence of that text is
    used instead.
    """
    if not 0 <= item.start < item.end <= len(text):
        return None
    span = Span(item.start, item.end)
    if item.matched_text and text[span.start:span.end] != item.matched_text:
        relocated = _nearest_occurrence(text, item.matched_text, item.start)
        if relocated is not None:
            return relocated
    return span


def _nearest_occurrence(text: str, needle: str, hint: int) -> Optional[Span]:
    best: Optional[int] = None
    position = text.find(needle)
    while position != -1:
        if best is None or abs(position - hint) < abs(best - hint):
            best = position
        position = text.find(needle, position + 1)
    if best is None:
        return None
    return Span(best, best + len(needle))
