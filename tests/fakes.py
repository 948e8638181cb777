"""Fake analyzers, clock and finding factory shared by the tests."""

from __future__ import annotations

import asyncio
import re
from typing import Callable, List, Optional

from proofline.analyzer import BaseAnalyzer
from proofline.schemas import Category, Finding, RawFinding, Severity

TYPO = re.compile(r"teh")


def typo_reply(text: str) -> List[RawFinding]:
    """Report every "teh" as a spelling mistake."""
    return [
        RawFinding(
            start=match.start(),
            end=match.end(),
            matched_text=match.group(0),
            category=Category.SPELLING,
            severity=Severity.ERROR,
            suggestions=["the"],
        )
        for match in TYPO.finditer(text)
    ]


class ScriptedAnalyzer(BaseAnalyzer):
    """Answers with ``reply(text)`` after ``delay`` seconds and records concurrency."""

    def __init__(
        self,
        reply: Optional[Callable[[str], List[RawFinding]]] = None,
        delay: float = 0.0,
    ) -> None:
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._reply = reply or (lambda text: [])
        self._delay = delay

    async def analyze(self, text: str) -> List[RawFinding]:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self._delay)
            return self._reply(text)
        finally:
            self.in_flight -= 1


class GatedAnalyzer(BaseAnalyzer):
    """Holds every call until ``gate`` is set."""

    def __init__(self, reply: Optional[Callable[[str], List[RawFinding]]] = None) -> None:
        self.calls: List[str] = []
        self.gate = asyncio.Event()
        self._reply = reply or typo_reply

    async def analyze(self, text: str) -> List[RawFinding]:
        self.calls.append(text)
        await self.gate.wait()
        return self._reply(text)


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_finding(
    id: str,
    start: int,
    end: int,
    text: str,
    *,
    chunk_index: int = 0,
    ordinal: int = 0,
    discovered_at: float = 0.0,
) -> Finding:
    return Finding(
        id=id,
        start=start,
        end=end,
        matched_text=text,
        category=Category.SPELLING,
        severity=Severity.ERROR,
        chunk_index=chunk_index,
        ordinal=ordinal,
        discovered_at=discovered_at,
    )
