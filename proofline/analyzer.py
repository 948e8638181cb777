from __future__ import annotations

import json
import logging
import re
from typing import List, Optional

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError

from .schemas import Category, RawFinding, Severity

logger = logging.getLogger(__name__)


class AnalysisError(RuntimeError):
    """The analyzer could not produce a usable reply for one chunk."""


class BaseAnalyzer:
    async def analyze(self, text: str) -> List[RawFinding]:
        raise NotImplementedError


class NoOpAnalyzer(BaseAnalyzer):
    async def analyze(self, text: str) -> List[RawFinding]:  # noqa: D401
        """Report nothing when no analysis backend is configured."""

        return []


class PatternAnalyzer(BaseAnalyzer):
    """Offline rules for the most mechanical mistakes."""

    _REPEATED_WORD = re.compile(r"\b(\w+)\s+(\1)\b", re.IGNORECASE)
    _DOUBLE_SPACE = re.compile(r"(?<=\S) {2,}(?=\S)")
    _SPACE_BEFORE_PUNCTUATION = re.compile(r"(?<=\w)[ \t]+([,.;:!?])")
    _LOWERCASE_START = re.compile(r"[.!?][ \t]+([a-z])")

    async def analyze(self, text: str) -> List[RawFinding]:
        findings: List[RawFinding] = []
        for match in self._REPEATED_WORD.finditer(text):
            findings.append(
                RawFinding(
                    start=match.start(),
                    end=match.end(),
                    matched_text=match.group(0),
                    category=Category.GRAMMAR,
                    severity=Severity.ERROR,
                    suggestions=[match.group(1)],
                    explanation=f'The word "{match.group(1)}" is repeated.',
                )
            )
        for match in self._DOUBLE_SPACE.finditer(text):
            findings.append(
                RawFinding(
                    start=match.start(),
                    end=match.end(),
                    matched_text=match.group(0),
                    category=Category.PUNCTUATION,
                    severity=Severity.INFO,
                    suggestions=[" "],
                    explanation="Use a single space between words.",
                )
            )
        for match in self._SPACE_BEFORE_PUNCTUATION.finditer(text):
            findings.append(
                RawFinding(
                    start=match.start(),
                    end=match.end(),
                    matched_text=match.group(0),
                    category=Category.PUNCTUATION,
                    severity=Severity.WARNING,
                    suggestions=[match.group(1)],
                    explanation="Remove the space before the punctuation mark.",
                )
            )
        for match in self._LOWERCASE_START.finditer(text):
            letter = match.group(1)
            findings.append(
                RawFinding(
                    start=match.start(1),
                    end=match.end(1),
                    matched_text=letter,
                    category=Category.GRAMMAR,
                    severity=Severity.WARNING,
                    suggestions=[letter.upper()],
                    explanation="Sentences start with a capital letter.",
                )
            )
        findings.sort(key=lambda item: (item.start, item.end))
        return findings


SYSTEM_PROMPT = (
    "You are a meticulous copy editor. Find grammar, spelling, style, clarity and "
    "punctuation problems in the passage you are given. The passage may start or end "
    "mid-sentence; ignore problems caused only by that truncation. "
    'Reply with a JSON object {"findings": [...]} where each item has: '
    '"start" and "end" (0-based character offsets into the passage, end exclusive), '
    '"matched_text" (the exact passage text between start and end), '
    '"category" (one of grammar, spelling, style, clarity, punctuation), '
    '"severity" (one of info, warning, error), '
    '"suggestions" (list of replacement strings) and "explanation" (one sentence). '
    'Reply with {"findings": []} when the passage is clean.'
)


class LLMAnalyzer(BaseAnalyzer):
    """Uses an OpenAI-compatible model to review one passage."""

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.0,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self._model = model
        self._temperature = temperature

    async def analyze(self, text: str) -> List[RawFinding]:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                temperature=self._temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
            )
        except OpenAIError as exc:
            raise AnalysisError(f"analysis request failed: {exc}") from exc

        content: Optional[str] = response.choices[0].message.content if response.choices else None
        if not content:
            logger.warning("LLM response was empty; treating passage as clean")
            return []
        return parse_findings(content)


def parse_findings(content: str) -> List[RawFinding]:
    """Validate an analyzer reply item by item, dropping the malformed ones."""
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise AnalysisError("analysis reply was not valid JSON") from exc

    items = payload.get("findings") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise AnalysisError("analysis reply has no findings list")

    findings: List[RawFinding] = []
    for item in items:
        try:
            findings.append(RawFinding.model_validate(item))
        except ValidationError as exc:
            logger.debug("Dropped malformed finding %r: %s", item, exc)
    return findings
