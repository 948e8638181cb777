from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, validator


class Category(str, Enum):
    GRAMMAR = "grammar"
    SPELLING = "spelling"
    STYLE = "style"
    CLARITY = "clarity"
    PUNCTUATION = "punctuation"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Span:
    start: int
    end: int


@dataclass(frozen=True)
class Chunk:
    """One window of the analyzed region.

    ``original_start``/``original_end`` are offsets into the text that was
    split, ``original_end`` exclusive.
    """

    text: str
    index: int
    total_chunks: int
    original_start: int
    original_end: int
    overlap_start: Optional[int] = None
    overlap_end: Optional[int] = None
    has_complete_sentences: bool = False

    @property
    def chunk_id(self) -> str:
        return f"chunk_{self.index}"


class RawFinding(BaseModel):
    """A finding as reported by an analyzer, in chunk-local coordinates."""

    start: int = Field(..., ge=0)
    end: int = Field(..., gt=0)
    matched_text: Optional[str] = None
    category: Category = Category.GRAMMAR
    severity: Severity = Severity.WARNING
    suggestions: List[str] = Field(default_factory=list)
    explanation: str = ""

    @validator("end")
    def validate_end(cls, value: int, values: dict) -> int:
        start = values.get("start")
        if start is not None and value <= start:
            raise ValueError("end must be greater than start")
        return value


class Finding(BaseModel):
    """A finding in document-absolute coordinates."""

    id: str
    start: int = Field(..., ge=0)
    end: int
    matched_text: str
    category: Category
    severity: Severity
    suggestions: List[str] = Field(default_factory=list)
    explanation: str = ""
    chunk_index: int = 0
    ordinal: int = 0
    discovered_at: float = 0.0

    class Config:
        frozen = True


class Progress(BaseModel):
    total_chunks: int = 0
    completed_chunks: int = 0
    in_flight_chunks: int = 0
    is_active: bool = False


class CheckState(BaseModel):
    """What the rendering layer consumes."""

    findings: List[Finding] = Field(default_factory=list)
    is_checking: bool = False
    progress: Progress = Field(default_factory=Progress)
