from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, Field, validator


class CheckerConfig(BaseModel):
    debounce_ms: int = Field(500, ge=0, description="Quiet period after the last edit before checking")
    throttle_ms: int = Field(2000, ge=0, description="Minimum interval between two dispatches")
    min_text_length: int = Field(10, ge=0, description="Shorter scoped text is not analyzed")
    chunk_threshold: int = Field(
        5000,
        gt=0,
        description="Scoped text longer than this is split into chunks",
    )
    chunk_size: int = Field(5000, gt=0, description="Maximum characters per chunk")
    chunk_overlap: int = Field(200, ge=0, description="Characters shared by consecutive chunks")
    respect_sentences: bool = True
    max_concurrency: int = Field(2, ge=1, le=16)
    dedup_min_overlap: float = Field(0.5, gt=0.0, le=1.0)
    dedup_text_similarity: float = Field(0.85, gt=0.0, le=1.0)
    analysis_enabled: bool = True
    analysis_model: str = Field(
        "gpt-4o-mini",
        description="LLM identifier for analysis (OpenAI style)",
    )
    analysis_temperature: float = 0.0

    @validator("chunk_overlap")
    def validate_overlap(cls, value: int, values: Dict[str, Any]) -> int:
        chunk_size = values.get("chunk_size", 1)
        if value * 2 >= chunk_size:
            raise ValueError("chunk_overlap must be less than half of chunk_size")
        return value

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000

    @property
    def throttle_seconds(self) -> float:
        return self.throttle_ms / 1000

    @classmethod
    def from_file(cls, path: str | Path) -> "CheckerConfig":
        config_path = Path(path)
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        # Fall back to env vars when not specified in YAML
        env_fallbacks = {
            "analysis_model": "PROOFLINE_MODEL",
            "max_concurrency": "PROOFLINE_MAX_CONCURRENCY",
            "debounce_ms": "PROOFLINE_DEBOUNCE_MS",
            "throttle_ms": "PROOFLINE_THROTTLE_MS",
        }
        for field, env_var in env_fallbacks.items():
            if field not in data and os.getenv(env_var):
                data[field] = os.environ[env_var]
        return cls(**data)
