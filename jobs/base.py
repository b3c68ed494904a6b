"""Shared pieces for the periodic jobs."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass
class JobRunStats:
    """Summary of one job tick."""
    job: str
    skipped: bool = False
    reason: str = ""
    processed: int = 0
    alerts_created: int = 0
    calls_placed: int = 0
    fallbacks_sent: int = 0
    stages_fired: dict[str, int] = field(default_factory=dict)
    errors: int = 0
    next_window: Optional[str] = None

    @classmethod
    def skip(cls, job: str, reason: str, next_window: Optional[str] = None) -> JobRunStats:
        return cls(job=job, skipped=True, reason=reason, next_window=next_window)

    def count_stage(self, stage: str):
        self.stages_fired[stage] = self.stages_fired.get(stage, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
