from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_seconds: float = 0.0
    overrides: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")
        for task_type, value in self.overrides.items():
            if value < 1:
                raise ValueError(f"max_retries override for '{task_type}' must be at least 1")

    def max_retries_for(self, task_type: str) -> int:
        return self.overrides.get(task_type, self.max_retries)

    def backoff_for(self, retry_count: int) -> timedelta | None:
        """Delay before the next attempt; doubles per failed attempt."""
        if self.backoff_seconds <= 0 or retry_count <= 0:
            return None
        return timedelta(seconds=self.backoff_seconds * (2 ** (retry_count - 1)))
