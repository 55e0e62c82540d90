from __future__ import annotations

import math
from dataclasses import dataclass

from slidesift.core.config import PipelineTuning
from slidesift.core.errors import FailureKind


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base_delay_seconds: float
    max_delay_seconds: float = 90.0
    rate_limit_multiplier: float = 2.4
    transient_multiplier: float = 1.85
    retry_after_margin_seconds: float = 1.2

    @classmethod
    def from_tuning(cls, tuning: PipelineTuning) -> BackoffPolicy:
        return cls(
            base_delay_seconds=tuning.retry_base_delay_seconds,
            max_delay_seconds=tuning.max_retry_delay_seconds,
            rate_limit_multiplier=tuning.rate_limit_multiplier,
            transient_multiplier=tuning.transient_multiplier,
            retry_after_margin_seconds=tuning.retry_after_margin_seconds,
        )

    def delay_for(
        self,
        kind: FailureKind,
        retry_number: int,
        retry_after_seconds: float | None = None,
    ) -> float:
        """Seconds to wait before retry ``retry_number`` (1-based)."""
        if retry_after_seconds is not None and retry_after_seconds > 0:
            honored = math.ceil(retry_after_seconds) + self.retry_after_margin_seconds
            return min(self.max_delay_seconds, honored)

        multiplier = (
            self.rate_limit_multiplier if kind is FailureKind.RATE_LIMITED else self.transient_multiplier
        )
        delay = self.base_delay_seconds * math.pow(multiplier, max(1, retry_number))
        return min(self.max_delay_seconds, round(delay, 3))
