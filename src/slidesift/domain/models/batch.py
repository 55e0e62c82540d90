from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from slidesift.domain.models.analysis import AnalysisResult


class ProgressStage(str, Enum):
    PREPARING = "preparing"
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Progress:
    stage: ProgressStage
    message: str
    percent: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "percent", clamp_percent(self.percent))

    def to_dict(self) -> dict[str, object]:
        return {"stage": self.stage.value, "message": self.message, "percent": self.percent}


def clamp_percent(value: float) -> int:
    return int(max(0, min(100, round(value))))


class BatchItemStatus(str, Enum):
    PENDING = "pending"
    PARSING = "parsing"
    READY = "ready"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[BatchItemStatus, frozenset[BatchItemStatus]] = {
    BatchItemStatus.PENDING: frozenset({BatchItemStatus.PARSING, BatchItemStatus.ERROR}),
    BatchItemStatus.PARSING: frozenset({BatchItemStatus.READY, BatchItemStatus.ERROR}),
    BatchItemStatus.READY: frozenset({BatchItemStatus.ANALYZING, BatchItemStatus.ERROR}),
    BatchItemStatus.ANALYZING: frozenset(
        {BatchItemStatus.COMPLETE, BatchItemStatus.ERROR, BatchItemStatus.READY}
    ),
    # Leaving a terminal state is only possible through an explicit retry.
    BatchItemStatus.COMPLETE: frozenset({BatchItemStatus.READY, BatchItemStatus.ERROR}),
    BatchItemStatus.ERROR: frozenset({BatchItemStatus.READY, BatchItemStatus.ERROR}),
}


@dataclass(slots=True)
class BatchItem:
    id: str
    name: str
    status: BatchItemStatus = BatchItemStatus.PENDING
    data: bytes | None = field(default=None, repr=False)
    digest: str | None = None
    page_count: int | None = None
    progress: Progress | None = None
    result: AnalysisResult | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def has_input(self) -> bool:
        return self.data is not None

    def can_transition(self, target: BatchItemStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def to_dict(self, *, include_result: bool = False) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "digest": self.digest,
            "page_count": self.page_count,
            "has_input": self.has_input,
            "progress": self.progress.to_dict() if self.progress else None,
            "warnings": list(self.warnings),
            "error": self.error,
            "slide_count": len(self.result.slides) if self.result else 0,
        }
        if include_result:
            payload["result"] = self.result.to_dict() if self.result else None
        return payload
