from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from slidesift.core.errors import FailureKind
from slidesift.domain.models.document import ChunkRange
from slidesift.domain.models.render import PageImage


@dataclass(slots=True)
class SelectedSlide:
    page_number: int
    context: str
    image: PageImage | None = None


@dataclass(slots=True)
class AnalysisResult:
    metadata: dict[str, str] = field(default_factory=dict)
    slides: list[SelectedSlide] = field(default_factory=list)

    def page_numbers(self) -> list[int]:
        return [slide.page_number for slide in self.slides]

    def to_dict(self, *, include_images: bool = True) -> dict[str, object]:
        slides: list[dict[str, object]] = []
        for slide in self.slides:
            row: dict[str, object] = {"page_number": slide.page_number, "context": slide.context}
            if include_images and slide.image is not None:
                row["image_mime_type"] = slide.image.mime_type
                row["image_data_url"] = slide.image.data_url
            slides.append(row)
        return {"metadata": dict(self.metadata), "slides": slides}


class ChunkOutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRIABLE_FAILURE = "retriable_failure"
    FATAL_FAILURE = "fatal_failure"
    TOO_LARGE = "too_large"
    LOCATION_BLOCKED = "location_blocked"
    SPLIT = "split"


@dataclass(slots=True)
class ChunkOutcome:
    kind: ChunkOutcomeKind
    chunk: ChunkRange
    attempts: int = 1
    result: AnalysisResult | None = None
    reason: str | None = None
    failure_kind: FailureKind | None = None
    split_into: tuple[ChunkRange, ChunkRange] | None = None

    @property
    def succeeded(self) -> bool:
        return self.kind is ChunkOutcomeKind.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.kind in (
            ChunkOutcomeKind.RETRIABLE_FAILURE,
            ChunkOutcomeKind.FATAL_FAILURE,
            ChunkOutcomeKind.TOO_LARGE,
            ChunkOutcomeKind.LOCATION_BLOCKED,
        )
