from __future__ import annotations

from dataclasses import dataclass

from slidesift.core.errors import ValidationError


@dataclass(frozen=True, slots=True)
class RenderProfile:
    scale: float
    quality: float

    def __post_init__(self) -> None:
        if self.scale <= 0:
            raise ValidationError(f"Render scale must be positive, got {self.scale}.")
        if not 0 < self.quality <= 1:
            raise ValidationError(f"Render quality must be in (0, 1], got {self.quality}.")

    @property
    def jpeg_quality(self) -> int:
        """Quality on Pillow's 1-95 JPEG scale."""
        return max(1, min(95, int(round(self.quality * 100))))

    def fidelity_key(self) -> tuple[float, float]:
        return (self.scale, self.quality)


@dataclass(frozen=True, slots=True)
class PageImage:
    page_number: int
    mime_type: str
    data_url: str

    @property
    def payload_chars(self) -> int:
        return len(self.data_url)
