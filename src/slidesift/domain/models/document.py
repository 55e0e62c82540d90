from __future__ import annotations

from dataclasses import dataclass, field

from slidesift.core.errors import ValidationError


@dataclass(frozen=True, slots=True)
class Document:
    name: str
    data: bytes = field(repr=False)
    page_count: int
    byte_size: int

    @property
    def bytes_per_page(self) -> float:
        return self.byte_size / max(1, self.page_count)


@dataclass(frozen=True, slots=True)
class ChunkRange:
    start_page: int
    end_page: int

    def __post_init__(self) -> None:
        if self.start_page < 1:
            raise ValidationError(f"Page ranges are 1-indexed, got start page {self.start_page}.")
        if self.start_page > self.end_page:
            raise ValidationError(
                f"Invalid page range {self.start_page}-{self.end_page}: start is after end."
            )

    @property
    def page_count(self) -> int:
        return self.end_page - self.start_page + 1

    @property
    def is_splittable(self) -> bool:
        return self.page_count > 1

    @property
    def label(self) -> str:
        return f"pages {self.start_page}-{self.end_page}"

    def pages(self) -> list[int]:
        return list(range(self.start_page, self.end_page + 1))

    def bisect(self) -> tuple[ChunkRange, ChunkRange]:
        if not self.is_splittable:
            raise ValidationError(f"Cannot split single-page range {self.label}.")
        midpoint = (self.start_page + self.end_page) // 2
        return (
            ChunkRange(self.start_page, midpoint),
            ChunkRange(midpoint + 1, self.end_page),
        )
