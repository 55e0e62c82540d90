from __future__ import annotations

from typing import Sequence

from slidesift.core.errors import ConfigurationError
from slidesift.domain.models.render import RenderProfile


class RenderProfileSelector:
    """Maps an attempt counter onto a fidelity ladder that only ever degrades."""

    def __init__(self, profiles: Sequence[RenderProfile]) -> None:
        if not profiles:
            raise ConfigurationError("At least one render profile is required.")
        for previous, current in zip(profiles, profiles[1:]):
            if current.scale > previous.scale or current.quality > previous.quality:
                raise ConfigurationError(
                    "Render profiles must be ordered from highest to lowest fidelity "
                    f"({previous} precedes {current})."
                )
        self.profiles: tuple[RenderProfile, ...] = tuple(profiles)

    def for_attempt(self, attempt: int) -> RenderProfile:
        index = max(0, min(int(attempt), len(self.profiles) - 1))
        return self.profiles[index]

    @property
    def lowest(self) -> RenderProfile:
        return self.profiles[-1]
