from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from slidesift.core.errors import ConfigurationError
from slidesift.domain.models.render import RenderProfile


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    state_dir: Path
    output_dir: Path
    state_path: Path
    log_path: Path


DEFAULT_STATE_DIRNAME = ".slidesift"
DEFAULT_ANALYZE_URL = "http://127.0.0.1:8788/api/points/analyze"

DOCUMENT_KINDS = ("presentation", "transcript", "theme")


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    home_raw = os.getenv("SLIDESIFT_HOME")
    if home_raw:
        state_dir = Path(home_raw).expanduser().resolve()
    else:
        state_dir = root / DEFAULT_STATE_DIRNAME

    return AppPaths(
        project_root=root,
        state_dir=state_dir,
        output_dir=state_dir / "results",
        state_path=state_dir / "batch_state.json",
        log_path=state_dir / "batch_runs.log.jsonl",
    )


def load_analyze_url() -> str:
    return (os.getenv("SLIDESIFT_ANALYZE_URL") or "").strip() or DEFAULT_ANALYZE_URL


@dataclass(frozen=True)
class PipelineTuning:
    """All knobs of the chunked analysis pipeline for one document kind."""

    kind: str = "presentation"
    default_chunk_size: int = 12
    medium_chunk_size: int = 8
    small_chunk_size: int = 6
    medium_density_bytes_per_page: int = 320 * 1024
    high_density_bytes_per_page: int = 550 * 1024
    max_payload_chars: int = 20 * 1024 * 1024
    max_document_bytes: int = 25 * 1024 * 1024
    max_retries: int = 2
    retry_base_delay_seconds: float = 1.2
    max_retry_delay_seconds: float = 90.0
    rate_limit_multiplier: float = 2.4
    transient_multiplier: float = 1.85
    retry_after_margin_seconds: float = 1.2
    render_profiles: tuple[RenderProfile, ...] = (
        RenderProfile(scale=1.15, quality=0.75),
        RenderProfile(scale=1.0, quality=0.65),
        RenderProfile(scale=0.85, quality=0.55),
    )
    render_workers: int = 4
    high_quality_scale: float = 2.0
    png_max_chars: int = 4_800_000
    jpeg_fallback_quality: float = 0.92
    chunk_progress_scale: int = 90

    @classmethod
    def for_kind(cls, kind: str) -> PipelineTuning:
        normalized = (kind or "").strip().lower()
        if normalized == "presentation":
            return cls(kind="presentation")
        if normalized == "transcript":
            return cls(kind="transcript", retry_base_delay_seconds=1.8)
        if normalized == "theme":
            return cls(kind="theme", retry_base_delay_seconds=1.8)
        raise ConfigurationError(
            f"Unknown document kind '{kind}'. Expected one of: {', '.join(DOCUMENT_KINDS)}."
        )

    def validate(self) -> PipelineTuning:
        if min(self.default_chunk_size, self.medium_chunk_size, self.small_chunk_size) < 1:
            raise ConfigurationError("Chunk sizes must be at least 1 page.")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must not be negative.")
        if self.retry_base_delay_seconds < 0 or self.max_retry_delay_seconds < 0:
            raise ConfigurationError("Retry delays must not be negative.")
        if self.max_payload_chars <= 0:
            raise ConfigurationError("max_payload_chars must be positive.")
        if not self.render_profiles:
            raise ConfigurationError("At least one render profile is required.")
        if self.render_workers < 1:
            raise ConfigurationError("render_workers must be at least 1.")
        if not 0 < self.chunk_progress_scale <= 100:
            raise ConfigurationError("chunk_progress_scale must be in (0, 100].")
        return self


def load_tuning(kind: str = "presentation") -> PipelineTuning:
    base = PipelineTuning.for_kind(kind)
    overrides: dict[str, object] = {}

    max_retries = _read_int_env("SLIDESIFT_MAX_RETRIES")
    if max_retries is not None:
        overrides["max_retries"] = max_retries
    base_delay = _read_float_env("SLIDESIFT_RETRY_BASE_DELAY_SECONDS")
    if base_delay is not None:
        overrides["retry_base_delay_seconds"] = base_delay
    max_delay = _read_float_env("SLIDESIFT_MAX_RETRY_DELAY_SECONDS")
    if max_delay is not None:
        overrides["max_retry_delay_seconds"] = max_delay
    max_payload = _read_int_env("SLIDESIFT_MAX_PAYLOAD_CHARS")
    if max_payload is not None:
        overrides["max_payload_chars"] = max_payload
    workers = _read_int_env("SLIDESIFT_RENDER_WORKERS")
    if workers is not None:
        overrides["render_workers"] = workers

    return replace(base, **overrides).validate()


def _read_int_env(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'.") from exc


def _read_float_env(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'.") from exc
