from __future__ import annotations

import http.client
import json
import logging
import re
import urllib.error
import urllib.request
from typing import Any

from slidesift.core.cancellation import CancellationToken, ensure_token
from slidesift.core.errors import FailureKind, UpstreamError
from slidesift.domain.models.analysis import AnalysisResult, SelectedSlide
from slidesift.domain.models.document import ChunkRange
from slidesift.domain.models.render import PageImage
from slidesift.infrastructure.analysis.classification import (
    classify_failure,
    extract_retry_after_seconds,
    parse_retry_after_header,
)

logger = logging.getLogger(__name__)

_HTML_RE = re.compile(r"<!doctype html|<html[\s>]", re.IGNORECASE)
_GATEWAY_CODE_RE = re.compile(r"^error code:\s*5\d{2}$", re.IGNORECASE)
_MAX_SNIPPET_CHARS = 320


class HttpAnalysisClient:
    """Client for a points-analysis endpoint that accepts page images as data URLs.

    Request: ``{provider, model, pageImages, chunkStartPage, chunkEndPage}``.
    Response: document metadata strings plus ``slides`` whose
    ``selectedPageNumber`` is relative to the submitted images.
    """

    def __init__(
        self,
        endpoint_url: str,
        *,
        model: str = "gemini-2.5-flash",
        provider: str = "gemini",
        timeout_seconds: float = 180.0,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.model = model
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    def analyze(
        self,
        images: list[PageImage],
        chunk: ChunkRange,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        if not images:
            raise UpstreamError("No presentation pages found to analyze.", kind=FailureKind.OTHER)
        token = ensure_token(cancel_token)
        token.raise_if_cancelled("remote analysis")

        payload = self._post_json(
            {
                "provider": self.provider,
                "model": self.model,
                "pageImages": [image.data_url for image in images],
                "chunkStartPage": chunk.start_page,
                "chunkEndPage": chunk.end_page,
            }
        )
        # The request cannot be interrupted mid-flight; drop its result if cancelled meanwhile.
        token.raise_if_cancelled("remote analysis")
        return self._to_result(payload, images, chunk)

    def _post_json(self, body: dict[str, Any]) -> dict[str, Any]:
        request = urllib.request.Request(
            self.endpoint_url,
            data=json.dumps(body).encode("utf-8"),
            headers={"content-type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            message, retry_after = self._describe_http_error(exc)
            raise UpstreamError(
                message,
                kind=classify_failure(message, exc.code),
                status=exc.code,
                retry_after_seconds=retry_after,
            ) from exc
        except (http.client.HTTPException, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            message = f"Network error calling analysis service: {reason}"
            kind = classify_failure(message)
            if kind is FailureKind.OTHER:
                kind = FailureKind.TRANSIENT
            raise UpstreamError(message, kind=kind) from exc

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamError("Server returned invalid JSON.", kind=FailureKind.OTHER) from exc
        if not isinstance(payload, dict):
            raise UpstreamError("Server returned invalid JSON.", kind=FailureKind.OTHER)
        return payload

    @staticmethod
    def _describe_http_error(exc: urllib.error.HTTPError) -> tuple[str, float | None]:
        status = int(exc.code)
        header_retry = parse_retry_after_header(exc.headers.get("retry-after") if exc.headers else None)
        retry_suffix = f" Retry in about {int(header_retry)}s." if header_retry else ""
        fallback = f"Request failed with status {status}."

        try:
            raw_text = exc.read().decode("utf-8", errors="replace").strip()
        except (http.client.HTTPException, OSError):
            raw_text = ""

        message: str | None = None
        if raw_text:
            try:
                body = json.loads(raw_text)
            except json.JSONDecodeError:
                body = None
            if isinstance(body, dict):
                error = body.get("error")
                if isinstance(error, dict) and error.get("message"):
                    reason = f" [{error['reasonCode']}]" if error.get("reasonCode") else ""
                    details = error.get("details")
                    if isinstance(details, str):
                        details_text = f" {details}"
                    elif details:
                        details_text = f" {json.dumps(details)}"
                    else:
                        details_text = ""
                    message = f"{error['message']}{reason}{details_text}"
                elif body.get("message"):
                    message = str(body["message"])
            if message is None:
                if _HTML_RE.search(raw_text) or _GATEWAY_CODE_RE.match(raw_text):
                    if status >= 500:
                        message = f"Temporary gateway error (status {status}). Please retry."
                    else:
                        message = fallback
                else:
                    snippet = raw_text if len(raw_text) <= _MAX_SNIPPET_CHARS else f"{raw_text[:_MAX_SNIPPET_CHARS]}..."
                    message = f"{fallback} {snippet}"
        if message is None:
            message = f"{fallback} {exc.reason}".strip() if exc.reason else fallback

        full_message = f"{message}{retry_suffix}".strip()
        retry_after = header_retry or extract_retry_after_seconds(full_message)
        return full_message, retry_after

    @staticmethod
    def _to_result(payload: dict[str, Any], images: list[PageImage], chunk: ChunkRange) -> AnalysisResult:
        raw_slides = payload.get("slides")
        if not isinstance(raw_slides, list) or not raw_slides:
            raise UpstreamError("AI did not return any selected slides.", kind=FailureKind.OTHER)

        page_offset = chunk.start_page - 1
        slides: list[SelectedSlide] = []
        for raw in raw_slides:
            if not isinstance(raw, dict):
                continue
            relative = raw.get("selectedPageNumber")
            if not isinstance(relative, int) or isinstance(relative, bool):
                continue
            if relative < 1 or relative > len(images):
                logger.debug("Dropping slide with out-of-range page %s for %s", relative, chunk.label)
                continue
            slides.append(
                SelectedSlide(
                    page_number=relative + page_offset,
                    context=str(raw.get("context") or "").strip(),
                    image=images[relative - 1],
                )
            )

        if not slides:
            raise UpstreamError("AI returned invalid page numbers.", kind=FailureKind.OTHER)

        metadata = {
            str(key): str(value)
            for key, value in payload.items()
            if key != "slides" and isinstance(value, str)
        }
        slides.sort(key=lambda slide: slide.page_number)
        return AnalysisResult(metadata=metadata, slides=slides)
