"""Async client for the backend transcript store."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any

import httpx

LOGGER = logging.getLogger("mira-assistant.transcripts")

DEFAULT_DURATION_SECONDS = 3


class TranscriptStoreError(RuntimeError):
    """Transcript could not be retrieved (network, status or body)."""


class TranscriptFormatError(TranscriptStoreError):
    """Transcript body parsed but lacks the expected segment list."""


@dataclass(frozen=True)
class Transcript:
    segments: tuple[str, ...]

    @property
    def text(self) -> str:
        return " ".join(segment for segment in self.segments if segment)


def capture_duration_seconds(
    started_at: float | None,
    now: float,
    nominal_seconds: float | None = None,
) -> int:
    """Whole seconds covered by a turn, rounded up, never below one."""
    if started_at:
        return max(1, math.ceil(now - started_at))
    if nominal_seconds:
        return max(1, math.ceil(nominal_seconds))
    return DEFAULT_DURATION_SECONDS


def parse_transcript(body: str) -> Transcript:
    if not body or not body.strip():
        raise TranscriptStoreError("Empty response body received")
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise TranscriptStoreError(f"Failed to parse JSON response: {exc}") from exc
    segments = payload.get("segments") if isinstance(payload, dict) else None
    if not isinstance(segments, list):
        raise TranscriptFormatError("Transcript response is missing the segments list")
    texts: list[str] = []
    for segment in segments:
        if isinstance(segment, dict):
            text = segment.get("text")
        else:
            text = None
        texts.append(str(text).strip() if text is not None else "")
    return Transcript(segments=tuple(texts))


@dataclass(slots=True)
class TranscriptStoreClient:
    base_url: str
    timeout: float = 10.0
    transport: httpx.AsyncBaseTransport | None = None
    logger: logging.Logger = field(default=LOGGER, repr=False)
    _client: httpx.AsyncClient = field(init=False, repr=False)
    _closed: bool = field(init=False, default=True, repr=False)

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ValueError("Transcript server URL is not configured")
        kwargs: dict[str, Any] = {"base_url": self.base_url.rstrip("/"), "timeout": self.timeout}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        self._client = httpx.AsyncClient(**kwargs)
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()

    async def fetch(self, session_id: str, duration_seconds: int) -> Transcript:
        """Fetch the transcript covering the last ``duration_seconds`` of a session."""
        path = f"/api/transcripts/{session_id}"
        self.logger.debug("[transcripts] Fetching %s?duration=%s", path, duration_seconds)
        try:
            response = await self._client.get(path, params={"duration": duration_seconds})
        except httpx.HTTPError as exc:
            raise TranscriptStoreError(f"Failed to contact transcript store: {exc}") from exc
        if not response.is_success:
            raise TranscriptStoreError(f"HTTP {response.status_code}: {response.reason_phrase}")
        return parse_transcript(response.text)
