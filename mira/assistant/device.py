"""Contracts for the glasses-side collaborators a session talks to."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .context_collector import Photo


@dataclass(frozen=True)
class DeviceCapabilities:
    has_display: bool = True
    has_camera: bool = True

    @classmethod
    def from_payload(cls, payload: Any) -> DeviceCapabilities:
        if not isinstance(payload, dict):
            return cls()
        return cls(
            has_display=bool(payload.get("has_display", payload.get("hasDisplay", True))),
            has_camera=bool(payload.get("has_camera", payload.get("hasCamera", True))),
        )


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool = False


@dataclass(frozen=True)
class SpeakResult:
    error: str | None = None


TranscriptCallback = Callable[[TranscriptEvent], None]


class DeviceSession:
    """Everything the turn controller and finalizer need from one device session."""

    capabilities: DeviceCapabilities

    def subscribe_transcription(self, callback: TranscriptCallback) -> Callable[[], None]:
        raise NotImplementedError

    def show_text(self, text: str, duration_ms: int) -> None:
        raise NotImplementedError

    async def speak(self, text: str) -> SpeakResult:
        raise NotImplementedError

    async def play_audio(self, url: str) -> None:
        raise NotImplementedError

    async def request_photo(self) -> Photo:
        raise NotImplementedError

    async def get_location(self, accuracy: str = "high") -> Any:
        raise NotImplementedError
