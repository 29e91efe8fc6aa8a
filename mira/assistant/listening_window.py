"""
Per-session turn-taking state machine

Phases:
- ``idle``: waiting for a wake phrase.
- ``head_gated``: like idle, but a wake phrase only counts while the
  head-up window (opened by a down->up head transition) is running.
- ``listening``: a turn is in progress; every transcript re-arms the
  finalize debounce, and a max-duration timer caps the turn.
- ``finalizing``: the finalizer owns the turn; new events are dropped.

Every event goes through ``dispatch``. Timer callbacks carry the turn id
they were armed for, so a timer that fires for an older turn or after the
phase moved on is a logged no-op. Whichever of the debounce and
max-duration timers fires first finalizes the turn; the other is cancelled
in the same step.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import SoundConfig, TurnTiming
from .context_collector import ContextCollector
from .device import DeviceSession, TranscriptEvent
from .settings import SPEAK_RESPONSE, WAKE_REQUIRES_HEAD_UP, SessionSettings
from .timers import FINALIZE_DEBOUNCE, HEAD_UP_WINDOW, MAX_LISTEN_DURATION, TimerArena
from .transcript_display import TranscriptProcessor
from .wake_words import WakeWordMatcher, normalize

if TYPE_CHECKING:
    from .query_finalizer import QueryFinalizer

LOGGER = logging.getLogger("mira-assistant.turn")

LISTENING_PROMPT = "Listening..."


class TurnPhase(str, Enum):
    IDLE = "idle"
    HEAD_GATED = "head_gated"
    LISTENING = "listening"
    FINALIZING = "finalizing"


@dataclass
class TurnState:
    phase: TurnPhase = TurnPhase.IDLE
    listening_started_at: float | None = None
    last_transcript_text: str = ""
    head_up_window_expires_at: float | None = None
    turn_id: int = 0
    last_head_position: str | None = None


@dataclass(frozen=True)
class TurnSnapshot:
    """What the finalizer needs to know about a completed turn."""

    session_id: str
    turn_id: int
    started_at: float | None
    triggered_at: float
    nominal_ms: int
    trigger: str
    last_text: str = ""


@dataclass(frozen=True)
class HeadPositionEvent:
    position: str


@dataclass(frozen=True)
class TimerFired:
    name: str
    turn_id: int
    nominal_ms: int = 0


@dataclass(frozen=True)
class SettingsChanged:
    changed: dict[str, Any] = field(default_factory=dict)


def parse_head_position(payload: Any) -> str | None:
    if isinstance(payload, str):
        position = payload
    elif isinstance(payload, dict) and isinstance(payload.get("position"), str):
        position = payload["position"]
    else:
        position = getattr(payload, "position", None)
        if not isinstance(position, str):
            return None
    position = position.strip().lower()
    return position or None


class ListeningWindowController:
    """Decides when a session's user is talking to the assistant."""

    def __init__(
        self,
        session_id: str,
        device: DeviceSession,
        settings: SessionSettings,
        finalizer: QueryFinalizer,
        collector: ContextCollector,
        *,
        timing: TurnTiming | None = None,
        sounds: SoundConfig | None = None,
        matcher: WakeWordMatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
        loop: asyncio.AbstractEventLoop | None = None,
        log_transcripts: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session_id = session_id
        self.device = device
        self.settings = settings
        self.finalizer = finalizer
        self.collector = collector
        self.timing = timing or TurnTiming()
        self.sounds = sounds
        self.matcher = matcher or WakeWordMatcher()
        self.logger = logger or LOGGER
        self.log_transcripts = log_transcripts
        self._clock = clock
        self.timers = TimerArena(loop)
        self.processor = TranscriptProcessor(30, 3, 3)
        self.state = TurnState()
        self._unsubscribe: Callable[[], None] | None = None
        self._finalize_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Future[Any]] = set()
        self._closed = False
        self.last_event_at = clock()
        self._apply_gating()

    # ---------------------------------------------------------------- inputs

    @property
    def phase(self) -> TurnPhase:
        return self.state.phase

    @property
    def subscribed(self) -> bool:
        return self._unsubscribe is not None

    def handle_transcription(self, event: TranscriptEvent) -> None:
        self.last_event_at = self._clock()
        self.dispatch(event)

    def handle_head_position(self, payload: Any) -> None:
        self.last_event_at = self._clock()
        position = parse_head_position(payload)
        if position is None:
            return
        self.dispatch(HeadPositionEvent(position))

    def reload_settings(self, changed: dict[str, Any] | None = None) -> None:
        self.dispatch(SettingsChanged(dict(changed or {})))

    def dispatch(self, event: Any) -> None:
        if self._closed:
            return
        try:
            if isinstance(event, TranscriptEvent):
                self._on_transcript(event)
            elif isinstance(event, HeadPositionEvent):
                self._on_head_position(event.position)
            elif isinstance(event, TimerFired):
                self._on_timer(event)
            elif isinstance(event, SettingsChanged):
                self._apply_gating()
            else:
                self.logger.warning("[turn] Session %s: ignoring unknown event %r", self.session_id, event)
        except Exception:
            self.logger.exception("[turn] Session %s: error handling %s", self.session_id, type(event).__name__)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.timers.cancel_all()
        self._ensure_unsubscribed()
        if self._finalize_task is not None and not self._finalize_task.done():
            self._finalize_task.cancel()
        for task in list(self._background):
            task.cancel()
        self._background.clear()

    # ------------------------------------------------------------ transcripts

    def _on_transcript(self, event: TranscriptEvent) -> None:
        state = self.state
        if self.finalizer.is_processing:
            self.logger.debug("[turn] Session %s: query in progress; ignoring transcript", self.session_id)
            return
        if state.phase is TurnPhase.FINALIZING:
            self.logger.debug("[turn] Session %s: finalizing; ignoring transcript", self.session_id)
            return

        text = event.text or ""
        normalized = normalize(text)
        if state.phase is not TurnPhase.LISTENING:
            if not self.matcher.contains_wake_word(normalized):
                return
            if self._gating_enabled() and not self._window_open():
                self.logger.debug("[turn] Session %s: wake word outside head-up window", self.session_id)
                return
            self._begin_turn()

        state.last_transcript_text = text
        if self.log_transcripts:
            self.logger.info("[turn] Session %s heard (%s): %s", self.session_id, "final" if event.is_final else "interim", text)
        self._render_live(text, event.is_final)

        delay = self._debounce_delay(normalized, event.is_final)
        turn_id = state.turn_id
        nominal_ms = int(delay * 1000)
        self.timers.arm(
            FINALIZE_DEBOUNCE,
            delay,
            lambda: self.dispatch(TimerFired(FINALIZE_DEBOUNCE, turn_id, nominal_ms)),
        )

    def _debounce_delay(self, normalized: str, is_final: bool) -> float:
        if not is_final:
            return self.timing.debounce_interim
        if self.matcher.ends_with_wake_word(normalized):
            # Nothing after the wake phrase yet; give the user time to continue.
            return self.timing.debounce_trailing_wake
        return self.timing.debounce_final

    def _begin_turn(self) -> None:
        state = self.state
        state.turn_id += 1
        state.phase = TurnPhase.LISTENING
        state.listening_started_at = self._clock()
        turn_id = state.turn_id
        self.logger.info("[turn] Session %s: wake word detected; listening (turn %d)", self.session_id, turn_id)

        capabilities = self.device.capabilities
        if capabilities.has_camera:
            try:
                self.collector.request_photo(self.session_id, self.device)
            except Exception as exc:
                self.logger.warning("[turn] Session %s: photo request failed: %s", self.session_id, exc)
        if self.sounds and (self.settings.get_bool(SPEAK_RESPONSE) or not capabilities.has_display):
            self._spawn(self.device.play_audio(self.sounds.start_listening_url), "start sound")
        try:
            self.collector.refresh_location(self.session_id, self.device)
        except Exception as exc:
            self.logger.warning("[turn] Session %s: error getting location: %s", self.session_id, exc)

        max_ms = int(self.timing.max_listen * 1000)
        self.timers.arm(
            MAX_LISTEN_DURATION,
            self.timing.max_listen,
            lambda: self.dispatch(TimerFired(MAX_LISTEN_DURATION, turn_id, max_ms)),
        )

    def _render_live(self, text: str, is_final: bool) -> None:
        display_text = self.matcher.remainder_after_wake_word(text)
        if not display_text:
            if self.processor.last_user_transcript():
                self.processor.process_string("", False)
            self._show(LISTENING_PROMPT, self.timing.listening_display_ms)
            return
        formatted = f"{LISTENING_PROMPT}\n\n" + self.processor.process_string(display_text, is_final).strip()
        self._show(formatted, self.timing.live_display_ms)

    # ----------------------------------------------------------------- timers

    def _on_timer(self, event: TimerFired) -> None:
        if event.name == HEAD_UP_WINDOW:
            self._on_head_window_expired()
            return
        state = self.state
        if state.phase is not TurnPhase.LISTENING or state.turn_id != event.turn_id:
            self.logger.debug(
                "[turn] Session %s: stale %s for turn %d ignored (phase=%s turn=%d)",
                self.session_id,
                event.name,
                event.turn_id,
                state.phase.value,
                state.turn_id,
            )
            return

        self.timers.cancel(FINALIZE_DEBOUNCE)
        self.timers.cancel(MAX_LISTEN_DURATION)
        state.phase = TurnPhase.FINALIZING
        if event.name == MAX_LISTEN_DURATION:
            self.logger.info("[turn] Session %s: maximum listening time reached; finalizing", self.session_id)
        else:
            self.logger.debug("[turn] Session %s: transcript settled; finalizing", self.session_id)

        snapshot = TurnSnapshot(
            session_id=self.session_id,
            turn_id=state.turn_id,
            started_at=state.listening_started_at,
            triggered_at=self._clock(),
            nominal_ms=event.nominal_ms,
            trigger=event.name,
            last_text=state.last_transcript_text,
        )
        self._finalize_task = asyncio.ensure_future(self._run_finalize(snapshot))

    async def _run_finalize(self, snapshot: TurnSnapshot) -> None:
        try:
            await self.finalizer.finalize(snapshot)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("[turn] Session %s: finalize failed for turn %d", self.session_id, snapshot.turn_id)
        finally:
            if not self._closed and self.state.turn_id == snapshot.turn_id:
                self._end_turn()

    def _end_turn(self) -> None:
        state = self.state
        self.timers.cancel(FINALIZE_DEBOUNCE)
        self.timers.cancel(MAX_LISTEN_DURATION)
        state.listening_started_at = None
        state.last_transcript_text = ""
        self.processor.clear()
        gated = self._gating_enabled()
        state.phase = TurnPhase.HEAD_GATED if gated else TurnPhase.IDLE
        if gated and not self._window_open():
            self._ensure_unsubscribed()
        self.logger.debug("[turn] Session %s: turn %d ended; %s", self.session_id, state.turn_id, state.phase.value)

    # ------------------------------------------------------------ head gating

    def _gating_enabled(self) -> bool:
        return self.settings.get_bool(WAKE_REQUIRES_HEAD_UP)

    def _window_open(self) -> bool:
        expires = self.state.head_up_window_expires_at
        return expires is not None and self._clock() <= expires

    def _on_head_position(self, position: str) -> None:
        state = self.state
        previous = state.last_head_position
        state.last_head_position = position
        if not self._gating_enabled():
            return
        if previous == "down" and position == "up":
            window = self.timing.head_up_window
            state.head_up_window_expires_at = self._clock() + window
            self.logger.debug("[turn] Session %s: head up; wake window open for %.1fs", self.session_id, window)
            self._ensure_subscribed()
            self.timers.arm(HEAD_UP_WINDOW, window, lambda: self.dispatch(TimerFired(HEAD_UP_WINDOW, state.turn_id)))

    def _on_head_window_expired(self) -> None:
        self.state.head_up_window_expires_at = None
        if self.state.phase in (TurnPhase.LISTENING, TurnPhase.FINALIZING):
            return
        if self._gating_enabled():
            self.logger.debug("[turn] Session %s: head-up window expired without wake word", self.session_id)
            self._ensure_unsubscribed()

    def _apply_gating(self) -> None:
        state = self.state
        busy = state.phase in (TurnPhase.LISTENING, TurnPhase.FINALIZING)
        if self._gating_enabled():
            if not busy:
                state.phase = TurnPhase.HEAD_GATED
                if not self._window_open():
                    self._ensure_unsubscribed()
        else:
            self.timers.cancel(HEAD_UP_WINDOW)
            state.head_up_window_expires_at = None
            if not busy:
                state.phase = TurnPhase.IDLE
            self._ensure_subscribed()

    def _ensure_subscribed(self) -> None:
        if self._unsubscribe is not None or self._closed:
            return
        self._unsubscribe = self.device.subscribe_transcription(self.handle_transcription)
        self.logger.debug("[turn] Session %s: subscribed to transcription", self.session_id)

    def _ensure_unsubscribed(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is None:
            return
        try:
            unsubscribe()
        except Exception:
            self.logger.exception("[turn] Session %s: error unsubscribing from transcription", self.session_id)
        else:
            self.logger.debug("[turn] Session %s: unsubscribed from transcription", self.session_id)

    # ---------------------------------------------------------------- helpers

    def _show(self, text: str, duration_ms: int) -> None:
        try:
            self.device.show_text(text, duration_ms)
        except Exception as exc:
            self.logger.warning("[turn] Session %s: display failed: %s", self.session_id, exc)

    def _spawn(self, awaitable: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)

        def _done(done: asyncio.Future[Any]) -> None:
            self._background.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                self.logger.warning("[turn] Session %s: %s failed: %s", self.session_id, label, exc)

        task.add_done_callback(_done)
