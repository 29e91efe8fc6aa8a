"""
Voice assistant turn controller for smart glasses

This package provides the per-session assistant core:

- Wake phrase matching: Normalization and fuzzy phrase lexicon for "hey mentra"
- Listening window: Per-session state machine with debounce, max-duration and head-up timers
- Context collection: One in-flight photo per turn and best-effort geocoded location
- Query finalization: Transcript fetch, wake phrase stripping, model invocation, rendering
- Provider resolution: Layered provider/model/credential lookup with a degrade chain
- Device bridge: MQTT adapter for transcripts, head position, display, speech and camera

Key modules:
- config: Configuration management from environment variables
- listening_window: ListeningWindowController state machine
- query_finalizer: QueryFinalizer
- provider_resolver: ProviderResolver and ProviderSelection
- llm: Chat-completion clients per provider
"""

from __future__ import annotations

__all__ = [
    "config",
    "context_collector",
    "device",
    "device_bridge",
    "listening_window",
    "llm",
    "mqtt",
    "notifications",
    "provider_resolver",
    "query_finalizer",
    "session_manager",
    "settings",
    "timers",
    "transcript_display",
    "transcript_store",
    "wake_words",
]
