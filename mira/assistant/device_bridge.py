"""
MQTT adapter between the glasses relay and the assistant sessions

Topic layout under ``{topic_base}/sessions/{session_id}/``:

Inbound (relay -> assistant):
- ``lifecycle``: ``{"event": "start"|"stop", "user_id", "capabilities", "settings"}``
- ``transcription``: ``{"text", "is_final"}``
- ``head_position``: ``{"position": "up"|"down"}``
- ``settings``: changed key/value pairs
- ``notifications``: one notification object or a list of them
- ``notifications/dismissed``: ``{"id"}``
- ``photo/response``, ``location/response``, ``speak/result``, ``audio/result``:
  replies correlated by ``request_id``

Outbound (assistant -> relay):
- ``display``, ``speak``, ``audio``, ``photo/request``, ``location/request``,
  ``transcription/control``

paho delivers messages on its network thread; every message is handed to
the asyncio loop with ``call_soon_threadsafe`` so all of a session's events
run on the loop thread.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .context_collector import Photo
from .device import DeviceCapabilities, DeviceSession, SpeakResult, TranscriptCallback, TranscriptEvent
from .mqtt import AssistantMqtt

if TYPE_CHECKING:
    from .session_manager import AssistantSessionManager

LOGGER = logging.getLogger("mira-assistant.bridge")

REPLY_TOPICS = {
    "photo/response": "photo",
    "location/response": "location",
    "speak/result": "speak",
    "audio/result": "audio",
}


class DeviceRequestError(RuntimeError):
    """A request to the device failed or timed out."""


def _parse_json(payload: str) -> Any:
    if not payload:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return payload


class MqttDeviceSession(DeviceSession):
    """The device-side collaborators for one session, spoken over MQTT."""

    def __init__(self, bridge: MqttDeviceBridge, session_id: str, capabilities: DeviceCapabilities) -> None:
        self.bridge = bridge
        self.session_id = session_id
        self.capabilities = capabilities

    def subscribe_transcription(self, callback: TranscriptCallback) -> Callable[[], None]:
        return self.bridge.add_transcription_listener(self.session_id, callback)

    def show_text(self, text: str, duration_ms: int) -> None:
        self.bridge.send(self.session_id, "display", {"text": text, "duration_ms": duration_ms})

    async def speak(self, text: str) -> SpeakResult:
        try:
            reply = await self.bridge.request(self.session_id, "speak", {"text": text}, self.bridge.speak_timeout)
        except DeviceRequestError as exc:
            return SpeakResult(error=str(exc))
        error = reply.get("error") if isinstance(reply, dict) else None
        return SpeakResult(error=str(error) if error else None)

    async def play_audio(self, url: str) -> None:
        reply = await self.bridge.request(self.session_id, "audio", {"url": url}, self.bridge.speak_timeout)
        if isinstance(reply, dict) and reply.get("error"):
            raise DeviceRequestError(f"Audio playback failed: {reply['error']}")

    async def request_photo(self) -> Photo:
        reply = await self.bridge.request(self.session_id, "photo", {}, self.bridge.photo_timeout)
        if not isinstance(reply, dict):
            raise DeviceRequestError("Photo response was not an object")
        if reply.get("error"):
            raise DeviceRequestError(f"Photo capture failed: {reply['error']}")
        try:
            data = base64.b64decode(reply.get("data") or "", validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DeviceRequestError("Photo data was not valid base64") from exc
        if not data:
            raise DeviceRequestError("Photo response contained no image data")
        return Photo(
            data=data,
            mime_type=str(reply.get("mime_type") or reply.get("mimeType") or "image/jpeg"),
            request_id=reply.get("request_id"),
        )

    async def get_location(self, accuracy: str = "high") -> Any:
        reply = await self.bridge.request(self.session_id, "location", {"accuracy": accuracy}, self.bridge.request_timeout)
        if isinstance(reply, dict) and reply.get("error"):
            raise DeviceRequestError(f"Location lookup failed: {reply['error']}")
        return reply


class MqttDeviceBridge:
    def __init__(
        self,
        mqtt: AssistantMqtt,
        topic_base: str,
        loop: asyncio.AbstractEventLoop,
        *,
        request_timeout: float = 10.0,
        photo_timeout: float = 30.0,
        speak_timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.mqtt = mqtt
        self.topic_base = topic_base.rstrip("/")
        self.loop = loop
        self.request_timeout = request_timeout
        self.photo_timeout = photo_timeout
        self.speak_timeout = speak_timeout
        self.logger = logger or LOGGER
        self._handler: AssistantSessionManager | None = None
        self._pending: dict[str, tuple[str, asyncio.Future[Any]]] = {}
        self._listeners: dict[str, TranscriptCallback] = {}
        self._sessions: dict[str, MqttDeviceSession] = {}

    @property
    def sessions_topic(self) -> str:
        return f"{self.topic_base}/sessions"

    def topic(self, session_id: str, suffix: str) -> str:
        return f"{self.sessions_topic}/{session_id}/{suffix}"

    def start(self, handler: AssistantSessionManager) -> None:
        self._handler = handler
        self.mqtt.subscribe(f"{self.sessions_topic}/#", self._on_mqtt_message)
        self.logger.info("[bridge] Listening for device sessions on %s/#", self.sessions_topic)

    def stop(self) -> None:
        self.mqtt.unsubscribe(f"{self.sessions_topic}/#")
        for _session_id, future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
        self._listeners.clear()
        self._handler = None

    # ---------------------------------------------------------------- outbound

    def send(self, session_id: str, suffix: str, payload: dict[str, Any]) -> None:
        self.mqtt.publish(self.topic(session_id, suffix), json.dumps(payload))

    async def request(self, session_id: str, kind: str, payload: dict[str, Any], timeout: float) -> Any:
        request_id = uuid.uuid4().hex
        future: asyncio.Future[Any] = self.loop.create_future()
        self._pending[request_id] = (session_id, future)
        suffix = {"photo": "photo/request", "location": "location/request"}.get(kind, kind)
        self.send(session_id, suffix, {**payload, "request_id": request_id})
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise DeviceRequestError(f"{kind} request timed out after {timeout:.0f}s") from exc
        finally:
            self._pending.pop(request_id, None)

    def add_transcription_listener(self, session_id: str, callback: TranscriptCallback) -> Callable[[], None]:
        self._listeners[session_id] = callback
        self.send(session_id, "transcription/control", {"subscribed": True})

        def _remove() -> None:
            if self._listeners.get(session_id) is callback:
                del self._listeners[session_id]
                self.send(session_id, "transcription/control", {"subscribed": False})

        return _remove

    # ----------------------------------------------------------------- inbound

    def _on_mqtt_message(self, topic: str, payload: str) -> None:
        self.loop.call_soon_threadsafe(self.route, topic, payload)

    def route(self, topic: str, payload: str) -> None:
        prefix = f"{self.sessions_topic}/"
        if not topic.startswith(prefix):
            return
        session_id, _, suffix = topic[len(prefix) :].partition("/")
        if not session_id or not suffix:
            return
        data = _parse_json(payload)
        try:
            self._route_message(session_id, suffix, data)
        except Exception:
            self.logger.exception("[bridge] Failed to handle %s for session %s", suffix, session_id)

    def _route_message(self, session_id: str, suffix: str, data: Any) -> None:
        if suffix in REPLY_TOPICS:
            self._resolve_reply(session_id, data)
            return
        if suffix == "transcription":
            callback = self._listeners.get(session_id)
            if callback is None or not isinstance(data, dict):
                return
            callback(TranscriptEvent(text=str(data.get("text") or ""), is_final=bool(data.get("is_final"))))
            return

        handler = self._handler
        if handler is None:
            return
        if suffix == "lifecycle":
            self._handle_lifecycle(handler, session_id, data)
        elif suffix == "head_position":
            handler.handle_head_position(session_id, data)
        elif suffix == "settings":
            if isinstance(data, dict):
                handler.handle_settings_update(session_id, data)
        elif suffix == "notifications":
            handler.handle_phone_notifications(session_id, data)
        elif suffix == "notifications/dismissed":
            notification_id = data.get("id") if isinstance(data, dict) else data
            if notification_id:
                handler.handle_notification_dismissed(session_id, str(notification_id))
        elif suffix in {"display", "speak", "audio", "photo/request", "location/request", "transcription/control"}:
            # Our own outbound messages echoed back by the wildcard subscription.
            return
        else:
            self.logger.debug("[bridge] Unhandled topic suffix %s for session %s", suffix, session_id)

    def _handle_lifecycle(self, handler: AssistantSessionManager, session_id: str, data: Any) -> None:
        if not isinstance(data, dict):
            self.logger.warning("[bridge] Malformed lifecycle message for session %s", session_id)
            return
        event = str(data.get("event") or "").lower()
        if event == "start":
            device = MqttDeviceSession(self, session_id, DeviceCapabilities.from_payload(data.get("capabilities")))
            self._sessions[session_id] = device
            settings = data.get("settings") if isinstance(data.get("settings"), dict) else {}
            user_id = str(data.get("user_id") or data.get("userId") or session_id)
            handler.start_session(session_id, user_id, device, settings)
        elif event == "stop":
            self._sessions.pop(session_id, None)
            self._listeners.pop(session_id, None)
            self._fail_pending(session_id)
            handler.stop_session(session_id)
        else:
            self.logger.debug("[bridge] Unknown lifecycle event %r for session %s", event, session_id)

    def _resolve_reply(self, session_id: str, data: Any) -> None:
        request_id = data.get("request_id") if isinstance(data, dict) else None
        entry = self._pending.get(str(request_id)) if request_id else None
        if entry is None:
            self.logger.debug("[bridge] Reply for unknown request %s (session %s)", request_id, session_id)
            return
        owner, future = entry
        if owner != session_id:
            self.logger.warning("[bridge] Reply for request %s arrived on session %s", request_id, session_id)
            return
        if not future.done():
            future.set_result(data)

    def _fail_pending(self, session_id: str) -> None:
        for request_id, (owner, future) in list(self._pending.items()):
            if owner == session_id:
                self._pending.pop(request_id, None)
                if not future.done():
                    future.set_exception(DeviceRequestError("Session ended"))
