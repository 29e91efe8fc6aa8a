#!/usr/bin/env python3
"""Mira assistant daemon."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal

from mira.assistant.config import AssistantConfig
from mira.assistant.device_bridge import MqttDeviceBridge
from mira.assistant.mqtt import AssistantMqtt
from mira.assistant.session_manager import AssistantSessionManager

LOGGER = logging.getLogger("mira-assistant")


class MiraAssistant:
    def __init__(self, config: AssistantConfig) -> None:
        self.config = config
        self.mqtt = AssistantMqtt(config.mqtt, logging.getLogger("mira-assistant.mqtt"))
        self.sessions = AssistantSessionManager(config)
        self.bridge: MqttDeviceBridge | None = None
        self._prune_task: asyncio.Task[None] | None = None
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        if not self.mqtt.connect():
            raise RuntimeError("MQTT connection is required for the device bridge")
        self.bridge = MqttDeviceBridge(self.mqtt, self.config.mqtt.topic_base, loop)
        self.bridge.start(self.sessions)
        self._prune_task = asyncio.create_task(self.sessions.prune_forever(3600.0))
        selection = self.sessions.resolver.resolve("startup")
        LOGGER.info(
            "Mira assistant ready (server=%s, default model=%s)",
            self.config.server_url,
            selection.describe(),
        )
        await self._shutdown.wait()

    async def shutdown(self) -> None:
        self._shutdown.set()
        if self._prune_task:
            self._prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._prune_task
        if self.bridge:
            self.bridge.stop()
        await self.sessions.close()
        self.mqtt.disconnect()


async def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = AssistantConfig.from_env()
    if not config.server_url:
        parser.error("MIRA_SERVER_URL must be set")
    assistant = MiraAssistant(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    run_task = asyncio.create_task(assistant.run())
    stop_task = asyncio.create_task(stop_event.wait())
    await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    await assistant.shutdown()
    stop_task.cancel()
    run_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await run_task


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
