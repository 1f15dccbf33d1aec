from __future__ import annotations

import asyncio
import contextlib
import logging

from .channels import Channel
from .errors import TransportError
from .messages import Ping
from .registry import ChannelRegistry

_LOGGER = logging.getLogger("extension_relay.liveness")


class LivenessMonitor:
    """Periodic ping for popout/tracking channels.

    A probe only detects a dead transport (the send raises). With
    ``miss_limit`` > 0 a channel is also terminated after that many
    consecutive probes with no inbound traffic in between.

    The probe task is cancelled exactly once per channel: the registry calls
    back here whenever a channel is unregistered, whatever the cause.
    """

    def __init__(self, registry: ChannelRegistry, *, interval_s: float = 25.0, miss_limit: int = 0) -> None:
        self.registry = registry
        self.interval_s = max(0.01, float(interval_s))
        self.miss_limit = max(0, int(miss_limit))
        self._tasks: dict[str, asyncio.Task[None]] = {}
        registry.on_unregister(self._on_unregister)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._tasks

    def watch(self, channel: Channel) -> None:
        if not channel.kind.monitored or channel.id in self._tasks:
            return
        loop = asyncio.get_running_loop()
        self._tasks[channel.id] = loop.create_task(self._probe_loop(channel.id), name=f"probe:{channel.id}")

    def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()

    def _on_unregister(self, channel: Channel) -> None:
        task = self._tasks.pop(channel.id, None)
        if task is None:
            return
        current = None
        with contextlib.suppress(RuntimeError):
            current = asyncio.current_task()
        # A probe that terminates its own channel just returns.
        if task is not current:
            task.cancel()

    async def _probe_loop(self, channel_id: str) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            channel = self.registry.get(channel_id)
            if channel is None:
                self._tasks.pop(channel_id, None)
                return
            if not self.probe(channel):
                return

    def probe(self, channel: Channel) -> bool:
        """Run one probe tick. Returns False once the channel has been terminated."""
        if self.miss_limit and channel.missed_pongs >= self.miss_limit:
            _LOGGER.info("%s missed %d keep-alive replies, unregistering", channel.id, channel.missed_pongs)
            self.registry.unregister(channel.id)
            return False
        try:
            channel.send(Ping().to_payload())
        except TransportError as exc:
            _LOGGER.info("keep-alive to %s failed, unregistering: %s", channel.id, exc)
            self.registry.unregister(channel.id)
            return False
        if self.miss_limit:
            channel.missed_pongs += 1
        return True
