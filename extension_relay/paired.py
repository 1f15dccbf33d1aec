from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from .bridge import BrowserApi
from .channels import Channel, ChannelKind, Port
from .config import RelayConfig
from .errors import ExternalOperationError, MalformedMessage, TransportError
from .liveness import LivenessMonitor
from .messages import RESERVED_ACTIONS, Init, PopoutInit, PopoutReady, Pong, coerce_id, parse_message
from .pending import PendingQueues
from .registry import ChannelRegistry

_LOGGER = logging.getLogger("extension_relay.paired")

TO_POPOUT = "to-popout"
TO_CONTENT = "to-content"


class PairedRelay:
    """Two-party content script <-> popout relay with queue-and-flush delivery.

    Only one content-script channel and one popout channel are current at a
    time; a newer connection of either kind supersedes the older one. Messages
    whose recipient is missing, or whose send fails, are queued per direction
    and flushed in order as soon as a recipient registers. Menu and tracking
    connections are not served in this mode.
    """

    mode = "paired"

    def __init__(self, config: RelayConfig | None = None, browser: BrowserApi | None = None) -> None:
        self.config = config or RelayConfig.from_env()
        self.browser = browser
        self.registry = ChannelRegistry()
        self.pending = PendingQueues()
        self._tasks: set[asyncio.Task[Any]] = set()
        self.monitor = LivenessMonitor(
            self.registry,
            interval_s=self.config.ping_interval_s,
            miss_limit=self.config.pong_miss_limit,
        )

    def _current(self, kind: ChannelKind) -> Channel | None:
        channels = self.registry.channels(kind)
        return channels[-1] if channels else None

    def _send_or_queue(self, direction: str, recipient: Channel | None, payload: dict[str, Any]) -> bool:
        if recipient is not None and self.pending.size(direction) == 0:
            try:
                recipient.send(payload)
                return True
            except TransportError as exc:
                _LOGGER.info("send to %s failed, unregistering: %s", recipient.id, exc)
                self.registry.unregister(recipient.id)
        self.pending.push(direction, payload)
        _LOGGER.debug("queued message %s (%d waiting)", direction, self.pending.size(direction))
        return False

    def _flush(self, direction: str, recipient: Channel) -> int:
        try:
            return self.pending.flush(direction, recipient.send)
        except TransportError as exc:
            _LOGGER.info("flush to %s failed, unregistering: %s", recipient.id, exc)
            self.registry.unregister(recipient.id)
            return 0

    # ─────────────────────────────────────────────────────────────────────────
    # Channel events
    # ─────────────────────────────────────────────────────────────────────────

    def on_connect(self, port: Port) -> Channel | None:
        kind = ChannelKind.from_name(port.name)
        if kind not in (ChannelKind.CONTENT_SCRIPT, ChannelKind.POPOUT):
            _LOGGER.debug("paired relay ignores %r connections", port.name)
            return None

        if kind is ChannelKind.CONTENT_SCRIPT:
            tab_id = coerce_id(getattr(port, "tab_id", None))
            if tab_id is None:
                _LOGGER.warning("content-script connection without a sender tab, ignoring")
                return None
            for old in self.registry.channels(ChannelKind.CONTENT_SCRIPT):
                self.registry.unregister(old.id)
            channel = self.registry.get(self.registry.register(kind, port, tab_id=tab_id))
            if channel is None:
                return None
            try:
                channel.send(Init(tab_id=tab_id).to_payload())
            except TransportError as exc:
                _LOGGER.info("init to %s failed, unregistering: %s", channel.id, exc)
                self.registry.unregister(channel.id)
                return None
            self._flush(TO_CONTENT, channel)
            return channel

        for old in self.registry.channels(ChannelKind.POPOUT):
            self.registry.unregister(old.id)
        window_id = coerce_id(getattr(port, "window_id", None))
        channel = self.registry.get(self.registry.register(kind, port, window_id=window_id))
        if channel is None:
            return None
        self.monitor.watch(channel)
        self._flush(TO_POPOUT, channel)
        return channel if channel.id in self.registry else None

    def on_message(self, channel_id: str, raw: Any) -> int:
        channel = self.registry.get(channel_id)
        if channel is None:
            return 0
        channel.touch()
        try:
            msg = parse_message(raw, channel.kind)
        except MalformedMessage as exc:
            _LOGGER.debug("ignoring malformed message from %s: %s", channel.id, exc)
            return 0

        if channel.kind is ChannelKind.CONTENT_SCRIPT:
            if raw.get("action") in RESERVED_ACTIONS:
                return 0
            return int(self._send_or_queue(TO_POPOUT, self._current(ChannelKind.POPOUT), raw))

        if isinstance(msg, Pong):
            return 0
        if isinstance(msg, PopoutInit):
            self.registry.bind_popout(channel.id, msg.tab_id, msg.window_id)
            payload = PopoutReady().to_payload()
            return int(self._send_or_queue(TO_CONTENT, self._current(ChannelKind.CONTENT_SCRIPT), payload))
        return int(self._send_or_queue(TO_CONTENT, self._current(ChannelKind.CONTENT_SCRIPT), raw))

    def on_disconnect(self, channel_id: str) -> None:
        if self.registry.unregister(channel_id) is not None:
            _LOGGER.info("%s disconnected", channel_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Browser lifecycle events
    # ─────────────────────────────────────────────────────────────────────────

    def on_tab_removed(self, tab_id: int) -> None:
        content = self._current(ChannelKind.CONTENT_SCRIPT)
        if content is not None and content.owner_tab_id == tab_id:
            self.registry.unregister(content.id)
        self.pending.discard(TO_POPOUT)
        self.pending.discard(TO_CONTENT)
        if self.browser is not None:
            self._spawn(self._clear_tab_state(tab_id))

    def on_window_removed(self, window_id: int) -> None:
        for channel in self.registry.lookup_by_window(window_id):
            self.registry.unregister(channel.id)

    def on_tab_updated(self, tab_id: int, status: str | None) -> None:
        _LOGGER.debug("paired relay ignores tab %s update (%s)", tab_id, status)

    async def _clear_tab_state(self, tab_id: int) -> None:
        try:
            await self.browser.storage_remove(self.config.tab_state_keys(tab_id))  # type: ignore[union-attr]
        except ExternalOperationError as exc:
            _LOGGER.warning("failed to clear stored state for tab %s: %s", tab_id, exc)

    # ─────────────────────────────────────────────────────────────────────────
    # Tasks
    # ─────────────────────────────────────────────────────────────────────────

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        self.monitor.stop()
        for task in list(self._tasks):
            task.cancel()

    def status(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            **self.registry.snapshot(),
            "pending": {TO_POPOUT: self.pending.size(TO_POPOUT), TO_CONTENT: self.pending.size(TO_CONTENT)},
            "inFlight": len(self._tasks),
            "browserAttached": self.browser is not None,
        }
