from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from .bridge import BrowserApi
from .channels import Channel, ChannelKind, Port
from .config import MODE_PAIRED, RelayConfig
from .liveness import LivenessMonitor
from .messages import Init, coerce_id
from .pending import PendingQueues
from .reconciler import LifecycleReconciler
from .registry import ChannelRegistry
from .router import MessageRouter

_LOGGER = logging.getLogger("extension_relay.hub")


class RelayHub:
    """Multi-tab relay: the single owner of the channel registry.

    All entry points are plain methods meant to be called from one asyncio
    event loop (the transport's). Each runs to completion, so registry updates
    need no locking. Browser calls are spawned as tasks tracked here.
    """

    mode = "multi-tab"

    def __init__(self, config: RelayConfig | None = None, browser: BrowserApi | None = None) -> None:
        self.config = config or RelayConfig.from_env()
        self.registry = ChannelRegistry()
        self.pending = PendingQueues()
        self._tasks: set[asyncio.Task[Any]] = set()
        self.reconciler = LifecycleReconciler(
            self.registry, browser, self.config, spawn=self._spawn, pending=self.pending
        )
        self.router = MessageRouter(self.registry, self.reconciler)
        self.monitor = LivenessMonitor(
            self.registry,
            interval_s=self.config.ping_interval_s,
            miss_limit=self.config.pong_miss_limit,
        )

    @property
    def browser(self) -> BrowserApi | None:
        return self.reconciler.browser

    @browser.setter
    def browser(self, value: BrowserApi | None) -> None:
        self.reconciler.browser = value

    # ─────────────────────────────────────────────────────────────────────────
    # Channel events
    # ─────────────────────────────────────────────────────────────────────────

    def on_connect(self, port: Port) -> Channel | None:
        kind = ChannelKind.from_name(port.name)
        if kind is None:
            _LOGGER.debug("ignoring connection with unrecognized name %r", port.name)
            return None

        tab_id = coerce_id(getattr(port, "tab_id", None))
        if kind is ChannelKind.CONTENT_SCRIPT:
            if tab_id is None:
                _LOGGER.warning("content-script connection without a sender tab, ignoring")
                return None
            channel = self.registry.get(self.registry.register(kind, port, tab_id=tab_id))
        else:
            window_id = coerce_id(getattr(port, "window_id", None))
            channel = self.registry.get(self.registry.register(kind, port, window_id=window_id))
        if channel is None:
            return None

        _LOGGER.info("%s connected as %s", kind.value, channel.id)
        if kind is ChannelKind.CONTENT_SCRIPT:
            if self.router.deliver(channel, Init(tab_id=tab_id).to_payload()):  # type: ignore[arg-type]
                self.reconciler.flush_pending(tab_id)  # type: ignore[arg-type]
        if kind.monitored and channel.id in self.registry:
            self.monitor.watch(channel)
        return channel

    def on_message(self, channel_id: str, raw: Any) -> int:
        channel = self.registry.get(channel_id)
        if channel is None:
            return 0
        channel.touch()
        return self.router.route(channel, raw)

    def on_disconnect(self, channel_id: str) -> None:
        # Ids are never reused, so a superseded channel's disconnect cannot touch its successor.
        if self.registry.unregister(channel_id) is not None:
            _LOGGER.info("%s disconnected", channel_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Browser lifecycle events
    # ─────────────────────────────────────────────────────────────────────────

    def on_tab_removed(self, tab_id: int) -> None:
        self.reconciler.tab_removed(tab_id)

    def on_window_removed(self, window_id: int) -> None:
        self.reconciler.window_removed(window_id)

    def on_tab_updated(self, tab_id: int, status: str | None) -> None:
        self.reconciler.tab_updated(tab_id, status)

    # ─────────────────────────────────────────────────────────────────────────
    # Tasks
    # ─────────────────────────────────────────────────────────────────────────

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("background operation failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait until every spawned browser operation (including ones they spawn) finished."""
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
            **({"pending": self.pending.sizes()} if self.pending.sizes() else {}),
            "inFlight": len(self._tasks),
            "browserAttached": self.browser is not None,
        }


def create_relay(config: RelayConfig | None = None, browser: BrowserApi | None = None) -> Any:
    """Build the relay variant selected by ``config.mode``."""
    config = config or RelayConfig.from_env()
    if config.mode == MODE_PAIRED:
        from .paired import PairedRelay

        return PairedRelay(config, browser)
    return RelayHub(config, browser)
