from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .bridge import BrowserApi
from .config import RelayConfig
from .errors import ExternalOperationError, TransportError
from .messages import StartReview, coerce_id
from .pending import PendingQueues
from .registry import ChannelRegistry

_LOGGER = logging.getLogger("extension_relay.reconciler")

Spawn = Callable[[Awaitable[Any]], Any]


class LifecycleReconciler:
    """Keeps the registry in step with tabs and windows the browser reports.

    Browser calls are fire-and-forget coroutines handed to ``spawn``. Their
    completions re-read the registry instead of trusting what was true when the
    call was issued. An ExternalOperationError always means the binding is
    stale: the affected channels are unregistered and nothing propagates.

    Also performs the window/tab creation the router asks for (Launcher).
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        browser: BrowserApi | None,
        config: RelayConfig,
        *,
        spawn: Spawn,
        pending: PendingQueues | None = None,
    ) -> None:
        self.registry = registry
        self.browser = browser
        self.config = config
        self.pending = pending if pending is not None else PendingQueues()
        self._spawn = spawn
        # Bumped on every tab removal so in-flight creations can tell the tab went away.
        self._tab_epochs: dict[int, int] = {}

    def _tab_epoch(self, tab_id: int) -> int:
        return self._tab_epochs.get(tab_id, 0)

    def _run(self, coro: Awaitable[Any]) -> None:
        if self.browser is None:
            close = getattr(coro, "close", None)
            if close is not None:
                close()
            _LOGGER.warning("no browser connection, dropping external operation")
            return
        self._spawn(coro)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle notifications
    # ─────────────────────────────────────────────────────────────────────────

    def tab_removed(self, tab_id: int) -> None:
        self._tab_epochs[tab_id] = self._tab_epoch(tab_id) + 1

        window_ids: list[int] = []
        for channel in self.registry.lookup_popouts(tab_id):
            if channel.owner_window_id is not None and channel.owner_window_id not in window_ids:
                window_ids.append(channel.owner_window_id)
            self.registry.unregister(channel.id)

        dropped = self.pending.discard(tab_id)
        if dropped:
            _LOGGER.debug("discarded %d pending message(s) for removed tab %s", dropped, tab_id)

        for window_id in window_ids:
            self._run(self._close_window(window_id))
        self._run(self._clear_tab_state(tab_id))

    def window_removed(self, window_id: int) -> None:
        for channel in self.registry.lookup_by_window(window_id):
            self.registry.unregister(channel.id)

    def tab_updated(self, tab_id: int, status: str | None) -> None:
        if status != "loading":
            return
        window_ids: list[int] = []
        for channel in self.registry.lookup_popouts(tab_id):
            if channel.owner_window_id is not None and channel.owner_window_id not in window_ids:
                window_ids.append(channel.owner_window_id)
        for window_id in window_ids:
            self._run(self._reload_popout_window(window_id))

    async def _close_window(self, window_id: int) -> None:
        try:
            await self.browser.remove_window(window_id)  # type: ignore[union-attr]
        except ExternalOperationError as exc:
            # Usually the user closed it first.
            _LOGGER.debug("window %s already gone: %s", window_id, exc)

    async def _clear_tab_state(self, tab_id: int) -> None:
        keys = self.config.tab_state_keys(tab_id)
        try:
            await self.browser.storage_remove(keys)  # type: ignore[union-attr]
        except ExternalOperationError as exc:
            _LOGGER.warning("failed to clear stored state for tab %s: %s", tab_id, exc)

    async def _reload_popout_window(self, window_id: int) -> None:
        try:
            tabs = await self.browser.query_tabs({"windowId": window_id})  # type: ignore[union-attr]
            if not tabs:
                return
            # A popout window hosts a single tab.
            popout_tab = coerce_id(tabs[0].get("id"))
            if popout_tab is None:
                return
            await self.browser.reload_tab(popout_tab)  # type: ignore[union-attr]
        except ExternalOperationError as exc:
            _LOGGER.warning("failed to reload popout window %s, dropping its channels: %s", window_id, exc)
            self.window_removed(window_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Launcher
    # ─────────────────────────────────────────────────────────────────────────

    def open_popout(self, tab_id: int) -> None:
        self._run(self._open_popout(tab_id, self._tab_epoch(tab_id)))

    def open_tracking(self) -> None:
        self._run(
            self._create_window(
                self.config.tracking_page, self.config.tracking_width, self.config.tracking_height
            )
        )

    def open_form(self, url: str) -> None:
        self._run(self._create_tab(url))

    def start_review(self, url_id: str, url: str | None) -> None:
        if not url:
            return
        self._run(self._start_review(url_id, url))

    async def _open_popout(self, tab_id: int, epoch: int) -> None:
        url = self.config.popout_url(tab_id)
        window = await self._create_window(url, self.config.popout_width, self.config.popout_height)
        if window is None or self._tab_epoch(tab_id) == epoch:
            return
        window_id = coerce_id(window.get("id"))
        if window_id is None:
            return
        _LOGGER.info("tab %s closed while its popout window %s was opening, closing it", tab_id, window_id)
        await self._close_window(window_id)
        self.window_removed(window_id)

    async def _create_window(self, url: str, width: int, height: int) -> dict[str, Any] | None:
        try:
            return await self.browser.create_window(url, "popup", width, height)  # type: ignore[union-attr]
        except ExternalOperationError as exc:
            _LOGGER.warning("failed to open window %s: %s", url, exc)
            return None

    async def _create_tab(self, url: str) -> dict[str, Any] | None:
        try:
            return await self.browser.create_tab(url)  # type: ignore[union-attr]
        except ExternalOperationError as exc:
            _LOGGER.warning("failed to open tab %s: %s", url, exc)
            return None

    async def _start_review(self, url_id: str, url: str) -> None:
        tab = await self._create_tab(url)
        tab_id = coerce_id(tab.get("id")) if tab else None
        if tab_id is None:
            return
        self.pending.push(tab_id, StartReview(url_id=url_id).to_payload())
        # The content script may already be up by the time the creation completes.
        self.flush_pending(tab_id)

    def flush_pending(self, tab_id: int) -> int:
        content = self.registry.lookup_content_script(tab_id)
        if content is None:
            return 0
        try:
            return self.pending.flush(tab_id, content.send)
        except TransportError as exc:
            _LOGGER.info("flush to %s failed, unregistering: %s", content.id, exc)
            self.registry.unregister(content.id)
            return 0
