from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from .channels import Channel, ChannelKind
from .errors import MalformedMessage, TransportError
from .messages import (
    AppData,
    ChangeViewMode,
    Init,
    Message,
    OpenForm,
    OpenPopout,
    OpenTracking,
    Ping,
    PopoutInit,
    PopoutReady,
    Pong,
    StartReview,
    TabAddressed,
    ToggleUI,
    parse_message,
)
from .registry import ChannelRegistry

_LOGGER = logging.getLogger("extension_relay.router")


class Launcher(Protocol):
    """Side effects the router requests instead of forwarding (window/tab creation)."""

    def open_popout(self, tab_id: int) -> None: ...

    def open_tracking(self) -> None: ...

    def open_form(self, url: str) -> None: ...

    def start_review(self, url_id: str, url: str | None) -> None: ...


Handler = Callable[["MessageRouter", Channel, Any, dict[str, Any]], int]


class MessageRouter:
    """Forward every inbound message according to (source kind, message type).

    Forwarding is synchronous and at-most-once. Sending to a channel that is not
    registered is a no-op; a send that raises TransportError unregisters the
    recipient on the spot. Malformed control messages are dropped without
    penalizing the sender.
    """

    def __init__(self, registry: ChannelRegistry, launcher: Launcher | None = None) -> None:
        self.registry = registry
        self.launcher = launcher

    def deliver(self, channel: Channel | None, payload: dict[str, Any]) -> bool:
        if channel is None or channel.id not in self.registry:
            return False
        try:
            channel.send(payload)
            return True
        except TransportError as exc:
            _LOGGER.info("send to %s failed, unregistering: %s", channel.id, exc)
            self.registry.unregister(channel.id)
            return False

    def route(self, source: Channel, raw: Any) -> int:
        """Route one inbound payload from ``source``; returns the number of successful forwards."""
        try:
            msg = parse_message(raw, source.kind)
        except MalformedMessage as exc:
            _LOGGER.debug("ignoring malformed message from %s: %s", source.id, exc)
            return 0

        handler = _ROUTES.get((source.kind, type(msg))) or _DEFAULTS.get(source.kind)
        if handler is None:
            return 0
        return handler(self, source, msg, raw)

    # ─────────────────────────────────────────────────────────────────────────
    # Content script
    # ─────────────────────────────────────────────────────────────────────────

    def _content_to_popouts(self, source: Channel, _msg: Message, raw: dict[str, Any]) -> int:
        if source.owner_tab_id is None:
            return 0
        return self._fan_out(self.registry.lookup_popouts(source.owner_tab_id), raw)

    # ─────────────────────────────────────────────────────────────────────────
    # Popout
    # ─────────────────────────────────────────────────────────────────────────

    def _popout_init(self, source: Channel, msg: PopoutInit, _raw: dict[str, Any]) -> int:
        channel = self.registry.bind_popout(source.id, msg.tab_id, msg.window_id)
        if channel is None:
            return 0
        _LOGGER.info("popout %s bound to tab %s (window %s)", source.id, msg.tab_id, msg.window_id)
        content = self.registry.lookup_content_script(msg.tab_id)
        return int(self.deliver(content, PopoutReady().to_payload()))

    def _popout_to_content(self, source: Channel, _msg: Message, raw: dict[str, Any]) -> int:
        if not source.routable or source.owner_tab_id is None:
            return 0
        return int(self.deliver(self.registry.lookup_content_script(source.owner_tab_id), raw))

    # ─────────────────────────────────────────────────────────────────────────
    # Menu
    # ─────────────────────────────────────────────────────────────────────────

    def _menu_to_content(self, _source: Channel, msg: ToggleUI | TabAddressed, raw: dict[str, Any]) -> int:
        return int(self.deliver(self.registry.lookup_content_script(msg.tab_id), raw))

    def _menu_change_view_mode(self, _source: Channel, msg: ChangeViewMode, raw: dict[str, Any]) -> int:
        sent = int(self.deliver(self.registry.lookup_content_script(msg.tab_id), raw))
        return sent + self._fan_out(self.registry.lookup_popouts(msg.tab_id), raw)

    def _menu_open_popout(self, _source: Channel, msg: OpenPopout, _raw: dict[str, Any]) -> int:
        if self.launcher is not None:
            self.launcher.open_popout(msg.tab_id)
        return 0

    def _menu_open_tracking(self, _source: Channel, _msg: OpenTracking, _raw: dict[str, Any]) -> int:
        if self.launcher is not None:
            self.launcher.open_tracking()
        return 0

    # ─────────────────────────────────────────────────────────────────────────
    # Tracking
    # ─────────────────────────────────────────────────────────────────────────

    def _tracking_open_form(self, _source: Channel, msg: OpenForm, _raw: dict[str, Any]) -> int:
        if self.launcher is not None:
            self.launcher.open_form(msg.url)
        return 0

    def _tracking_start_review(self, _source: Channel, msg: StartReview, _raw: dict[str, Any]) -> int:
        if msg.url is None:
            _LOGGER.debug("start-review for %s without url, nothing to open", msg.url_id)
            return 0
        if self.launcher is not None:
            self.launcher.start_review(msg.url_id, msg.url)
        return 0

    def _drop(self, _source: Channel, _msg: Message, _raw: dict[str, Any]) -> int:
        return 0

    def _fan_out(self, channels: list[Channel], raw: dict[str, Any]) -> int:
        return sum(1 for ch in channels if self.deliver(ch, raw))


_CONTENT = ChannelKind.CONTENT_SCRIPT
_POPOUT = ChannelKind.POPOUT
_MENU = ChannelKind.MENU
_TRACKING = ChannelKind.TRACKING

_ROUTES: dict[tuple[ChannelKind, type], Handler] = {
    (_CONTENT, AppData): MessageRouter._content_to_popouts,
    (_CONTENT, TabAddressed): MessageRouter._content_to_popouts,
    (_CONTENT, Init): MessageRouter._drop,
    (_CONTENT, PopoutInit): MessageRouter._drop,
    (_CONTENT, PopoutReady): MessageRouter._drop,
    (_CONTENT, Ping): MessageRouter._drop,
    (_CONTENT, Pong): MessageRouter._drop,
    (_POPOUT, Pong): MessageRouter._drop,
    (_POPOUT, PopoutInit): MessageRouter._popout_init,
    (_MENU, ToggleUI): MessageRouter._menu_to_content,
    (_MENU, ChangeViewMode): MessageRouter._menu_change_view_mode,
    (_MENU, OpenPopout): MessageRouter._menu_open_popout,
    (_MENU, OpenTracking): MessageRouter._menu_open_tracking,
    (_MENU, TabAddressed): MessageRouter._menu_to_content,
    (_TRACKING, Pong): MessageRouter._drop,
    (_TRACKING, OpenForm): MessageRouter._tracking_open_form,
    (_TRACKING, StartReview): MessageRouter._tracking_start_review,
}

# Fallbacks when no (kind, type) entry matches.
_DEFAULTS: dict[ChannelKind, Handler] = {
    _POPOUT: MessageRouter._popout_to_content,
    _MENU: MessageRouter._drop,
    _TRACKING: MessageRouter._drop,
}
