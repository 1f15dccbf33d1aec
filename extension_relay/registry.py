from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from typing import Any

from .channels import Channel, ChannelKind, ChannelState, Port

_LOGGER = logging.getLogger("extension_relay.registry")


class ChannelRegistry:
    """Live channels plus the tab indices used for routing.

    - At most one content-script channel per tab; a newer one evicts the older
      entry without closing its transport.
    - Any number of popout channels per tab, kept in registration order.
    - unregister() is idempotent and the only way a channel leaves; listeners
      added with on_unregister() fire exactly once per channel.
    """

    def __init__(self) -> None:
        self._channels: dict[str, Channel] = {}
        self._content_by_tab: dict[int, str] = {}
        # tabId -> ordered set of popout channel ids (dict keeps insertion order)
        self._popouts_by_tab: dict[int, dict[str, None]] = {}
        self._next_id = 1
        self._listeners: list[Callable[[Channel], None]] = []

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._channels

    def on_unregister(self, cb: Callable[[Channel], None]) -> None:
        self._listeners.append(cb)

    def _new_id(self, kind: ChannelKind) -> str:
        cid = f"{kind.value}-{self._next_id}"
        self._next_id += 1
        return cid

    # ─────────────────────────────────────────────────────────────────────────
    # Mutation
    # ─────────────────────────────────────────────────────────────────────────

    def register(
        self,
        kind: ChannelKind,
        port: Port,
        *,
        tab_id: int | None = None,
        window_id: int | None = None,
    ) -> str:
        if kind is ChannelKind.CONTENT_SCRIPT and tab_id is None:
            raise ValueError("content-script channels require a tab id")

        cid = self._new_id(kind)
        channel = Channel(kind=kind, id=cid, port=port)

        if kind is ChannelKind.CONTENT_SCRIPT:
            previous = self._content_by_tab.get(int(tab_id))  # type: ignore[arg-type]
            if previous is not None:
                _LOGGER.info("content script for tab %s superseded: %s -> %s", tab_id, previous, cid)
                self.unregister(previous)
            channel.owner_tab_id = int(tab_id)  # type: ignore[arg-type]
            channel.state = ChannelState.BOUND
            self._content_by_tab[channel.owner_tab_id] = cid
        elif kind is ChannelKind.POPOUT:
            channel.owner_window_id = window_id
            if tab_id is not None:
                channel.owner_tab_id = int(tab_id)
                channel.state = ChannelState.BOUND
                self._popouts_by_tab.setdefault(channel.owner_tab_id, {})[cid] = None
        else:
            channel.owner_window_id = window_id
            channel.state = ChannelState.BOUND

        self._channels[cid] = channel
        _LOGGER.debug("registered %s", channel.describe())
        return cid

    def bind_popout(self, channel_id: str, tab_id: int, window_id: int | None) -> Channel | None:
        channel = self._channels.get(channel_id)
        if channel is None or channel.kind is not ChannelKind.POPOUT:
            return None

        old_tab = channel.owner_tab_id
        if old_tab is not None and old_tab != tab_id:
            self._discard_popout_index(old_tab, channel_id)

        channel.owner_tab_id = int(tab_id)
        channel.owner_window_id = window_id
        channel.state = ChannelState.BOUND
        self._popouts_by_tab.setdefault(channel.owner_tab_id, {})[channel_id] = None
        _LOGGER.debug("bound %s", channel.describe())
        return channel

    def unregister(self, channel_id: str) -> Channel | None:
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            return None

        tab_id = channel.owner_tab_id
        if tab_id is not None:
            if channel.kind is ChannelKind.CONTENT_SCRIPT:
                if self._content_by_tab.get(tab_id) == channel_id:
                    del self._content_by_tab[tab_id]
            elif channel.kind is ChannelKind.POPOUT:
                self._discard_popout_index(tab_id, channel_id)

        channel.state = ChannelState.TERMINATED
        _LOGGER.debug("unregistered %s", channel.describe())

        for cb in list(self._listeners):
            try:
                cb(channel)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("unregister listener failed for %s", channel_id)
        return channel

    def _discard_popout_index(self, tab_id: int, channel_id: str) -> None:
        bucket = self._popouts_by_tab.get(tab_id)
        if bucket is None:
            return
        bucket.pop(channel_id, None)
        if not bucket:
            del self._popouts_by_tab[tab_id]

    # ─────────────────────────────────────────────────────────────────────────
    # Lookup
    # ─────────────────────────────────────────────────────────────────────────

    def get(self, channel_id: str) -> Channel | None:
        return self._channels.get(channel_id)

    def lookup_content_script(self, tab_id: int) -> Channel | None:
        cid = self._content_by_tab.get(tab_id)
        return self._channels.get(cid) if cid is not None else None

    def lookup_popouts(self, tab_id: int) -> list[Channel]:
        bucket = self._popouts_by_tab.get(tab_id) or {}
        return [self._channels[cid] for cid in bucket if cid in self._channels]

    def lookup_by_window(self, window_id: int) -> list[Channel]:
        return [ch for ch in self._channels.values() if ch.owner_window_id == window_id]

    def channels(self, kind: ChannelKind | None = None) -> list[Channel]:
        return [ch for ch in self._channels.values() if kind is None or ch.kind is kind]

    def __iter__(self) -> Iterator[Channel]:
        return iter(list(self._channels.values()))

    def snapshot(self) -> dict[str, Any]:
        return {
            "channels": [ch.describe() for ch in self._channels.values()],
            "contentTabs": sorted(self._content_by_tab),
            "popoutTabs": {str(tab): list(ids) for tab, ids in self._popouts_by_tab.items()},
        }
