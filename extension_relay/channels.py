from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .errors import TransportError


class ChannelKind(str, Enum):
    CONTENT_SCRIPT = "content-script"
    POPOUT = "popout"
    TRACKING = "tracking"
    MENU = "menu-port"

    @classmethod
    def from_name(cls, name: str | None) -> ChannelKind | None:
        raw = str(name or "").strip()
        for kind in cls:
            if kind.value == raw:
                return kind
        return None

    @property
    def monitored(self) -> bool:
        """Popout and tracking windows get a keep-alive probe; tabs and the menu do not."""
        return self in (ChannelKind.POPOUT, ChannelKind.TRACKING)


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    BOUND = "bound"
    TERMINATED = "terminated"


class Port(Protocol):
    """One end of a bidirectional message channel, as handed to the relay by the transport."""

    name: str
    # Tab that opened the connection, when the transport knows it (content scripts).
    tab_id: int | None
    # Window hosting the connecting page, when known (tracking and popout windows).
    window_id: int | None

    def post_message(self, payload: dict[str, Any]) -> None: ...

    def close(self) -> None: ...


@dataclass(eq=False)
class Channel:
    kind: ChannelKind
    id: str
    port: Port
    owner_tab_id: int | None = None
    owner_window_id: int | None = None
    state: ChannelState = ChannelState.CONNECTING
    last_seen: float = field(default_factory=time.monotonic)
    missed_pongs: int = 0

    @property
    def routable(self) -> bool:
        return self.state is ChannelState.BOUND

    def touch(self) -> None:
        self.last_seen = time.monotonic()
        self.missed_pongs = 0

    def send(self, payload: dict[str, Any]) -> None:
        if self.state is ChannelState.TERMINATED:
            raise TransportError(f"channel {self.id} is terminated")
        try:
            self.port.post_message(payload)
        except TransportError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"send to {self.id} failed: {exc}") from exc

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "state": self.state.value,
            **({"tabId": self.owner_tab_id} if self.owner_tab_id is not None else {}),
            **({"windowId": self.owner_window_id} if self.owner_window_id is not None else {}),
            **({"missedPongs": self.missed_pongs} if self.missed_pongs else {}),
        }
