"""Control vocabulary exchanged over relay channels.

Every inbound payload is parsed into exactly one variant below. Only the
actions a given channel kind is allowed to use are interpreted for it; any
other payload stays opaque (``AppData``) or, when it names a tab, becomes
``TabAddressed``. Forwards always carry the original raw payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Union

from .channels import ChannelKind
from .errors import MalformedMessage


def coerce_id(raw: Any) -> int | None:
    """Browser tab/window ids are ints; accept numeric strings, reject bools and junk."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    return None


def _require_id(raw: dict[str, Any], key: str, action: str) -> int:
    val = coerce_id(raw.get(key))
    if val is None:
        raise MalformedMessage(f"{action}: missing or invalid {key}")
    return val


def _require_str(raw: dict[str, Any], key: str, action: str) -> str:
    val = raw.get(key)
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        val = str(val)
    if not isinstance(val, str) or not val.strip():
        raise MalformedMessage(f"{action}: missing {key}")
    return val


@dataclass(frozen=True)
class Init:
    action: ClassVar[str] = "init"
    tab_id: int

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action, "tabId": self.tab_id}


@dataclass(frozen=True)
class PopoutInit:
    action: ClassVar[str] = "popout-init"
    tab_id: int
    window_id: int

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action, "tabId": self.tab_id, "windowId": self.window_id}


@dataclass(frozen=True)
class PopoutReady:
    action: ClassVar[str] = "popout-ready"

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action}


@dataclass(frozen=True)
class Ping:
    action: ClassVar[str] = "ping"

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action}


@dataclass(frozen=True)
class Pong:
    action: ClassVar[str] = "pong"

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action}


@dataclass(frozen=True)
class ToggleUI:
    action: ClassVar[str] = "toggleUI"
    tab_id: int

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action, "tabId": self.tab_id}


@dataclass(frozen=True)
class ChangeViewMode:
    action: ClassVar[str] = "changeViewMode"
    tab_id: int
    mode: str

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action, "tabId": self.tab_id, "mode": self.mode}


@dataclass(frozen=True)
class OpenPopout:
    action: ClassVar[str] = "openPopout"
    tab_id: int

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action, "tabId": self.tab_id}


@dataclass(frozen=True)
class OpenTracking:
    action: ClassVar[str] = "openTracking"

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action}


@dataclass(frozen=True)
class OpenForm:
    action: ClassVar[str] = "open-form"
    url: str

    def to_payload(self) -> dict[str, Any]:
        return {"action": self.action, "url": self.url}


@dataclass(frozen=True)
class StartReview:
    action: ClassVar[str] = "start-review"
    url_id: str
    url: str | None = None

    def to_payload(self) -> dict[str, Any]:
        # The content script only needs the id; the url is consumed by the relay.
        return {"action": self.action, "urlId": self.url_id}


@dataclass(frozen=True)
class TabAddressed:
    """Payload with a usable ``tabId`` but no action the sender's kind may use."""

    tab_id: int
    payload: dict[str, Any]


@dataclass(frozen=True)
class AppData:
    """Opaque application payload."""

    payload: dict[str, Any]


ControlMessage = Union[
    Init,
    PopoutInit,
    PopoutReady,
    Ping,
    Pong,
    ToggleUI,
    ChangeViewMode,
    OpenPopout,
    OpenTracking,
    OpenForm,
    StartReview,
]
Message = Union[ControlMessage, TabAddressed, AppData]


def _parse_init(raw: dict[str, Any]) -> Init:
    return Init(tab_id=_require_id(raw, "tabId", Init.action))


def _parse_popout_init(raw: dict[str, Any]) -> PopoutInit:
    return PopoutInit(
        tab_id=_require_id(raw, "tabId", PopoutInit.action),
        window_id=_require_id(raw, "windowId", PopoutInit.action),
    )


def _parse_toggle_ui(raw: dict[str, Any]) -> ToggleUI:
    return ToggleUI(tab_id=_require_id(raw, "tabId", ToggleUI.action))


def _parse_change_view_mode(raw: dict[str, Any]) -> ChangeViewMode:
    return ChangeViewMode(
        tab_id=_require_id(raw, "tabId", ChangeViewMode.action),
        mode=_require_str(raw, "mode", ChangeViewMode.action),
    )


def _parse_open_popout(raw: dict[str, Any]) -> OpenPopout:
    return OpenPopout(tab_id=_require_id(raw, "tabId", OpenPopout.action))


def _parse_open_form(raw: dict[str, Any]) -> OpenForm:
    return OpenForm(url=_require_str(raw, "url", OpenForm.action))


def _parse_start_review(raw: dict[str, Any]) -> StartReview:
    url = raw.get("url")
    return StartReview(
        url_id=_require_str(raw, "urlId", StartReview.action),
        url=url if isinstance(url, str) and url.strip() else None,
    )


_PARSERS = {
    Init.action: _parse_init,
    PopoutInit.action: _parse_popout_init,
    PopoutReady.action: lambda _raw: PopoutReady(),
    Ping.action: lambda _raw: Ping(),
    Pong.action: lambda _raw: Pong(),
    ToggleUI.action: _parse_toggle_ui,
    ChangeViewMode.action: _parse_change_view_mode,
    OpenPopout.action: _parse_open_popout,
    OpenTracking.action: lambda _raw: OpenTracking(),
    OpenForm.action: _parse_open_form,
    StartReview.action: _parse_start_review,
}

# Actions the relay itself emits or consumes; never forwarded as application data.
RESERVED_ACTIONS: frozenset[str] = frozenset(
    {Init.action, PopoutInit.action, PopoutReady.action, Ping.action, Pong.action}
)

VOCABULARY: dict[ChannelKind, frozenset[str]] = {
    ChannelKind.CONTENT_SCRIPT: RESERVED_ACTIONS,
    ChannelKind.POPOUT: frozenset({Pong.action, PopoutInit.action}),
    ChannelKind.TRACKING: frozenset({Pong.action, OpenForm.action, StartReview.action}),
    ChannelKind.MENU: frozenset({ToggleUI.action, ChangeViewMode.action, OpenPopout.action, OpenTracking.action}),
}


def parse_message(raw: Any, kind: ChannelKind | None = None) -> Message:
    """Parse one inbound payload.

    With ``kind`` set, only that kind's vocabulary is interpreted; otherwise
    every known action is. Raises MalformedMessage for non-dict payloads and
    for interpreted actions missing a required field.
    """
    if not isinstance(raw, dict):
        raise MalformedMessage(f"expected an object, got {type(raw).__name__}")

    action = raw.get("action")
    allowed = VOCABULARY[kind] if kind is not None else _PARSERS.keys()
    if isinstance(action, str) and action in allowed:
        return _PARSERS[action](raw)

    tab_id = coerce_id(raw.get("tabId"))
    if tab_id is not None:
        return TabAddressed(tab_id=tab_id, payload=raw)
    return AppData(payload=raw)
