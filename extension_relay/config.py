from __future__ import annotations

import os
from dataclasses import dataclass, field

MODE_MULTI_TAB = "multi-tab"
MODE_PAIRED = "paired"

DEFAULT_STATE_KEY_PREFIXES: tuple[str, ...] = ("checklistState", "uiState", "viewMode")


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    return int(_float_env(name, default=default, lo=lo, hi=hi))


@dataclass(frozen=True, slots=True)
class RelayConfig:
    mode: str = MODE_MULTI_TAB
    host: str = "127.0.0.1"
    port: int = 8777
    ping_interval_s: float = 25.0
    # 0 keeps the reference behavior: a probe only fails when the send itself fails.
    pong_miss_limit: int = 0
    rpc_timeout_s: float = 10.0
    popout_page: str = "popout.html"
    popout_width: int = 400
    popout_height: int = 300
    tracking_page: str = "tracking.html"
    tracking_width: int = 900
    tracking_height: int = 700
    state_key_prefixes: tuple[str, ...] = field(default=DEFAULT_STATE_KEY_PREFIXES)
    log_level: str = "INFO"

    @staticmethod
    def normalize_mode(raw: str | None) -> str:
        mode = (raw or "").strip().lower()
        if mode in {"paired", "pair", "queue", "queueing", "two-party"}:
            return MODE_PAIRED
        if mode in {"multi-tab", "multi", "tabs", ""}:
            return MODE_MULTI_TAB
        return MODE_MULTI_TAB

    @classmethod
    def from_env(cls) -> RelayConfig:
        prefixes_raw = os.environ.get("RELAY_STATE_KEY_PREFIXES", "")
        prefixes = tuple(p.strip() for p in prefixes_raw.split(",") if p.strip()) or DEFAULT_STATE_KEY_PREFIXES
        host = (os.environ.get("RELAY_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        return cls(
            mode=cls.normalize_mode(os.environ.get("RELAY_MODE")),
            host=host,
            port=_int_env("RELAY_PORT", default=8777, lo=0, hi=65535),
            ping_interval_s=_float_env("RELAY_PING_INTERVAL", default=25.0, lo=0.05, hi=600.0),
            pong_miss_limit=_int_env("RELAY_PONG_MISS_LIMIT", default=0, lo=0, hi=100),
            rpc_timeout_s=_float_env("RELAY_RPC_TIMEOUT", default=10.0, lo=0.1, hi=120.0),
            popout_page=os.environ.get("RELAY_POPOUT_PAGE") or "popout.html",
            popout_width=_int_env("RELAY_POPOUT_WIDTH", default=400, lo=100, hi=4000),
            popout_height=_int_env("RELAY_POPOUT_HEIGHT", default=300, lo=100, hi=4000),
            tracking_page=os.environ.get("RELAY_TRACKING_PAGE") or "tracking.html",
            tracking_width=_int_env("RELAY_TRACKING_WIDTH", default=900, lo=100, hi=4000),
            tracking_height=_int_env("RELAY_TRACKING_HEIGHT", default=700, lo=100, hi=4000),
            state_key_prefixes=prefixes,
            log_level=(os.environ.get("RELAY_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        )

    @property
    def hardened_liveness(self) -> bool:
        return self.pong_miss_limit > 0

    def tab_state_keys(self, tab_id: int) -> list[str]:
        return [f"{prefix}_{tab_id}" for prefix in self.state_key_prefixes]

    def popout_url(self, tab_id: int) -> str:
        return f"{self.popout_page}?tabId={tab_id}"
