from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from .errors import ExternalOperationError

_LOGGER = logging.getLogger("extension_relay.bridge")

RpcCall = Callable[..., Awaitable[Any]]


class BrowserApi(Protocol):
    """Window, tab and storage operations the relay asks the browser to perform.

    Every method raises ExternalOperationError when the browser refuses or the
    target no longer exists.
    """

    async def create_window(self, url: str, type: str, width: int, height: int) -> dict[str, Any]: ...

    async def remove_window(self, window_id: int) -> None: ...

    async def query_tabs(self, query: dict[str, Any]) -> list[dict[str, Any]]: ...

    async def reload_tab(self, tab_id: int) -> None: ...

    async def create_tab(self, url: str) -> dict[str, Any]: ...

    async def storage_remove(self, keys: list[str]) -> None: ...


class RpcBrowserApi:
    """BrowserApi over the gateway's browser-control connection.

    ``rpc(method, params, timeout=...)`` is the gateway's request/response call;
    whatever it raises is reported as ExternalOperationError.
    """

    def __init__(self, rpc: RpcCall, *, timeout: float = 10.0) -> None:
        self._rpc = rpc
        self.timeout = float(timeout)

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        try:
            return await self._rpc(method, params, timeout=self.timeout)
        except ExternalOperationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ExternalOperationError(f"{method} failed: {exc}") from exc

    async def create_window(self, url: str, type: str, width: int, height: int) -> dict[str, Any]:
        res = await self._call(
            "windows.create",
            {"url": url, "type": type, "width": int(width), "height": int(height)},
        )
        return res if isinstance(res, dict) else {}

    async def remove_window(self, window_id: int) -> None:
        await self._call("windows.remove", {"windowId": int(window_id)})

    async def query_tabs(self, query: dict[str, Any]) -> list[dict[str, Any]]:
        res = await self._call("tabs.query", dict(query or {}))
        if not isinstance(res, list):
            return []
        return [t for t in res if isinstance(t, dict)]

    async def reload_tab(self, tab_id: int) -> None:
        await self._call("tabs.reload", {"tabId": int(tab_id)})

    async def create_tab(self, url: str) -> dict[str, Any]:
        res = await self._call("tabs.create", {"url": url})
        return res if isinstance(res, dict) else {}

    async def storage_remove(self, keys: list[str]) -> None:
        if not keys:
            return
        await self._call("storage.local.remove", {"keys": list(keys)})
        _LOGGER.debug("removed storage keys %s", keys)
