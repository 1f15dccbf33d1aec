from __future__ import annotations

import asyncio
import json
import socket
import time
import urllib.request
from typing import Any

import pytest


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


async def _recv_json(ws, *, timeout: float = 2.0) -> dict[str, Any]:  # type: ignore[no-untyped-def]
    return json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout))


def _wait_until(predicate, *, timeout: float = 2.0) -> bool:  # type: ignore[no-untyped-def]
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_gateway_relays_between_surfaces_and_browser() -> None:
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from extension_relay.config import RelayConfig
    from extension_relay.gateway import RELAY_WELL_KNOWN_PATH, RelayGateway

    port = _free_port()
    gw = RelayGateway(RelayConfig(host="127.0.0.1", port=port, ping_interval_s=60.0, rpc_timeout_s=2.0))
    gw.start()

    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}{RELAY_WELL_KNOWN_PATH}", timeout=2.0) as resp:
            info = json.loads(resp.read().decode("utf-8"))
        assert info["type"] == "extensionRelay"
        assert info["mode"] == "multi-tab"

        async def _main() -> None:
            uri = f"ws://127.0.0.1:{port}"
            async with websockets.connect(uri, ping_interval=None) as browser:
                await browser.send(json.dumps({"type": "browserHello"}))
                assert (await _recv_json(browser))["type"] == "browserHelloAck"

                async with websockets.connect(uri, ping_interval=None) as content:
                    await content.send(json.dumps({"type": "connect", "name": "content-script", "sender": {"tabId": 7}}))
                    assert (await _recv_json(content))["type"] == "connectAck"
                    assert await _recv_json(content) == {"action": "init", "tabId": 7}

                    async with websockets.connect(uri, ping_interval=None) as popout:
                        await popout.send(json.dumps({"type": "connect", "name": "popout"}))
                        assert (await _recv_json(popout))["type"] == "connectAck"
                        await popout.send(json.dumps({"action": "popout-init", "tabId": 7, "windowId": 42}))
                        assert await _recv_json(content) == {"action": "popout-ready"}

                        await content.send(json.dumps({"foo": 1}))
                        assert await _recv_json(popout) == {"foo": 1}

                        async with websockets.connect(uri, ping_interval=None) as menu:
                            await menu.send(json.dumps({"type": "connect", "name": "menu-port"}))
                            assert (await _recv_json(menu))["type"] == "connectAck"
                            await menu.send(json.dumps({"action": "openPopout", "tabId": 7}))

                            rpc = await _recv_json(browser)
                            assert rpc["type"] == "rpc"
                            assert rpc["method"] == "windows.create"
                            assert rpc["params"]["url"] == "popout.html?tabId=7"
                            await browser.send(
                                json.dumps({"type": "rpcResult", "id": rpc["id"], "ok": True, "result": {"id": 43}})
                            )

                        await browser.send(json.dumps({"type": "event", "event": "windows.onRemoved", "windowId": 42}))
                        assert await asyncio.to_thread(
                            _wait_until, lambda: gw.status()["relay"]["popoutTabs"] == {}
                        )

                        await content.send(json.dumps({"foo": 2}))
                        with pytest.raises(asyncio.TimeoutError):
                            await _recv_json(popout, timeout=0.3)

                    async with websockets.connect(uri, ping_interval=None) as tracking:
                        await tracking.send(
                            json.dumps({"type": "connect", "name": "tracking", "sender": {"windowId": 60}})
                        )
                        assert (await _recv_json(tracking))["type"] == "connectAck"
                        channels = gw.status()["relay"]["channels"]
                        assert {"kind": "tracking", "windowId": 60} in [
                            {k: ch.get(k) for k in ("kind", "windowId")} for ch in channels
                        ]

                        await browser.send(json.dumps({"type": "event", "event": "windows.onRemoved", "windowId": 60}))
                        assert await asyncio.to_thread(
                            _wait_until,
                            lambda: all(ch["kind"] != "tracking" for ch in gw.status()["relay"]["channels"]),
                        )

                    await browser.send(json.dumps({"type": "event", "event": "tabs.onRemoved", "tabId": 7}))
                    rpc = await _recv_json(browser)
                    assert rpc["method"] == "storage.local.remove"
                    assert rpc["params"] == {"keys": ["checklistState_7", "uiState_7", "viewMode_7"]}
                    await browser.send(json.dumps({"type": "rpcResult", "id": rpc["id"], "ok": True, "result": None}))

        asyncio.run(_main())

        assert _wait_until(lambda: gw.status()["relay"]["channels"] == [])
        assert gw.status()["browserConnected"] is False
    finally:
        gw.stop()


def test_gateway_rejects_missing_hello_and_ignores_unknown_channels() -> None:
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    from extension_relay.config import RelayConfig
    from extension_relay.gateway import RelayGateway

    port = _free_port()
    gw = RelayGateway(RelayConfig(host="127.0.0.1", port=port, ping_interval_s=60.0))
    gw.start()

    try:

        async def _main() -> None:
            uri = f"ws://127.0.0.1:{port}"
            async with websockets.connect(uri, ping_interval=None) as ws:
                await ws.send(json.dumps({"type": "nope"}))
                with pytest.raises(websockets.ConnectionClosed):
                    await asyncio.wait_for(ws.recv(), timeout=2.0)
                assert ws.close_code == 1002

            async with websockets.connect(uri, ping_interval=None) as ws:
                await ws.send(json.dumps({"type": "connect", "name": "devtools"}))
                assert (await _recv_json(ws))["type"] == "connectAck"
                await ws.send(json.dumps({"action": "toggleUI", "tabId": 1}))
                assert gw.status()["relay"]["channels"] == []

        asyncio.run(_main())
    finally:
        gw.stop()


def test_rpc_without_browser_fails_fast() -> None:
    from extension_relay.config import RelayConfig
    from extension_relay.errors import ExternalOperationError
    from extension_relay.gateway import RelayGateway

    gw = RelayGateway(RelayConfig(port=0))

    async def _main() -> None:
        with pytest.raises(ExternalOperationError, match="not connected"):
            await gw.rpc_call("tabs.query", {})
        with pytest.raises(ExternalOperationError):
            await gw.browser_api.remove_window(3)

    asyncio.run(_main())
