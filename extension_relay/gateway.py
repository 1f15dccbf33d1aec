from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import threading
import time
from collections import deque
from typing import Any

from .bridge import RpcBrowserApi
from .config import RelayConfig
from .errors import ExternalOperationError, TransportError
from .hub import create_relay
from .messages import coerce_id

RELAY_PROTOCOL_VERSION = "2026-10-01"
RELAY_WELL_KNOWN_PATH = "/.well-known/extension-relay"

_LOGGER = logging.getLogger("extension_relay.gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The relay gateway requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class WebSocketPort:
    """Port over one websocket connection.

    post_message() is synchronous: frames go into a FIFO drained by a writer
    task, so per-channel ordering is kept and the router never awaits.
    """

    def __init__(self, ws: Any, name: str, tab_id: int | None = None, window_id: int | None = None) -> None:
        self.ws = ws
        self.name = name
        self.tab_id = tab_id
        self.window_id = window_id
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._writer: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._writer = asyncio.get_running_loop().create_task(self._write_loop())

    def post_message(self, payload: dict[str, Any]) -> None:
        if self._closed:
            raise TransportError(f"{self.name} connection is closed")
        try:
            frame = json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise TransportError(f"payload is not serializable: {exc}") from exc
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def _write_loop(self) -> None:
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                await self.ws.send(frame)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("%s writer stopped: %s", self.name, exc)
        finally:
            self._closed = True
            with contextlib.suppress(Exception):
                await self.ws.close()

    async def wait_closed(self) -> None:
        self.close()
        if self._writer is not None:
            with contextlib.suppress(Exception):
                await self._writer


class RelayGateway:
    """Local websocket endpoint carrying every UI-surface channel plus the browser control link.

    Protocol (first frame is a hello, sent within 2.5s):
    - {"type":"connect","name":<channel name>,"sender":{"tabId":..}} opens a relay channel;
      every later frame is a message on that channel.
    - {"type":"browserHello"} attaches the browser control connection (latest wins).
      It answers {"type":"rpc"} requests with {"type":"rpcResult"} and reports
      {"type":"event","event":"tabs.onRemoved"|"windows.onRemoved"|"tabs.onUpdated",...}.
    """

    def __init__(self, config: RelayConfig | None = None, *, relay: Any | None = None) -> None:
        self.config = config or RelayConfig.from_env()
        self.host = self.config.host
        self.port = int(self.config.port)
        self.browser_api = RpcBrowserApi(self.rpc_call, timeout=self.config.rpc_timeout_s)
        self.relay = relay if relay is not None else create_relay(self.config, None)

        self._server_started_at_ms = _now_ms()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._stop_event: asyncio.Event | None = None
        self._server: Any | None = None
        self._bind_error: str | None = None

        self._browser_ws: Any | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._surfaces = 0

        # small gateway log buffer (for diagnostics)
        self._logs: deque[dict[str, Any]] = deque(maxlen=200)

    def _log(self, level: str, message: str) -> None:
        self._logs.append({"ts": _now_ms(), "level": level, "message": message})
        getattr(_LOGGER, "warning" if level == "warn" else level, _LOGGER.info)(message)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> None:
        """Run the gateway on a daemon thread with its own event loop."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._ready.clear()
        self._bind_error = None
        t = threading.Thread(target=self._run_thread, name="extension-relay-gateway", daemon=True)
        self._thread = t
        t.start()
        if not self._ready.wait(timeout=max(0.05, float(wait_timeout))):
            raise RuntimeError(f"Relay gateway failed to start on {self.host}:{self.port}")
        if self._bind_error:
            raise RuntimeError(f"Relay gateway bind failed on {self.host}:{self.port}: {self._bind_error}")

    def stop(self, *, timeout: float = 2.0) -> None:
        loop = self._loop
        if loop is not None and self._stop_event is not None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(self._stop_event.set)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def _run_thread(self) -> None:
        try:
            asyncio.run(self.serve())
        finally:
            self._ready.set()

    async def serve(self) -> None:
        websockets = _import_websockets()
        from websockets.datastructures import Headers as WsHeaders  # type: ignore[import-not-found]
        from websockets.http11 import Response as WsResponse  # type: ignore[import-not-found]

        def _http_json(status: int, reason: str, payload: dict[str, Any]) -> WsResponse:  # type: ignore[name-defined]
            body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            headers = WsHeaders()
            headers["Content-Type"] = "application/json"
            headers["Cache-Control"] = "no-store"
            headers["Access-Control-Allow-Origin"] = "*"
            return WsResponse(status, reason, headers, body)

        async def _process_request(_conn, request):  # type: ignore[no-untyped-def]
            try:
                upgrade = str(request.headers.get("Upgrade") or "").lower()
            except Exception:  # noqa: BLE001
                upgrade = ""
            if upgrade == "websocket":
                return None
            if str(getattr(request, "path", "") or "") == RELAY_WELL_KNOWN_PATH:
                return _http_json(
                    200,
                    "OK",
                    {
                        "type": "extensionRelay",
                        "protocolVersion": RELAY_PROTOCOL_VERSION,
                        "mode": self.relay.mode,
                        "port": int(self.port),
                        "pid": int(os.getpid()),
                        "browserAttached": self._browser_ws is not None,
                        "serverStartedAtMs": int(self._server_started_at_ms),
                    },
                )
            return _http_json(404, "Not Found", {"error": "not found"})

        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        try:
            server = await websockets.serve(
                self._handler,
                self.host,
                int(self.port),
                process_request=_process_request,
                max_size=2_000_000,
                ping_interval=None,
            )
        except OSError as exc:
            self._bind_error = str(exc)
            self._log("error", f"gateway bind failed: {exc}")
            return

        self._server = server
        with contextlib.suppress(Exception):
            self.port = int(list(server.sockets)[0].getsockname()[1])
        self._log("info", f"relay gateway listening on {self.host}:{self.port} ({self.relay.mode})")
        self._ready.set()
        try:
            await self._stop_event.wait()
        finally:
            await self._shutdown_async()

    async def _shutdown_async(self) -> None:
        self.relay.close()
        self._fail_pending("relay gateway stopped")
        srv = self._server
        self._server = None
        if srv is not None:
            srv.close()
            with contextlib.suppress(Exception):
                await srv.wait_closed()

    def status(self) -> dict[str, Any]:
        return {
            "listening": self._server is not None,
            "host": self.host,
            "port": self.port,
            **({"bindError": self._bind_error} if self._bind_error else {}),
            "browserConnected": self._browser_ws is not None,
            "surfaces": self._surfaces,
            "pendingRpc": len(self._pending),
            "relay": self.relay.status(),
            "logs": list(self._logs)[-20:],
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=2.5)
        except Exception:  # noqa: BLE001
            self._log("warn", "hello timeout")
            return

        try:
            hello = json.loads(raw)
        except Exception:  # noqa: BLE001
            hello = None
        hello_type = str(hello.get("type") or "").strip() if isinstance(hello, dict) else ""

        if hello_type == "connect":
            await self._handle_surface(ws, hello)
            return
        if hello_type == "browserHello":
            await self._handle_browser(ws)
            return

        with contextlib.suppress(Exception):
            await ws.close(code=1002, reason="expected hello")

    async def _handle_surface(self, ws, hello: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        name = str(hello.get("name") or "").strip()
        sender = hello.get("sender") if isinstance(hello.get("sender"), dict) else {}
        port = WebSocketPort(ws, name, coerce_id(sender.get("tabId")), coerce_id(sender.get("windowId")))
        port.start()
        port.post_message({"type": "connectAck", "protocolVersion": RELAY_PROTOCOL_VERSION, "name": name})

        channel = self.relay.on_connect(port)
        self._surfaces += 1
        try:
            async for raw_msg in ws:
                if channel is None:
                    # Unrecognized or refused: keep the socket open, ignore traffic.
                    continue
                try:
                    msg = json.loads(raw_msg)
                except Exception:  # noqa: BLE001
                    continue
                self.relay.on_message(channel.id, msg)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("%s connection dropped: %s", name or "?", exc)
        finally:
            self._surfaces -= 1
            if channel is not None:
                self.relay.on_disconnect(channel.id)
            await port.wait_closed()

    async def _handle_browser(self, ws) -> None:  # type: ignore[no-untyped-def]
        previous = self._browser_ws
        self._browser_ws = ws
        self.relay.browser = self.browser_api
        if previous is not None:
            self._log("info", "browser control connection replaced")
            self._fail_pending("browser control connection replaced")
            with contextlib.suppress(Exception):
                await previous.close()
        else:
            self._log("info", "browser control connection attached")

        with contextlib.suppress(Exception):
            await ws.send(
                json.dumps(
                    {
                        "type": "browserHelloAck",
                        "protocolVersion": RELAY_PROTOCOL_VERSION,
                        "mode": self.relay.mode,
                    }
                )
            )

        try:
            async for raw_msg in ws:
                try:
                    msg = json.loads(raw_msg)
                except Exception:  # noqa: BLE001
                    continue
                if isinstance(msg, dict):
                    self._on_browser_message(msg)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("browser control connection dropped: %s", exc)
        finally:
            if self._browser_ws is ws:
                self._browser_ws = None
                self.relay.browser = None
                self._fail_pending("browser disconnected")
                self._log("warn", "browser control connection lost")

    def _on_browser_message(self, msg: dict[str, Any]) -> None:
        mtype = msg.get("type")

        if mtype == "rpcResult":
            req_id = coerce_id(msg.get("id"))
            fut = self._pending.get(req_id) if req_id is not None else None
            if fut is None or fut.done():
                return
            if msg.get("ok"):
                fut.set_result(msg.get("result"))
                return
            err = msg.get("error")
            err_msg = err.get("message") if isinstance(err, dict) else None
            fut.set_exception(ExternalOperationError(str(err_msg or "browser call failed")))
            return

        if mtype == "event":
            event = str(msg.get("event") or "")
            if event == "tabs.onRemoved":
                tab_id = coerce_id(msg.get("tabId"))
                if tab_id is not None:
                    self.relay.on_tab_removed(tab_id)
            elif event == "windows.onRemoved":
                window_id = coerce_id(msg.get("windowId"))
                if window_id is not None:
                    self.relay.on_window_removed(window_id)
            elif event == "tabs.onUpdated":
                tab_id = coerce_id(msg.get("tabId"))
                change = msg.get("changeInfo") if isinstance(msg.get("changeInfo"), dict) else msg
                status = change.get("status")
                if tab_id is not None:
                    self.relay.on_tab_updated(tab_id, status if isinstance(status, str) else None)
            return

        if mtype == "log":
            level = str(msg.get("level") or "info")
            self._logs.append(
                {
                    "ts": _now_ms(),
                    "level": level if level in {"debug", "info", "warn", "error"} else "info",
                    "message": str(msg.get("message") or "")[:2000],
                }
            )

    # ─────────────────────────────────────────────────────────────────────────
    # RPC to the browser
    # ─────────────────────────────────────────────────────────────────────────

    async def rpc_call(self, method: str, params: dict[str, Any] | None = None, *, timeout: float = 10.0) -> Any:
        if not isinstance(method, str) or not method.strip():
            raise ExternalOperationError("browser RPC method is required")
        ws = self._browser_ws
        if ws is None:
            raise ExternalOperationError("browser is not connected")

        req_id = self._next_id
        self._next_id += 1
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut

        msg: dict[str, Any] = {"type": "rpc", "id": req_id, "method": method}
        if isinstance(params, dict) and params:
            msg["params"] = params

        try:
            await ws.send(json.dumps(msg, ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001
            self._pending.pop(req_id, None)
            raise ExternalOperationError(f"browser RPC send failed: {exc}") from exc

        try:
            return await asyncio.wait_for(fut, timeout=max(0.1, float(timeout)))
        except asyncio.TimeoutError as exc:
            raise ExternalOperationError(f"browser RPC timed out: method={method}") from exc
        finally:
            self._pending.pop(req_id, None)

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(ExternalOperationError(reason))
