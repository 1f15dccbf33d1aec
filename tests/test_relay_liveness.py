from __future__ import annotations

import asyncio
from typing import Any


class _Port:
    def __init__(self, name: str, *, fail_after: int | None = None) -> None:
        self.name = name
        self.tab_id = None
        self.fail_after = fail_after
        self.sent: list[dict[str, Any]] = []

    def post_message(self, payload: dict[str, Any]) -> None:
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise ConnectionError("port disconnected")
        self.sent.append(payload)

    def close(self) -> None:
        pass


def test_probe_pings_monitored_channels_only() -> None:
    from extension_relay.channels import ChannelKind
    from extension_relay.liveness import LivenessMonitor
    from extension_relay.registry import ChannelRegistry

    async def _main() -> None:
        reg = ChannelRegistry()
        mon = LivenessMonitor(reg, interval_s=0.01)
        popout_port, tracking_port, menu_port = _Port("popout"), _Port("tracking"), _Port("menu-port")
        popout = reg.get(reg.register(ChannelKind.POPOUT, popout_port))
        tracking = reg.get(reg.register(ChannelKind.TRACKING, tracking_port))
        menu = reg.get(reg.register(ChannelKind.MENU, menu_port))
        for ch in (popout, tracking, menu):
            mon.watch(ch)

        assert popout.id in mon and tracking.id in mon
        assert menu.id not in mon

        await asyncio.sleep(0.08)
        mon.stop()
        assert popout_port.sent and all(m == {"action": "ping"} for m in popout_port.sent)
        assert tracking_port.sent
        assert menu_port.sent == []
        # Reference behavior: a silent but writable channel stays registered.
        assert popout.id in reg

    asyncio.run(_main())


def test_probe_failure_unregisters_exactly_once() -> None:
    from extension_relay.channels import ChannelKind
    from extension_relay.liveness import LivenessMonitor
    from extension_relay.registry import ChannelRegistry

    async def _main() -> None:
        reg = ChannelRegistry()
        removed: list[str] = []
        reg.on_unregister(lambda ch: removed.append(ch.id))
        mon = LivenessMonitor(reg, interval_s=0.01)
        port = _Port("popout", fail_after=2)
        channel = reg.get(reg.register(ChannelKind.POPOUT, port, tab_id=7, window_id=42))
        mon.watch(channel)

        await asyncio.sleep(0.1)
        assert channel.id not in reg
        assert channel.id not in mon
        assert reg.lookup_popouts(7) == []
        assert len(port.sent) == 2

        # A disconnect arriving after the probe already terminated the channel is a no-op.
        reg.unregister(channel.id)
        assert removed == [channel.id]

    asyncio.run(_main())


def test_disconnect_cancels_probe() -> None:
    from extension_relay.channels import ChannelKind
    from extension_relay.liveness import LivenessMonitor
    from extension_relay.registry import ChannelRegistry

    async def _main() -> None:
        reg = ChannelRegistry()
        mon = LivenessMonitor(reg, interval_s=0.01)
        port = _Port("popout")
        channel = reg.get(reg.register(ChannelKind.POPOUT, port))
        mon.watch(channel)
        task = mon._tasks[channel.id]

        reg.unregister(channel.id)
        await asyncio.sleep(0.05)
        assert task.cancelled()
        assert port.sent == []

    asyncio.run(_main())


def test_miss_limit_terminates_silent_channels() -> None:
    from extension_relay.channels import ChannelKind
    from extension_relay.liveness import LivenessMonitor
    from extension_relay.registry import ChannelRegistry

    reg = ChannelRegistry()
    mon = LivenessMonitor(reg, interval_s=1.0, miss_limit=2)
    chatty_port, silent_port = _Port("popout"), _Port("tracking")
    chatty = reg.get(reg.register(ChannelKind.POPOUT, chatty_port))
    silent = reg.get(reg.register(ChannelKind.TRACKING, silent_port))

    for _ in range(3):
        assert mon.probe(chatty)
        chatty.touch()  # a pong arrived
    assert mon.probe(silent)
    assert mon.probe(silent)
    assert mon.probe(silent) is False

    assert chatty.id in reg
    assert silent.id not in reg
    assert len(silent_port.sent) == 2


def test_missed_replies_are_not_counted_without_a_limit() -> None:
    from extension_relay.channels import ChannelKind
    from extension_relay.liveness import LivenessMonitor
    from extension_relay.registry import ChannelRegistry

    reg = ChannelRegistry()
    mon = LivenessMonitor(reg, interval_s=1.0)
    port = _Port("tracking")
    silent = reg.get(reg.register(ChannelKind.TRACKING, port))

    for _ in range(5):
        assert mon.probe(silent)
    assert silent.missed_pongs == 0
    assert "missedPongs" not in silent.describe()
    assert len(port.sent) == 5
