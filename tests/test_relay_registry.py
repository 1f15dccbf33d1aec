from __future__ import annotations

from typing import Any


class _Port:
    def __init__(self, name: str, tab_id: int | None = None) -> None:
        self.name = name
        self.tab_id = tab_id
        self.sent: list[dict[str, Any]] = []

    def post_message(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def close(self) -> None:
        pass


def test_registry_keeps_one_content_script_per_tab() -> None:
    from extension_relay.channels import ChannelKind, ChannelState
    from extension_relay.registry import ChannelRegistry

    reg = ChannelRegistry()
    first = reg.register(ChannelKind.CONTENT_SCRIPT, _Port("content-script", 7), tab_id=7)
    popout = reg.register(ChannelKind.POPOUT, _Port("popout"), tab_id=7, window_id=42)
    second = reg.register(ChannelKind.CONTENT_SCRIPT, _Port("content-script", 7), tab_id=7)

    assert first != second
    assert first not in reg
    assert reg.lookup_content_script(7).id == second
    assert [ch.id for ch in reg.lookup_popouts(7)] == [popout]
    assert reg.snapshot()["contentTabs"] == [7]

    # The superseded channel's late disconnect must not remove its successor.
    assert reg.unregister(first) is None
    assert reg.lookup_content_script(7).id == second
    assert reg.get(second).state is ChannelState.BOUND


def test_registry_content_index_invariant_over_mixed_operations() -> None:
    from extension_relay.channels import ChannelKind
    from extension_relay.registry import ChannelRegistry

    reg = ChannelRegistry()
    ids: list[str] = []
    for step in range(30):
        tab = step % 4
        if step % 3 == 2 and ids:
            reg.unregister(ids.pop(0))
        else:
            ids.append(reg.register(ChannelKind.CONTENT_SCRIPT, _Port("content-script", tab), tab_id=tab))
        content = reg.channels(ChannelKind.CONTENT_SCRIPT)
        tabs = [ch.owner_tab_id for ch in content]
        assert len(tabs) == len(set(tabs))
        for ch in content:
            assert reg.lookup_content_script(ch.owner_tab_id) is ch


def test_registry_popouts_keep_registration_order_and_rebind() -> None:
    from extension_relay.channels import ChannelKind, ChannelState
    from extension_relay.registry import ChannelRegistry

    reg = ChannelRegistry()
    a = reg.register(ChannelKind.POPOUT, _Port("popout"))
    b = reg.register(ChannelKind.POPOUT, _Port("popout"))
    assert reg.get(a).state is ChannelState.CONNECTING
    assert reg.lookup_popouts(7) == []

    reg.bind_popout(b, 7, 11)
    reg.bind_popout(a, 7, 10)
    assert [ch.id for ch in reg.lookup_popouts(7)] == [b, a]
    assert reg.get(a).routable

    reg.bind_popout(a, 8, 10)
    assert [ch.id for ch in reg.lookup_popouts(7)] == [b]
    assert [ch.id for ch in reg.lookup_popouts(8)] == [a]
    assert [ch.id for ch in reg.lookup_by_window(10)] == [a]


def test_registry_bind_popout_rejects_other_kinds() -> None:
    from extension_relay.channels import ChannelKind
    from extension_relay.registry import ChannelRegistry

    reg = ChannelRegistry()
    menu = reg.register(ChannelKind.MENU, _Port("menu-port"))
    assert reg.bind_popout(menu, 7, 1) is None
    assert reg.bind_popout("popout-999", 7, 1) is None


def test_registry_unregister_is_idempotent_and_notifies_once() -> None:
    from extension_relay.channels import ChannelKind, ChannelState
    from extension_relay.registry import ChannelRegistry

    reg = ChannelRegistry()
    seen: list[str] = []
    reg.on_unregister(lambda ch: seen.append(ch.id))

    cid = reg.register(ChannelKind.POPOUT, _Port("popout"), tab_id=3, window_id=30)
    channel = reg.get(cid)
    assert reg.unregister(cid) is channel
    assert reg.unregister(cid) is None

    assert seen == [cid]
    assert channel.state is ChannelState.TERMINATED
    assert reg.lookup_popouts(3) == []
    assert reg.lookup_by_window(30) == []
    assert len(reg) == 0
    assert reg.snapshot() == {"channels": [], "contentTabs": [], "popoutTabs": {}}


def test_registry_content_script_requires_tab() -> None:
    import pytest

    from extension_relay.channels import ChannelKind
    from extension_relay.registry import ChannelRegistry

    with pytest.raises(ValueError):
        ChannelRegistry().register(ChannelKind.CONTENT_SCRIPT, _Port("content-script"))


def test_channel_ids_are_unique_per_registry() -> None:
    from extension_relay.channels import ChannelKind
    from extension_relay.registry import ChannelRegistry

    reg = ChannelRegistry()
    ids = {reg.register(kind, _Port(kind.value, 1), tab_id=1) for kind in ChannelKind for _ in range(3)}
    assert len(ids) == 12
