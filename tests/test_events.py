"""Tests for the blinker-backed event bus."""

from __future__ import annotations

from luogu_painter.utils.events import EventBus


class Owner:
    pass


def test_receivers_called_in_order_with_owner() -> None:
    owner = Owner()
    bus = EventBus(owner)
    calls = []
    bus.subscribe("tick", lambda sender, **kw: calls.append(("a", sender, kw)))
    bus.subscribe("tick", lambda sender, **kw: calls.append(("b", sender, kw)))
    bus.emit("tick", n=1)
    assert calls == [("a", owner, {"n": 1}), ("b", owner, {"n": 1})]


def test_emit_without_receivers_is_noop() -> None:
    bus = EventBus()
    bus.emit("nothing", x=1)
    assert not bus.has_receivers("nothing")


def test_once_receiver_fires_once() -> None:
    bus = EventBus()
    calls = []
    bus.subscribe("open", lambda sender: calls.append(1), once=True)
    bus.emit("open")
    bus.emit("open")
    assert calls == [1]
    assert not bus.has_receivers("open")


def test_unsubscribe() -> None:
    bus = EventBus()
    calls = []

    def receiver(sender, **kw):
        calls.append(kw)

    bus.subscribe("x", receiver)
    bus.unsubscribe("x", receiver)
    bus.emit("x", v=1)
    assert calls == []


def test_raising_receiver_does_not_stop_others(caplog) -> None:
    bus = EventBus()
    calls = []

    def broken(sender, **kw):
        raise RuntimeError("boom")

    bus.subscribe("x", broken)
    bus.subscribe("x", lambda sender, **kw: calls.append(kw))
    bus.emit("x", v=2)
    assert calls == [{"v": 2}]
    assert "raised" in caplog.text


def test_clear() -> None:
    bus = EventBus()
    bus.subscribe("x", lambda sender: None)
    bus.clear()
    assert not bus.has_receivers("x")
