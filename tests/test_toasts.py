from __future__ import annotations

from campussync.toasts import Position, Severity, ToastBus, ToastMessage


def test_post_assigns_unique_ids_in_display_order() -> None:
    bus = ToastBus()

    first = bus.post("one")
    second = bus.post("two", Severity.ERROR, Position.TOP)

    assert first != second
    assert [m.content for m in bus.messages] == ["one", "two"]
    assert bus.messages[1].severity is Severity.ERROR
    assert bus.messages[1].position is Position.TOP
    assert bus.messages[0].severity is Severity.INFO
    assert bus.messages[0].position is Position.BOTTOM


def test_dismiss_removes_only_that_message() -> None:
    bus = ToastBus()
    keep = bus.post("keep")
    drop = bus.post("drop")

    bus.dismiss(drop)

    assert [m.id for m in bus.messages] == [keep]


def test_dismiss_unknown_id_is_noop() -> None:
    bus = ToastBus()
    bus.post("still here")
    notified: list[tuple[ToastMessage, ...]] = []
    bus.subscribe(notified.append)

    bus.dismiss("no-such-id")

    assert len(bus.messages) == 1
    assert notified == []


def test_listeners_receive_snapshots_and_can_unsubscribe() -> None:
    bus = ToastBus()
    snapshots: list[int] = []
    unsubscribe = bus.subscribe(lambda messages: snapshots.append(len(messages)))

    message_id = bus.post("a")
    bus.post("b")
    bus.dismiss(message_id)
    unsubscribe()
    bus.clear()

    assert snapshots == [1, 2, 1]
    assert bus.messages == ()


def test_failing_listener_does_not_block_post() -> None:
    bus = ToastBus()

    def broken(_messages: tuple[ToastMessage, ...]) -> None:
        raise RuntimeError("render failed")

    bus.subscribe(broken)
    message_id = bus.post("hello")

    assert bus.messages[0].id == message_id
