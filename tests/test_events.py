"""
Tests for the event bus.
"""

from chatline.events import EventBus


def test_named_and_wildcard_subscribers():
    bus = EventBus("test")
    named, every = [], []
    bus.subscribe(lambda e, p: named.append(p), "saved")
    bus.subscribe(lambda e, p: every.append(e))

    bus.publish("saved", {"id": "a"})
    bus.publish("deleted", {"id": "a"})

    assert named == [{"id": "a"}]
    assert every == ["saved", "deleted"]


def test_cancel_stops_delivery():
    bus = EventBus()
    seen = []
    sub = bus.subscribe(lambda e, p: seen.append(e))
    bus.publish("one")
    sub.cancel()
    sub.cancel()
    bus.publish("two")
    assert seen == ["one"]
    assert bus.count == 0


def test_failing_subscriber_is_skipped():
    """A subscriber that raises doesn't stop the ones after it."""
    bus = EventBus()
    seen = []

    def broken(event, payload):
        raise ValueError("intentional error")

    bus.subscribe(broken)
    bus.subscribe(lambda e, p: seen.append(e))
    bus.publish("saved")
    assert seen == ["saved"]


def test_same_callback_twice_cancels_independently():
    bus = EventBus()
    seen = []

    def cb(event, payload):
        seen.append(event)

    first = bus.subscribe(cb)
    bus.subscribe(cb)
    first.cancel()
    bus.publish("x")
    assert seen == ["x"]
