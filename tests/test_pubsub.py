import threading

import pytest

from digestor.notifier import STAGE_COMPLETED, STAGE_QUEUED, Notifier
from digestor.pubsub import (
    CHANNEL_NEW_DOCUMENT,
    CHANNEL_PROGRESS,
    LocalBroker,
    PollingSubscriber,
    PostgresBroker,
    build_broker,
)


def test_local_broker_delivers_to_subscribers():
    broker = LocalBroker()
    received = []
    subscription = broker.subscribe(CHANNEL_PROGRESS, received.append)
    broker.publish(CHANNEL_PROGRESS, {"id": "doc-1", "stage": STAGE_QUEUED})
    broker.publish(CHANNEL_NEW_DOCUMENT, {"id": "doc-2"})
    assert received == [{"id": "doc-1", "stage": STAGE_QUEUED}]

    subscription.close()
    subscription.close()
    broker.publish(CHANNEL_PROGRESS, {"id": "doc-1", "stage": STAGE_COMPLETED})
    assert len(received) == 1
    assert broker.subscriber_count(CHANNEL_PROGRESS) == 0


def test_failing_subscriber_does_not_block_others():
    broker = LocalBroker()
    received = []

    def explode(payload):
        raise RuntimeError("bad subscriber")

    broker.subscribe(CHANNEL_PROGRESS, explode)
    broker.subscribe(CHANNEL_PROGRESS, received.append)
    broker.publish(CHANNEL_PROGRESS, {"id": "doc-1"})
    assert received == [{"id": "doc-1"}]


def test_polling_subscriber_wakes_on_message():
    broker = LocalBroker()
    subscriber = PollingSubscriber(broker, CHANNEL_NEW_DOCUMENT, poll_interval_seconds=5)
    try:
        timer = threading.Timer(0.05, broker.publish, args=(CHANNEL_NEW_DOCUMENT, {"id": "doc-1"}))
        timer.start()
        assert subscriber.wait() is True
        timer.join()
    finally:
        subscriber.close()


def test_polling_subscriber_times_out_without_message():
    broker = LocalBroker()
    subscriber = PollingSubscriber(broker, CHANNEL_NEW_DOCUMENT, poll_interval_seconds=0.05)
    try:
        assert subscriber.wait() is False
    finally:
        subscriber.close()
    assert broker.subscriber_count(CHANNEL_NEW_DOCUMENT) == 0


def test_build_broker_defaults_to_local():
    assert isinstance(build_broker(None), LocalBroker)
    assert isinstance(build_broker("sqlite:///x"), LocalBroker)


def test_notifier_publishes_progress_payload():
    broker = LocalBroker()
    received = []
    broker.subscribe(CHANNEL_PROGRESS, received.append)
    notifier = Notifier(broker)
    assert notifier.notify_progress("doc-1", STAGE_COMPLETED, summary={"tldr": "x"}) is True
    assert received == [{"id": "doc-1", "stage": STAGE_COMPLETED, "summary": {"tldr": "x"}}]


def test_notifier_rejects_unknown_stage():
    with pytest.raises(ValueError):
        Notifier(LocalBroker()).notify_progress("doc-1", "DANCING")


def test_notifier_drops_oversized_summary():
    broker = LocalBroker()
    broker.max_payload_bytes = 200
    received = []
    broker.subscribe(CHANNEL_PROGRESS, received.append)
    Notifier(broker).notify_progress("doc-1", STAGE_COMPLETED, summary={"tldr": "x" * 500})
    assert received == [{"id": "doc-1", "stage": STAGE_COMPLETED}]


def test_notifier_swallows_publish_failures():
    class BrokenBroker(LocalBroker):
        def publish(self, channel, payload):
            raise ConnectionError("db down")

    assert Notifier(BrokenBroker()).notify_new_document("doc-1") is False


class ListenerRecordingBroker(PostgresBroker):
    """PostgresBroker whose listener threads only wait for their stop event."""

    def __init__(self):
        super().__init__("postgresql://unused")
        self.before_stop = None

    def _listen(self, channel, stop):
        stop.wait()

    def _stop_channel(self, channel):
        hook, self.before_stop = self.before_stop, None
        if hook is not None:
            hook()
        super()._stop_channel(channel)


def test_resubscribe_while_last_subscriber_leaves_keeps_listener():
    broker = ListenerRecordingBroker()
    first = broker.subscribe(CHANNEL_PROGRESS, lambda payload: None)
    listener = broker._listeners[CHANNEL_PROGRESS]
    late = []
    broker.before_stop = lambda: late.append(broker.subscribe(CHANNEL_PROGRESS, lambda payload: None))

    first.close()

    assert broker.subscriber_count(CHANNEL_PROGRESS) == 1
    assert broker._listeners[CHANNEL_PROGRESS] is listener
    assert not listener.is_set()

    late[0].close()
    assert CHANNEL_PROGRESS not in broker._listeners
    assert listener.is_set()


def test_listener_restarts_after_channel_went_idle():
    broker = ListenerRecordingBroker()
    broker.subscribe(CHANNEL_PROGRESS, lambda payload: None).close()
    subscription = broker.subscribe(CHANNEL_PROGRESS, lambda payload: None)
    assert not broker._listeners[CHANNEL_PROGRESS].is_set()
    broker.close()
    assert subscription.closed
    assert CHANNEL_PROGRESS not in broker._listeners
