"""Publish/subscribe channels used to wake workers and relay progress.

``PostgresBroker`` rides on LISTEN/NOTIFY so any process sharing the database can
publish or listen. ``LocalBroker`` delivers within one process only. It backs
tests and deployments that run the API and workers in one process; with separate
processes on SQLite nothing crosses between them, so workers rely on their poll
interval and progress streams on their periodic status check. Consumers that must
not miss work wrap a channel in a ``PollingSubscriber``, which also wakes on a
fixed interval.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable

from .db import get_db_url, is_postgres_url
from .utils import log_event

CHANNEL_NEW_DOCUMENT = "new_document"
CHANNEL_INGESTED = "ingested_doc"
CHANNEL_PROGRESS = "progress_update"

Callback = Callable[[dict[str, Any]], None]


class Subscription:
    def __init__(self, broker: "Broker", channel: str, callback: Callback) -> None:
        self.broker = broker
        self.channel = channel
        self.callback = callback
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.broker._unsubscribe(self)


class Broker:
    max_payload_bytes: int | None = None

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("digestor.pubsub")
        self._subscriptions: dict[str, list[Subscription]] = {}
        # Channel start/stop runs under the lock; hooks may subscribe re-entrantly.
        self._lock = threading.RLock()

    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    def subscribe(self, channel: str, callback: Callback) -> Subscription:
        subscription = Subscription(self, channel, callback)
        with self._lock:
            subscribers = self._subscriptions.setdefault(channel, [])
            first = not subscribers
            subscribers.append(subscription)
            if first:
                self._start_channel(channel)
        return subscription

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(channel, []))

    def close(self) -> None:
        with self._lock:
            subscriptions = [sub for subs in self._subscriptions.values() for sub in subs]
        for subscription in subscriptions:
            subscription.close()

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.channel, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._stop_channel(subscription.channel)

    def _start_channel(self, channel: str) -> None:
        return None

    def _stop_channel(self, channel: str) -> None:
        return None

    def _dispatch(self, channel: str, payload: dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscriptions.get(channel, []))
        for subscription in subscribers:
            if subscription.closed:
                continue
            try:
                subscription.callback(payload)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self._logger,
                    logging.ERROR,
                    "subscriber_callback_failed",
                    channel=channel,
                    error=str(exc),
                )


class LocalBroker(Broker):
    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        self._dispatch(channel, json.loads(json.dumps(payload)))


class PostgresBroker(Broker):
    # NOTIFY payloads are capped at 8000 bytes by the server.
    max_payload_bytes = 7900

    def __init__(self, dsn: str, logger: logging.Logger | None = None, poll_seconds: float = 1.0) -> None:
        super().__init__(logger)
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL pub/sub") from exc
        self._psycopg = psycopg
        self._dsn = dsn
        self._poll_seconds = poll_seconds
        self._publish_conn = None
        self._publish_lock = threading.Lock()
        self._listeners: dict[str, threading.Event] = {}

    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        encoded = json.dumps(payload)
        if len(encoded.encode("utf-8")) > self.max_payload_bytes:
            raise ValueError(f"payload too large for channel {channel}")
        with self._publish_lock:
            if self._publish_conn is None or self._publish_conn.closed:
                self._publish_conn = self._psycopg.connect(self._dsn, autocommit=True)
            try:
                self._publish_conn.execute("SELECT pg_notify(%s, %s)", (channel, encoded))
            except self._psycopg.OperationalError:
                self._publish_conn.close()
                self._publish_conn = None
                raise

    def close(self) -> None:
        super().close()
        with self._publish_lock:
            if self._publish_conn is not None:
                self._publish_conn.close()
                self._publish_conn = None

    def _start_channel(self, channel: str) -> None:
        if channel in self._listeners:
            return
        stop = threading.Event()
        self._listeners[channel] = stop
        thread = threading.Thread(
            target=self._listen,
            args=(channel, stop),
            name=f"listen-{channel}",
            daemon=True,
        )
        thread.start()

    def _stop_channel(self, channel: str) -> None:
        if self._subscriptions.get(channel):
            return
        stop = self._listeners.pop(channel, None)
        if stop is not None:
            stop.set()

    def _listen(self, channel: str, stop: threading.Event) -> None:
        from psycopg import sql

        backoff = 1.0
        while not stop.is_set():
            try:
                with self._psycopg.connect(self._dsn, autocommit=True) as conn:
                    conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel)))
                    log_event(self._logger, logging.INFO, "channel_listening", channel=channel)
                    backoff = 1.0
                    while not stop.is_set():
                        for notify in conn.notifies(timeout=self._poll_seconds):
                            self._handle_notify(channel, notify.payload)
                            if stop.is_set():
                                break
            except self._psycopg.Error as exc:
                log_event(self._logger, logging.WARNING, "channel_listen_failed", channel=channel, error=str(exc))
                stop.wait(backoff)
                backoff = min(backoff * 2, 30.0)

    def _handle_notify(self, channel: str, raw: str) -> None:
        try:
            payload = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            log_event(self._logger, logging.WARNING, "channel_payload_invalid", channel=channel)
            return
        if isinstance(payload, dict):
            self._dispatch(channel, payload)


class PollingSubscriber:
    """Waits for a message on ``channel`` or for the poll interval, whichever comes first."""

    def __init__(self, broker: Broker, channel: str, poll_interval_seconds: float) -> None:
        self._event = threading.Event()
        self._poll_interval = poll_interval_seconds
        self._subscription = broker.subscribe(channel, self._on_message)

    def _on_message(self, payload: dict[str, Any]) -> None:
        self._event.set()

    def wait(self) -> bool:
        """Return True when woken by a message, False when the poll interval elapsed."""
        notified = self._event.wait(self._poll_interval)
        self._event.clear()
        return notified

    def close(self) -> None:
        self._subscription.close()


def build_broker(db_url: str | None = None) -> Broker:
    db_url = db_url if db_url is not None else get_db_url()
    if db_url and is_postgres_url(db_url):
        return PostgresBroker(db_url)
    return LocalBroker()
