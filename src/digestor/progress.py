"""Per-client progress streams for one document.

A stream subscribes to the shared progress channel, forwards the events for its
document and interleaves heartbeats. Every heartbeat tick also re-reads the
terminal snapshot, so a stream whose events are published on another broker still
finishes. It ends after a terminal event or when the consumer stops iterating;
either way ``close`` unsubscribes and cancels the heartbeat, and calling it twice
is harmless.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable

from .notifier import STAGE_COMPLETED, STAGE_CONNECTED, STAGE_HEARTBEAT, TERMINAL_STAGES
from .pubsub import CHANNEL_PROGRESS, Broker, Subscription
from .utils import log_event

Snapshot = Callable[[], dict[str, Any] | None]
SummaryLoader = Callable[[], dict[str, Any] | None]


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


class ProgressStream:
    def __init__(
        self,
        broker: Broker,
        doc_id: str,
        *,
        heartbeat_seconds: float = 30,
        snapshot: Snapshot | None = None,
        load_summary: SummaryLoader | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.broker = broker
        self.doc_id = doc_id
        self.heartbeat_seconds = heartbeat_seconds
        self._snapshot = snapshot
        self._load_summary = load_summary
        self._logger = logger or logging.getLogger("digestor.progress")
        self._subscription: Subscription | None = None
        self._heartbeat: asyncio.Task | None = None
        self.closed = False

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

        def deliver(payload: dict[str, Any]) -> None:
            if payload.get("id") != self.doc_id:
                return
            try:
                loop.call_soon_threadsafe(queue.put_nowait, payload)
            except RuntimeError:
                # Event loop already closed; the stream is gone.
                pass

        try:
            yield {"id": self.doc_id, "stage": STAGE_CONNECTED}
            # Subscribe before the snapshot so an event landing in between is not lost.
            self._subscription = self.broker.subscribe(CHANNEL_PROGRESS, deliver)
            terminal = await asyncio.to_thread(self._snapshot) if self._snapshot else None
            if terminal is not None:
                yield terminal
                return
            self._heartbeat = asyncio.create_task(self._beat(queue))
            log_event(self._logger, logging.DEBUG, "progress_stream_open", doc_id=self.doc_id)
            while True:
                event = await queue.get()
                if event.get("stage") == STAGE_COMPLETED and "summary" not in event and self._load_summary:
                    summary = await asyncio.to_thread(self._load_summary)
                    if summary is not None:
                        event = {**event, "summary": summary}
                yield event
                if event.get("stage") in TERMINAL_STAGES:
                    return
        finally:
            self.close()

    async def _beat(self, queue: asyncio.Queue) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            terminal = await self._recheck()
            if terminal is not None:
                # Progress published in another process never reaches this broker.
                queue.put_nowait(terminal)
                return
            queue.put_nowait({"id": self.doc_id, "stage": STAGE_HEARTBEAT})

    async def _recheck(self) -> dict[str, Any] | None:
        if self._snapshot is None:
            return None
        try:
            return await asyncio.to_thread(self._snapshot)
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.WARNING, "progress_snapshot_failed", doc_id=self.doc_id, error=str(exc))
            return None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._heartbeat is not None:
            self._heartbeat.cancel()
        if self._subscription is not None:
            self._subscription.close()
        log_event(self._logger, logging.DEBUG, "progress_stream_closed", doc_id=self.doc_id)
