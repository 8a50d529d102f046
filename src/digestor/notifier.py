from __future__ import annotations

import json
import logging
from typing import Any

from .pubsub import CHANNEL_INGESTED, CHANNEL_NEW_DOCUMENT, CHANNEL_PROGRESS, Broker
from .utils import log_event

STAGE_QUEUED = "QUEUED"
STAGE_FETCHING_HTML = "FETCHING_HTML"
STAGE_CLEANING = "CLEANING"
STAGE_INGESTING = "INGESTING"
STAGE_SUMMARIZING = "SUMMARIZING"
STAGE_FINALIZING = "FINALIZING"
STAGE_COMPLETED = "COMPLETED"
STAGE_ERROR = "ERROR"
STAGE_CONNECTED = "CONNECTED"
STAGE_HEARTBEAT = "HEARTBEAT"

PIPELINE_STAGES = (
    STAGE_QUEUED,
    STAGE_FETCHING_HTML,
    STAGE_CLEANING,
    STAGE_INGESTING,
    STAGE_SUMMARIZING,
    STAGE_FINALIZING,
    STAGE_COMPLETED,
    STAGE_ERROR,
)
TERMINAL_STAGES = (STAGE_COMPLETED, STAGE_ERROR)


class Notifier:
    """Publishes wake-ups and progress events.

    Broker failures are logged and reported as False, never raised. An unknown
    stage is a programming error and raises ValueError.
    """

    def __init__(self, broker: Broker, logger: logging.Logger | None = None) -> None:
        self.broker = broker
        self._logger = logger or logging.getLogger("digestor.notifier")

    def notify_new_document(self, doc_id: str) -> bool:
        return self._publish(CHANNEL_NEW_DOCUMENT, {"id": doc_id})

    def notify_ingested(self, doc_id: str) -> bool:
        return self._publish(CHANNEL_INGESTED, {"id": doc_id})

    def notify_progress(
        self,
        doc_id: str,
        stage: str,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        if stage not in PIPELINE_STAGES:
            raise ValueError(f"unknown stage {stage}")
        payload: dict[str, Any] = {"id": doc_id, "stage": stage}
        if summary is not None:
            payload["summary"] = summary
        if error:
            payload["error"] = error
        limit = self.broker.max_payload_bytes
        if limit and "summary" in payload and len(json.dumps(payload).encode("utf-8")) > limit:
            # Readers load oversized summaries from storage instead.
            payload.pop("summary")
        return self._publish(CHANNEL_PROGRESS, payload)

    def _publish(self, channel: str, payload: dict[str, Any]) -> bool:
        try:
            self.broker.publish(channel, payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.WARNING,
                "notify_failed",
                channel=channel,
                doc_id=payload.get("id"),
                error=str(exc),
            )
            return False
        log_event(
            self._logger,
            logging.DEBUG,
            "notified",
            channel=channel,
            doc_id=payload.get("id"),
            stage=payload.get("stage"),
        )
        return True
