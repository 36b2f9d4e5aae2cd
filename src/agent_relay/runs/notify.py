"""Run status-change notifications: webhook or a tool call on the background run."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from agent_relay.events.sink import EventSink, RelayEvent
from agent_relay.jobs.creation import JobCreationService
from agent_relay.jobs.models import CreateJobRequest
from agent_relay.runs.models import RunStatus, RunView, background_run_id

logger = logging.getLogger(__name__)

WEBHOOK_HANDLER = "webhook"
TOOL_HANDLER = "tool"


class StatusChangeNotifier:
    """Fires the run's ``on_status_change`` handler. Failures are logged, never raised."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        creation: JobCreationService,
        events: EventSink,
        timeout_seconds: float = 10.0,
        max_retries: int = 5,
        retry_backoff_seconds: float = 1.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.creation = creation
        self.events = events
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=httpx.HTTPTransport(retries=max_retries),
        )
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def notify(self, run: RunView, status: RunStatus, result: Any) -> bool:
        """Return ``True`` when a handler fired successfully."""

        handler = run.on_status_change
        if handler is None or status not in handler.statuses:
            return False
        payload = {
            "runId": run.id,
            "status": status.value,
            "tags": run.tags,
            "result": result,
        }
        try:
            if handler.type == WEBHOOK_HANDLER:
                self._post_webhook(handler.target, payload)
            elif handler.type == TOOL_HANDLER:
                self.creation.create_job(
                    CreateJobRequest(
                        cluster_id=run.cluster_id,
                        target_fn=handler.target,
                        target_args=payload,
                        run_id=background_run_id(run.cluster_id),
                        auth_context=run.auth_context,
                        run_context=run.context,
                    ),
                )
            else:
                raise ValueError(f"Unsupported status change handler type: {handler.type}")
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Run status notification failed (cluster=%s run_id=%s status=%s): %s",
                run.cluster_id,
                run.id,
                status.value,
                error,
            )
            self._emit(run, status, "notificationFailed", {"error": str(error)})
            return False
        self._emit(run, status, "notificationSent", None)
        return True

    def _post_webhook(self, url: str, payload: dict[str, Any]) -> None:
        attempts = max(1, self.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                response = self._client.post(url, json=payload)
                response.raise_for_status()
                return
            except httpx.HTTPError as error:
                if attempt >= attempts:
                    raise
                logger.info(
                    "Webhook %s failed (attempt %d/%d): %s",
                    url,
                    attempt,
                    attempts,
                    error,
                )
                self._sleep(self.retry_backoff_seconds * attempt)

    def _emit(
        self,
        run: RunView,
        status: RunStatus,
        event_type: str,
        extra: dict[str, Any] | None,
    ) -> None:
        meta: dict[str, Any] = {"channel": "statusChange"}
        if run.on_status_change is not None:
            meta["handler"] = run.on_status_change.type
        if extra:
            meta.update(extra)
        self.events.write(
            RelayEvent(
                type=event_type,
                cluster_id=run.cluster_id,
                run_id=run.id,
                status=status.value,
                meta=meta,
            ),
        )
