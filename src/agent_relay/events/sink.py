"""Fire-and-forget event sink backed by a bounded buffer and a writer thread."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from agent_relay.storage.common import (
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_relay.storage.sqlmodel_models import EventRow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelayEvent:
    """One observability event; ``type`` is the camelCase event name."""

    type: str
    cluster_id: str
    job_id: str | None = None
    run_id: str | None = None
    machine_id: str | None = None
    target_fn: str | None = None
    result_type: str | None = None
    status: str | None = None
    meta: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utc_now)


class EventSink:
    """Buffers events in memory and writes them to the ``events`` table in batches.

    ``write`` never blocks and never raises: when the buffer is full the event is
    dropped with a warning. A daemon thread flushes every ``flush_interval_seconds``;
    ``close`` drains whatever is still buffered.
    """

    def __init__(  # noqa: PLR0913
        self,
        engine: Engine,
        *,
        flush_interval_seconds: float = 1.0,
        max_batch_size: int = 100,
        max_buffer_size: int = 10_000,
        write_retries: int = 3,
        write_backoff_seconds: float = 0.5,
    ) -> None:
        self.engine = engine
        self.flush_interval_seconds = flush_interval_seconds
        self.max_batch_size = max_batch_size
        self.write_retries = write_retries
        self.write_backoff_seconds = write_backoff_seconds
        self._buffer: queue.Queue[RelayEvent] = queue.Queue(maxsize=max_buffer_size)
        self._flush_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.dropped = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="event-sink")
        self._thread.start()

    def close(self) -> None:
        """Stop the writer thread and flush remaining events."""

        if self._thread is not None:
            self._stop.set()
            self._thread.join(timeout=15)
            self._thread = None
        self.flush()

    def write(self, event: RelayEvent) -> None:
        try:
            self._buffer.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "Event buffer full, dropping %s event (cluster=%s job=%s run=%s)",
                event.type,
                event.cluster_id,
                event.job_id,
                event.run_id,
            )

    def flush(self) -> int:
        """Write every buffered event now; returns how many were persisted."""

        written = 0
        with self._flush_lock:
            while True:
                batch = self._take_batch()
                if not batch:
                    return written
                if self._write_batch(batch):
                    written += len(batch)

    def list_events(
        self,
        *,
        cluster_id: str,
        job_id: str | None = None,
        run_id: str | None = None,
        limit: int = 200,
    ) -> list[RelayEvent]:
        with Session(self.engine) as session:
            statement = select(EventRow).where(EventRow.cluster_id == cluster_id)
            if job_id is not None:
                statement = statement.where(EventRow.job_id == job_id)
            if run_id is not None:
                statement = statement.where(EventRow.run_id == run_id)
            rows = session.exec(statement.order_by(col(EventRow.id).asc()).limit(limit)).all()
        return [
            RelayEvent(
                type=row.type,
                cluster_id=row.cluster_id,
                job_id=row.job_id,
                run_id=row.run_id,
                machine_id=row.machine_id,
                target_fn=row.target_fn,
                result_type=row.result_type,
                status=row.status,
                meta=load_json(row.meta_json),
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self.flush_interval_seconds):
            try:
                self.flush()
            except Exception:
                logger.exception("Event sink flush failed")

    def _take_batch(self) -> list[RelayEvent]:
        batch: list[RelayEvent] = []
        while len(batch) < self.max_batch_size:
            try:
                batch.append(self._buffer.get_nowait())
            except queue.Empty:
                break
        return batch

    def _write_batch(self, batch: list[RelayEvent]) -> bool:
        for attempt in range(1, self.write_retries + 1):
            try:
                with Session(self.engine) as session:
                    session.add_all(
                        [
                            EventRow(
                                cluster_id=event.cluster_id,
                                type=event.type,
                                job_id=event.job_id,
                                run_id=event.run_id,
                                machine_id=event.machine_id,
                                target_fn=event.target_fn,
                                result_type=event.result_type,
                                status=event.status,
                                meta_json=dump_json(event.meta) if event.meta else None,
                                created_at=to_db_datetime(event.created_at),
                            )
                            for event in batch
                        ],
                    )
                    session.commit()
                return True
            except SQLAlchemyError:
                if attempt >= self.write_retries:
                    logger.exception(
                        "Dropping %d events after %d failed write attempts",
                        len(batch),
                        attempt,
                    )
                    self.dropped += len(batch)
                    return False
                logger.warning(
                    "Event batch write failed (attempt %d/%d), retrying",
                    attempt,
                    self.write_retries,
                )
                time.sleep(self.write_backoff_seconds * attempt)
        return False
