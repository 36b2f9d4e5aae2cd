"""Job creation: argument validation, cache-then-create, idempotent insert."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from agent_relay.errors import InvalidJobArgumentsError, NotFoundError
from agent_relay.events.sink import EventSink, RelayEvent
from agent_relay.jobs.models import CreatedJob, CreateJobRequest, JobInsert
from agent_relay.jobs.packer import pack, unpack
from agent_relay.jobs.paths import KeyPathError, extract_key
from agent_relay.jobs.store import JobStore
from agent_relay.tools.registry import ToolDefinition, ToolRegistry, validate_arguments

logger = logging.getLogger(__name__)


class JobCreationService:
    """Builds new job rows from a tool call."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        registry: ToolRegistry,
        events: EventSink,
        default_retry_count_on_stall: int = 0,
        schema_unavailable_retries: int = 3,
        schema_unavailable_backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.registry = registry
        self.events = events
        self.default_retry_count_on_stall = default_retry_count_on_stall
        self.schema_unavailable_retries = schema_unavailable_retries
        self.schema_unavailable_backoff_seconds = schema_unavailable_backoff_seconds
        self._sleep = sleep

    def create_job(self, request: CreateJobRequest) -> CreatedJob:
        definition = self._lookup_tool(cluster_id=request.cluster_id, name=request.target_fn)
        arguments = _decode_arguments(request.target_args)
        validate_arguments(definition, arguments)

        config = definition.config
        retry_count = (
            config.retry_count_on_stall
            if config.retry_count_on_stall is not None
            else self.default_retry_count_on_stall
        )
        cache_key: str | None = None
        if config.cache is not None:
            try:
                cache_key = extract_key(arguments, config.cache.key_path)
            except KeyPathError as error:
                raise InvalidJobArgumentsError(
                    f"Failed to extract cache key for {definition.name}: {error}",
                ) from error
            cached = self.store.find_cached(
                cluster_id=request.cluster_id,
                target_fn=definition.name,
                cache_key=cache_key,
                ttl_seconds=config.cache.ttl_seconds,
            )
            if cached is not None:
                logger.info(
                    "Cache hit for %s (cluster=%s cache_key=%s job_id=%s)",
                    definition.name,
                    request.cluster_id,
                    cache_key,
                    cached.id,
                )
                return CreatedJob(id=cached.id, created=False)

        try:
            packed_arguments = pack(arguments)
        except (TypeError, ValueError) as error:
            raise InvalidJobArgumentsError(
                f"Arguments for {definition.name} are not serializable: {error}",
            ) from error

        job_id = request.job_id or str(uuid4())
        created = self.store.insert(
            JobInsert(
                cluster_id=request.cluster_id,
                job_id=job_id,
                target_fn=definition.name,
                target_args=packed_arguments,
                remaining_attempts=retry_count + 1,
                timeout_interval_seconds=config.timeout_seconds,
                cache_key=cache_key,
                run_id=request.run_id,
                auth_context=request.auth_context,
                run_context=request.run_context,
            ),
        )
        if not created:
            existing = self.store.get(cluster_id=request.cluster_id, job_id=job_id)
            if existing is None:
                raise NotFoundError(
                    f"Job {job_id} could not be created in cluster {request.cluster_id}.",
                )
            return CreatedJob(id=existing.id, created=False)

        self.events.write(
            RelayEvent(
                type="jobCreated",
                cluster_id=request.cluster_id,
                job_id=job_id,
                run_id=request.run_id,
                target_fn=definition.name,
                meta={"cacheKey": cache_key} if cache_key is not None else None,
            ),
        )
        return CreatedJob(id=job_id, created=True)

    def _lookup_tool(self, *, cluster_id: str, name: str) -> ToolDefinition:
        # Registration and job creation are not transactional; a tool registered
        # a moment ago may not be visible yet.
        attempts = max(0, self.schema_unavailable_retries) + 1
        for attempt in range(1, attempts + 1):
            definition = self.registry.get(cluster_id=cluster_id, name=name)
            if definition is not None:
                return definition
            if attempt < attempts:
                logger.debug(
                    "Tool %s not registered yet (attempt %d/%d)",
                    name,
                    attempt,
                    attempts,
                )
                self._sleep(self.schema_unavailable_backoff_seconds)
        raise NotFoundError(f"Tool {name} is not registered in cluster {cluster_id}.")


def _decode_arguments(raw: Any) -> Any:
    if isinstance(raw, str):
        return unpack(raw)
    if raw is None:
        return {}
    return raw
