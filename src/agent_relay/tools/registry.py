"""Registered tool definitions and argument validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from agent_relay.errors import BadRequestError, InvalidJobArgumentsError
from agent_relay.storage.common import dump_json, load_json, to_db_datetime, utc_now
from agent_relay.storage.sqlmodel_models import ToolDefinitionRow


@dataclass(slots=True)
class CachePolicy:
    """Dedup identical calls by a key extracted from the arguments."""

    key_path: str
    ttl_seconds: int


@dataclass(slots=True)
class ToolConfig:
    timeout_seconds: int | None = None
    retry_count_on_stall: int | None = None
    cache: CachePolicy | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.timeout_seconds is not None:
            payload["timeoutSeconds"] = self.timeout_seconds
        if self.retry_count_on_stall is not None:
            payload["retryCountOnStall"] = self.retry_count_on_stall
        if self.cache is not None:
            payload["cache"] = {
                "keyPath": self.cache.key_path,
                "ttlSeconds": self.cache.ttl_seconds,
            }
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> ToolConfig:
        if not payload:
            return cls()
        raw_cache = payload.get("cache")
        cache = None
        if isinstance(raw_cache, dict):
            cache = CachePolicy(
                key_path=str(raw_cache["keyPath"]),
                ttl_seconds=int(raw_cache["ttlSeconds"]),
            )
        return cls(
            timeout_seconds=payload.get("timeoutSeconds"),
            retry_count_on_stall=payload.get("retryCountOnStall"),
            cache=cache,
        )


@dataclass(slots=True)
class ToolDefinition:
    cluster_id: str
    name: str
    description: str = ""
    schema: dict[str, Any] | None = None
    config: ToolConfig = field(default_factory=ToolConfig)


class ToolRegistry:
    """Read/write access to tool definitions for one database."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def upsert(self, definition: ToolDefinition) -> ToolDefinition:
        """Create or replace a tool definition after checking its schema is valid."""

        if definition.schema is not None:
            try:
                Draft202012Validator.check_schema(definition.schema)
            except SchemaError as error:
                raise BadRequestError(
                    f"Invalid argument schema for tool {definition.name}: {error.message}",
                ) from error
        if definition.config.cache is not None and definition.config.cache.ttl_seconds <= 0:
            raise BadRequestError(f"Cache TTL for tool {definition.name} must be > 0.")

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(ToolDefinitionRow).where(
                    ToolDefinitionRow.cluster_id == definition.cluster_id,
                    ToolDefinitionRow.name == definition.name,
                ),
            ).one_or_none()
            if row is None:
                row = ToolDefinitionRow(
                    cluster_id=definition.cluster_id,
                    name=definition.name,
                    created_at=now,
                    updated_at=now,
                )
            row.description = definition.description
            row.schema_json = dump_json(definition.schema)
            row.config_json = dump_json(definition.config.to_dict())
            row.updated_at = now
            session.add(row)
            session.commit()
        return definition

    def get(self, *, cluster_id: str, name: str) -> ToolDefinition | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ToolDefinitionRow).where(
                    ToolDefinitionRow.cluster_id == cluster_id,
                    ToolDefinitionRow.name == name,
                ),
            ).one_or_none()
        return _to_definition(row) if row is not None else None

    def list_tools(self, *, cluster_id: str) -> list[ToolDefinition]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ToolDefinitionRow)
                .where(ToolDefinitionRow.cluster_id == cluster_id)
                .order_by(col(ToolDefinitionRow.name).asc()),
            ).all()
        return [_to_definition(row) for row in rows]


def validate_arguments(definition: ToolDefinition, arguments: Any) -> None:
    """Raise ``InvalidJobArgumentsError`` listing every schema violation."""

    if definition.schema is None:
        return
    validator = Draft202012Validator(definition.schema)
    errors = sorted(
        validator.iter_errors(arguments),
        key=lambda item: [str(part) for part in item.absolute_path],
    )
    if not errors:
        return
    details = "; ".join(
        f"{'/'.join(str(part) for part in error.absolute_path) or '<root>'}: {error.message}"
        for error in errors
    )
    raise InvalidJobArgumentsError(
        f"Arguments for {definition.name} do not match its schema: {details}",
    )


def _to_definition(row: ToolDefinitionRow) -> ToolDefinition:
    return ToolDefinition(
        cluster_id=row.cluster_id,
        name=row.name,
        description=row.description,
        schema=load_json(row.schema_json),
        config=ToolConfig.from_dict(load_json(row.config_json)),
    )
