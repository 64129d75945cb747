"""Turns capture-agent messages into canonical SyncEvents.

Two wire shapes are accepted:

* the envelope form, ``{"before": ..., "after": ..., "op": "c", "source": {"ts_ms": ...}}``
* the flattened form, where the record columns sit at the top level next to
  ``__``-prefixed metadata such as ``__op`` and ``__source_ts_ms``.

Either may arrive wrapped in an SNS notification.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any
from uuid import NAMESPACE_URL, uuid4, uuid5

from pydantic import ValidationError

from syncbridge.core.exceptions import MalformedEventError
from syncbridge.core.logger import get_logger
from syncbridge.schemas.sync_event import CURRENT_SCHEMA_VERSION, Operation, Provenance, SyncEvent

logger = get_logger(component="EventParser")

PROVENANCE_FIELD = "source"

_OPERATION_CODES: dict[str, Operation] = {
    "c": Operation.CREATE,
    "r": Operation.CREATE,
    "u": Operation.UPDATE,
    "d": Operation.DELETE,
}


def decode_message(raw_message: bytes | str | Mapping[str, Any]) -> dict[str, Any]:
    """Decode a transport body, unwrapping an SNS notification if present."""
    if isinstance(raw_message, Mapping):
        payload: Any = dict(raw_message)
    else:
        try:
            payload = json.loads(raw_message)
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"Message is not valid JSON: {exc}") from exc

    if isinstance(payload, dict) and payload.get("Type") == "Notification" and "Message" in payload:
        inner = payload["Message"]
        if isinstance(inner, str):
            try:
                payload = json.loads(inner)
            except ValueError as exc:
                raise MalformedEventError(f"SNS message body is not valid JSON: {exc}") from exc
        else:
            payload = inner

    if not isinstance(payload, dict):
        raise MalformedEventError(f"Expected a JSON object, got {type(payload).__name__}")
    return payload


def table_name_from_channel(channel: str) -> str:
    """``legacy.public.a_users`` and ``a_users`` both name the table ``a_users``."""
    return channel.removesuffix(".fifo").rsplit(".", 1)[-1]


def extract_entity_type(
    channel: str,
    prefixes: Mapping[Provenance, str],
    *,
    strict: bool = False,
) -> tuple[str, Provenance | None]:
    """Strip the per-system prefix from the channel's table name.

    Returns the entity type and the system whose prefix matched, if any.
    """
    table_name = table_name_from_channel(channel)
    # Longest prefix first so that "a_" never shadows e.g. "a_archive_".
    for system, prefix in sorted(prefixes.items(), key=lambda item: len(item[1]), reverse=True):
        if prefix and table_name.startswith(prefix) and len(table_name) > len(prefix):
            return table_name[len(prefix):], system

    if strict:
        raise MalformedEventError(f"Channel {channel!r} carries no known system prefix")
    logger.warning(
        "Channel has no recognised system prefix, using raw table name as entity type",
        channel=channel,
        table_name=table_name,
    )
    return table_name, None


def _is_envelope(message: Mapping[str, Any]) -> bool:
    return "before" in message or "after" in message


def _operation_code(message: Mapping[str, Any], envelope: bool) -> str:
    code = message.get("__op") or message.get("op")
    if code is None and not envelope:
        # Unwrapped deletes may only carry the rewrite marker.
        deleted = str(message.get("__deleted", "")).lower()
        code = "d" if deleted == "true" else "r"
    if not isinstance(code, str):
        raise MalformedEventError(f"Missing or invalid operation code: {code!r}")
    return code


def _map_operation(code: str) -> Operation:
    try:
        return _OPERATION_CODES[code]
    except KeyError:
        raise MalformedEventError(f"Unknown operation code: {code!r}") from None


def _source_ts_ms(message: Mapping[str, Any]) -> int | None:
    source = message.get("source")
    candidates = [
        message.get("__source_ts_ms"),
        source.get("ts_ms") if isinstance(source, Mapping) else None,
        message.get("ts_ms"),
    ]
    for candidate in candidates:
        if isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
            return int(candidate)
    return None


def _parse_provenance(value: Any, fallback: Provenance | None) -> Provenance:
    if value is None:
        if fallback is None:
            raise MalformedEventError("Record carries no provenance tag and the origin system is unknown")
        return fallback
    try:
        return Provenance(value)
    except ValueError:
        raise MalformedEventError(f"Invalid provenance tag: {value!r}") from None


def _derive_event_id(
    channel: str,
    operation: Operation,
    primary_key: Any,
    ts_ms: int | None,
    payload: Mapping[str, Any],
) -> str:
    if ts_ms is None:
        return str(uuid4())
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    name = f"{channel}|{operation.value}|{primary_key}|{ts_ms}|{canonical}"
    return str(uuid5(NAMESPACE_URL, name))


def parse_sync_event(
    raw_message: bytes | str | Mapping[str, Any],
    source_channel: str,
    *,
    prefixes: Mapping[Provenance, str],
    origin: Provenance | None = None,
    strict_prefix: bool = False,
) -> SyncEvent:
    """Build a SyncEvent from one capture message received on ``source_channel``.

    Raises:
        MalformedEventError: the body is not a JSON object, the operation code is
            unknown, the record id is absent, or the provenance tag is invalid.
    """
    message = decode_message(raw_message)
    envelope = _is_envelope(message)
    operation = _map_operation(_operation_code(message, envelope))

    if envelope:
        before = message.get("before")
        after = message.get("after")
        record = (before or after) if operation is Operation.DELETE else (after or before)
        if not isinstance(record, Mapping):
            raise MalformedEventError("Envelope carries no record snapshot")
        payload = dict(record)
    else:
        payload = {key: value for key, value in message.items() if not key.startswith("__")}

    primary_key = payload.get("id")
    if primary_key is None or primary_key == "":
        raise MalformedEventError("Record identifier 'id' not found in payload")

    entity_type, prefixed_system = extract_entity_type(source_channel, prefixes, strict=strict_prefix)
    provenance = _parse_provenance(payload.get(PROVENANCE_FIELD), prefixed_system or origin)

    ts_ms = _source_ts_ms(message)
    occurred_at = (
        datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc) if ts_ms is not None else datetime.now(tz=timezone.utc)
    )
    schema_version = message.get("schema_version") or CURRENT_SCHEMA_VERSION

    try:
        return SyncEvent(
            event_id=_derive_event_id(source_channel, operation, primary_key, ts_ms, payload),
            entity_type=entity_type,
            operation=operation,
            primary_key=primary_key,
            payload=payload,
            provenance=provenance,
            schema_version=str(schema_version),
            occurred_at=occurred_at,
            metadata={
                "channel": source_channel,
                "operation_code": message.get("__op") or message.get("op"),
                "source_ts_ms": ts_ms,
            },
        )
    except ValidationError as exc:
        raise MalformedEventError(f"Event failed validation: {exc}") from exc
