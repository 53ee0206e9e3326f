"""Error kinds for the heat engine.

Read and analytics paths never propagate store failures to callers: they log
the failure with its operation name and key ids and return a safe default.
Result objects that have room for it carry the classified ``ErrorKind`` so
callers can tell "no data" from "store down" without reading logs.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import psycopg

from story_heat.metrics import record_degraded


class ErrorKind(str, Enum):
    storage_unavailable = "storage_unavailable"
    schema_evolution_failure = "schema_evolution_failure"
    query_failure = "query_failure"
    not_found = "not_found"


class StoryHeatError(Exception):
    kind: ErrorKind = ErrorKind.query_failure


class StorageUnavailable(StoryHeatError):
    kind = ErrorKind.storage_unavailable


class SchemaEvolutionFailure(StoryHeatError):
    kind = ErrorKind.schema_evolution_failure

    def __init__(self, migration_name: str, message: str) -> None:
        super().__init__(f"{migration_name}: {message}")
        self.migration_name = migration_name


class QueryFailure(StoryHeatError):
    kind = ErrorKind.query_failure


# Store errors that public operations convert into a degraded default.
DEGRADABLE_ERRORS: tuple[type[BaseException], ...] = (psycopg.Error, StoryHeatError)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, StoryHeatError):
        return exc.kind
    # Connection loss, pool exhaustion and statement timeouts all surface here.
    if isinstance(exc, (psycopg.OperationalError, psycopg.InterfaceError)):
        return ErrorKind.storage_unavailable
    return ErrorKind.query_failure


def log_degraded(
    logger: logging.Logger,
    operation: str,
    exc: BaseException,
    **context: Any,
) -> ErrorKind:
    """Log a swallowed failure and return its kind."""
    kind = classify_error(exc)
    logger.error(
        "%s failed: %s",
        operation,
        kind.value,
        exc_info=exc,
        extra={"operation": operation, "error_kind": kind.value, **context},
    )
    record_degraded(operation, kind.value)
    return kind
