"""Observability helpers."""

from agent_telemetry.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_processing,
    record_records_extracted,
    record_parser_failure,
    record_sync_result,
    record_tokens,
    record_data_quality,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_processing",
    "record_records_extracted",
    "record_parser_failure",
    "record_sync_result",
    "record_tokens",
    "record_data_quality",
]
