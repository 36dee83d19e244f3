"""Run-step events for a check: what was created, what became ready, what was cleaned up."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

import structlog

from autotls.config import AppSettings

AttributeValue = str | int | float | bool | None

_MAX_DETAIL_LENGTH = 240
_PEM_MARKER = "-----BEGIN "


class RunEvent(str, Enum):
    SERVICE_READY = "service.ready"
    DOMAIN_MAPPING_CREATED = "domain_mapping.created"
    DOMAIN_MAPPING_READY = "domain_mapping.ready"
    SERVICE_HTTPS_READY = "service.https_ready"
    CERTIFICATE_RESOLVED = "certificate.resolved"
    TRUST_ROOT_BUILT = "trust_root.built"
    RUNTIME_REQUEST_VERIFIED = "runtime_request.verified"
    TEARDOWN_DELETED = "teardown.deleted"
    TEARDOWN_SKIPPED = "teardown.skipped"
    TEARDOWN_FAILED = "teardown.failed"


@dataclass(frozen=True)
class RunEventRecord:
    event: RunEvent
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)


class TelemetrySink(Protocol):
    def record(self, event: RunEventRecord) -> None:
        ...


class LogTelemetrySink:
    """Writes each run event as one structured log line."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger("autotls.telemetry")

    def record(self, event: RunEventRecord) -> None:
        self._logger.info("run_event", run_event=event.event.value, **dict(event.attributes))


@dataclass(frozen=True)
class TelemetryClient:
    sink: TelemetrySink | None = None

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(sink=None)

    @property
    def enabled(self) -> bool:
        return self.sink is not None

    def emit(self, event: RunEvent, **attributes: AttributeValue) -> None:
        if self.sink is None:
            return
        self.sink.record(
            RunEventRecord(
                event=event,
                attributes={name: _detail(value) for name, value in attributes.items()},
            )
        )


def build_telemetry_client(settings: AppSettings) -> TelemetryClient:
    if not settings.telemetry_enabled or settings.telemetry_sink == "none":
        return TelemetryClient.disabled()
    return TelemetryClient(sink=LogTelemetrySink())


def _detail(value: AttributeValue) -> AttributeValue:
    # Error text may quote secret data back at us.
    if not isinstance(value, str):
        return value
    if _PEM_MARKER in value:
        return "[pem redacted]"
    compact = " ".join(value.split())
    if len(compact) <= _MAX_DETAIL_LENGTH:
        return compact
    return f"{compact[:_MAX_DETAIL_LENGTH]}..."
