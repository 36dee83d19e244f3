from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import urlparse

READY_CONDITION = "Ready"


class ResourcePhase(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    reason: str | None = None
    message: str | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Condition:
        return cls(
            type=str(raw.get("type", "")),
            status=str(raw.get("status", "Unknown")),
            reason=raw.get("reason"),
            message=raw.get("message"),
        )


def _conditions(status: Mapping[str, Any]) -> tuple[Condition, ...]:
    return tuple(
        Condition.from_dict(item)
        for item in status.get("conditions", []) or []
        if isinstance(item, Mapping)
    )


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


@dataclass(frozen=True)
class _ConditionedResource:
    name: str
    namespace: str
    generation: int | None
    observed_generation: int | None
    conditions: tuple[Condition, ...]
    url: str | None

    def condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    @property
    def phase(self) -> ResourcePhase:
        ready = self.condition(READY_CONDITION)
        if ready is None:
            return ResourcePhase.PENDING
        # Conditions for an older generation say nothing about the current spec.
        if (
            self.generation is not None
            and self.observed_generation is not None
            and self.observed_generation < self.generation
        ):
            return ResourcePhase.PENDING
        if ready.status == "False":
            return ResourcePhase.FAILED
        if ready.status != "True":
            return ResourcePhase.PENDING
        return ResourcePhase.READY

    @property
    def is_ready(self) -> bool:
        return self.phase is ResourcePhase.READY

    @property
    def url_scheme(self) -> str | None:
        if not self.url:
            return None
        return urlparse(self.url).scheme or None


@dataclass(frozen=True)
class ServiceState(_ConditionedResource):
    """Observed state of a Knative Service."""

    route_name: str = ""

    @classmethod
    def from_manifest(cls, manifest: Mapping[str, Any]) -> ServiceState:
        metadata = manifest.get("metadata", {}) or {}
        status = manifest.get("status", {}) or {}
        name = str(metadata.get("name", ""))
        return cls(
            name=name,
            namespace=str(metadata.get("namespace", "")),
            generation=_optional_int(metadata.get("generation")),
            observed_generation=_optional_int(status.get("observedGeneration")),
            conditions=_conditions(status),
            url=status.get("url"),
            route_name=name,
        )


@dataclass(frozen=True)
class DomainMappingState(_ConditionedResource):
    """Observed state of a DomainMapping."""

    ref_name: str | None = None

    @classmethod
    def from_manifest(cls, manifest: Mapping[str, Any]) -> DomainMappingState:
        metadata = manifest.get("metadata", {}) or {}
        status = manifest.get("status", {}) or {}
        ref = (manifest.get("spec", {}) or {}).get("ref", {}) or {}
        return cls(
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace", "")),
            generation=_optional_int(metadata.get("generation")),
            observed_generation=_optional_int(status.get("observedGeneration")),
            conditions=_conditions(status),
            url=status.get("url"),
            ref_name=ref.get("name"),
        )
