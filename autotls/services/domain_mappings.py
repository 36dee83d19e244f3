"""DomainMapping creation and readiness for the service under test."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from autotls.config import DEFAULT_CUSTOM_DOMAIN, AppSettings
from autotls.errors import ReadinessTimeoutError, ResourceFailedError
from autotls.models.resources import DomainMappingState, ResourcePhase, ServiceState
from autotls.services.knative_services import SERVICE_API_VERSION, SERVICE_KIND
from autotls.services.kubectl import ClusterClient, KubectlError, is_transient_error
from autotls.services.teardown import TearDown
from autotls.services.waiting import PollTimeoutError, poll_immediate, retry_errors

LOGGER = logging.getLogger("autotls.domain_mappings")

DOMAIN_MAPPING_KIND = "DomainMapping"
DOMAIN_MAPPING_RESOURCE = "domainmappings.serving.knative.dev"


def mapping_host(service_name: str, custom_domain: str | None = None) -> str:
    """Hostname for the mapping; the service name keeps parallel runs from colliding."""
    return f"{service_name}.{custom_domain or DEFAULT_CUSTOM_DOMAIN}"


def build_domain_mapping_manifest(
    *,
    host: str,
    service: ServiceState,
    api_version: str,
) -> dict[str, Any]:
    return {
        "apiVersion": api_version,
        "kind": DOMAIN_MAPPING_KIND,
        "metadata": {"name": host, "namespace": service.namespace},
        "spec": {
            "ref": {
                "namespace": service.namespace,
                "name": service.name,
                "apiVersion": SERVICE_API_VERSION,
                "kind": SERVICE_KIND,
            }
        },
    }


class DomainMappingManager:
    def __init__(
        self,
        *,
        cluster: ClusterClient,
        settings: AppSettings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        deadline: float | None = None,
    ) -> None:
        self._cluster = cluster
        self._settings = settings
        self._sleep = sleep
        self._clock = clock
        self._deadline = deadline

    def create(self, *, host: str, service: ServiceState, teardown: TearDown) -> DomainMappingState:
        manifest = build_domain_mapping_manifest(
            host=host,
            service=service,
            api_version=self._settings.domain_mapping_api_version,
        )

        def _create(attempt: int) -> dict[str, Any]:
            if attempt:
                LOGGER.info("retrying domain mapping create name=%s attempt=%s", host, attempt + 1)
            return self._cluster.create(manifest)

        try:
            created = retry_errors(
                _create,
                is_retryable=is_transient_error,
                delay_seconds=self._settings.create_retry_delay_seconds,
                deadline=self._deadline,
                sleep=self._sleep,
                clock=self._clock,
            )
        except KubectlError as exc:
            raise KubectlError(
                f"Create(DomainMapping {host}) failed: {exc}",
                reason=exc.reason,
                retryable=exc.retryable,
            ) from exc

        state = DomainMappingState.from_manifest(created)
        name = state.name or host
        namespace = state.namespace or service.namespace
        teardown.register(
            f"{DOMAIN_MAPPING_RESOURCE}/{name}",
            lambda: self.delete(name, namespace=namespace),
        )
        LOGGER.info("domain mapping created name=%s target=%s", name, service.name)
        return state

    def get(self, name: str, *, namespace: str) -> DomainMappingState:
        return DomainMappingState.from_manifest(
            self._cluster.get(DOMAIN_MAPPING_RESOURCE, name, namespace=namespace)
        )

    def await_ready(self, name: str, *, namespace: str) -> DomainMappingState:
        latest: list[DomainMappingState] = []

        def _condition() -> bool:
            state = self.get(name, namespace=namespace)
            latest[:] = [state]
            if state.phase is ResourcePhase.FAILED:
                ready = state.condition("Ready")
                raise ResourceFailedError(
                    kind=DOMAIN_MAPPING_KIND,
                    name=name,
                    reason=ready.reason if ready else None,
                    message=ready.message if ready else None,
                )
            return state.is_ready

        LOGGER.info("waiting for domain mapping name=%s", name)
        try:
            poll_immediate(
                interval_seconds=self._settings.poll_interval_seconds,
                timeout_seconds=self._settings.poll_timeout_seconds,
                condition=_condition,
                sleep=self._sleep,
                clock=self._clock,
            )
        except PollTimeoutError as exc:
            raise ReadinessTimeoutError(
                kind=DOMAIN_MAPPING_KIND,
                name=name,
                condition="Ready",
                elapsed_seconds=exc.elapsed_seconds,
            ) from exc
        return latest[-1]

    def delete(self, name: str, *, namespace: str) -> None:
        self._cluster.delete(DOMAIN_MAPPING_RESOURCE, name, namespace=namespace)
