"""Provisioning and readiness tracking for the Knative Service under test."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from autotls.config import AppSettings, ResourceNames
from autotls.errors import AutoTLSCheckError, ProvisioningError, ReadinessTimeoutError, ResourceFailedError
from autotls.models.resources import ResourcePhase, ServiceState
from autotls.services.kubectl import ClusterClient
from autotls.services.teardown import TearDown
from autotls.services.waiting import PollTimeoutError, poll_immediate

LOGGER = logging.getLogger("autotls.services")

SERVICE_API_VERSION = "serving.knative.dev/v1"
SERVICE_KIND = "Service"
SERVICE_RESOURCE = "services.serving.knative.dev"

ServicePredicate = Callable[[ServiceState], bool]


def is_service_ready(service: ServiceState) -> bool:
    if service.phase is ResourcePhase.FAILED:
        ready = service.condition("Ready")
        raise ResourceFailedError(
            kind=SERVICE_KIND,
            name=service.name,
            reason=ready.reason if ready else None,
            message=ready.message if ready else None,
        )
    return service.is_ready


def https_ready(service: ServiceState) -> bool:
    """Ready and already serving an https URL; TLS is attached after plain readiness."""
    if not is_service_ready(service):
        return False
    return service.url_scheme == "https"


def build_service_manifest(*, names: ResourceNames, namespace: str, image_path: str) -> dict[str, Any]:
    return {
        "apiVersion": SERVICE_API_VERSION,
        "kind": SERVICE_KIND,
        "metadata": {"name": names.service, "namespace": namespace},
        "spec": {
            "template": {
                "spec": {
                    "containers": [{"image": image_path}],
                }
            }
        },
    }


class ServiceProvisioner:
    def __init__(
        self,
        *,
        cluster: ClusterClient,
        settings: AppSettings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cluster = cluster
        self._settings = settings
        self._sleep = sleep
        self._clock = clock

    @property
    def namespace(self) -> str:
        return self._settings.namespace

    def create_service_ready(self, names: ResourceNames, *, teardown: TearDown) -> ServiceState:
        manifest = build_service_manifest(
            names=names,
            namespace=self.namespace,
            image_path=self._settings.image_path,
        )
        try:
            self._cluster.create(manifest)
        except AutoTLSCheckError as exc:
            raise ProvisioningError(f"Failed to create initial Service {names.service}: {exc}") from exc

        teardown.register(
            f"{SERVICE_RESOURCE}/{names.service}",
            lambda: self.delete(names.service),
        )
        LOGGER.info(
            "service created name=%s namespace=%s image=%s",
            names.service,
            self.namespace,
            self._settings.image_path,
        )

        try:
            return self.wait_for_service_state(names.service, is_service_ready, "Ready")
        except AutoTLSCheckError as exc:
            raise ProvisioningError(f"Service {names.service} did not become ready: {exc}") from exc

    def get(self, name: str) -> ServiceState:
        return ServiceState.from_manifest(
            self._cluster.get(SERVICE_RESOURCE, name, namespace=self.namespace)
        )

    def wait_for_service_state(
        self,
        name: str,
        predicate: ServicePredicate,
        description: str,
    ) -> ServiceState:
        """Poll the service until `predicate` holds; read errors and terminal failures are fatal."""
        latest: list[ServiceState] = []

        def _condition() -> bool:
            state = self.get(name)
            latest[:] = [state]
            return predicate(state)

        LOGGER.info("waiting for service name=%s condition=%s", name, description)
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
                kind=SERVICE_KIND,
                name=name,
                condition=description,
                elapsed_seconds=exc.elapsed_seconds,
            ) from exc
        return latest[-1]

    def delete(self, name: str) -> None:
        self._cluster.delete(SERVICE_RESOURCE, name, namespace=self.namespace)
