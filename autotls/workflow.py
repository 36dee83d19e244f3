"""The domain-mapping auto-TLS check, start to finish."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from autotls.config import AppSettings, ResourceNames, resource_names_for_run
from autotls.models.runtime_contracts import RuntimeInfo
from autotls.services.certificates import (
    CertificateResolver,
    FixedCertificateResolver,
    RouteLabelCertificateResolver,
    load_trust_root,
)
from autotls.services.domain_mappings import DomainMappingManager, mapping_host
from autotls.services.knative_services import ServiceProvisioner, https_ready
from autotls.services.kubectl import ClusterClient
from autotls.services.teardown import TearDown
from autotls.services.verifier import RuntimeVerifier, resolve_ingress_endpoint
from autotls.telemetry import RunEvent, TelemetryClient

LOGGER = logging.getLogger("autotls.workflow")


@dataclass(frozen=True)
class CheckResult:
    service_name: str
    namespace: str
    host: str
    service_url: str | None
    certificate_name: str
    runtime_info: RuntimeInfo


def default_certificate_resolver(
    settings: AppSettings,
    cluster: ClusterClient,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> CertificateResolver:
    if settings.certificate_name is not None:
        return FixedCertificateResolver(settings.certificate_name)
    return RouteLabelCertificateResolver(
        cluster=cluster,
        interval_seconds=settings.poll_interval_seconds,
        timeout_seconds=settings.poll_timeout_seconds,
        sleep=sleep,
        clock=clock,
    )


class DomainMappingAutoTLSCheck:
    """
    Creates a service and a domain mapping for it, waits for TLS, and verifies
    an HTTPS request to the mapped host against the issued certificate.

    Both resources are deleted when `run` returns or raises.
    """

    def __init__(
        self,
        *,
        settings: AppSettings,
        cluster: ClusterClient,
        certificate_resolver: CertificateResolver | None = None,
        telemetry: TelemetryClient | None = None,
        names: ResourceNames | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._cluster = cluster
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._names = names
        self._sleep = sleep
        self._clock = clock
        self._certificate_resolver = certificate_resolver or default_certificate_resolver(
            settings, cluster, sleep=sleep, clock=clock
        )

    def run(self) -> CheckResult:
        settings = self._settings
        names = self._names or resource_names_for_run(settings)
        deadline = self._clock() + settings.run_timeout_seconds
        provisioner = ServiceProvisioner(
            cluster=self._cluster,
            settings=settings,
            sleep=self._sleep,
            clock=self._clock,
        )
        mappings = DomainMappingManager(
            cluster=self._cluster,
            settings=settings,
            sleep=self._sleep,
            clock=self._clock,
            deadline=deadline,
        )

        LOGGER.info("starting check service=%s namespace=%s", names.service, settings.namespace)
        with TearDown(telemetry=self._telemetry) as teardown:
            service = provisioner.create_service_ready(names, teardown=teardown)
            self._telemetry.emit(RunEvent.SERVICE_READY, service=service.name, url=service.url)

            host = mapping_host(service.name, settings.custom_domain)
            mapping = mappings.create(host=host, service=service, teardown=teardown)
            self._telemetry.emit(RunEvent.DOMAIN_MAPPING_CREATED, domain_mapping=mapping.name)

            mappings.await_ready(mapping.name, namespace=service.namespace)
            self._telemetry.emit(RunEvent.DOMAIN_MAPPING_READY, domain_mapping=mapping.name)

            # TLS is attached to the ingress after the mapping is ready, so wait again.
            service = provisioner.wait_for_service_state(service.name, https_ready, "HTTPSIsReady")
            self._telemetry.emit(RunEvent.SERVICE_HTTPS_READY, service=service.name, url=service.url)

            certificate_name = self._certificate_resolver.resolve(service)
            self._telemetry.emit(RunEvent.CERTIFICATE_RESOLVED, certificate=certificate_name)

            trust_root = load_trust_root(
                self._cluster,
                namespace=service.namespace,
                certificate_name=certificate_name,
                data_key=settings.certificate_data_key,
            )
            self._telemetry.emit(
                RunEvent.TRUST_ROOT_BUILT,
                certificate=certificate_name,
                certificates=trust_root.certificate_count,
            )

            verifier = RuntimeVerifier(
                trust_root=trust_root,
                ingress_endpoint=resolve_ingress_endpoint(settings, self._cluster),
                timeout_seconds=settings.http_timeout_seconds,
            )
            runtime_info = verifier.runtime_request(f"https://{host}")
            self._telemetry.emit(RunEvent.RUNTIME_REQUEST_VERIFIED, host=host)

        LOGGER.info("check succeeded service=%s host=%s", service.name, host)
        return CheckResult(
            service_name=service.name,
            namespace=service.namespace,
            host=host,
            service_url=service.url,
            certificate_name=certificate_name,
            runtime_info=runtime_info,
        )
