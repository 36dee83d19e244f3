"""Certificate lookup and trust-root construction for the verification request."""

from __future__ import annotations

import base64
import binascii
import logging
import ssl
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from autotls.errors import CertificateError, CertificateNotFoundError
from autotls.models.resources import ServiceState
from autotls.services.kubectl import ClusterClient, ResourceNotFoundError
from autotls.services.waiting import PollTimeoutError, poll_immediate

LOGGER = logging.getLogger("autotls.certificates")

CERTIFICATE_RESOURCE = "certificates.networking.internal.knative.dev"
SECRET_RESOURCE = "secrets"
ROUTE_LABEL_KEY = "serving.knative.dev/route"
PEM_CERTIFICATE_MARKER = "-----BEGIN CERTIFICATE-----"


class CertificateResolver(Protocol):
    def resolve(self, service: ServiceState) -> str:
        ...


@dataclass(frozen=True)
class FixedCertificateResolver:
    certificate_name: str

    def resolve(self, service: ServiceState) -> str:
        _ = service
        return self.certificate_name


class RouteLabelCertificateResolver:
    """Finds the single certificate labelled with the service's route."""

    def __init__(
        self,
        *,
        cluster: ClusterClient,
        interval_seconds: float,
        timeout_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cluster = cluster
        self._interval_seconds = interval_seconds
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._clock = clock

    def resolve(self, service: ServiceState) -> str:
        selector = f"{ROUTE_LABEL_KEY}={service.route_name}"
        found: list[str] = []

        def _condition() -> bool:
            items = self._cluster.list(
                CERTIFICATE_RESOURCE,
                namespace=service.namespace,
                label_selector=selector,
            )
            if not items:
                return False
            if len(items) > 1:
                names = sorted(str(item.get("metadata", {}).get("name")) for item in items)
                raise CertificateError(
                    f"Expected one certificate for route {service.route_name}, found {len(items)}: "
                    f"{', '.join(names)}"
                )
            found[:] = [str(items[0].get("metadata", {}).get("name", ""))]
            return bool(found[0])

        try:
            poll_immediate(
                interval_seconds=self._interval_seconds,
                timeout_seconds=self._timeout_seconds,
                condition=_condition,
                sleep=self._sleep,
                clock=self._clock,
            )
        except PollTimeoutError as exc:
            raise CertificateNotFoundError(
                f"No certificate labelled {selector} in namespace {service.namespace} "
                f"after {exc.elapsed_seconds:.1f}s"
            ) from exc
        return found[0]


@dataclass(frozen=True)
class TrustRoot:
    certificate_name: str
    namespace: str
    pem: str

    @property
    def certificate_count(self) -> int:
        return self.pem.count(PEM_CERTIFICATE_MARKER)

    def ssl_context(self) -> ssl.SSLContext:
        """
        System roots plus the fetched material; hostname checks stay on.

        Every fetched certificate is a trust anchor, so a secret holding only the
        leaf still verifies the served chain.
        """
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        try:
            context.load_verify_locations(cadata=self.pem)
        except ssl.SSLError as exc:
            raise CertificateError(
                f"Certificate {self.namespace}/{self.certificate_name} holds unusable CA material: {exc}"
            ) from exc
        context.verify_flags |= ssl.VERIFY_X509_PARTIAL_CHAIN
        return context


def build_trust_root(*, certificate_name: str, namespace: str, pem: str) -> TrustRoot:
    if PEM_CERTIFICATE_MARKER not in pem:
        raise CertificateError(
            f"Certificate {namespace}/{certificate_name} does not contain PEM certificates"
        )
    trust_root = TrustRoot(certificate_name=certificate_name, namespace=namespace, pem=pem)
    trust_root.ssl_context()
    return trust_root


def load_trust_root(
    cluster: ClusterClient,
    *,
    namespace: str,
    certificate_name: str,
    data_key: str = "tls.crt",
) -> TrustRoot:
    """Read the certificate's secret (same name as the certificate) and build a trust root."""
    try:
        secret = cluster.get(SECRET_RESOURCE, certificate_name, namespace=namespace)
    except ResourceNotFoundError as exc:
        raise CertificateNotFoundError(
            f"Secret for certificate {namespace}/{certificate_name} not found"
        ) from exc

    encoded = (secret.get("data", {}) or {}).get(data_key)
    if not encoded:
        raise CertificateError(
            f"Secret {namespace}/{certificate_name} has no {data_key!r} entry"
        )
    try:
        pem = base64.b64decode(encoded, validate=True).decode("ascii")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise CertificateError(
            f"Secret {namespace}/{certificate_name} entry {data_key!r} is not base64 PEM: {exc}"
        ) from exc

    trust_root = build_trust_root(certificate_name=certificate_name, namespace=namespace, pem=pem)
    LOGGER.info(
        "trust root built certificate=%s namespace=%s certificates=%s",
        certificate_name,
        namespace,
        trust_root.certificate_count,
    )
    return trust_root
