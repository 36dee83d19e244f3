"""HTTPS request against the mapped hostname using the bootstrapped trust root."""

from __future__ import annotations

import http.client
import json
import logging
import socket
from functools import partial
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import HTTPSHandler, ProxyHandler, Request, build_opener

from pydantic import ValidationError

from autotls.config import AppSettings, parse_host_port
from autotls.errors import AutoTLSCheckError, VerificationError
from autotls.models.runtime_contracts import RuntimeInfo
from autotls.services.certificates import TrustRoot
from autotls.services.kubectl import ClusterClient

LOGGER = logging.getLogger("autotls.verifier")

_MAX_BODY_PREVIEW = 200


class _IngressHTTPSConnection(http.client.HTTPSConnection):
    """Dials a fixed ingress address while presenting the request host for SNI."""

    def __init__(
        self,
        host: str,
        *,
        dial_address: tuple[str, int],
        tls_context: Any,
        **kwargs: Any,
    ) -> None:
        super().__init__(host, context=tls_context, **kwargs)
        self._dial_address = dial_address
        self._tls_context = tls_context

    def connect(self) -> None:
        sock = socket.create_connection(self._dial_address, self.timeout, self.source_address)
        self.sock = self._tls_context.wrap_socket(sock, server_hostname=self.host)


class _IngressHTTPSHandler(HTTPSHandler):
    def __init__(self, *, tls_context: Any, dial_address: tuple[str, int]) -> None:
        super().__init__(context=tls_context)
        self._tls_context = tls_context
        self._dial_address = dial_address

    def https_open(self, req: Request) -> http.client.HTTPResponse:
        connection_class = partial(
            _IngressHTTPSConnection,
            dial_address=self._dial_address,
            tls_context=self._tls_context,
        )
        return self.do_open(connection_class, req)


def resolve_ingress_endpoint(settings: AppSettings, cluster: ClusterClient) -> tuple[str, int] | None:
    """Where to dial for the mapped hostname: explicit endpoint, gateway load balancer, or DNS."""
    if settings.ingress_endpoint is not None:
        return parse_host_port(settings.ingress_endpoint)
    if settings.ingress_gateway_service is None:
        return None

    namespace, _, name = settings.ingress_gateway_service.partition("/")
    service = cluster.get("services", name, namespace=namespace)
    ingresses = ((service.get("status", {}) or {}).get("loadBalancer", {}) or {}).get("ingress", []) or []
    for entry in ingresses:
        address = entry.get("ip") or entry.get("hostname")
        if address:
            LOGGER.info("resolved ingress endpoint service=%s address=%s", settings.ingress_gateway_service, address)
            return address, 443
    raise AutoTLSCheckError(
        f"Ingress gateway service {settings.ingress_gateway_service} has no load balancer address"
    )


class RuntimeVerifier:
    def __init__(
        self,
        *,
        trust_root: TrustRoot,
        ingress_endpoint: tuple[str, int] | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._trust_root = trust_root
        self._ingress_endpoint = ingress_endpoint
        self._timeout_seconds = timeout_seconds

    def _build_opener(self) -> Any:
        context = self._trust_root.ssl_context()
        if self._ingress_endpoint is None:
            return build_opener(HTTPSHandler(context=context))
        return build_opener(
            ProxyHandler({}),
            _IngressHTTPSHandler(tls_context=context, dial_address=self._ingress_endpoint),
        )

    def runtime_request(self, url: str) -> RuntimeInfo:
        """GET `url` once and check it answers with the runtime image's info payload."""
        expected_host = (urlparse(url).hostname or "").lower()
        opener = self._build_opener()
        request = Request(url, method="GET", headers={"Accept": "application/json"})
        LOGGER.info("sending verification request url=%s endpoint=%s", url, self._ingress_endpoint)
        try:
            with opener.open(request, timeout=self._timeout_seconds) as response:
                status = response.status
                body = response.read()
        except HTTPError as exc:
            raise VerificationError(
                f"GET {url} returned an error status",
                expected="200",
                observed=str(exc.code),
            ) from exc
        except (URLError, OSError, http.client.HTTPException) as exc:
            reason = getattr(exc, "reason", exc)
            raise VerificationError(f"GET {url} failed: {reason}") from exc

        if status != 200:
            raise VerificationError(f"GET {url} returned an unexpected status", expected="200", observed=str(status))

        preview = body[:_MAX_BODY_PREVIEW].decode("utf-8", errors="replace")
        try:
            info = RuntimeInfo.model_validate(json.loads(body))
        except (ValueError, ValidationError) as exc:
            raise VerificationError(
                f"GET {url} did not return runtime info",
                expected="runtime info JSON",
                observed=preview,
            ) from exc

        if info.request is None or info.host is None:
            raise VerificationError(
                f"GET {url} returned incomplete runtime info",
                expected="request and host sections",
                observed=preview,
            )
        observed_host = (info.request.host or "").lower().rsplit(":", 1)[0]
        if observed_host != expected_host:
            raise VerificationError(
                f"GET {url} was served for a different host",
                expected=expected_host,
                observed=info.request.host,
            )
        LOGGER.info("verification request succeeded url=%s", url)
        return info
