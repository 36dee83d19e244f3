"""Cluster access through kubectl."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Optional, Protocol

from autotls.errors import AutoTLSCheckError

LOGGER = logging.getLogger("autotls.kubectl")

_SERVER_REASON_RE = re.compile(r"Error from server \((?P<reason>[A-Za-z]+)\)")
TRANSIENT_REASONS: frozenset[str] = frozenset(
    {
        "Conflict",
        "InternalError",
        "ServerTimeout",
        "ServiceUnavailable",
        "Timeout",
        "TooManyRequests",
    }
)
_TRANSIENT_MARKERS: tuple[str, ...] = (
    "failed calling webhook",
    "connection refused",
    "connection reset by peer",
    "i/o timeout",
    "unexpected EOF",
    "TLS handshake timeout",
    "the object has been modified",
)


class KubectlError(AutoTLSCheckError):
    def __init__(self, message: str, *, reason: str | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.reason = reason
        self.retryable = retryable


class ResourceNotFoundError(KubectlError):
    def __init__(self, message: str) -> None:
        super().__init__(message, reason="NotFound", retryable=False)


class ClusterClient(Protocol):
    def create(self, manifest: Mapping[str, Any]) -> dict[str, Any]:
        ...

    def get(self, kind: str, name: str, *, namespace: str) -> dict[str, Any]:
        ...

    def list(
        self,
        kind: str,
        *,
        namespace: str,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        ...

    def delete(self, kind: str, name: str, *, namespace: str) -> None:
        ...


def is_transient_error(error: BaseException) -> bool:
    """Classify API errors worth retrying: conflicts, webhook hiccups, overloaded servers."""
    if isinstance(error, KubectlError):
        return error.retryable
    return False


def classify_kubectl_failure(stderr: str) -> KubectlError:
    message = stderr.strip() or "kubectl command failed"
    match = _SERVER_REASON_RE.search(message)
    reason = match.group("reason") if match else None
    if reason == "NotFound":
        return ResourceNotFoundError(message)
    retryable = reason in TRANSIENT_REASONS or any(
        marker.lower() in message.lower() for marker in _TRANSIENT_MARKERS
    )
    return KubectlError(message, reason=reason, retryable=retryable)


def resource_kind(manifest: Mapping[str, Any]) -> str:
    """Return the `plural.group` kubectl resource name for a manifest's kind."""
    kind = str(manifest.get("kind", "")).lower()
    api_version = str(manifest.get("apiVersion", ""))
    group = api_version.rpartition("/")[0]
    plural = kind if kind.endswith("s") else f"{kind}s"
    return f"{plural}.{group}" if group else plural


class KubectlClient:
    """Thin wrapper around kubectl returning parsed JSON objects."""

    def __init__(
        self,
        *,
        kubectl_binary: str = "kubectl",
        kubeconfig: Optional[Path] = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.kubectl_binary = kubectl_binary
        self.kubeconfig_path = kubeconfig
        self.timeout_seconds = timeout_seconds

    def create(self, manifest: Mapping[str, Any]) -> dict[str, Any]:
        """Create a resource from a manifest and return the stored object."""
        args = ["create", "-f", "-", "-o", "json"]
        metadata = manifest.get("metadata", {})
        namespace = metadata.get("namespace")
        LOGGER.info("creating resource kind=%s name=%s", resource_kind(manifest), metadata.get("name"))
        if namespace:
            args.extend(["-n", str(namespace)])
        return self._run_json(args, input_data=json.dumps(manifest))

    def get(self, kind: str, name: str, *, namespace: str) -> dict[str, Any]:
        return self._run_json(["get", kind, name, "-n", namespace, "-o", "json"])

    def list(
        self,
        kind: str,
        *,
        namespace: str,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        args = ["get", kind, "-n", namespace, "-o", "json"]
        if label_selector:
            args.extend(["-l", label_selector])
        payload = self._run_json(args)
        return list(payload.get("items", []))

    def delete(self, kind: str, name: str, *, namespace: str) -> None:
        self._run_kubectl(["delete", kind, name, "-n", namespace, "--wait=false"])

    def _run_json(self, args: Sequence[str], input_data: Optional[str] = None) -> dict[str, Any]:
        output = self._run_kubectl(args, input_data=input_data)
        if not output:
            return {}
        try:
            payload = json.loads(output)
        except json.JSONDecodeError as exc:
            raise KubectlError(f"kubectl returned invalid JSON for {' '.join(args)}: {exc}") from exc
        if not isinstance(payload, dict):
            raise KubectlError(f"kubectl returned a non-object payload for {' '.join(args)}")
        return payload

    def _run_kubectl(self, args: Sequence[str], input_data: Optional[str] = None) -> str:
        command = [self.kubectl_binary]
        if self.kubeconfig_path is not None:
            command.append(f"--kubeconfig={self.kubeconfig_path}")
        command.extend(args)
        LOGGER.debug("running kubectl args=%s", " ".join(args))
        try:
            result = subprocess.run(
                command,
                input=input_data,
                text=True,
                capture_output=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise KubectlError(
                f"kubectl {' '.join(args)} timed out after {self.timeout_seconds}s",
                reason="Timeout",
                retryable=True,
            ) from exc
        except OSError as exc:
            raise KubectlError(f"Failed to run {self.kubectl_binary}: {exc}") from exc
        if result.returncode != 0:
            raise classify_kubectl_failure(result.stderr)
        return result.stdout.strip()
