from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CUSTOM_DOMAIN = "example.com"
DEFAULT_CHECK_NAME = "DomainMappingAutoTLS"
TLS_SERVICE_NAME_SUFFIX = "dm-tls"
RUNTIME_IMAGE = "runtime"
_RANDOM_SUFFIX_LENGTH = 8
_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = ("telemetry_enabled",)
_LOG_LEVEL_NAMES: tuple[str, ...] = tuple(
    logging.getLevelName(level)
    for level in (logging.CRITICAL, logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG)
)


class ConfigurationError(ValueError):
    """Startup configuration could not be loaded or validated."""


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if not normalized:
            return default
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"expected a boolean (true/false, yes/no, on/off, 1/0), got {value!r}")


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"expected text, got {type(value).__name__} {value!r}")
    normalized = value.strip()
    if normalized:
        return normalized
    return None


def _is_dns_label(value: str) -> bool:
    return len(value) <= 63 and _DNS_LABEL_RE.match(value) is not None


class AppSettings(BaseSettings):
    """
    Runtime configuration for one domain-mapping auto-TLS check.

    Every option is read once at startup from `AUTOTLS_*` environment variables,
    an optional `.env` file, or a YAML file passed to `load_settings`.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOTLS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Workload naming.
    tls_service_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("AUTOTLS_TLS_SERVICE_NAME", "TLS_SERVICE_NAME", "tls_service_name"),
        description=(
            "Fixed service name prefix. When set, the service is named "
            f"`<prefix>{TLS_SERVICE_NAME_SUFFIX}` instead of a random per-run name."
        ),
    )
    namespace: str = Field(
        default="tls",
        description="Namespace the service and domain mapping are created in.",
    )
    custom_domain: str | None = Field(
        default=None,
        description=f"Suffix domain for the mapped hostname. Defaults to `{DEFAULT_CUSTOM_DOMAIN}`.",
    )
    image: str = Field(
        default=RUNTIME_IMAGE,
        description="Test image name; must emit runtime info JSON on `/`.",
    )
    image_repository: str = Field(
        default="ko.local",
        validation_alias=AliasChoices("AUTOTLS_IMAGE_REPOSITORY", "KO_DOCKER_REPO", "image_repository"),
        description="Registry prefix the test image is pulled from.",
    )
    image_tag: str = Field(default="latest", description="Test image tag.")

    # Waiting.
    poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Delay between readiness polls.",
    )
    poll_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Upper bound for each readiness wait.",
    )
    create_retry_delay_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Delay between attempts when resource creation hits a transient API error.",
    )
    run_timeout_seconds: float = Field(
        default=1800.0,
        gt=0,
        description="Overall budget for the run; transient create retries stop here.",
    )

    # Cluster access.
    kubectl_binary: str = Field(default="kubectl", description="kubectl executable.")
    kubeconfig: Path | None = Field(
        default=None,
        description="Kubeconfig path passed to kubectl. Uses kubectl defaults when unset.",
    )
    kubectl_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single kubectl invocation.",
    )
    domain_mapping_api_version: str = Field(
        default="serving.knative.dev/v1alpha1",
        description="apiVersion used for DomainMapping resources.",
    )

    # Certificates.
    certificate_name: str | None = Field(
        default=None,
        description=(
            "Fixed certificate name. When unset the certificate is looked up by the "
            "service's route label."
        ),
    )
    certificate_data_key: str = Field(
        default="tls.crt",
        description="Key in the certificate secret holding PEM material for the trust root.",
    )

    # Verification.
    ingress_endpoint: str | None = Field(
        default=None,
        description="`host[:port]` to connect to instead of resolving the mapped hostname.",
    )
    ingress_gateway_service: str | None = Field(
        default=None,
        description="`namespace/name` of a LoadBalancer service fronting the ingress.",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for the verification request.",
    )

    # Logging and telemetry.
    log_level: str = Field(default="INFO", description="Console log level.")
    log_dir: Path | None = Field(
        default=None,
        description="Directory for a JSON log file. File logging is off when unset.",
    )
    telemetry_enabled: bool = Field(
        default=True,
        description="Emit structured run events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink backend. `log` emits events through structured logging.",
    )

    @field_validator("tls_service_name", "custom_domain", "certificate_name", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("ingress_endpoint", "ingress_gateway_service", mode="before")
    @classmethod
    def _normalize_optional_endpoints(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("tls_service_name")
    @classmethod
    def _validate_tls_service_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not _is_dns_label(f"{value}{TLS_SERVICE_NAME_SUFFIX}"):
            raise ValueError(
                "TLS_SERVICE_NAME must be lowercase alphanumerics or '-' "
                "and yield a valid DNS label."
            )
        return value

    @field_validator("namespace")
    @classmethod
    def _validate_namespace(cls, value: str) -> str:
        normalized = value.strip()
        if not _is_dns_label(normalized):
            raise ValueError("AUTOTLS_NAMESPACE must be a valid DNS label.")
        return normalized

    @field_validator("custom_domain")
    @classmethod
    def _validate_custom_domain(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.lower().strip(".")
        labels = normalized.split(".")
        if not all(_is_dns_label(label) for label in labels):
            raise ValueError(f"AUTOTLS_CUSTOM_DOMAIN is not a valid domain: {value!r}.")
        return normalized

    @field_validator("ingress_endpoint")
    @classmethod
    def _validate_ingress_endpoint(cls, value: str | None) -> str | None:
        if value is None:
            return None
        parse_host_port(value)
        return value

    @field_validator("ingress_gateway_service")
    @classmethod
    def _validate_gateway_service(cls, value: str | None) -> str | None:
        if value is None:
            return None
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name:
            raise ValueError("AUTOTLS_INGRESS_GATEWAY_SERVICE must look like `namespace/name`.")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("AUTOTLS_LOG_LEVEL must be a string.")
        normalized = value.strip().upper()
        if normalized not in _LOG_LEVEL_NAMES:
            raise ValueError(f"AUTOTLS_LOG_LEVEL must be one of: {', '.join(_LOG_LEVEL_NAMES)}.")
        return normalized

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("AUTOTLS_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("AUTOTLS_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any) -> bool:
        return _parse_bool_with_default(value, default=True)

    @field_validator("kubeconfig", "log_dir", mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return Path(value).expanduser().resolve()

    @model_validator(mode="after")
    def _check_poll_window(self) -> AppSettings:
        if self.poll_timeout_seconds < self.poll_interval_seconds:
            raise ValueError("AUTOTLS_POLL_TIMEOUT_SECONDS must not be shorter than the poll interval.")
        return self

    @property
    def image_path(self) -> str:
        return f"{self.image_repository.rstrip('/')}/{self.image}:{self.image_tag}"


def parse_host_port(value: str, *, default_port: int = 443) -> tuple[str, int]:
    """Split `host[:port]` (IPv6 in brackets) into a connectable address."""
    raw = value.strip()
    if raw.startswith("["):
        host, _, rest = raw[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif raw.count(":") == 1:
        host, _, port_text = raw.partition(":")
    else:
        host, port_text = raw, ""
    if not host:
        raise ValueError(f"Endpoint has no host: {value!r}.")
    if not port_text:
        return host, default_port
    if not port_text.isdigit() or not 0 < int(port_text) < 65536:
        raise ValueError(f"Endpoint has an invalid port: {value!r}.")
    return host, int(port_text)


def _read_yaml_config(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping.")
    return data


def load_settings(config_path: Path | None = None, **overrides: Any) -> AppSettings:
    """Build settings; explicit overrides win over YAML file values, which win over the environment."""
    values: dict[str, Any] = {}
    if config_path is not None:
        values.update(_read_yaml_config(config_path))
    values.update({key: value for key, value in overrides.items() if value is not None})

    try:
        settings = AppSettings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Failed to process configuration:\n{exc}") from exc
    return settings


@dataclass(frozen=True)
class ResourceNames:
    service: str
    image: str


def object_name_for_check(check_name: str = DEFAULT_CHECK_NAME) -> str:
    """Kebab-case the check name and append a random suffix, e.g. `domain-mapping-auto-tls-k3jd9xqa`."""
    prefix = re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "-", check_name).lower()
    prefix = re.sub(r"[^a-z0-9-]+", "-", prefix).strip("-")
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(_RANDOM_SUFFIX_LENGTH))
    max_prefix = 63 - _RANDOM_SUFFIX_LENGTH - 1
    return f"{prefix[:max_prefix].rstrip('-')}-{suffix}"


def resource_names_for_run(settings: AppSettings) -> ResourceNames:
    if settings.tls_service_name is not None:
        service = f"{settings.tls_service_name}{TLS_SERVICE_NAME_SUFFIX}"
    else:
        service = object_name_for_check()
    return ResourceNames(service=service, image=settings.image)
