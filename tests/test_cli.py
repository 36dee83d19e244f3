from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from autotls import cli
from autotls.errors import ReadinessTimeoutError
from autotls.models.runtime_contracts import RuntimeInfo
from autotls.workflow import CheckResult
from tests.fakes import MAPPED_HOST, runtime_info_body

runner = CliRunner()


class _RecordingCheck:
    instances: list[_RecordingCheck] = []
    outcome: CheckResult | Exception | None = None

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        _RecordingCheck.instances.append(self)

    def run(self) -> CheckResult:
        outcome = _RecordingCheck.outcome
        if isinstance(outcome, Exception):
            raise outcome
        assert outcome is not None
        return outcome


@pytest.fixture
def recording_check(monkeypatch: pytest.MonkeyPatch) -> type[_RecordingCheck]:
    _RecordingCheck.instances = []
    _RecordingCheck.outcome = None
    monkeypatch.setattr(cli, "DomainMappingAutoTLSCheck", _RecordingCheck)
    monkeypatch.setattr(cli, "configure_logging", lambda settings: None)
    return _RecordingCheck


def _result() -> CheckResult:
    return CheckResult(
        service_name="svc-1",
        namespace="tls",
        host=MAPPED_HOST,
        service_url="https://svc-1.tls.example.com",
        certificate_name="svc-1-cert",
        runtime_info=RuntimeInfo.model_validate(json.loads(runtime_info_body(MAPPED_HOST))),
    )


def test_hostname_uses_tls_service_name() -> None:
    result = runner.invoke(cli.main, ["hostname"], env={"TLS_SERVICE_NAME": "nightly-"})

    assert result.exit_code == 0, result.output
    assert result.output == "nightly-dm-tls\tnightly-dm-tls.example.com\n"


def test_hostname_with_custom_domain() -> None:
    result = runner.invoke(
        cli.main,
        ["hostname", "--service-name", "ci-", "--custom-domain", "apps.example.org"],
    )

    assert result.exit_code == 0, result.output
    assert result.output == "ci-dm-tls\tci-dm-tls.apps.example.org\n"


def test_show_config_reads_yaml_file(tmp_path: Path) -> None:
    config_file = tmp_path / "autotls.yaml"
    config_file.write_text("namespace: tls-nightly\npoll_timeout_seconds: 120\n", encoding="utf-8")

    result = runner.invoke(cli.main, ["--config", str(config_file), "show-config"])

    assert result.exit_code == 0, result.output
    assert "namespace: tls-nightly\n" in result.output
    assert "poll_timeout_seconds: 120.0\n" in result.output


def test_invalid_configuration_is_a_usage_error(tmp_path: Path) -> None:
    config_file = tmp_path / "autotls.yaml"
    config_file.write_text("namespace: Not_A_Label\n", encoding="utf-8")

    result = runner.invoke(cli.main, ["--config", str(config_file), "show-config"])

    assert result.exit_code == 2
    assert "Failed to process configuration" in result.output


def test_run_reports_verified_host(recording_check: type[_RecordingCheck]) -> None:
    recording_check.outcome = _result()

    result = runner.invoke(
        cli.main,
        ["run", "--namespace", "tls", "--ingress-endpoint", "10.0.0.5:443"],
    )

    assert result.exit_code == 0, result.output
    assert f"https://{MAPPED_HOST} verified" in result.output
    assert "svc-1-cert" in result.output
    (instance,) = recording_check.instances
    settings = instance.kwargs["settings"]
    assert settings.namespace == "tls"
    assert settings.ingress_endpoint == "10.0.0.5:443"
    assert isinstance(instance.kwargs["cluster"], cli.KubectlClient)


def test_run_failure_exits_non_zero(recording_check: type[_RecordingCheck]) -> None:
    recording_check.outcome = ReadinessTimeoutError(
        kind="DomainMapping",
        name=MAPPED_HOST,
        condition="Ready",
        elapsed_seconds=600.0,
    )

    result = runner.invoke(cli.main, ["run"])

    assert result.exit_code == 1
    assert "Check failed" in result.output
    assert "did not reach Ready" in result.output
