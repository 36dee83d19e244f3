from __future__ import annotations

import pytest

from autotls.config import AppSettings
from autotls.errors import ReadinessTimeoutError, ResourceFailedError
from autotls.models.resources import ServiceState
from autotls.services.domain_mappings import (
    DOMAIN_MAPPING_RESOURCE,
    DomainMappingManager,
    build_domain_mapping_manifest,
    mapping_host,
)
from autotls.services.kubectl import KubectlError
from autotls.services.teardown import TearDown
from tests.fakes import FakeClock, FakeCluster, failed_status, pending_status, ready_status

SERVICE = ServiceState.from_manifest(
    {
        "metadata": {"name": "svc-1", "namespace": "tls", "generation": 1},
        "status": ready_status(url="http://svc-1.tls.example.com"),
    }
)


def _manager(
    cluster: FakeCluster,
    settings: AppSettings,
    clock: FakeClock,
    *,
    deadline: float | None = None,
) -> DomainMappingManager:
    return DomainMappingManager(
        cluster=cluster,
        settings=settings,
        sleep=clock.sleep,
        clock=clock,
        deadline=deadline,
    )


def _conflict() -> KubectlError:
    return KubectlError(
        'Error from server (Conflict): Operation cannot be fulfilled on domainmappings "svc-1.example.com"',
        reason="Conflict",
        retryable=True,
    )


def test_mapping_host_uses_service_name_and_domain() -> None:
    assert mapping_host("svc-1") == "svc-1.example.com"
    assert mapping_host("svc-1", "apps.example.org") == "svc-1.apps.example.org"


def test_mapping_hosts_do_not_collide_for_distinct_services() -> None:
    services = [f"domain-mapping-auto-tls-{index:03d}" for index in range(100)]
    hosts = {mapping_host(name) for name in services}
    assert len(hosts) == len(services)


def test_manifest_points_at_the_service() -> None:
    manifest = build_domain_mapping_manifest(
        host="svc-1.example.com",
        service=SERVICE,
        api_version="serving.knative.dev/v1alpha1",
    )
    assert manifest["kind"] == "DomainMapping"
    assert manifest["metadata"] == {"name": "svc-1.example.com", "namespace": "tls"}
    assert manifest["spec"]["ref"] == {
        "namespace": "tls",
        "name": "svc-1",
        "apiVersion": "serving.knative.dev/v1",
        "kind": "Service",
    }


def test_create_retries_transient_errors_then_registers_cleanup(
    cluster: FakeCluster,
    settings: AppSettings,
    clock: FakeClock,
) -> None:
    cluster.create_errors[DOMAIN_MAPPING_RESOURCE] = [_conflict(), _conflict()]
    teardown = TearDown()

    mapping = _manager(cluster, settings, clock).create(
        host="svc-1.example.com",
        service=SERVICE,
        teardown=teardown,
    )

    assert mapping.name == "svc-1.example.com"
    assert mapping.ref_name == "svc-1"
    assert clock.sleeps == [0.5, 0.5]
    assert [call for call in cluster.calls if call[0] == "create"] == [
        ("create", DOMAIN_MAPPING_RESOURCE, "svc-1.example.com")
    ] * 3
    assert teardown.pending == (f"{DOMAIN_MAPPING_RESOURCE}/svc-1.example.com",)

    teardown.run()
    assert cluster.names(DOMAIN_MAPPING_RESOURCE) == []


def test_create_aborts_on_permanent_error(
    cluster: FakeCluster,
    settings: AppSettings,
    clock: FakeClock,
) -> None:
    cluster.create_errors[DOMAIN_MAPPING_RESOURCE] = [
        KubectlError(
            'Error from server (BadRequest): admission webhook "validation.webhook.serving.knative.dev" '
            "denied the request",
            reason="BadRequest",
        ),
        _conflict(),
    ]
    teardown = TearDown()

    with pytest.raises(KubectlError, match=r"Create\(DomainMapping svc-1.example.com\) failed") as exc_info:
        _manager(cluster, settings, clock).create(host="svc-1.example.com", service=SERVICE, teardown=teardown)

    assert exc_info.value.reason == "BadRequest"
    assert clock.sleeps == []
    assert teardown.pending == ()


def test_create_gives_up_transient_errors_at_run_deadline(
    cluster: FakeCluster,
    settings: AppSettings,
    clock: FakeClock,
) -> None:
    cluster.create_errors[DOMAIN_MAPPING_RESOURCE] = [_conflict() for _ in range(100)]

    with pytest.raises(KubectlError) as exc_info:
        _manager(cluster, settings, clock, deadline=clock() + 2).create(
            host="svc-1.example.com",
            service=SERVICE,
            teardown=TearDown(),
        )
    assert exc_info.value.retryable is True
    assert clock.sleeps == [0.5, 0.5, 0.5, 0.5]


def test_await_ready_polls_until_ready(
    cluster: FakeCluster,
    settings: AppSettings,
    clock: FakeClock,
) -> None:
    manager = _manager(cluster, settings, clock)
    manager.create(host="svc-1.example.com", service=SERVICE, teardown=TearDown())
    cluster.script_status(
        DOMAIN_MAPPING_RESOURCE,
        "svc-1.example.com",
        [pending_status(), ready_status(url="https://svc-1.example.com")],
    )

    state = manager.await_ready("svc-1.example.com", namespace="tls")

    assert state.is_ready
    assert state.url == "https://svc-1.example.com"
    assert clock.sleeps == [1.0]


def test_await_ready_is_immediate_when_already_ready(
    cluster: FakeCluster,
    settings: AppSettings,
    clock: FakeClock,
) -> None:
    manager = _manager(cluster, settings, clock)
    manager.create(host="svc-1.example.com", service=SERVICE, teardown=TearDown())
    cluster.script_status(DOMAIN_MAPPING_RESOURCE, "svc-1.example.com", [ready_status()])

    manager.await_ready("svc-1.example.com", namespace="tls")
    assert clock.sleeps == []


def test_await_ready_timeout_names_the_domain_mapping(
    cluster: FakeCluster,
    settings: AppSettings,
    clock: FakeClock,
) -> None:
    manager = _manager(cluster, settings, clock)
    manager.create(host="svc-1.example.com", service=SERVICE, teardown=TearDown())
    cluster.script_status(DOMAIN_MAPPING_RESOURCE, "svc-1.example.com", [pending_status()])

    with pytest.raises(ReadinessTimeoutError) as exc_info:
        manager.await_ready("svc-1.example.com", namespace="tls")

    assert exc_info.value.kind == "DomainMapping"
    assert exc_info.value.name == "svc-1.example.com"
    assert exc_info.value.elapsed_seconds == pytest.approx(5.0)
    assert "DomainMapping svc-1.example.com did not reach Ready within 5.0s" in str(exc_info.value)


def test_await_ready_read_error_is_fatal(
    cluster: FakeCluster,
    settings: AppSettings,
    clock: FakeClock,
) -> None:
    manager = _manager(cluster, settings, clock)
    manager.create(host="svc-1.example.com", service=SERVICE, teardown=TearDown())
    cluster.get_errors[(DOMAIN_MAPPING_RESOURCE, "svc-1.example.com")] = KubectlError(
        "Error from server (Forbidden): get domainmappings is forbidden",
        reason="Forbidden",
    )

    with pytest.raises(KubectlError, match="Forbidden"):
        manager.await_ready("svc-1.example.com", namespace="tls")
    assert clock.sleeps == []


def test_await_ready_terminal_failure(
    cluster: FakeCluster,
    settings: AppSettings,
    clock: FakeClock,
) -> None:
    manager = _manager(cluster, settings, clock)
    manager.create(host="svc-1.example.com", service=SERVICE, teardown=TearDown())
    cluster.script_status(
        DOMAIN_MAPPING_RESOURCE,
        "svc-1.example.com",
        [failed_status("DomainMappingNotOwned", "domain claimed by another namespace")],
    )

    with pytest.raises(ResourceFailedError, match="DomainMapping svc-1.example.com reported a terminal failure"):
        manager.await_ready("svc-1.example.com", namespace="tls")
