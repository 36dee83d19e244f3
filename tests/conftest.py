from __future__ import annotations

import ssl
import threading
from collections.abc import Callable, Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from autotls.config import AppSettings
from tests.fakes import MAPPED_HOST, FakeClock, FakeCluster, RuntimeServer, runtime_info_body
from tests.tls_material import TLSMaterial, make_ca


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:  # pyright: ignore[reportUnusedFunction]
    for name in ("TLS_SERVICE_NAME", "KO_DOCKER_REPO"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(
        namespace="tls",
        poll_interval_seconds=1.0,
        poll_timeout_seconds=5.0,
        create_retry_delay_seconds=0.5,
        run_timeout_seconds=60.0,
        telemetry_enabled=False,
    )


@pytest.fixture(scope="session")
def tls_material(tmp_path_factory: pytest.TempPathFactory) -> TLSMaterial:
    directory = tmp_path_factory.mktemp("tls")
    ca = make_ca("autotls test issuer")
    other_ca = make_ca("unrelated issuer")
    cert_path, key_path, cert_pem = ca.issue(MAPPED_HOST, directory)
    return TLSMaterial(
        ca=ca,
        other_ca=other_ca,
        server_cert_path=cert_path,
        server_key_path=key_path,
        server_cert_pem=cert_pem,
    )


BodyFactory = Callable[[str], tuple[int, bytes]]


def _default_body(host: str) -> tuple[int, bytes]:
    return 200, runtime_info_body(host)


@pytest.fixture
def runtime_server(tls_material: TLSMaterial) -> Iterator[Callable[..., RuntimeServer]]:
    """Starts local HTTPS servers impersonating the runtime image behind the ingress."""
    servers: list[tuple[ThreadingHTTPServer, threading.Thread]] = []

    def _start(body_factory: BodyFactory = _default_body) -> RuntimeServer:
        requests: list[str] = []

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                host = self.headers.get("Host", "")
                requests.append(host)
                status, body = body_factory(host)
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: object) -> None:  # noqa: A002
                return

        server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(tls_material.server_cert_path, tls_material.server_key_path)
        server.socket = context.wrap_socket(server.socket, server_side=True)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append((server, thread))
        return RuntimeServer(port=server.server_address[1], requests=requests)

    yield _start

    for server, thread in servers:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)
