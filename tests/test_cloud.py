from __future__ import annotations

import ssl
import threading
import time
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import requests
from botocore.credentials import Credentials

from pg_backup.cloud import (
    ClientInitError,
    R2Client,
    TransportAdapter,
    TransportSettings,
    UploadDeadlineExceeded,
    UploadError,
    Watchdog,
    build_session,
    create_r2_client,
)
from pg_backup.config import BackupConfig


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "") -> None:
        self.status_code = status_code
        self.text = text


class RecordingSession:
    """Stands in for ``requests.Session``; reads the body like the transport would."""

    def __init__(self, response: Optional[FakeResponse] = None, on_chunk=None, chunk_size: int = 4) -> None:
        self.response = response or FakeResponse()
        self.on_chunk = on_chunk
        self.chunk_size = chunk_size
        self.calls: List[Dict[str, Any]] = []

    def put(self, url, data=None, headers=None, timeout=None):
        body = b""
        while True:
            chunk = data.read(self.chunk_size)
            if not chunk:
                break
            body += chunk
            if self.on_chunk:
                self.on_chunk()
        self.calls.append(
            {"url": url, "headers": headers, "timeout": timeout, "body": body, "length": len(data)}
        )
        return self.response


class RaisingSession:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def put(self, url, data=None, headers=None, timeout=None):
        raise self.exc


def _client(session, clock=None) -> R2Client:
    client = R2Client(
        endpoint_url="https://acc123.r2.cloudflarestorage.com",
        region="auto",
        credentials=Credentials("AKIDEXAMPLE", "wJalrXUtnFEMI"),
        session=session,
    )
    if clock is not None:
        client.clock = clock
    return client


def _artifact(tmp_path: Path, content: bytes = b"-- dummy dump\n") -> Path:
    path = tmp_path / "nested" / "orders_2024-03-05_07-08-09.sql"
    path.parent.mkdir(parents=True)
    path.write_bytes(content)
    return path


def test_create_r2_client_builds_account_scoped_endpoint(backup_config: BackupConfig) -> None:
    client = create_r2_client(backup_config)

    assert client.endpoint_url == "https://acc123.r2.cloudflarestorage.com"
    assert client.region == "auto"
    assert client.credentials.access_key == "AKIDEXAMPLE"
    assert isinstance(client.session.get_adapter("https://acc123.r2.cloudflarestorage.com"), TransportAdapter)


def test_create_r2_client_rejects_unresolvable_endpoint(backup_config: BackupConfig) -> None:
    with pytest.raises(ClientInitError, match="endpoint"):
        create_r2_client(replace(backup_config, r2_account_id=""))


def test_create_r2_client_requires_credentials(backup_config: BackupConfig) -> None:
    with pytest.raises(ClientInitError, match="credentials"):
        create_r2_client(replace(backup_config, r2_secret_key=""))


def test_session_transport_settings() -> None:
    session = build_session()
    adapter = session.get_adapter("https://example.com")

    assert session.headers["Accept-Encoding"] == "identity"
    assert adapter.ssl_context.minimum_version == ssl.TLSVersion.TLSv1_2
    assert adapter.ssl_context.maximum_version == ssl.TLSVersion.TLSv1_3
    assert adapter._pool_maxsize == 10
    assert adapter.max_retries.total == 0


def test_adapter_drops_connections_after_idle_timeout(fake_clock) -> None:
    adapter = TransportAdapter(TransportSettings(), clock=fake_clock)

    assert adapter.drop_idle_connections() is False
    adapter._last_used = fake_clock()
    fake_clock.advance(10)
    assert adapter.drop_idle_connections() is False
    fake_clock.advance(25)
    assert adapter.drop_idle_connections() is True


def test_upload_streams_file_under_base_filename(tmp_path: Path) -> None:
    session = RecordingSession()
    path = _artifact(tmp_path)

    key = _client(session).upload_backup("db-backups", path)

    assert key == "orders_2024-03-05_07-08-09.sql"
    assert len(session.calls) == 1
    call = session.calls[0]
    assert call["url"] == "https://acc123.r2.cloudflarestorage.com/db-backups/orders_2024-03-05_07-08-09.sql"
    assert call["body"] == b"-- dummy dump\n"
    assert call["length"] == len(b"-- dummy dump\n")
    assert call["timeout"] <= 600


def test_upload_request_is_signed_without_hashing_the_body(tmp_path: Path) -> None:
    session = RecordingSession()

    _client(session).upload_backup("db-backups", _artifact(tmp_path))

    headers = {name.lower(): value for name, value in session.calls[0]["headers"].items()}
    assert headers["authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
    assert "/auto/s3/aws4_request" in headers["authorization"]
    assert headers["x-amz-content-sha256"] == "UNSIGNED-PAYLOAD"
    assert "x-amz-date" in headers
    assert "wJalrXUtnFEMI" not in str(headers)


def test_upload_fails_when_deadline_expires_mid_transfer(tmp_path: Path, fake_clock) -> None:
    session = RecordingSession(on_chunk=lambda: fake_clock.advance(5 * 60), chunk_size=4)
    path = _artifact(tmp_path, b"-- a dump that takes a very long time\n")

    with pytest.raises(UploadDeadlineExceeded, match="deadline exceeded"):
        _client(session, clock=fake_clock).upload_backup("db-backups", path)

    assert session.calls == []
    assert fake_clock() == 10 * 60


def test_upload_timeout_after_deadline_is_reported_as_deadline(tmp_path: Path, fake_clock) -> None:
    class SlowSession:
        def put(self, url, data=None, headers=None, timeout=None):
            fake_clock.advance(timeout)
            raise requests.ReadTimeout("read timed out")

    with pytest.raises(UploadDeadlineExceeded):
        _client(SlowSession(), clock=fake_clock).upload_backup("db-backups", _artifact(tmp_path))


def test_upload_wraps_http_errors(tmp_path: Path) -> None:
    session = RecordingSession(response=FakeResponse(403, "<Error><Code>AccessDenied</Code></Error>"))

    with pytest.raises(UploadError, match="HTTP 403"):
        _client(session).upload_backup("db-backups", _artifact(tmp_path))


def test_upload_wraps_transport_errors(tmp_path: Path) -> None:
    session = RaisingSession(requests.ConnectionError("connection reset"))

    with pytest.raises(UploadError, match="connection reset") as excinfo:
        _client(session).upload_backup("db-backups", _artifact(tmp_path))
    assert not isinstance(excinfo.value, UploadDeadlineExceeded)


def test_upload_of_missing_file_fails(tmp_path: Path) -> None:
    with pytest.raises(UploadError, match="failed to open backup file"):
        _client(RecordingSession()).upload_backup("db-backups", tmp_path / "gone.sql")


def test_upload_wraps_stat_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _artifact(tmp_path)

    def broken_fstat(fd):
        raise OSError(5, "Input/output error")

    monkeypatch.setattr("pg_backup.cloud.os.fstat", broken_fstat)

    with pytest.raises(UploadError, match="failed to stat backup file"):
        _client(RecordingSession()).upload_backup("db-backups", path)


def test_watchdog_fires_only_when_block_outlives_budget() -> None:
    calls = []

    with Watchdog(5.0, lambda: calls.append("fired")) as idle:
        pass
    with Watchdog(0.05, lambda: calls.append("fired")) as slow:
        time.sleep(0.3)

    assert idle.fired is False
    assert slow.fired is True
    assert calls == ["fired"]


# ---------------------------------------------------------------------------
# Real transport: requests/urllib3 against a local HTTP server.


class ObjectStoreHandler(BaseHTTPRequestHandler):
    mode = "ok"
    received: List[bytes] = []

    def log_message(self, format, *args):
        pass

    def do_PUT(self):
        length = int(self.headers["Content-Length"])
        try:
            if self.mode == "stall-body":
                self.rfile.read(1024)
                time.sleep(5)
                return
            body = self.rfile.read(length)
            type(self).received.append(body)
            if self.mode == "trickle-response":
                self.send_response(200)
                self.send_header("Content-Length", "25")
                self.end_headers()
                for _ in range(25):
                    self.wfile.write(b"x")
                    self.wfile.flush()
                    time.sleep(0.2)
                return
            self.send_response(200)
            self.send_header("Content-Length", "0")
            self.end_headers()
        except OSError:
            return


@pytest.fixture
def object_store():
    ObjectStoreHandler.mode = "ok"
    ObjectStoreHandler.received = []
    server = ThreadingHTTPServer(("127.0.0.1", 0), ObjectStoreHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


def _local_client(server) -> R2Client:
    host, port = server.server_address[:2]
    return R2Client(
        endpoint_url=f"http://{host}:{port}",
        region="auto",
        credentials=Credentials("AKIDEXAMPLE", "wJalrXUtnFEMI"),
        session=build_session(),
    )


def test_real_transport_streams_file_body(object_store, tmp_path: Path) -> None:
    path = _artifact(tmp_path, b"-- dummy dump\n" * 1000)

    key = _local_client(object_store).upload_backup("db-backups", path)

    assert key == "orders_2024-03-05_07-08-09.sql"
    assert ObjectStoreHandler.received == [b"-- dummy dump\n" * 1000]


def test_real_transport_deadline_while_response_trickles(object_store, tmp_path: Path) -> None:
    ObjectStoreHandler.mode = "trickle-response"
    client = _local_client(object_store)

    start = time.monotonic()
    with pytest.raises(UploadDeadlineExceeded):
        client.upload_backup("db-backups", _artifact(tmp_path), deadline=1.0)
    elapsed = time.monotonic() - start

    assert ObjectStoreHandler.received == [b"-- dummy dump\n"]
    assert elapsed < 3.0


def test_real_transport_deadline_while_body_stalls(object_store, tmp_path: Path) -> None:
    ObjectStoreHandler.mode = "stall-body"
    path = _artifact(tmp_path, b"\0" * (32 * 1024 * 1024))
    client = _local_client(object_store)

    start = time.monotonic()
    with pytest.raises(UploadDeadlineExceeded):
        client.upload_backup("db-backups", path, deadline=1.0)

    assert time.monotonic() - start < 3.0


def test_request_timeout_is_a_total_bound(object_store, tmp_path: Path) -> None:
    ObjectStoreHandler.mode = "trickle-response"
    client = _local_client(object_store)
    client.settings = TransportSettings(request_timeout=1.0)

    start = time.monotonic()
    with pytest.raises(UploadError, match="request timeout") as excinfo:
        client.upload_backup("db-backups", _artifact(tmp_path), deadline=60.0)

    assert not isinstance(excinfo.value, UploadDeadlineExceeded)
    assert time.monotonic() - start < 3.0
