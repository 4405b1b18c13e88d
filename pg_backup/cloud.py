"""Cloudflare R2 (S3-compatible) upload client used by the backup tool."""
from __future__ import annotations

import logging
import os
import socket
import ssl
import threading
import time
import weakref
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, Optional
from urllib.parse import quote

import requests
from botocore.auth import S3SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.config import Config
from botocore.credentials import Credentials
from requests.adapters import HTTPAdapter
from requests.utils import DEFAULT_CA_BUNDLE_PATH
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from .config import BackupConfig

LOGGER = logging.getLogger(__name__)

R2_ENDPOINT_TEMPLATE = "https://{account_id}.r2.cloudflarestorage.com"
UPLOAD_DEADLINE_SECONDS = 10 * 60
READ_CHUNK_SIZE = 64 * 1024


class CloudError(Exception):
    """Raised when talking to the object store fails."""


class ClientInitError(CloudError):
    """The object-store client could not be constructed."""


class UploadError(CloudError):
    """Uploading a file to the object store failed."""


class UploadDeadlineExceeded(UploadError):
    """The upload did not finish before its deadline."""


@dataclass(frozen=True)
class TransportSettings:
    min_tls_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    max_tls_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_3
    max_idle_connections: int = 10
    idle_timeout: float = 30.0
    disable_compression: bool = True
    request_timeout: float = 10 * 60.0


class ConnectionTracker:
    """Remembers the connections a pool opens so they can be torn down mid-request."""

    def __init__(self) -> None:
        self._connections: "weakref.WeakSet" = weakref.WeakSet()
        self._lock = threading.Lock()

    def add(self, conn) -> None:
        with self._lock:
            self._connections.add(conn)

    def abort_all(self) -> int:
        """Shut down every open socket; blocked reads and writes fail immediately."""

        with self._lock:
            connections = list(self._connections)
        aborted = 0
        for conn in connections:
            sock = getattr(conn, "sock", None)
            if sock is None:
                continue
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                LOGGER.debug("Socket already closed while aborting: %s", exc)
                continue
            aborted += 1
        return aborted


def _tracking_pool(base, tracker: ConnectionTracker):
    class TrackingConnectionPool(base):
        def _new_conn(self):
            conn = super()._new_conn()
            tracker.add(conn)
            return conn

    return TrackingConnectionPool


class TransportAdapter(HTTPAdapter):
    """HTTPS adapter with a pinned TLS range and an idle-connection timeout."""

    def __init__(
        self,
        settings: TransportSettings = TransportSettings(),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.ssl_context = build_ssl_context(settings)
        self.tracker = ConnectionTracker()
        self._last_used: Optional[float] = None
        super().__init__(
            pool_connections=settings.max_idle_connections,
            pool_maxsize=settings.max_idle_connections,
            max_retries=0,
        )

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["ssl_context"] = self.ssl_context
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _tracking_pool(HTTPConnectionPool, self.tracker),
            "https": _tracking_pool(HTTPSConnectionPool, self.tracker),
        }

    def abort_connections(self) -> int:
        return self.tracker.abort_all()

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["ssl_context"] = self.ssl_context
        return super().proxy_manager_for(proxy, **proxy_kwargs)

    def drop_idle_connections(self) -> bool:
        """Close pooled connections unused for longer than the idle timeout."""

        now = self.clock()
        if self._last_used is not None and now - self._last_used > self.settings.idle_timeout:
            LOGGER.debug("Dropping pooled connections idle for %.1fs", now - self._last_used)
            self.poolmanager.clear()
            return True
        return False

    def send(self, request, **kwargs):
        self.drop_idle_connections()
        try:
            return super().send(request, **kwargs)
        finally:
            self._last_used = self.clock()


def build_ssl_context(settings: TransportSettings) -> ssl.SSLContext:
    context = ssl.create_default_context(cafile=DEFAULT_CA_BUNDLE_PATH)
    context.minimum_version = settings.min_tls_version
    context.maximum_version = settings.max_tls_version
    return context


def build_session(
    settings: TransportSettings = TransportSettings(),
    clock: Callable[[], float] = time.monotonic,
) -> requests.Session:
    session = requests.Session()
    adapter = TransportAdapter(settings, clock=clock)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    if settings.disable_compression:
        session.headers["Accept-Encoding"] = "identity"
    return session


class DeadlineReader:
    """File wrapper that refuses to yield more data once *deadline* has passed."""

    def __init__(
        self,
        fileobj: BinaryIO,
        length: int,
        deadline: float,
        clock: Callable[[], float] = time.monotonic,
        chunk_size: int = READ_CHUNK_SIZE,
    ) -> None:
        self._fileobj = fileobj
        self._length = length
        self.deadline = deadline
        self._clock = clock
        self._chunk_size = chunk_size

    def __len__(self) -> int:
        return self._length

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(self._chunk_size)
            if not chunk:
                return
            yield chunk

    def expired(self) -> bool:
        return self._clock() >= self.deadline

    def read(self, size: int = -1) -> bytes:
        if self.expired():
            raise UploadDeadlineExceeded("context deadline exceeded while streaming upload body")
        return self._fileobj.read(size if size and size > 0 else self._chunk_size)


class Watchdog:
    """Runs *action* once if the ``with`` block is still active after *seconds*."""

    def __init__(self, seconds: float, action: Callable[[], None]) -> None:
        self.fired = False
        self._action = action
        self._timer = threading.Timer(seconds, self._fire)
        self._timer.daemon = True

    def _fire(self) -> None:
        self.fired = True
        LOGGER.warning("Upload time budget exhausted, aborting in-flight request")
        self._action()

    def __enter__(self) -> "Watchdog":
        self._timer.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._timer.cancel()


@dataclass
class R2Client:
    """Minimal S3 client: a signed, streamed PUT Object against one endpoint."""

    endpoint_url: str
    region: str
    credentials: Credentials = field(repr=False)
    session: requests.Session = field(default_factory=build_session, repr=False)
    settings: TransportSettings = field(default_factory=TransportSettings)
    clock: Callable[[], float] = time.monotonic
    logger: logging.Logger = LOGGER

    def object_url(self, bucket: str, key: str) -> str:
        return f"{self.endpoint_url}/{quote(bucket, safe='')}/{quote(key, safe='/~')}"

    def signed_headers(self, url: str, content_length: int) -> Dict[str, str]:
        request = AWSRequest(
            method="PUT",
            url=url,
            headers={
                "Content-Length": str(content_length),
                "Content-Type": "application/octet-stream",
            },
        )
        # Body is streamed once, so it is sent as UNSIGNED-PAYLOAD.
        request.context["client_config"] = Config(s3={"payload_signing_enabled": False})
        S3SigV4Auth(self.credentials, "s3", self.region).add_auth(request)
        return dict(request.headers.items())

    def abort_in_flight(self) -> None:
        """Tear down the sockets of every transport adapter mounted on the session."""

        for adapter in getattr(self.session, "adapters", {}).values():
            abort = getattr(adapter, "abort_connections", None)
            if abort is not None:
                abort()

    def put_object(self, bucket: str, key: str, body: BinaryIO, content_length: int, deadline: float) -> None:
        """PUT *body* as *key*; the whole call is bounded by *deadline* and the request timeout."""

        url = self.object_url(bucket, key)
        reader = DeadlineReader(body, content_length, deadline, clock=self.clock)
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise UploadDeadlineExceeded("context deadline exceeded before upload started")
        budget = min(self.settings.request_timeout, remaining)
        deadline_bound = remaining <= self.settings.request_timeout

        with Watchdog(budget, self.abort_in_flight) as watchdog:
            try:
                response = self.session.put(
                    url,
                    data=reader,
                    headers=self.signed_headers(url, content_length),
                    timeout=budget,
                )
            except (requests.RequestException, OSError) as exc:
                if reader.expired() or (watchdog.fired and deadline_bound):
                    raise UploadDeadlineExceeded(f"context deadline exceeded: {exc}") from exc
                if watchdog.fired:
                    raise UploadError(
                        f"R2 upload exceeded request timeout of {self.settings.request_timeout:.0f}s: {exc}"
                    ) from exc
                raise UploadError(f"R2 upload failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise UploadError(f"R2 upload failed: HTTP {response.status_code} {response.text}")

    def upload_backup(self, bucket: str, backup_path: Path, deadline: float = UPLOAD_DEADLINE_SECONDS) -> str:
        """Stream *backup_path* to *bucket* under its base filename and return the key."""

        backup_path = Path(backup_path)
        key = backup_path.name
        deadline_at = self.clock() + deadline
        try:
            fh = backup_path.open("rb")
        except OSError as exc:
            raise UploadError(f"failed to open backup file: {exc}") from exc
        with fh:
            try:
                length = os.fstat(fh.fileno()).st_size
            except OSError as exc:
                raise UploadError(f"failed to stat backup file: {exc}") from exc
            self.put_object(bucket, key, fh, length, deadline_at)
        self.logger.info("Successfully uploaded backup to R2: %s", key)
        return key


def create_r2_client(
    config: BackupConfig,
    settings: Optional[TransportSettings] = None,
    session: Optional[requests.Session] = None,
) -> R2Client:
    """Build an :class:`R2Client` for the account, region and keys in *config*."""

    settings = settings or TransportSettings()
    endpoint = R2_ENDPOINT_TEMPLATE.format(account_id=config.r2_account_id)
    try:
        requests.PreparedRequest().prepare_url(endpoint, None)
    except requests.RequestException as exc:
        raise ClientInitError(f"failed to resolve R2 endpoint '{endpoint}': {exc}") from exc
    if not config.r2_access_key or not config.r2_secret_key:
        raise ClientInitError("failed to load R2 credentials: access key and secret key are required")

    credentials = Credentials(config.r2_access_key, config.r2_secret_key)
    return R2Client(
        endpoint_url=endpoint,
        region=config.r2_region,
        credentials=credentials,
        session=session or build_session(settings),
        settings=settings,
    )


__all__ = [
    "ClientInitError",
    "CloudError",
    "ConnectionTracker",
    "DeadlineReader",
    "R2Client",
    "TransportAdapter",
    "TransportSettings",
    "UploadDeadlineExceeded",
    "UploadError",
    "Watchdog",
    "build_session",
    "create_r2_client",
]
