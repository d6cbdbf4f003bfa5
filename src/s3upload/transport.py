"""Signed HTTP transport for S3-compatible endpoints.

The uploader never talks to the network directly. It asks a transport for a
:class:`RequestHandle`, writes the body into it and calls ``end()`` to get the
response. :class:`S3Transport` is the production implementation: requests are
signed with botocore's SigV4 signer and sent through botocore's urllib3
session, so AWS S3, MinIO, HCP and similar services all work.

Any object with the same ``request`` method can be passed to
:class:`~s3upload.uploader.S3Upload` instead, which is how the tests drive it.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Protocol, Union
from urllib.parse import quote, urlsplit

import boto3
from botocore.auth import S3SigV4Auth
from botocore.awsrequest import AWSRequest, HeadersDict
from botocore.exceptions import BotoCoreError, ConnectTimeoutError, ReadTimeoutError
from botocore.httpsession import URLLib3Session

from .exceptions import ConfigurationError, RequestTimeout, TransportError

logger = logging.getLogger(__name__)

__all__ = ["TransportResponse", "RequestHandle", "Transport", "S3Transport", "S3RequestHandle"]

TimeoutCallback = Callable[[], None]


@dataclass
class TransportResponse:
    """Fully buffered HTTP response."""

    status_code: int
    headers: HeadersDict = field(default_factory=HeadersDict)
    body: bytes = b""

    @property
    def etag(self) -> Optional[str]:
        return self.headers.get("ETag")


class RequestHandle(Protocol):
    def write(self, data: Union[bytes, memoryview]) -> None: ...

    def end(self) -> TransportResponse: ...

    def abort(self) -> None: ...

    def set_timeout(self, seconds: Optional[float], callback: Optional[TimeoutCallback]) -> None: ...


class Transport(Protocol):
    def request(self, method: str, path: str, headers: Optional[Mapping[str, str]] = None) -> RequestHandle: ...


class S3RequestHandle:
    """One signed request against :class:`S3Transport`.

    The body is buffered by :meth:`write` and sent by :meth:`end`. When the
    underlying connection times out, the callback registered with
    :meth:`set_timeout` runs before :class:`RequestTimeout` is raised.
    """

    def __init__(self, transport: "S3Transport", method: str, url: str, headers: Mapping[str, str]) -> None:
        self.transport = transport
        self.method = method
        self.url = url
        self.headers = {name: str(value) for name, value in headers.items()}
        self._parts: list[bytes] = []
        self._timeout: Optional[float] = None
        self._timeout_callback: Optional[TimeoutCallback] = None
        self.aborted = False

    def write(self, data: Union[bytes, memoryview]) -> None:
        if self.aborted:
            return
        self._parts.append(bytes(data))

    def set_timeout(self, seconds: Optional[float], callback: Optional[TimeoutCallback]) -> None:
        self._timeout = seconds
        self._timeout_callback = callback

    def abort(self) -> None:
        self.aborted = True
        self._parts.clear()

    def end(self) -> TransportResponse:
        if self.aborted:
            raise TransportError(f"{self.method} {self.url} was aborted")
        body = b"".join(self._parts)
        try:
            return self.transport.send(self.method, self.url, self.headers, body, self._timeout)
        except (ConnectTimeoutError, ReadTimeoutError) as exc:
            if self._timeout_callback is not None:
                self._timeout_callback()
            raise RequestTimeout() from exc
        except BotoCoreError as exc:
            raise TransportError(str(exc)) from exc


class S3Transport:
    """Sign and send requests for a single bucket.

    Credentials are resolved by :class:`boto3.Session`: explicit keys when
    given, otherwise the usual environment / profile chain.

    Pass ``root_ca_path`` to verify HTTPS against a custom root CA bundle
    (e.g. self-signed certificates on an on-prem endpoint); it takes
    precedence over ``verify_ssl``.

    The transport pools HTTP connections; use it as a context manager (or
    call :meth:`close`) to release them.
    """

    def __init__(
        self,
        bucket_name: str,
        s3_endpoint: str,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        aws_session_token: Optional[str] = None,
        region_name: str = "us-east-1",
        verify_ssl: bool = True,
        root_ca_path: Optional[str] = None,
        addressing_style: str = "path",
        max_pool_connections: int = 10,
    ) -> None:
        addressing_style = (addressing_style or "path").strip().lower()
        if addressing_style not in ("path", "virtual"):
            raise ConfigurationError("addressing_style must be 'path' or 'virtual'")
        if not bucket_name:
            raise ConfigurationError("bucket_name is required")
        if not s3_endpoint:
            raise ConfigurationError("s3_endpoint is required")

        self.bucket_name = bucket_name
        self.s3_endpoint = s3_endpoint.rstrip("/")
        self.region_name = region_name
        self.addressing_style = addressing_style

        session = boto3.Session(
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
            aws_session_token=aws_session_token,
            region_name=region_name,
        )
        self._credentials = session.get_credentials()
        if self._credentials is None:
            raise ConfigurationError("No credentials found for the S3 endpoint")

        # If a custom root CA bundle is provided, use it for SSL verification
        self._verify = root_ca_path if root_ca_path else verify_ssl
        self._max_pool_connections = max_pool_connections
        self._sessions: dict[Optional[float], URLLib3Session] = {}
        self._sessions_lock = threading.Lock()

    # ───────────────────────────── Internal helpers ────────────────────────────
    def _http_session(self, timeout: Optional[float]) -> URLLib3Session:
        # botocore fixes the socket timeout per session, so keep one per value
        with self._sessions_lock:
            http = self._sessions.get(timeout)
            if http is None:
                http = URLLib3Session(
                    verify=self._verify,
                    timeout=timeout,
                    max_pool_connections=self._max_pool_connections,
                )
                self._sessions[timeout] = http
        return http

    def url_for(self, path: str) -> str:
        """Build the absolute URL for ``key[?query]``.

        Empty query segments (``key?&uploadId=x``) are dropped so the signed
        canonical query matches what the server sees.
        """
        key, _, query = path.partition("?")
        query = "&".join(segment for segment in query.split("&") if segment)
        key = quote(key.lstrip("/"), safe="/~")

        if self.addressing_style == "virtual":
            parts = urlsplit(self.s3_endpoint)
            url = f"{parts.scheme}://{self.bucket_name}.{parts.netloc}{parts.path}/{key}"
        else:
            url = f"{self.s3_endpoint}/{self.bucket_name}/{key}"
        return f"{url}?{query}" if query else url

    # ───────────────────────────────── Public API ──────────────────────────────
    def request(self, method: str, path: str, headers: Optional[Mapping[str, str]] = None) -> S3RequestHandle:
        return S3RequestHandle(self, method, self.url_for(path), headers or {})

    def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes,
        timeout: Optional[float] = None,
    ) -> TransportResponse:
        """Sign and send one request, returning the buffered response."""
        request = AWSRequest(method=method, url=url, headers=dict(headers), data=body)
        signer = S3SigV4Auth(self._credentials.get_frozen_credentials(), "s3", self.region_name)
        signer.add_auth(request)

        logger.debug("%s %s (%d bytes)", method, url, len(body))
        response = self._http_session(timeout).send(request.prepare())
        return TransportResponse(
            status_code=response.status_code,
            headers=HeadersDict(response.headers),
            body=response.content or b"",
        )

    def close(self) -> None:
        """Close every pooled HTTP session opened so far."""
        with self._sessions_lock:
            for http in self._sessions.values():
                http.close()
            self._sessions.clear()

    def __enter__(self) -> "S3Transport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
