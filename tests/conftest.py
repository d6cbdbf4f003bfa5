"""Shared fixtures: an in-memory transport that scripts S3 replies."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional, Union
from urllib.parse import parse_qs, urlsplit

import pytest
from botocore.awsrequest import HeadersDict

from s3upload import RequestExecutor, S3Upload, TransportResponse

MiB = 1024 * 1024

INITIATE_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    '<InitiateMultipartUploadResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
    "<Bucket>unit-test-bucket</Bucket><Key>{key}</Key><UploadId>{upload_id}</UploadId>"
    "</InitiateMultipartUploadResult>"
)
COMPLETE_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    '<CompleteMultipartUploadResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
    "<Location>http://unit-test-bucket/{key}</Location><Key>{key}</Key>"
    '<ETag>"final-etag"</ETag></CompleteMultipartUploadResult>'
)
ERROR_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    "<Error><Code>{code}</Code><Message>{message}</Message></Error>"
)


def response(status: int = 200, body: str = "", etag: Optional[str] = None) -> TransportResponse:
    headers = HeadersDict()
    if etag is not None:
        headers["ETag"] = etag
    return TransportResponse(status_code=status, headers=headers, body=body.encode("utf-8"))


@dataclass
class RecordedRequest:
    method: str
    path: str
    headers: dict
    body: bytes

    @property
    def query(self) -> dict:
        return {k: v[0] for k, v in parse_qs(urlsplit(self.path).query).items()}


Reply = Union[TransportResponse, Exception]
Responder = Callable[[RecordedRequest, "FakeHandle"], Reply]


class FakeHandle:
    def __init__(self, transport: "FakeTransport", method: str, path: str, headers: dict) -> None:
        self.transport = transport
        self.method = method
        self.path = path
        self.headers = dict(headers)
        self.chunks: list[bytes] = []
        self.writes = 0
        self.aborted = threading.Event()
        self.timeout: Optional[float] = None
        self.timeout_callback = None

    def write(self, data) -> None:
        self.writes += 1
        self.chunks.append(bytes(data))

    def set_timeout(self, seconds, callback) -> None:
        if seconds is not None:
            self.timeout = seconds
        self.timeout_callback = callback

    def abort(self) -> None:
        self.aborted.set()

    def end(self) -> TransportResponse:
        request = RecordedRequest(self.method, self.path, self.headers, b"".join(self.chunks))
        self.transport.requests.append(request)
        reply = self.transport.responder(request, self)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeS3:
    """Well-behaved S3: every request succeeds unless ``fail`` returns a reply."""

    def __init__(self, upload_id: str = "abc", fail: Optional[Callable[[RecordedRequest], Optional[Reply]]] = None):
        self.upload_id = upload_id
        self.fail = fail

    def __call__(self, request: RecordedRequest, handle: FakeHandle) -> Reply:
        if self.fail is not None:
            reply = self.fail(request)
            if reply is not None:
                return reply

        key = urlsplit(request.path).path
        query = request.query
        if request.method == "POST" and request.path.endswith("?uploads"):
            return response(body=INITIATE_XML.format(key=key, upload_id=self.upload_id))
        if request.method == "PUT" and "partNumber" in query:
            return response(etag=f'"etag-{query["partNumber"]}"')
        if request.method == "PUT":
            return response(etag='"single-etag"')
        if request.method == "POST" and "uploadId" in query:
            return response(body=COMPLETE_XML.format(key=key))
        if request.method == "DELETE":
            return response(204)
        return response(400, ERROR_XML.format(code="InvalidRequest", message="unexpected"))


class FakeTransport:
    def __init__(self, responder: Optional[Responder] = None) -> None:
        self.responder = responder or FakeS3()
        self.requests: list[RecordedRequest] = []
        self.handles: list[FakeHandle] = []

    def request(self, method: str, path: str, headers=None) -> FakeHandle:
        handle = FakeHandle(self, method, path, headers or {})
        self.handles.append(handle)
        return handle

    def calls(self) -> list[tuple[str, str]]:
        return [(r.method, r.path) for r in self.requests]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def executor(transport):
    return RequestExecutor(transport, timeout=5, retries=2, min_backoff=0)


@pytest.fixture
def uploader(transport):
    return S3Upload(transport, timeout=5, retries=0, min_backoff=0)
