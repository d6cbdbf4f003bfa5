"""Upload an in-memory buffer, single-shot or multipart.

Payloads smaller than :data:`PART_SIZE` go up in one PUT. Anything larger is
sent with the S3 multipart protocol, one part at a time::

    INITIATING -> UPLOADING_PART(0..n-1) -> COMPLETING -> DONE
         |               |                      |
         |               +------> ABORTING <----+
         |                           |
         +------------------------> FAILED

A failed part or completion always triggers one abort of the upload session
before the original error is reported.

The request deadline and retry budget can be configured in three ways, in
order of precedence:

1. By passing ``timeout`` / ``retries`` to :class:`S3Upload`.
2. By setting ``S3UPLOAD_TIMEOUT`` (seconds) / ``S3UPLOAD_RETRIES``.
3. Falling back to 60 seconds and 10 retries.
"""
from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union
from urllib.parse import quote

from .exceptions import ConfigurationError, PayloadError, RequestError, S3UploadError
from .request import (
    ABORT_SUCCESS_STATUSES,
    DEFAULT_MIN_BACKOFF,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    RequestExecutor,
)
from .transport import Transport, TransportResponse

logger = logging.getLogger(__name__)

__all__ = [
    "PART_SIZE",
    "UploadState",
    "MultipartSession",
    "MultipartUpload",
    "S3Upload",
    "partition",
    "build_complete_document",
]

PART_SIZE = 5 * 1024 * 1024

Callback = Callable[[Optional[S3UploadError], Optional[TransportResponse]], Any]
Payload = Union[bytes, bytearray, memoryview]


def partition(payload: Payload, part_size: int = PART_SIZE) -> list[memoryview]:
    """Split *payload* into consecutive views of at most *part_size* bytes."""
    view = memoryview(payload).cast("B")
    return [view[offset : offset + part_size] for offset in range(0, len(view), part_size)]


def build_complete_document(etags: list[str]) -> str:
    """Render the ``CompleteMultipartUpload`` body for *etags*, in part order."""
    body = '<?xml version="1.0" encoding="UTF-8"?>\n<CompleteMultipartUpload>\n'
    for number, etag in enumerate(etags, start=1):
        body += "\t<Part>\n"
        body += f"\t\t<PartNumber>{number}</PartNumber>\n"
        quoted = '"%s"' % etag.strip('"')
        body += f"\t\t<ETag>{quoted}</ETag>\n"
        body += "\t</Part>\n"
    body += "</CompleteMultipartUpload>"
    return body


def _env_number(name: str, default: float, cast: Callable[[str], float]) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _payload_size(payload: Payload) -> int:
    try:
        return memoryview(payload).nbytes
    except TypeError as exc:
        raise PayloadError(f"payload must be bytes-like, got {type(payload).__name__}") from exc


class UploadState(enum.Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    UPLOADING_PART = "uploading_part"
    COMPLETING = "completing"
    ABORTING = "aborting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class MultipartSession:
    key: str
    upload_id: str = ""
    chunks: list[memoryview] = field(default_factory=list)
    etags: list[str] = field(default_factory=list)
    state: UploadState = UploadState.IDLE
    part_index: int = 0
    error: Optional[RequestError] = None
    response: Optional[TransportResponse] = None

    def path(self, query: str) -> str:
        return f"{self.key}?{query}"


class MultipartUpload:
    """Drive one multipart upload through its states.

    Each state has a handler returning the next state; :meth:`run` loops
    until ``DONE`` or ``FAILED``. Parts are uploaded strictly in order and
    ETags are appended to the session as each part is acknowledged.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        payload: Payload,
        key: str,
        headers: Optional[Mapping[str, str]] = None,
        debug: Optional[Callable[[str], Any]] = None,
        part_size: int = PART_SIZE,
    ) -> None:
        self.executor = executor
        self.payload = payload
        self.headers = dict(headers or {})
        self.debug = debug or logger.debug
        self.part_size = part_size
        self.session = MultipartSession(key=key)
        self._handlers = {
            UploadState.INITIATING: self._initiate,
            UploadState.UPLOADING_PART: self._upload_part,
            UploadState.COMPLETING: self._complete,
            UploadState.ABORTING: self._abort,
        }

    def run(self) -> TransportResponse:
        session = self.session
        session.state = UploadState.INITIATING
        while session.state not in (UploadState.DONE, UploadState.FAILED):
            session.state = self._handlers[session.state]()

        if session.state is UploadState.FAILED:
            assert session.error is not None
            raise session.error
        assert session.response is not None
        return session.response

    def _initiate(self) -> UploadState:
        session = self.session
        try:
            _, parsed = self.executor.execute("POST", session.path("uploads"), self.headers)
        except RequestError as exc:
            # Nothing exists on the server yet, so there is nothing to abort.
            session.error = exc
            return UploadState.FAILED

        try:
            upload_id = parsed["InitiateMultipartUploadResult"]["UploadId"]
        except (KeyError, TypeError):
            session.error = RequestError("Initiate response did not contain an UploadId")
            return UploadState.FAILED

        session.upload_id = quote(upload_id, safe="~")
        session.chunks = partition(self.payload, self.part_size)
        self.debug(f"Initiated upload {session.upload_id} with {len(session.chunks)} parts")
        return UploadState.UPLOADING_PART

    def _upload_part(self) -> UploadState:
        session = self.session
        index = session.part_index
        chunk = session.chunks[index]
        self.debug(f"Uploading chunk {index}")
        try:
            response, _ = self.executor.execute(
                "PUT",
                session.path(f"partNumber={index + 1}&uploadId={session.upload_id}"),
                {"Content-Length": str(len(chunk))},
                chunk,
            )
        except RequestError as exc:
            session.error = exc
            return UploadState.ABORTING

        if not response.etag:
            session.error = RequestError(f"Part {index + 1} response had no ETag")
            return UploadState.ABORTING
        session.etags.append(response.etag)
        if index == len(session.chunks) - 1:
            return UploadState.COMPLETING
        session.part_index = index + 1
        return UploadState.UPLOADING_PART

    def _complete(self) -> UploadState:
        session = self.session
        self.debug("Finishing up")
        body = build_complete_document(session.etags)
        self.debug(body)
        try:
            response, _ = self.executor.execute(
                "POST", session.path(f"uploadId={session.upload_id}"), {}, body
            )
        except RequestError as exc:
            session.error = exc
            return UploadState.ABORTING

        self.debug("Finished up")
        session.response = response
        return UploadState.DONE

    def _abort(self) -> UploadState:
        session = self.session
        self.debug("Cleaning up....")
        try:
            self.executor.execute(
                "DELETE",
                session.path(f"&uploadId={session.upload_id}"),
                {},
                success_statuses=ABORT_SUCCESS_STATUSES,
            )
        except RequestError as exc:
            # Best effort only: the caller gets the error that caused the abort.
            self.debug(f"Clean up failed: {exc}")
        else:
            self.debug("Clean up succeeded")
        return UploadState.FAILED


class S3Upload:
    """Upload buffers through *transport*.

    *debug* is an optional single-argument callable receiving progress
    messages; it defaults to this module's logger at DEBUG level.
    """

    part_size = PART_SIZE

    def __init__(
        self,
        transport: Transport,
        debug: Optional[Callable[[str], Any]] = None,
        *,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        min_backoff: float = DEFAULT_MIN_BACKOFF,
        max_backoff: Optional[float] = None,
    ) -> None:
        self.transport = transport
        self.debug = debug or logger.debug
        if timeout is None:
            timeout = _env_number("S3UPLOAD_TIMEOUT", DEFAULT_TIMEOUT, float)
        if retries is None:
            retries = int(_env_number("S3UPLOAD_RETRIES", DEFAULT_RETRIES, int))
        if timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if retries < 0:
            raise ConfigurationError("retries must not be negative")
        self.executor = RequestExecutor(
            transport,
            debug=self.debug,
            timeout=timeout,
            retries=retries,
            min_backoff=min_backoff,
            max_backoff=max_backoff,
        )

    @property
    def timeout(self) -> float:
        return self.executor.timeout

    # ───────────────────────────────── Public API ──────────────────────────────
    def upload(
        self,
        payload: Payload,
        key: str,
        headers: Optional[Mapping[str, str]] = None,
        callback: Optional[Callback] = None,
    ) -> Optional[TransportResponse]:
        """Upload *payload* under *key*.

        Without *callback* the final response is returned and failures are
        raised. With *callback* it is called exactly once, as
        ``callback(None, response)`` or ``callback(error, None)``.
        """
        try:
            response = self._upload(payload, key, headers)
        except S3UploadError as exc:
            if callback is None:
                raise
            callback(exc, None)
            return None
        if callback is not None:
            callback(None, response)
        return response

    def upload_file(
        self,
        path: Union[str, Path],
        key: str,
        headers: Optional[Mapping[str, str]] = None,
        callback: Optional[Callback] = None,
    ) -> Optional[TransportResponse]:
        """Read *path* into memory and :meth:`upload` it."""
        return self.upload(Path(path).read_bytes(), key, headers, callback)

    # ───────────────────────────── Internal helpers ────────────────────────────
    def _upload(self, payload: Payload, key: str, headers: Optional[Mapping[str, str]]) -> TransportResponse:
        if _payload_size(payload) < self.part_size:
            return self._single_upload(payload, key, headers)
        return self._multipart_upload(payload, key, headers)

    def _single_upload(self, payload: Payload, key: str, headers: Optional[Mapping[str, str]]) -> TransportResponse:
        self.debug("Single uploading")
        request_headers = dict(headers or {})
        request_headers["Expect"] = "100-continue"
        request_headers["Content-Length"] = str(_payload_size(payload))
        response, _ = self.executor.execute("PUT", key, request_headers, payload)
        return response

    def _multipart_upload(self, payload: Payload, key: str, headers: Optional[Mapping[str, str]]) -> TransportResponse:
        self.debug("Multipart uploading")
        return MultipartUpload(
            self.executor, payload, key, headers, debug=self.debug, part_size=self.part_size
        ).run()
