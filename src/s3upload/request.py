"""Resilient request executor.

:class:`RequestExecutor` performs one logical exchange with the object store.
Each network try is a :class:`RequestAttempt` guarded by two deadlines with
the same length: a :class:`threading.Timer` and the transport's own socket
timeout. The exchange itself runs on a worker thread while the caller waits
for the attempt to settle, so the deadline ends the try even when the
underlying send is still blocked. Whichever source reports first settles the
attempt; later reports are ignored, so every try yields exactly one
retry-or-fail decision. Retries are scheduled by tenacity with exponential
backoff.
"""
from __future__ import annotations

import contextlib
import logging
import threading
import time
from typing import Any, Callable, Collection, Mapping, Optional, Tuple, Union

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import RequestError, RequestTimeout, S3ResponseError
from .transport import RequestHandle, Transport, TransportResponse
from .xmlparse import error_details, parse_xml

logger = logging.getLogger(__name__)

__all__ = ["RequestAttempt", "RequestExecutor", "Result"]

DEFAULT_TIMEOUT = 60.0
DEFAULT_RETRIES = 10
DEFAULT_MIN_BACKOFF = 0.2
SUCCESS_STATUS = 200
ABORT_SUCCESS_STATUSES = (200, 204)

Result = Tuple[TransportResponse, Optional[dict]]
Body = Union[bytes, memoryview, str]


class RequestAttempt:
    """Outcome of a single try, settled at most once."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._settled = False
        self._result: Optional[Result] = None
        self._error: Optional[Exception] = None

    @property
    def settled(self) -> bool:
        return self._settled

    def _settle(self, result: Optional[Result], error: Optional[Exception]) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
            self._result = result
            self._error = error
        self._done.set()
        return True

    def succeed(self, result: Result) -> bool:
        return self._settle(result, None)

    def fail(self, error: Exception) -> bool:
        return self._settle(None, error)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the attempt is settled; ``False`` if *timeout* ran out."""
        return self._done.wait(timeout)

    def outcome(self) -> Result:
        """Return the settled result or raise the settled error."""
        if not self._settled:
            raise RuntimeError("attempt has not been settled")
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result


class RequestExecutor:
    """Run requests against *transport* with timeouts and retries.

    ``retries`` bounds the number of tries after the first one; the delay
    before retry *n* is ``min_backoff * 2 ** (n - 1)``, capped at
    ``max_backoff`` when given. *sleep* is the function used to wait out
    those delays.
    """

    def __init__(
        self,
        transport: Transport,
        debug: Optional[Callable[[str], Any]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        min_backoff: float = DEFAULT_MIN_BACKOFF,
        max_backoff: Optional[float] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.transport = transport
        self.debug = debug or logger.debug
        self.timeout = timeout
        self.retries = retries
        self.min_backoff = min_backoff
        self.max_backoff = max_backoff
        self.sleep = sleep

    def _retrying(self) -> Retrying:
        wait_kwargs: dict[str, float] = {"multiplier": self.min_backoff, "min": self.min_backoff}
        if self.max_backoff is not None:
            wait_kwargs["max"] = self.max_backoff
        return Retrying(
            retry=retry_if_exception_type(RequestError),
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(**wait_kwargs),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )

    def execute(
        self,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[Body] = None,
        success_statuses: Collection[int] = (SUCCESS_STATUS,),
    ) -> Result:
        """Perform ``method path`` until it succeeds or retries run out.

        Returns ``(response, parsed_body)`` where ``parsed_body`` is the XML
        body as a dict (``None`` for empty bodies). Any status outside
        *success_statuses* is a failure. Raises the last
        :class:`RequestError` once no further attempt is allowed.
        """
        if isinstance(body, str):
            body = body.encode("utf-8")
        try:
            return self._retrying()(
                self._attempt, method, path, dict(headers or {}), body, success_statuses
            )
        except RequestError as exc:
            self.debug(f"Cannot retry {method} {path}. Failing: {exc}")
            raise

    # ───────────────────────────── Internal helpers ────────────────────────────
    def _attempt(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: Optional[Union[bytes, memoryview]],
        success_statuses: Collection[int],
    ) -> Result:
        self.debug(f"Trying {method} {path}")
        attempt = RequestAttempt()
        handle = self.transport.request(method, path, headers)

        def on_timeout() -> None:
            self._terminate(handle)
            if attempt.fail(RequestTimeout()):
                self.debug(f"{method} {path} timed out after {self.timeout}s")

        def exchange() -> None:
            try:
                self._exchange(handle, attempt, body, success_statuses)
            except Exception as exc:
                # Not a request failure: settle it so the caller re-raises it.
                self._terminate(handle)
                attempt.fail(exc)

        timer = threading.Timer(self.timeout, on_timeout)
        timer.daemon = True
        worker = threading.Thread(target=exchange, name=f"s3upload-{method.lower()}", daemon=True)
        handle.set_timeout(self.timeout, on_timeout)
        timer.start()
        worker.start()
        try:
            attempt.wait()
        finally:
            timer.cancel()
            handle.set_timeout(None, None)

        return attempt.outcome()

    def _exchange(
        self,
        handle: RequestHandle,
        attempt: RequestAttempt,
        body: Optional[Union[bytes, memoryview]],
        success_statuses: Collection[int],
    ) -> None:
        try:
            if body is not None:
                handle.write(body)
            response = handle.end()
        except RequestError as exc:
            self._terminate(handle)
            if attempt.fail(exc):
                self.debug(f"Error with request: {exc}")
            return
        if attempt.settled:
            # The deadline already decided this try.
            return
        self._handle_response(response, attempt, success_statuses)

    @staticmethod
    def _terminate(handle: RequestHandle) -> None:
        with contextlib.suppress(RequestError):
            handle.abort()

    def _handle_response(
        self, response: TransportResponse, attempt: RequestAttempt, success_statuses: Collection[int]
    ) -> None:
        text = response.body.decode("utf-8", errors="replace")
        self.debug(f"Received response {response.status_code}: {text}")

        if response.status_code not in success_statuses:
            code, message = error_details(text)
            attempt.fail(S3ResponseError(response.status_code, text, code=code, message=message))
            return

        try:
            parsed = parse_xml(text)
        except RequestError as exc:
            attempt.fail(exc)
        else:
            attempt.succeed((response, parsed))
