"""Logging utilities for s3upload.

Contains `UploadLogger` for structured log output and `LoggedS3Upload`, an
`S3Upload` subclass that records the outcome and duration of every upload.
"""
from __future__ import annotations

import logging
from datetime import datetime
from time import perf_counter
from typing import Mapping, Optional

from .exceptions import S3UploadError
from .transport import TransportResponse
from .uploader import Payload, S3Upload

__all__ = ["UploadLogger", "LoggedS3Upload"]


class UploadLogger:
    """Write upload operations to *s3upload.log* and stdout."""

    def __init__(self, log_file: str = "s3upload.log") -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )
        self.logger = logging.getLogger("S3Upload")

    def log_operation(self, operation: str, key: str, success: bool, details: str | None = None) -> None:
        status = "SUCCESS" if success else "FAILED"
        msg = f"[{datetime.now().isoformat()}] {operation} - {key} - {status}"
        if details:
            msg += f" - {details}"
        (self.logger.info if success else self.logger.error)(msg)


class LoggedS3Upload(S3Upload):
    """S3Upload subclass that records each upload via UploadLogger."""

    def __init__(self, *args, log_file: str = "s3upload.log", **kwargs):  # noqa: ANN002, ANN003
        super().__init__(*args, **kwargs)
        self._logger = UploadLogger(log_file)

    def _upload(self, payload: Payload, key: str, headers: Optional[Mapping[str, str]]) -> TransportResponse:
        start = perf_counter()
        try:
            response = super()._upload(payload, key, headers)
        except S3UploadError as exc:
            self._logger.log_operation("UPLOAD", key, False, f"{perf_counter() - start:.2f}s - {exc}")
            raise
        size = memoryview(payload).nbytes
        self._logger.log_operation("UPLOAD", key, True, f"{size} bytes in {perf_counter() - start:.2f}s")
        return response
