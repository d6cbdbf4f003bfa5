"""s3upload package

Classic src/ layout:
    src/s3upload/
        __init__.py          (re-export public API)
        uploader.py          (S3Upload + multipart state machine)
        request.py           (RequestExecutor: timeouts and retries)
        transport.py         (S3Transport: SigV4-signed HTTP)
        xmlparse.py          (XML response bodies -> dicts)
        exceptions.py        (error hierarchy)
        logger.py            (UploadLogger + LoggedS3Upload)
"""
from .exceptions import (  # noqa: F401
    ConfigurationError,
    PayloadError,
    RequestError,
    RequestTimeout,
    S3ResponseError,
    S3UploadError,
    TransportError,
    XMLParseError,
)
from .logger import LoggedS3Upload, UploadLogger  # noqa: F401
from .request import RequestAttempt, RequestExecutor  # noqa: F401
from .transport import S3Transport, TransportResponse  # noqa: F401
from .uploader import (  # noqa: F401
    PART_SIZE,
    MultipartSession,
    MultipartUpload,
    S3Upload,
    UploadState,
    build_complete_document,
    partition,
)
from .xmlparse import parse_xml  # noqa: F401

__version__ = "0.1.0"
