"""Minimal example demonstrating how to use *s3upload*.

Prerequisite:
    1. Export the required S3 credentials / endpoint variables OR create a .env file.
    2. Install the package in editable mode:  `pip install -e .[test]`

This script will
    • upload a small buffer with a single PUT
    • upload a 12 MiB buffer with the multipart protocol (3 parts)
"""
from __future__ import annotations

import logging
import os

from s3upload import S3Transport, S3Upload

logging.basicConfig(level=logging.DEBUG)

# ---------------------------------------------------------------------------
# 1. Read configuration from environment (see README for details)
# ---------------------------------------------------------------------------
S3_ENDPOINT = os.getenv("S3_ENDPOINT")
S3_ACCESS_KEY_ID = os.getenv("S3_ACCESS_KEY_ID")
S3_SECRET_ACCESS_KEY = os.getenv("S3_SECRET_ACCESS_KEY")
S3_BUCKET = os.getenv("S3_BUCKET")
KEY_PREFIX = os.getenv("S3_PREFIX", "s3upload-example/")

if not all((S3_ENDPOINT, S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY, S3_BUCKET)):
    raise SystemExit("Please set S3_ENDPOINT, S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY, S3_BUCKET env vars")

def done(err, res):
    if err:
        print("Multipart upload failed:", err)
    else:
        print("Multipart upload:", res.status_code)


# ---------------------------------------------------------------------------
# 2. Initialise the transport and the uploader
# ---------------------------------------------------------------------------
with S3Transport(
    bucket_name=S3_BUCKET,
    s3_endpoint=S3_ENDPOINT,
    aws_access_key_id=S3_ACCESS_KEY_ID,
    aws_secret_access_key=S3_SECRET_ACCESS_KEY,
    verify_ssl=False,  # set True in production if you have valid certs
) as transport:
    uploader = S3Upload(transport, timeout=30)

    # -----------------------------------------------------------------------
    # 3. Single PUT (< 5 MiB)
    # -----------------------------------------------------------------------
    response = uploader.upload(b"hello world\n", f"{KEY_PREFIX}small.txt", {"Content-Type": "text/plain"})
    print("Single upload:", response.status_code, response.etag)

    # -----------------------------------------------------------------------
    # 4. Multipart upload (>= 5 MiB), reported through a callback
    # -----------------------------------------------------------------------
    uploader.upload(b"\x00" * (12 * 1024 * 1024), f"{KEY_PREFIX}large.bin", callback=done)
