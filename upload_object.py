import os
import sys

# Ensure that the local src/ directory (which contains the s3upload package)
# is on the Python import path when running from a checkout.
CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
SRC_DIR = os.path.join(CURRENT_DIR, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from s3upload import LoggedS3Upload, S3Transport, S3UploadError


def main(argv: list[str]) -> int:
    if len(argv) != 3:
        print("usage: upload_object.py <file> <key>", file=sys.stderr)
        return 1
    path, key = argv[1], argv[2]

    bucket = os.getenv("S3_BUCKET")
    endpoint = os.getenv("S3_ENDPOINT")
    access_key = os.getenv("S3_ACCESS_KEY_ID")
    secret_key = os.getenv("S3_SECRET_ACCESS_KEY")
    region = os.getenv("S3_REGION", "us-east-1")
    verify_ssl = os.getenv("S3_VERIFY_SSL", "true").lower() == "true"
    root_ca_path = os.getenv("S3_ROOT_CA_PATH") or None

    if not bucket or not endpoint or not access_key or not secret_key:
        print(
            "ERROR: S3_* env vars not fully set (S3_BUCKET, S3_ENDPOINT, "
            "S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY)",
            file=sys.stderr,
        )
        return 1

    print(f"Uploading '{path}' to s3://{bucket}/{key} ...")
    with S3Transport(
        bucket_name=bucket,
        s3_endpoint=endpoint,
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name=region,
        verify_ssl=verify_ssl,
        root_ca_path=root_ca_path,
    ) as transport:
        try:
            LoggedS3Upload(transport).upload_file(path, key)
        except (OSError, S3UploadError) as exc:
            print(f"ERROR: upload failed: {exc}", file=sys.stderr)
            return 1

    print("Upload complete")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
