"""
Command line tool for retrieving encrypted objects from the certificate bucket.

Examples:
    s3-get-secret --bucket-name certs --secret-key example.com/cert.key.enc \\
        --output-file cert.key
    s3-get-secret --bucket-name certs --keystore example.com \\
        --output-file example.com.p12
"""

import argparse
import os
import sys
from typing import Optional, Sequence

from aws_lambda_powertools import Logger

from cert_errors import LambdaCertError
from certificate_issuer import CertificateBundle, certificate_path, private_key_path
from keystore_export import build_keystore
from s3_store import S3BlobStore

logger = Logger(service=os.environ.get("POWERTOOLS_SERVICE_NAME", "s3-get-secret"))

MAX_OBJECT_SIZE = 10 * 1024 * 1024


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fetch and decrypt a secret from the certificate bucket"
    )
    parser.add_argument(
        "--region",
        default=os.environ.get("AWS_REGION", ""),
        help="Region in which the bucket exists",
    )
    parser.add_argument("--bucket-name", required=True, help="Name of the bucket")
    parser.add_argument("--bucket-prefix", default="", help="Bucket prefix")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--secret-key", help="Key to secret in bucket")
    source.add_argument(
        "--keystore",
        metavar="NAME",
        help="Build a PKCS#12 key store from the certificate stored for NAME",
    )
    parser.add_argument("--output-file", required=True, help="Path to which to write")
    parser.add_argument(
        "--max-object-size",
        type=int,
        default=MAX_OBJECT_SIZE,
        help="Largest object to read, in bytes",
    )

    args = parser.parse_args(argv)
    if not args.region:
        parser.error("--region is required")
    return args


def fetch_secret(store: S3BlobStore, args: argparse.Namespace) -> bytes:
    if args.secret_key:
        return store.get_encrypted_object(args.secret_key)

    bundle = CertificateBundle(
        certificate=store.get_unencrypted_object(certificate_path(args.keystore)),
        private_key=store.get_encrypted_object(private_key_path(args.keystore)),
        domains=(args.keystore,),
    )
    return build_keystore(bundle)


def write_private_file(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    store = S3BlobStore(
        region=args.region,
        bucket_name=args.bucket_name,
        bucket_prefix=args.bucket_prefix,
        max_object_size=args.max_object_size,
    )

    try:
        data = fetch_secret(store, args)
    except LambdaCertError as e:
        logger.error(f"Cannot get object: {e}")
        return 1

    try:
        write_private_file(args.output_file, data)
    except OSError as e:
        logger.error(f"Cannot write file {args.output_file!r}: {e}")
        return 1

    logger.info(f"Wrote {len(data)} bytes to {args.output_file}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
