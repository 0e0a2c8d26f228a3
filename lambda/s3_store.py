import base64
import json
import os
import posixpath
from typing import Protocol

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cert_errors import (
    AccessDeniedError,
    ObjectNotFoundError,
    ObjectTooLargeError,
    PersistenceError,
    StoreError,
)

logger = Logger(child=True)

DEFAULT_MAX_OBJECT_SIZE = 1024 * 1024

NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
ACCESS_DENIED_CODES = {"AccessDenied", "403"}

# S3 client-side encryption metadata layout (KMS-wrapped AES-GCM content key)
KEY_HEADER = "x-amz-key-v2"
IV_HEADER = "x-amz-iv"
MATDESC_HEADER = "x-amz-matdesc"
WRAP_ALG_HEADER = "x-amz-wrap-alg"
CEK_ALG_HEADER = "x-amz-cek-alg"
TAG_LEN_HEADER = "x-amz-tag-len"
UNENCRYPTED_LENGTH_HEADER = "x-amz-unencrypted-content-length"

WRAP_ALG = "kms"
CEK_ALG = "AES/GCM/NoPadding"
TAG_LENGTH_BITS = 128
IV_SIZE = 12


class BlobStore(Protocol):
    """Named byte objects under a logical path prefix."""

    def get_encrypted_object(self, object_path: str) -> bytes: ...

    def put_encrypted_object(self, object_path: str, data: bytes) -> None: ...

    def get_unencrypted_object(self, object_path: str) -> bytes: ...

    def put_unencrypted_object(self, object_path: str, data: bytes) -> None: ...


class S3BlobStore:
    """
    Blob store backed by an S3 bucket.

    Encrypted objects use KMS envelope encryption: each object gets a fresh
    AES-256 data key from KMS, the payload is sealed with AES-GCM and the
    wrapped data key travels in the object metadata.
    """

    def __init__(
        self,
        region: str,
        bucket_name: str,
        bucket_prefix: str = "",
        kms_key_id: str = "",
        max_object_size: int = DEFAULT_MAX_OBJECT_SIZE,
    ):
        self._s3_client = boto3.client("s3", region_name=region)
        self._kms_client = boto3.client("kms", region_name=region)
        self.bucket_name = bucket_name
        self.bucket_prefix = bucket_prefix
        self.kms_key_id = kms_key_id
        self.max_object_size = max_object_size

    def object_key(self, object_path: str) -> str:
        # Leading slashes stay under the prefix
        return posixpath.normpath(
            posixpath.join(self.bucket_prefix, object_path.lstrip("/"))
        )

    def get_unencrypted_object(self, object_path: str) -> bytes:
        data, _ = self._get_object(object_path)
        return data

    def put_unencrypted_object(self, object_path: str, data: bytes) -> None:
        self._put_object(object_path, data, {})

    def get_encrypted_object(self, object_path: str) -> bytes:
        """
        Fetch and decrypt an envelope-encrypted object.

        Args:
            object_path: Path relative to the bucket prefix

        Returns:
            bytes: Decrypted object contents

        Raises:
            ObjectNotFoundError: If the object does not exist
            AccessDeniedError: If reading the object is not permitted
            ObjectTooLargeError: If the object exceeds the size limit
            StoreError: If the object is not encrypted or cannot be decrypted
        """
        key = self.object_key(object_path)
        ciphertext, metadata = self._get_object(object_path)

        if metadata.get(WRAP_ALG_HEADER) != WRAP_ALG or KEY_HEADER not in metadata:
            raise StoreError(f"Object {key} is not envelope-encrypted")
        if metadata.get(CEK_ALG_HEADER) != CEK_ALG:
            raise StoreError(
                f"Object {key} uses unsupported content cipher "
                f"{metadata.get(CEK_ALG_HEADER)!r}"
            )

        try:
            encryption_context = json.loads(metadata.get(MATDESC_HEADER, "{}"))
            wrapped_key = base64.b64decode(metadata[KEY_HEADER])
            iv = base64.b64decode(metadata[IV_HEADER])
        except (KeyError, ValueError) as e:
            raise StoreError(f"Invalid encryption metadata on {key}: {e}") from e
        if len(iv) != IV_SIZE:
            raise StoreError(f"Invalid encryption metadata on {key}: IV is {len(iv)} bytes")

        try:
            response = self._kms_client.decrypt(
                CiphertextBlob=wrapped_key, EncryptionContext=encryption_context
            )
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Failed to unwrap data key for {key}: {e}") from e

        try:
            return AESGCM(response["Plaintext"]).decrypt(iv, ciphertext, None)
        except InvalidTag as e:
            raise StoreError(f"Object {key} failed authentication") from e
        except ValueError as e:
            raise StoreError(f"Failed to decrypt {key}: {e}") from e

    def put_encrypted_object(self, object_path: str, data: bytes) -> None:
        """
        Encrypt and store an object under a fresh KMS data key.

        Args:
            object_path: Path relative to the bucket prefix
            data: Plaintext to store

        Raises:
            PersistenceError: If no KMS key is configured or the write fails
        """
        if not self.kms_key_id:
            raise PersistenceError("A KMS key ID is required to write encrypted objects")

        encryption_context = {"kms_cmk_id": self.kms_key_id}
        try:
            data_key = self._kms_client.generate_data_key(
                KeyId=self.kms_key_id,
                KeySpec="AES_256",
                EncryptionContext=encryption_context,
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Failed to generate data key: {e}") from e

        iv = os.urandom(IV_SIZE)
        ciphertext = AESGCM(data_key["Plaintext"]).encrypt(iv, data, None)

        metadata = {
            KEY_HEADER: base64.b64encode(data_key["CiphertextBlob"]).decode(),
            IV_HEADER: base64.b64encode(iv).decode(),
            MATDESC_HEADER: json.dumps(encryption_context),
            WRAP_ALG_HEADER: WRAP_ALG,
            CEK_ALG_HEADER: CEK_ALG,
            TAG_LEN_HEADER: str(TAG_LENGTH_BITS),
            UNENCRYPTED_LENGTH_HEADER: str(len(data)),
        }
        self._put_object(object_path, ciphertext, metadata)

    def _get_object(self, object_path: str) -> tuple[bytes, dict]:
        key = self.object_key(object_path)
        try:
            response = self._s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            raise _translate_read_error(key, e) from e
        except BotoCoreError as e:
            raise StoreError(f"Failed to read {key}: {e}") from e

        body = response["Body"]
        try:
            content_length = response.get("ContentLength", 0)
            if content_length > self.max_object_size:
                raise ObjectTooLargeError(
                    f"Object {key} too large: {content_length} bytes"
                )
            data = body.read(self.max_object_size + 1)
        except BotoCoreError as e:
            raise StoreError(f"Failed to read {key}: {e}") from e
        finally:
            body.close()

        if len(data) > self.max_object_size:
            raise ObjectTooLargeError(f"Object {key} exceeds {self.max_object_size} bytes")

        return data, response.get("Metadata", {})

    def _put_object(self, object_path: str, data: bytes, metadata: dict) -> None:
        key = self.object_key(object_path)
        try:
            self._s3_client.put_object(
                Bucket=self.bucket_name, Key=key, Body=data, Metadata=metadata
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(f"Failed to write {key}: {e}") from e
        logger.info(f"Stored s3://{self.bucket_name}/{key}")


def _translate_read_error(key: str, error: ClientError) -> StoreError:
    code = error.response.get("Error", {}).get("Code", "")
    if code in NOT_FOUND_CODES:
        return ObjectNotFoundError(f"Object {key} does not exist")
    if code in ACCESS_DENIED_CODES:
        return AccessDeniedError(f"Access denied reading {key}")
    return StoreError(f"Failed to read {key}: {error}")
