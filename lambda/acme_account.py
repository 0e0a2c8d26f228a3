import base64
import json
import re
from typing import Optional

from aws_lambda_powertools import Logger
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from acme_client import AcmeClient
from cert_errors import AccessDeniedError, InvalidInputError, ObjectNotFoundError
from s3_store import BlobStore

logger = Logger(child=True)

ACCOUNT_CONFIG_PATH = "config/config.json.enc"
ACCOUNT_KEY_SIZE = 4096

PEM_BLOCK_PATTERN = re.compile(
    r"-----BEGIN ([A-Z0-9 ]+)-----(.*?)-----END \1-----", re.DOTALL
)


class AcmeAccount:
    """
    ACME account identity: contact email, signing key and CA registration.

    The key is generated once per account and never replaced; a new key
    would orphan the registration held by the CA. The registration is kept
    as the JSON value the CA client produced and is written back unchanged.
    """

    def __init__(
        self,
        email: str,
        key: rsa.RSAPrivateKey,
        registration: Optional[dict] = None,
    ):
        self.email = email
        self.key = key
        self.registration = registration

    @classmethod
    def generate(cls, email: str, key_size: Optional[int] = None) -> "AcmeAccount":
        key_size = key_size or ACCOUNT_KEY_SIZE
        logger.info(f"Creating new {key_size}-bit ACME account key")
        key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(email=email, key=key)

    def to_json(self) -> bytes:
        key_pem = self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()

        return json.dumps(
            {
                "email": self.email,
                "keyPEM": key_pem,
                "registration": self.registration,
            },
            indent="\t",
        ).encode()

    @classmethod
    def from_json(cls, data: bytes) -> "AcmeAccount":
        """
        Load an account from its stored JSON envelope.

        Args:
            data: JSON with "email", "keyPEM" and "registration"

        Returns:
            AcmeAccount: Account with the stored key and registration

        Raises:
            InvalidInputError: If the JSON or the key cannot be decoded
        """
        try:
            envelope = json.loads(data)
        except ValueError as e:
            raise InvalidInputError(f"Error parsing account config: {e}") from e

        if not isinstance(envelope, dict):
            raise InvalidInputError("Account config is not a JSON object")

        return cls(
            email=envelope.get("email", ""),
            key=_load_private_key(envelope.get("keyPEM") or ""),
            registration=envelope.get("registration"),
        )


def _load_private_key(key_pem: str) -> rsa.RSAPrivateKey:
    # Older configs carry a PKCS#1 payload under a "PRIVATE KEY" header, so the
    # DER body is parsed without trusting the PEM label.
    match = PEM_BLOCK_PATTERN.search(key_pem)
    if not match:
        raise InvalidInputError("Account key is not PEM-encoded")

    try:
        der = base64.b64decode("".join(match.group(2).split()))
        key = serialization.load_der_private_key(der, password=None)
    except ValueError as e:
        raise InvalidInputError(f"Error parsing account key: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidInputError("Account key is not an RSA key")

    return key


def load_or_create_account(
    email: str,
    directory_url: str,
    store: BlobStore,
    dns_provider,
    client_class=None,
    key_size: Optional[int] = None,
    **client_options,
):
    """
    Build a CA client for the stored account, registering one if none exists.

    A newly registered account is persisted before the client is returned;
    if that write fails the error propagates, since the key would otherwise
    be lost.

    Args:
        email: Contact email for a new registration
        directory_url: ACME directory URL
        store: Blob store holding the encrypted account config
        dns_provider: DNS-01 record publisher for the client
        client_class: CA client implementation, AcmeClient by default
        key_size: RSA key size for a new account key, 4096 by default
        **client_options: Extra keyword arguments for the client

    Returns:
        Authenticated CA client
    """
    client_class = client_class or AcmeClient

    try:
        config = store.get_encrypted_object(ACCOUNT_CONFIG_PATH)
    except (ObjectNotFoundError, AccessDeniedError):
        logger.info("No stored ACME account, registering a new one")
        return _register_account(
            email, directory_url, store, dns_provider, client_class, key_size, client_options
        )

    account = AcmeAccount.from_json(config)
    logger.info(f"Loaded existing ACME account for {account.email}")
    return client_class(directory_url, account, dns_provider, **client_options)


def _register_account(
    email, directory_url, store, dns_provider, client_class, key_size, client_options
):
    account = AcmeAccount.generate(email, key_size)
    acme_client = client_class(directory_url, account, dns_provider, **client_options)

    account.registration = acme_client.register()

    store.put_encrypted_object(ACCOUNT_CONFIG_PATH, account.to_json())
    logger.info(f"Stored ACME account config at {ACCOUNT_CONFIG_PATH}")

    return acme_client
