import posixpath
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence

from acme import errors
from aws_lambda_powertools import Logger
from cryptography import x509

from cert_errors import LambdaCertError, ProtocolError
from s3_store import BlobStore

logger = Logger(child=True)

CERTIFICATE_FILE = "cert.crt"
PRIVATE_KEY_FILE = "cert.key.enc"


def certificate_path(name: str) -> str:
    return posixpath.join(name, CERTIFICATE_FILE)


def private_key_path(name: str) -> str:
    return posixpath.join(name, PRIVATE_KEY_FILE)


@dataclass(frozen=True)
class CertificateBundle:
    """PEM certificate chain and PEM private key from one issuance."""

    certificate: bytes
    private_key: bytes
    domains: tuple[str, ...] = ()

    @property
    def not_after(self) -> datetime:
        return x509.load_pem_x509_certificate(self.certificate).not_valid_after_utc


class CertificateAuthorityClient(Protocol):
    def register(self) -> dict: ...

    def obtain_certificate(self, names: Sequence[str]) -> CertificateBundle: ...


def obtain_certificate(
    primary_name: str,
    additional_names: Sequence[str],
    session: CertificateAuthorityClient,
) -> CertificateBundle:
    """
    Run validation and issuance for the primary name plus additional names.

    The primary name goes first so it becomes the certificate's common name.
    Failures are not retried here; the next scheduled run tries again.

    Args:
        primary_name: Name the certificate is stored under
        additional_names: Extra subject alternative names
        session: Authenticated CA client

    Returns:
        CertificateBundle: Issued chain and private key

    Raises:
        ProtocolError: If the CA exchange fails
    """
    names = [primary_name, *additional_names]
    logger.info(f"Obtaining certificate for domains: {names}")

    try:
        return session.obtain_certificate(names)
    except LambdaCertError:
        raise
    except (errors.Error, IOError, ValueError) as e:
        raise ProtocolError(f"Error obtaining certificate: {e}") from e


def store_certificate(
    primary_name: str, bundle: CertificateBundle, store: BlobStore
) -> None:
    """
    Persist an issued bundle under the primary name.

    The key is written (encrypted) before the certificate. The two writes are
    not atomic; a failure in between is repaired by the next issuance.
    """
    store.put_encrypted_object(private_key_path(primary_name), bundle.private_key)
    logger.info(f"Stored private key for {primary_name}")

    store.put_unencrypted_object(certificate_path(primary_name), bundle.certificate)
    logger.info(f"Stored certificate for {primary_name}")


def issue_certificate(
    primary_name: str,
    additional_names: Sequence[str],
    session: CertificateAuthorityClient,
    store: BlobStore,
) -> CertificateBundle:
    bundle = obtain_certificate(primary_name, additional_names, session)
    store_certificate(primary_name, bundle, store)
    return bundle
