from datetime import datetime, timedelta, timezone
from typing import Optional

from aws_lambda_powertools import Logger
from cryptography import x509

from cert_errors import (
    AccessDeniedError,
    MalformedCertificateError,
    ObjectNotFoundError,
    RenewalCheckError,
    StoreError,
    TooManyNamesError,
)
from certificate_issuer import certificate_path
from domain_names import names_from_config
from s3_store import BlobStore

logger = Logger(child=True)

PEM_CERTIFICATE_BEGIN = b"-----BEGIN CERTIFICATE-----"
PEM_CERTIFICATE_END = b"-----END CERTIFICATE-----"


def needs_renewal(
    domain_config: str,
    grace_period: timedelta,
    store: BlobStore,
    now: Optional[datetime] = None,
) -> bool:
    """
    Determine if the certificate for the primary name must be (re)issued.

    A missing or unreadable (access denied) certificate means renewal is
    needed. Any other failure to inspect the stored certificate raises a
    RenewalCheckError, whose ``renewal_needed`` is always True.

    Args:
        domain_config: Primary name configuration value (exactly one name)
        grace_period: Renew when less validity than this remains
        store: Blob store holding the certificate
        now: Reference time, defaults to the current UTC time

    Returns:
        bool: True if a certificate must be obtained, False otherwise

    Raises:
        InvalidInputError: If the configuration value is invalid
        TooManyNamesError: If more than one name is configured
        RenewalCheckError: If the certificate could not be inspected
    """
    names = names_from_config(domain_config)
    if len(names) != 1:
        raise TooManyNamesError(
            f"only one primary domain may be specified, {len(names)} found"
        )

    name = names[0]
    cert_path = certificate_path(name)

    logger.info(f"Looking for {cert_path}")
    try:
        cert_pem = store.get_unencrypted_object(cert_path)
    except (ObjectNotFoundError, AccessDeniedError):
        logger.info(f"No certificate for {cert_path}")
        return True
    except StoreError as e:
        raise RenewalCheckError(f"Error reading {cert_path}: {e}") from e

    logger.info(f"Examining {cert_path}")
    certificate = load_certificate(cert_pem)

    if is_expiry_within(certificate, grace_period, now):
        logger.info(f"Certificate {name!r} is within expiry window, will renew")
        return True

    logger.info(f"Certificate {name!r} is not within expiry window")
    return False


def load_certificate(cert_pem: bytes) -> x509.Certificate:
    """Parse the first PEM certificate block from a chain."""
    start = cert_pem.find(PEM_CERTIFICATE_BEGIN)
    end = cert_pem.find(PEM_CERTIFICATE_END, start)
    if start == -1 or end == -1:
        raise MalformedCertificateError("certificate is not PEM-encoded")

    block = cert_pem[start : end + len(PEM_CERTIFICATE_END)]
    try:
        return x509.load_pem_x509_certificate(block)
    except ValueError as e:
        raise MalformedCertificateError(f"Error parsing certificate: {e}") from e


def is_expiry_within(
    certificate: x509.Certificate,
    duration: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    # Naive datetimes are taken as local time
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    expiry = certificate.not_valid_after_utc
    logger.info(f"Certificate expires at {expiry.isoformat()}")
    return expiry < now + duration
