from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from cert_errors import MalformedCertificateError
from certificate_issuer import CertificateBundle

KEYSTORE_ALIAS = "alias"


def build_keystore(bundle: CertificateBundle, alias: str = KEYSTORE_ALIAS) -> bytes:
    """
    Package an issued bundle as a single-entry PKCS#12 key store.

    The store has no password. The private key is carried as PKCS#8 and the
    entry is named by ``alias`` so Java tooling can address it.

    Args:
        bundle: Issued certificate chain and private key
        alias: Friendly name of the key entry

    Returns:
        bytes: DER-encoded PKCS#12 store

    Raises:
        MalformedCertificateError: If the pair cannot be parsed or does not match
    """
    try:
        certificates = x509.load_pem_x509_certificates(bundle.certificate)
        private_key = serialization.load_pem_private_key(bundle.private_key, password=None)
    except ValueError as e:
        raise MalformedCertificateError(f"Error parsing key pair: {e}") from e

    leaf, chain = certificates[0], certificates[1:]
    if _public_key_der(leaf.public_key()) != _public_key_der(private_key.public_key()):
        raise MalformedCertificateError("Private key does not match certificate")

    # Round-trip through PKCS#8 so the entry does not depend on the input format
    pkcs8_der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    private_key = serialization.load_der_private_key(pkcs8_der, password=None)

    return pkcs12.serialize_key_and_certificates(
        name=alias.encode(),
        key=private_key,
        cert=leaf,
        cas=chain or None,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _public_key_der(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
