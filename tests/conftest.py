"""Pytest fixtures for the certificate renewal tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import boto3
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from moto import mock_aws

from cert_errors import ObjectNotFoundError
from certificate_issuer import CertificateBundle
from s3_store import S3BlobStore

REGION = "us-east-1"
BUCKET_NAME = "test-cert-bucket"
BUCKET_PREFIX = "certs"


def build_certificate(private_key, names, not_after, not_before=None) -> bytes:
    """Build a self-signed PEM certificate for names, valid until not_after."""
    subject = issuer = x509.Name(
        [x509.NameAttribute(x509.oid.NameOID.COMMON_NAME, names[0])]
    )
    not_before = not_before or min(
        datetime.now(timezone.utc), not_after - timedelta(days=1)
    )

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    return cert.public_bytes(serialization.Encoding.PEM)


class FakeAcmeClient:
    """CA client double that registers instantly and self-signs certificates."""

    instances: list = []

    def __init__(self, directory_url, account, dns_provider, **options):
        self.directory_url = directory_url
        self.account = account
        self.dns_provider = dns_provider
        self.options = options
        self.registered = False
        self.issued_names: list = []
        self.cleanup_errors: list = []
        type(self).instances.append(self)

    def register(self) -> dict:
        self.registered = True
        return {
            "body": {
                "contact": [f"mailto:{self.account.email}"],
                "status": "valid",
            },
            "uri": "https://acme.example.com/acme/acct/1",
        }

    def obtain_certificate(self, names) -> CertificateBundle:
        self.issued_names.append(list(names))
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        certificate = build_certificate(
            key, list(names), datetime.now(timezone.utc) + timedelta(days=90)
        )
        private_key = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return CertificateBundle(
            certificate=certificate, private_key=private_key, domains=tuple(names)
        )


@pytest.fixture(scope="function")
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def mocked_aws(aws_credentials):
    with mock_aws():
        yield


@pytest.fixture
def kms_key_id(mocked_aws):
    """Create a KMS key and return its ID."""
    kms = boto3.client("kms", region_name=REGION)
    return kms.create_key(Description="certbot test key")["KeyMetadata"]["KeyId"]


@pytest.fixture
def s3_client(mocked_aws):
    """Create mocked S3 bucket."""
    client = boto3.client("s3", region_name=REGION)
    client.create_bucket(Bucket=BUCKET_NAME)
    return client


@pytest.fixture
def store(s3_client, kms_key_id):
    return S3BlobStore(
        region=REGION,
        bucket_name=BUCKET_NAME,
        bucket_prefix=BUCKET_PREFIX,
        kms_key_id=kms_key_id,
    )


@pytest.fixture
def memory_store():
    """In-memory blob store double with per-mode dictionaries."""
    class MemoryStore:
        def __init__(self):
            self.encrypted = {}
            self.unencrypted = {}
            self.writes = []

        def get_encrypted_object(self, object_path):
            if object_path not in self.encrypted:
                raise ObjectNotFoundError(object_path)
            return self.encrypted[object_path]

        def put_encrypted_object(self, object_path, data):
            self.writes.append(("encrypted", object_path))
            self.encrypted[object_path] = data

        def get_unencrypted_object(self, object_path):
            if object_path not in self.unencrypted:
                raise ObjectNotFoundError(object_path)
            return self.unencrypted[object_path]

        def put_unencrypted_object(self, object_path, data):
            self.writes.append(("unencrypted", object_path))
            self.unencrypted[object_path] = data

    return MemoryStore()


@pytest.fixture
def fake_acme_client_class():
    FakeAcmeClient.instances = []
    return FakeAcmeClient


@pytest.fixture(scope="session")
def sample_private_key():
    """Generate a sample RSA private key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def sample_private_key_pem(sample_private_key):
    return sample_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def make_certificate(sample_private_key):
    """Factory for PEM certificates signed by the sample key."""

    def _make(not_after, names=("example.com",)):
        return build_certificate(sample_private_key, list(names), not_after)

    return _make


@pytest.fixture
def sample_certificate_pem(make_certificate):
    return make_certificate(datetime.now(timezone.utc) + timedelta(days=90))


@pytest.fixture
def env_vars(monkeypatch, kms_key_id, s3_client):
    """Set required environment variables and reload module to apply them."""
    import importlib

    monkeypatch.setenv(
        "ACME_DIRECTORY_URL", "https://acme-staging-v02.api.letsencrypt.org/directory"
    )
    monkeypatch.setenv("ADMIN_EMAIL", "admin@example.com")
    monkeypatch.setenv("CERTIFICATE_NAME", "example.com")
    monkeypatch.setenv("CERTIFICATE_ADDITIONAL_NAMES", "www.example.com; *.example.com")
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("BUCKET_NAME", BUCKET_NAME)
    monkeypatch.setenv("BUCKET_PREFIX", BUCKET_PREFIX)
    monkeypatch.setenv("KMS_KEY_ID", kms_key_id)
    monkeypatch.setenv("EARLY_RENEWAL_PERIOD_HOURS", "72")
    monkeypatch.setenv("HOSTED_ZONE_ID", "Z1234567890")
    monkeypatch.setenv("DNS_PROPAGATION_WAIT_SECONDS", "0")
    monkeypatch.setenv("SNS_TOPIC_ARN", "")
    monkeypatch.setenv("POWERTOOLS_SERVICE_NAME", "test-certbot")

    # Reload lambda_function module to pick up new env vars
    import lambda_function

    importlib.reload(lambda_function)
    return lambda_function


@pytest.fixture
def lambda_context():
    context = Mock()
    context.function_name = "test-certbot"
    context.memory_limit_in_mb = 128
    context.invoked_function_arn = (
        "arn:aws:lambda:us-east-1:123456789012:function:test-certbot"
    )
    context.aws_request_id = "52fdfc07-2182-154f-163f-5f0f9a621d72"
    return context

