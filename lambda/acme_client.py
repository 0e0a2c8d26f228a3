import json
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional, Sequence

from acme import challenges, client, errors, messages
from aws_lambda_powertools import Logger
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from josepy import JWKRSA
from josepy import errors as jose_errors

from cert_errors import ProtocolError
from certificate_issuer import CertificateBundle

logger = Logger(child=True)

USER_AGENT = "s3-certbot-lambda/1.0"
CERTIFICATE_KEY_SIZE = 4096
DNS_PROPAGATION_WAIT_SECONDS = 30
MAX_COMMON_NAME_LENGTH = 64

# DNS-01 only; HTTP-01 cannot be served from a scheduled function.
ALLOWED_CHALLENGES = (challenges.DNS01,)
EXCLUDED_CHALLENGES = (challenges.HTTP01,)


class AcmeClient:
    """
    ACME v2 client bound to one account, validating names with DNS-01.

    Args:
        directory_url: ACME directory URL
        account: Account identity (key, email, optional registration)
        dns_provider: Publishes and removes challenge TXT records
        propagation_wait: Extra seconds to wait after records are in sync
        certificate_key_size: RSA key size for issued certificates
    """

    def __init__(
        self,
        directory_url: str,
        account,
        dns_provider,
        propagation_wait: int = DNS_PROPAGATION_WAIT_SECONDS,
        certificate_key_size: int = CERTIFICATE_KEY_SIZE,
    ):
        self.account = account
        self.account_key = JWKRSA(key=account.key)
        self.dns_provider = dns_provider
        self.propagation_wait = propagation_wait
        self.certificate_key_size = certificate_key_size
        self.cleanup_errors: list[str] = []

        try:
            network = client.ClientNetwork(self.account_key, user_agent=USER_AGENT)
            directory = messages.Directory.from_json(network.get(directory_url).json())
        except (errors.Error, jose_errors.Error, IOError, ValueError) as e:
            raise ProtocolError(f"Error fetching ACME directory {directory_url}: {e}") from e

        self._acme_client = client.ClientV2(directory, net=network)

        if account.registration:
            try:
                network.account = messages.RegistrationResource.from_json(
                    account.registration
                )
            except jose_errors.DeserializationError as e:
                raise ProtocolError(f"Invalid stored account registration: {e}") from e
            logger.info(f"Using existing ACME account: {network.account.uri}")

    def register(self) -> dict:
        """
        Register the account with the CA, agreeing to the terms of service.

        Returns:
            dict: Registration resource as plain JSON types
        """
        try:
            registration = messages.NewRegistration.from_data(
                email=self.account.email, terms_of_service_agreed=True
            )
            regr = self._acme_client.new_account(registration)
        except (errors.Error, IOError, ValueError) as e:
            raise ProtocolError(f"Error in account registration: {e}") from e

        logger.info(f"Registered new ACME account: {regr.uri}")
        return json.loads(regr.json_dumps())

    def obtain_certificate(self, names: Sequence[str]) -> CertificateBundle:
        """
        Run the DNS-01 validation and issuance flow for the given names.

        Args:
            names: Names for the certificate, common name first

        Returns:
            CertificateBundle: Full chain and private key PEM bytes
        """
        names = list(names)
        private_key_pem, csr_pem = self._generate_csr(names)

        try:
            order = self._acme_client.new_order(csr_pem)
            logger.info(f"Created order for domains: {names}")

            validations = self._select_challenges(order)
        except (errors.Error, IOError, ValueError) as e:
            raise ProtocolError(f"Error creating order for {names}: {e}") from e

        presented: dict[str, list[str]] = {}
        self.cleanup_errors = []
        try:
            for domain, domain_validations in validations.items():
                values = [validation for _, validation in domain_validations]
                self.dns_provider.present(domain, values)
                presented[domain] = values

            if validations:
                time.sleep(self.propagation_wait)

            for domain, domain_validations in validations.items():
                for challenge_body, _ in domain_validations:
                    self._acme_client.answer_challenge(
                        challenge_body, challenge_body.response(self.account_key)
                    )
                    logger.info(f"Answered challenge for {domain}")

            deadline = datetime.now() + timedelta(minutes=5)
            order = self._acme_client.poll_authorizations(order, deadline)
            order = self._acme_client.finalize_order(
                order, deadline=datetime.now() + timedelta(minutes=2)
            )
        except (errors.Error, IOError, ValueError) as e:
            raise ProtocolError(f"Error obtaining certificate for {names}: {e}") from e
        finally:
            for domain, values in presented.items():
                error_msg = self.dns_provider.cleanup(domain, values)
                if error_msg:
                    self.cleanup_errors.append(error_msg)

        logger.info("Certificate issued successfully")
        return CertificateBundle(
            certificate=order.fullchain_pem.encode(),
            private_key=private_key_pem,
            domains=tuple(names),
        )

    def _select_challenges(
        self, order: messages.OrderResource
    ) -> dict[str, list[tuple[messages.ChallengeBody, str]]]:
        """Pick the DNS-01 challenge of every pending authorization, grouped by domain."""
        validations = defaultdict(list)

        for authz in order.authorizations:
            domain = authz.body.identifier.value
            if authz.body.status == messages.STATUS_VALID:
                continue

            dns_challenge = _find_challenge(authz)
            if dns_challenge is None:
                raise ProtocolError(f"No DNS-01 challenge found for {domain}")

            validation = dns_challenge.chall.validation(self.account_key)
            validations[domain].append((dns_challenge, validation))

        return dict(validations)

    def _generate_csr(self, domains: list[str]) -> tuple[bytes, bytes]:
        """
        Generate RSA private key and Certificate Signing Request for domains.

        Args:
            domains: List of domain names for the certificate

        Returns:
            tuple: (private_key_pem, csr_pem) as bytes
        """
        private_key = rsa.generate_private_key(
            public_exponent=65537, key_size=self.certificate_key_size
        )

        builder = x509.CertificateSigningRequestBuilder()
        common_name = domains[0]
        if len(common_name) <= MAX_COMMON_NAME_LENGTH:
            builder = builder.subject_name(
                x509.Name([x509.NameAttribute(x509.oid.NameOID.COMMON_NAME, common_name)])
            )
        else:
            builder = builder.subject_name(x509.Name([]))

        san = x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains])
        builder = builder.add_extension(san, critical=False)

        csr = builder.sign(private_key, hashes.SHA256())

        private_key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )

        return private_key_pem, csr.public_bytes(serialization.Encoding.PEM)


def _find_challenge(
    authz: messages.AuthorizationResource,
) -> Optional[messages.ChallengeBody]:
    for challenge_body in authz.body.challenges:
        if isinstance(challenge_body.chall, EXCLUDED_CHALLENGES):
            continue
        if isinstance(challenge_body.chall, ALLOWED_CHALLENGES):
            return challenge_body
    return None
