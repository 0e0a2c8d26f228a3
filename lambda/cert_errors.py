"""Exception hierarchy shared by the certificate renewal modules."""


class LambdaCertError(Exception):
    """Base class for every error raised by the renewal pipeline."""


class InvalidInputError(LambdaCertError, ValueError):
    """Configuration value is missing or malformed."""


class InvalidNameError(InvalidInputError):
    """Name is not a valid DNS name, or is an IP literal."""


class TooManyNamesError(InvalidInputError):
    """Renewal check was given more than one primary name."""


class StoreError(LambdaCertError):
    """Blob store operation failed."""


class ObjectNotFoundError(StoreError):
    pass


class AccessDeniedError(StoreError):
    pass


class ObjectTooLargeError(StoreError):
    pass


class PersistenceError(StoreError):
    """Blob store write failed."""


class ProtocolError(LambdaCertError):
    """ACME registration or issuance failed."""


class RenewalCheckError(LambdaCertError):
    """
    Renewal check could not inspect the stored certificate.

    The check still concludes that renewal is needed; callers get both the
    conclusion (``renewal_needed``) and the failure.
    """

    renewal_needed = True


class MalformedCertificateError(RenewalCheckError, ValueError):
    """Stored certificate is not a PEM-encoded X.509 certificate."""
