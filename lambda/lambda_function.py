import json
import logging
import os
from datetime import timedelta

import boto3
from acme import errors
from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.exceptions import BotoCoreError, ClientError

from acme_account import load_or_create_account
from cert_errors import LambdaCertError, RenewalCheckError, TooManyNamesError
from certificate_issuer import issue_certificate
from domain_names import names_from_config
from renewal import needs_renewal
from route53_dns import Route53DnsProvider
from s3_store import S3BlobStore

logger = Logger(service=os.environ.get("POWERTOOLS_SERVICE_NAME", "s3-certbot-lambda"))
logging.getLogger("botocore").setLevel(logging.WARNING)

# Environment variables
ACME_DIRECTORY_URL = os.environ.get(
    "ACME_DIRECTORY_URL", "https://acme-v02.api.letsencrypt.org/directory"
)
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "")
CERTIFICATE_NAME = os.environ.get("CERTIFICATE_NAME", "")
CERTIFICATE_ADDITIONAL_NAMES = os.environ.get("CERTIFICATE_ADDITIONAL_NAMES", "")
AWS_REGION = os.environ.get("AWS_REGION", "")
BUCKET_NAME = os.environ.get("BUCKET_NAME", "")
# Empty value is allowed for BUCKET_PREFIX
BUCKET_PREFIX = os.environ.get("BUCKET_PREFIX", "")
KMS_KEY_ID = os.environ.get("KMS_KEY_ID", "")
EARLY_RENEWAL_PERIOD_HOURS = int(os.environ.get("EARLY_RENEWAL_PERIOD_HOURS", "72"))
MAX_OBJECT_SIZE = int(os.environ.get("MAX_OBJECT_SIZE", str(1024 * 1024)))
HOSTED_ZONE_ID = os.environ.get("HOSTED_ZONE_ID", "")
DNS_PROPAGATION_WAIT_SECONDS = int(os.environ.get("DNS_PROPAGATION_WAIT_SECONDS", "30"))
SNS_TOPIC_ARN = os.environ.get("SNS_TOPIC_ARN", "")

MIN_EARLY_RENEWAL_PERIOD_HOURS = 24


def _validate_config() -> None:
    """
    Validate environment variables.
    """
    for name in ("ADMIN_EMAIL", "CERTIFICATE_NAME", "AWS_REGION", "BUCKET_NAME", "KMS_KEY_ID"):
        if not globals()[name]:
            raise ValueError(f"value must be specified for {name} in environment")
    if EARLY_RENEWAL_PERIOD_HOURS < MIN_EARLY_RENEWAL_PERIOD_HOURS:
        raise ValueError(
            f"EARLY_RENEWAL_PERIOD_HOURS must be >= {MIN_EARLY_RENEWAL_PERIOD_HOURS}"
        )
    if MAX_OBJECT_SIZE <= 0:
        raise ValueError("MAX_OBJECT_SIZE must be positive")
    if HOSTED_ZONE_ID and not HOSTED_ZONE_ID.startswith(("Z", "/hostedzone/")):
        raise ValueError(f"Invalid HOSTED_ZONE_ID format: {HOSTED_ZONE_ID}")


def _certificate_names() -> tuple[str, tuple[str, ...]]:
    """
    Validate the configured names.

    Returns:
        tuple: (primary name, additional names)
    """
    primary_names = names_from_config(CERTIFICATE_NAME)
    if len(primary_names) != 1:
        raise TooManyNamesError(
            f"only one primary domain may be specified, {len(primary_names)} found"
        )

    additional_names = ()
    if CERTIFICATE_ADDITIONAL_NAMES:
        try:
            additional_names = names_from_config(CERTIFICATE_ADDITIONAL_NAMES)
        except ValueError as e:
            raise type(e)(f"Error reading CERTIFICATE_ADDITIONAL_NAMES: {e}") from e

    return primary_names[0], additional_names


def send_notification(topic_arn: str, subject: str, message: str) -> None:
    """Send notification via AWS SNS.

    Args:
        topic_arn: SNS topic ARN
        subject: Notification subject line
        message: Notification message body
    """
    try:
        sns_client = boto3.client("sns")
        sns_client.publish(TopicArn=topic_arn, Subject=subject, Message=message)
        logger.info(f"Sent notification: {subject}")
    except (ClientError, BotoCoreError, IOError, ValueError) as e:
        logger.error(f"Failed to send notification: {e}")


@logger.inject_lambda_context(log_event=True)
def lambda_handler(event: dict, context: LambdaContext) -> dict:
    """AWS Lambda function entry point for certificate management.

    Args:
        event: Lambda event data (supports 'force_renewal' parameter)
        context: Lambda runtime context

    Returns:
        dict: Response with status code and operation result
    """
    _validate_config()
    logger.info(f"Starting certificate check/renewal for {CERTIFICATE_NAME}")

    force_renewal = event.get("force_renewal", False)
    grace_period = timedelta(hours=EARLY_RENEWAL_PERIOD_HOURS)

    try:
        primary_name, additional_names = _certificate_names()

        store = S3BlobStore(
            region=AWS_REGION,
            bucket_name=BUCKET_NAME,
            bucket_prefix=BUCKET_PREFIX,
            kms_key_id=KMS_KEY_ID,
            max_object_size=MAX_OBJECT_SIZE,
        )

        if not force_renewal and not needs_renewal(primary_name, grace_period, store):
            logger.info(
                "No need to do anything - certificate is present and outside expiry window"
            )
            return {
                "statusCode": 200,
                "body": json.dumps(
                    {"message": "Certificate still valid", "renewed": False}
                ),
            }

        session = load_or_create_account(
            ADMIN_EMAIL,
            ACME_DIRECTORY_URL,
            store,
            Route53DnsProvider(hosted_zone_id=HOSTED_ZONE_ID),
            propagation_wait=DNS_PROPAGATION_WAIT_SECONDS,
        )

        logger.info("Issuing new certificate...")
        bundle = issue_certificate(primary_name, additional_names, session, store)
        domains = list(bundle.domains)

        success_msg = f"Successfully renewed certificate for domains: {', '.join(domains)}"
        cleanup_errors = getattr(session, "cleanup_errors", [])
        if cleanup_errors:
            success_msg += "\n\nWarnings during cleanup:\n" + "\n".join(cleanup_errors)

        if SNS_TOPIC_ARN:
            send_notification(
                topic_arn=SNS_TOPIC_ARN,
                subject=f"Certificate renewed for {primary_name}",
                message=success_msg,
            )

        return {
            "statusCode": 200,
            "body": json.dumps(
                {
                    "message": "Certificate renewed successfully",
                    "renewed": True,
                    "domains": domains,
                    "expiry": bundle.not_after.isoformat(),
                }
            ),
        }

    except (LambdaCertError, errors.Error, IOError, ValueError) as e:
        if isinstance(e, RenewalCheckError):
            logger.error(f"Validating existing certificate failed, renewal needed: {e}")
        logger.error(f"Certificate renewal failed: {e}", exc_info=True)

        if SNS_TOPIC_ARN:
            send_notification(
                topic_arn=SNS_TOPIC_ARN,
                subject=f"Certificate renewal FAILED for {CERTIFICATE_NAME}",
                message=f"Failed to renew certificate for {CERTIFICATE_NAME}.\nError: {str(e)}",
            )

        return {
            "statusCode": 500,
            "body": json.dumps(
                {"message": "Certificate renewal failed", "error": str(e)}
            ),
        }
