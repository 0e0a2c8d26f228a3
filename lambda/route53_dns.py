import time
from functools import wraps
from typing import Optional, Sequence

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from cert_errors import ProtocolError

logger = Logger(child=True)

CHALLENGE_RECORD_PREFIX = "_acme-challenge"
DEFAULT_TTL = 60


def retry_with_backoff(max_attempts=3, base_delay=5, exceptions=(IOError, ValueError)):
    """
    Decorator that retries function calls with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts
        base_delay: Base delay in seconds between retries
        exceptions: Tuple of exception types to catch and retry
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        raise
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_attempts}): {e}. Retrying in {delay}s"
                    )
                    time.sleep(delay)

        return wrapper

    return decorator


def challenge_record_name(domain: str) -> str:
    return f"{CHALLENGE_RECORD_PREFIX}.{domain.rstrip('.')}"


class Route53DnsProvider:
    """
    Publishes DNS-01 challenge TXT records in Route53.

    When no hosted zone ID is given, the zone for each domain is the public
    hosted zone with the longest name that is a suffix of the domain.
    """

    def __init__(self, hosted_zone_id: str = "", ttl: int = DEFAULT_TTL):
        self._route53_client = boto3.client("route53")
        self.hosted_zone_id = hosted_zone_id
        self.ttl = ttl

    def present(self, domain: str, values: Sequence[str]) -> str:
        """
        Create or replace the challenge TXT record and wait until it is in sync.

        Args:
            domain: Domain being validated
            values: Every validation string required for the domain

        Returns:
            str: DNS record name that was written
        """
        try:
            return self._upsert_record(domain, values)
        except (ClientError, BotoCoreError) as e:
            raise ProtocolError(
                f"Failed to create DNS record for {domain}: {e}"
            ) from e

    def cleanup(self, domain: str, values: Sequence[str]) -> Optional[str]:
        """
        Remove the challenge TXT record.

        Returns:
            Optional[str]: Error message if the record could not be removed
        """
        record_name = challenge_record_name(domain)

        try:
            self._route53_client.change_resource_record_sets(
                HostedZoneId=self._hosted_zone_for(domain),
                ChangeBatch=self._change_batch("DELETE", record_name, values),
            )
            logger.info(f"Cleaned up DNS record {record_name}")
        except (ClientError, BotoCoreError, ProtocolError, IOError, ValueError) as e:
            error_msg = f"Failed to cleanup DNS record {record_name}: {e}"
            logger.warning(error_msg)
            return error_msg

        return None

    @retry_with_backoff(
        max_attempts=3,
        base_delay=10,
        exceptions=(IOError, ValueError, ClientError),
    )
    def _upsert_record(self, domain: str, values: Sequence[str]) -> str:
        record_name = challenge_record_name(domain)

        response = self._route53_client.change_resource_record_sets(
            HostedZoneId=self._hosted_zone_for(domain),
            ChangeBatch=self._change_batch("UPSERT", record_name, values),
        )

        change_id = response["ChangeInfo"]["Id"]
        logger.info(f"Created DNS record {record_name}, change ID: {change_id}")

        waiter = self._route53_client.get_waiter("resource_record_sets_changed")
        waiter.wait(Id=change_id, WaiterConfig={"Delay": 10, "MaxAttempts": 30})
        logger.info(f"DNS record {record_name} propagated")

        return record_name

    def _change_batch(self, action: str, record_name: str, values: Sequence[str]) -> dict:
        return {
            "Changes": [
                {
                    "Action": action,
                    "ResourceRecordSet": {
                        "Name": record_name,
                        "Type": "TXT",
                        "TTL": self.ttl,
                        "ResourceRecords": [{"Value": f'"{value}"'} for value in values],
                    },
                }
            ]
        }

    def _hosted_zone_for(self, domain: str) -> str:
        if self.hosted_zone_id:
            return self.hosted_zone_id

        fqdn = domain.rstrip(".") + "."
        best_zone = None
        paginator = self._route53_client.get_paginator("list_hosted_zones")
        for page in paginator.paginate():
            for zone in page["HostedZones"]:
                if zone.get("Config", {}).get("PrivateZone"):
                    continue
                zone_name = zone["Name"]
                if fqdn != zone_name and not fqdn.endswith("." + zone_name):
                    continue
                if best_zone is None or len(zone_name) > len(best_zone["Name"]):
                    best_zone = zone

        if best_zone is None:
            raise ProtocolError(f"No Route53 hosted zone found for {domain}")

        logger.info(f"Using hosted zone {best_zone['Id']} for {domain}")
        return best_zone["Id"]
