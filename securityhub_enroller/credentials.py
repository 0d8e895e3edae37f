"""
Cross-account credential broker.

Every lease is scoped to one account and one role, is handed to exactly one
account's processing, and is dropped afterwards. Nothing here caches
credentials.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import AssumeRoleDenied, LeaseExpired, error_code
from .retry import DEFAULT_RETRY, RetryPolicy, call_with_backoff

logger = logging.getLogger(__name__)

# Leases are treated as expired this long before STS says so
EXPIRY_MARGIN = timedelta(seconds=60)


@dataclass(frozen=True)
class CredentialLease:
    """Temporary credentials for one role in one account."""

    account_id: str
    role_name: str
    access_key_id: str = field(repr=False)
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiration: datetime

    @property
    def valid(self) -> bool:
        return datetime.now(timezone.utc) < self.expiration - EXPIRY_MARGIN

    def check(self):
        if not self.valid:
            raise LeaseExpired(
                f"Lease for {self.role_name} in {self.account_id} expired at {self.expiration.isoformat()}"
            )

    def session(self, region: Optional[str] = None) -> boto3.Session:
        """Build a boto3 session from the lease, checking validity first."""
        self.check()
        return boto3.Session(
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            aws_session_token=self.session_token,
            region_name=region,
        )

    def client(self, service: str, region: str):
        return self.session(region).client(service, region_name=region)


class CredentialBroker:
    """Exchange the engine's identity for per-account temporary credentials."""

    def __init__(
        self,
        sts_client,
        session_name_prefix: str = "securityhub-enroller",
        duration_seconds: int = 900,
        partition: str = "aws",
        retry: RetryPolicy = DEFAULT_RETRY,
    ):
        self.sts_client = sts_client
        self.retry = retry
        self.session_name_prefix = session_name_prefix
        self.duration_seconds = duration_seconds
        self.partition = partition

    def role_arn(self, account_id: str, role_name: str) -> str:
        return f"arn:{self.partition}:iam::{account_id}:role/{role_name}"

    def assume(self, account_id: str, role_name: str) -> CredentialLease:
        """Assume role_name in account_id.

        Raises:
            AssumeRoleDenied: the role is missing, its trust policy rejects
                the caller, the organization condition is not satisfied, or
                STS could not be reached.
            ServiceApiThrottled: STS was still throttling after the last retry.
        """
        role_arn = self.role_arn(account_id, role_name)
        session_name = f"{self.session_name_prefix}-{uuid.uuid4().hex[:12]}"

        try:
            response = call_with_backoff(
                self.sts_client.assume_role,
                retry=self.retry,
                RoleArn=role_arn,
                RoleSessionName=session_name,
                DurationSeconds=self.duration_seconds,
            )
        except ClientError as e:
            logger.warning("Could not assume %s: %s", role_arn, error_code(e))
            raise AssumeRoleDenied(account_id, role_name, str(e)) from e
        except BotoCoreError as e:
            logger.warning("Could not reach STS for %s: %s", role_arn, e)
            raise AssumeRoleDenied(account_id, role_name, str(e)) from e

        credentials = response["Credentials"]
        expiration = credentials.get("Expiration")
        if not isinstance(expiration, datetime):
            expiration = datetime.fromtimestamp(
                time.time() + self.duration_seconds, tz=timezone.utc
            )
        elif expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)

        return CredentialLease(
            account_id=account_id,
            role_name=role_name,
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials["SessionToken"],
            expiration=expiration,
        )

    @contextmanager
    def lease(self, account_id: str, role_name: str):
        """Yield a lease for the duration of one account's processing."""
        yield self.assume(account_id, role_name)
