"""AWS session and client construction.

A single CloudFormation client is built at startup from the operator
configuration and shared by the reconciler and the follower. When a role ARN
is configured (for stacks in another account) the client authenticates with
STS AssumeRole credentials that refresh themselves before expiry, so a
long-running operator never works with expired credentials.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.credentials import RefreshableCredentials
from botocore.session import get_session

from .config import Config

logger = logging.getLogger(__name__)

ROLE_SESSION_NAME = "cloudformation-operator"
ROLE_SESSION_DURATION_SECONDS = 3600

# Throttling is retried by the provider adapter with its own backoff policy;
# botocore's built-in retries are limited to transient connection errors.
CLIENT_RETRY_CONFIG = BotoConfig(retries={"max_attempts": 2, "mode": "standard"})


def _assume_role_refresher(base_session: boto3.Session, role_arn: str) -> Any:
    """Build a callable returning fresh AssumeRole credential metadata."""
    sts = base_session.client("sts")

    def refresh() -> dict[str, str]:
        response = sts.assume_role(
            RoleArn=role_arn,
            RoleSessionName=f"{ROLE_SESSION_NAME}-{os.getpid()}",
            DurationSeconds=ROLE_SESSION_DURATION_SECONDS,
        )
        credentials = response["Credentials"]
        logger.info(
            "Assumed role",
            extra={"role_arn": role_arn, "expires": credentials["Expiration"].isoformat()},
        )
        return {
            "access_key": credentials["AccessKeyId"],
            "secret_key": credentials["SecretAccessKey"],
            "token": credentials["SessionToken"],
            "expiry_time": credentials["Expiration"].isoformat(),
        }

    return refresh


def create_session(config: Config) -> boto3.Session:
    """Create a boto3 session for the configured region and identity.

    Args:
        config: Validated operator configuration.

    Returns:
        Session using the default credential chain, or refreshable
        AssumeRole credentials when ``config.assume_role_arn`` is set.
    """
    base_session = boto3.Session(region_name=config.region)
    if not config.assume_role_arn:
        logger.info("Using default AWS credential chain", extra={"region": config.region})
        return base_session

    refresh = _assume_role_refresher(base_session, config.assume_role_arn)
    credentials = RefreshableCredentials.create_from_metadata(
        metadata=refresh(),
        refresh_using=refresh,
        method="sts-assume-role",
    )
    botocore_session = get_session()
    # botocore has no public setter for refreshable credentials; set_credentials
    # would pin static keys that stop working when the role session expires
    botocore_session._credentials = credentials
    botocore_session.set_config_variable("region", config.region)
    return boto3.Session(botocore_session=botocore_session)


def create_cloudformation_client(config: Config) -> Any:
    """Create the CloudFormation client used by the provider adapter."""
    session = create_session(config)
    return session.client(
        "cloudformation", region_name=config.region, config=CLIENT_RETRY_CONFIG
    )
