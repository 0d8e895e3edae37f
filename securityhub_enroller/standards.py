"""
Security Hub standards: name mapping and per-account enablement.
"""

import logging

from .retry import DEFAULT_RETRY, RetryPolicy, call_with_backoff

logger = logging.getLogger(__name__)

# Map config names to Security Hub standard ARN patterns
STANDARD_ARN_MAP = {
    "aws-foundational": "aws-foundational-security-best-practices/v/1.0.0",
    "cis-1.2": "cis-aws-foundations-benchmark/v/1.2.0",
    "cis-1.4": "cis-aws-foundations-benchmark/v/1.4.0",
    "nist-800-53": "nist-800-53/v/5.0.0",
    "pci-dss": "pci-dss/v/3.2.1",
}

# Subscriptions in these states do not count as enabled
INACTIVE_STATUSES = {"DELETING", "FAILED"}


def partition_for(region: str) -> str:
    if region.startswith("cn-"):
        return "aws-cn"
    if region.startswith("us-gov-"):
        return "aws-us-gov"
    return "aws"


def standards_arn(name: str, region: str) -> str:
    """Build the StandardsArn used to subscribe to a standard in a region.

    CIS 1.2 predates regional standards and still uses the global ruleset ARN.
    """
    pattern = STANDARD_ARN_MAP[name]
    partition = partition_for(region)
    if name == "cis-1.2":
        return f"arn:{partition}:securityhub:::ruleset/{pattern}"
    return f"arn:{partition}:securityhub:{region}::standards/{pattern}"


def get_enabled_standards(securityhub_client, retry: RetryPolicy = DEFAULT_RETRY) -> dict:
    """Return {StandardsArn: StandardsSubscriptionArn} for active subscriptions."""
    enabled = {}
    paginator = securityhub_client.get_paginator("get_enabled_standards")
    pages = call_with_backoff(lambda: list(paginator.paginate()), retry=retry)
    for page in pages:
        for sub in page.get("StandardsSubscriptions", []):
            if sub.get("StandardsStatus") in INACTIVE_STATUSES:
                continue
            enabled[sub["StandardsArn"]] = sub["StandardsSubscriptionArn"]
    return enabled


def plan_standards(enabled: dict, desired: dict, region: str) -> tuple:
    """Work out which standards to enable and which subscriptions to remove.

    Args:
        enabled: {StandardsArn: StandardsSubscriptionArn} currently active
        desired: {standard name: bool} from configuration
        region: region the subscriptions live in

    Returns:
        (arns_to_enable, subscription_arns_to_disable)
    """
    to_enable = []
    to_disable = []
    for name, wanted in sorted(desired.items()):
        pattern = STANDARD_ARN_MAP[name]
        matches = [arn for arn in enabled if pattern in arn]
        if wanted and not matches:
            to_enable.append(standards_arn(name, region))
        elif not wanted and matches:
            to_disable.extend(enabled[arn] for arn in matches)
    return to_enable, to_disable


def ensure_standards(
    securityhub_client,
    region: str,
    desired: dict,
    dry_run: bool = False,
    retry: RetryPolicy = DEFAULT_RETRY,
) -> list:
    """Bring the account's standards subscriptions in line with configuration.

    Returns the list of actions taken (or that would be taken in dry-run).
    No state-changing call is made when nothing differs.
    """
    enabled = get_enabled_standards(securityhub_client, retry=retry)
    to_enable, to_disable = plan_standards(enabled, desired, region)
    actions = []
    prefix = "would-" if dry_run else ""

    if to_enable:
        if not dry_run:
            call_with_backoff(
                securityhub_client.batch_enable_standards,
                StandardsSubscriptionRequests=[{"StandardsArn": arn} for arn in to_enable],
                retry=retry,
            )
        actions.extend(f"{prefix}enable-standard:{arn.split('/', 1)[1]}" for arn in to_enable)

    if to_disable:
        if not dry_run:
            call_with_backoff(
                securityhub_client.batch_disable_standards,
                StandardsSubscriptionArns=to_disable,
                retry=retry,
            )
        actions.extend(f"{prefix}disable-standard:{arn.split('/', 1)[1]}" for arn in to_disable)

    if actions:
        logger.info("Standards in %s: %s", region, ", ".join(actions))
    return actions
