"""
Lambda entry point.

Turns the four kinds of incoming event into a Trigger for the run
coordinator:

- EventBridge scheduled event: fresh run
- Control Tower / Organizations account creation event: fresh run
- SNS continuation message published by a previous invocation: resume
- CloudFormation custom resource request: synchronous bootstrap run whose
  result is reported back to CloudFormation
"""

import json
import logging
import os
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from . import cfn
from .config import Settings, load_config
from .coordinator import RunCoordinator, RunCursor, RunReport, Trigger, TriggerKind
from .credentials import CredentialBroker
from .errors import EnrollerError
from .inventory import OrganizationInventory
from .notifications import CONTINUATION, Notifier, parse_message
from .reconciler import MembershipReconciler
from .regions import RegionSource
from .standards import partition_for

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

# Throttling is retried by our own backoff, so botocore only retries transient errors
AWS_CONFIG = Config(retries={"max_attempts": 3, "mode": "standard"}, max_pool_connections=20)

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Settings are read once per cold start."""
    global _settings
    if _settings is None:
        _settings = load_config()
        logger.setLevel(_settings.log_level)
    return _settings


def build_coordinator(
    settings: Settings,
    dry_run: bool = False,
    session: Optional[boto3.Session] = None,
    time_budget_seconds="settings",
) -> RunCoordinator:
    """Wire up the coordinator with clients from the engine's own session."""
    session = session or boto3.Session(region_name=settings.primary_region)
    region = settings.primary_region

    org_client = session.client("organizations", region_name=region, config=AWS_CONFIG)
    account_client = None
    if settings.resolve_account_regions:
        account_client = session.client("account", region_name=region, config=AWS_CONFIG)
    sns_client = None
    if settings.topic_arn:
        sns_client = session.client("sns", region_name=region, config=AWS_CONFIG)

    return RunCoordinator(
        settings=settings,
        inventory=OrganizationInventory(org_client, settings.retry, account_client),
        broker=CredentialBroker(
            session.client("sts", region_name=region, config=AWS_CONFIG),
            partition=partition_for(region),
            retry=settings.retry,
        ),
        reconciler=MembershipReconciler(
            settings.security_account, settings.standards, settings.retry, dry_run=dry_run
        ),
        notifier=Notifier(sns_client, settings.topic_arn),
        region_source=RegionSource(region, session),
        time_budget_seconds=time_budget_seconds,
    )


# -----------------------------------------------------------------------------
# Event parsing
# -----------------------------------------------------------------------------


def is_bootstrap(event: dict) -> bool:
    return "RequestType" in event and "ResponseURL" in event


def _lifecycle_account(event: dict) -> Optional[str]:
    """Account id from a successful account-creation event, else None."""
    detail = event.get("detail") or {}
    details = detail.get("serviceEventDetails") or {}
    source = event.get("source")
    event_name = detail.get("eventName")

    if source == "aws.controltower" and event_name == "CreateManagedAccount":
        status = details.get("createManagedAccountStatus") or {}
        if status.get("state") == "SUCCEEDED":
            return (status.get("account") or {}).get("accountId", "")
    elif source == "aws.organizations" and event_name == "CreateAccountResult":
        status = details.get("createAccountStatus") or {}
        if status.get("state") == "SUCCEEDED":
            return status.get("accountId", "")
    return None


def parse_trigger(event: dict) -> Optional[Trigger]:
    """Build the Trigger for an event, or None if the event is not for us."""
    if is_bootstrap(event):
        return Trigger(TriggerKind.BOOTSTRAP)

    for record in event.get("Records", []):
        if record.get("EventSource") != "aws:sns":
            continue
        body = parse_message(record.get("Sns", {}).get("Message", ""))
        if body.get("message_type") != CONTINUATION:
            return None
        cursor = body.get("cursor")
        if not isinstance(cursor, dict) or not cursor.get("run_id"):
            logger.error("Continuation message has no usable cursor; ignoring")
            return None
        try:
            return Trigger(TriggerKind.CONTINUATION, cursor=RunCursor.from_dict(cursor))
        except (TypeError, ValueError, AttributeError) as e:
            logger.error("Malformed continuation cursor for run %s: %s", cursor["run_id"], e)
            return None

    if event.get("detail-type") == "Scheduled Event":
        return Trigger(TriggerKind.SCHEDULED)

    account_id = _lifecycle_account(event)
    if account_id is not None:
        return Trigger(TriggerKind.LIFECYCLE, account_id=account_id)

    return None


def remaining_ms(context) -> Optional[int]:
    if context is not None and hasattr(context, "get_remaining_time_in_millis"):
        return context.get_remaining_time_in_millis()
    return None


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------


def handle_bootstrap(event: dict, context) -> dict:
    """Run synchronously and always answer CloudFormation."""
    request_type = event["RequestType"]
    logger.info("Bootstrap %s request", request_type)

    try:
        settings = get_settings()
        coordinator = build_coordinator(settings)

        if request_type == "Delete":
            data = {}
            if settings.disassociate_on_delete:
                report = coordinator.offboard()
                data = {"removed": report.counters["removed"], "failed": report.counters["failed"]}
            cfn.send(event, context, cfn.SUCCESS, data)
            return {"status": cfn.SUCCESS, **data}

        report = coordinator.run(Trigger(TriggerKind.BOOTSTRAP), remaining_ms(context))
        data = {
            "RunId": report.run_id,
            "Completed": str(report.completed).lower(),
            "Processed": report.counters["processed"],
            "Failed": report.counters["failed"],
        }
        cfn.send(event, context, cfn.SUCCESS, data)
        return {"status": cfn.SUCCESS, **report.to_dict()}

    except Exception as e:
        logger.exception("Bootstrap %s failed", request_type)
        # A failed delete would leave the stack stuck; report it but let it go
        status = cfn.SUCCESS if request_type == "Delete" else cfn.FAILED
        cfn.send(event, context, status, reason=str(e)[:1000])
        return {"status": status, "error": str(e)}


def lambda_handler(event, context):
    """Dispatch one Lambda event.

    CloudFormation requests are answered through handle_bootstrap. Scheduled,
    account-creation and continuation events start or resume a run; anything
    else is ignored. Run failures are reported, not raised.
    """
    logger.info("Event: %s", json.dumps(event, default=str)[:2000])

    if is_bootstrap(event):
        return handle_bootstrap(event, context)

    trigger = parse_trigger(event)
    if trigger is None:
        logger.info("Event is not an enrollment trigger; ignoring")
        return {"status": "ignored"}

    if trigger.kind is TriggerKind.LIFECYCLE:
        logger.info("New account %s created; starting a full run", trigger.account_id)

    try:
        settings = get_settings()
    except EnrollerError as e:
        logger.error("Invalid configuration: %s", e)
        return {"status": "failed", "error": str(e)}

    coordinator = build_coordinator(settings)
    try:
        report = coordinator.run(trigger, remaining_ms(context))
    except (EnrollerError, ClientError, BotoCoreError) as e:
        # Not re-raised: the next scheduled run retries
        logger.error("Run failed: %s", e)
        run_id = trigger.cursor.run_id if trigger.cursor else "unstarted"
        report = RunReport(run_id=run_id, trigger=trigger.kind.value, error=str(e))
        coordinator.notifier.publish_report(report)
        return {"status": "failed", **report.to_dict()}

    return {"status": "completed" if report.completed else "continued", **report.to_dict()}
