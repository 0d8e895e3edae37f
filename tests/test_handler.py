"""Tests for the Lambda entry point."""

import json
from dataclasses import replace

import pytest

from securityhub_enroller import handler
from securityhub_enroller.coordinator import RunCoordinator, RunCursor, TriggerKind
from securityhub_enroller.errors import ConfigurationError, OrganizationUnavailable
from securityhub_enroller.reconciler import MembershipReconciler

from conftest import ADMIN, NO_WAIT, FakeBroker, FakeInventory, FakeNotifier, account

SCHEDULED = {"source": "aws.events", "detail-type": "Scheduled Event", "detail": {}}

CONTROL_TOWER_CREATED = {
    "source": "aws.controltower",
    "detail-type": "AWS Service Event via CloudTrail",
    "detail": {
        "eventName": "CreateManagedAccount",
        "serviceEventDetails": {
            "createManagedAccountStatus": {
                "state": "SUCCEEDED",
                "account": {"accountId": "555555555555", "accountName": "new"},
            }
        },
    },
}

ORGANIZATIONS_CREATED = {
    "source": "aws.organizations",
    "detail": {
        "eventName": "CreateAccountResult",
        "serviceEventDetails": {
            "createAccountStatus": {"state": "SUCCEEDED", "accountId": "666666666666"}
        },
    },
}

BOOTSTRAP = {
    "RequestType": "Create",
    "ResponseURL": "https://example.com/presigned",
    "StackId": "arn:aws:cloudformation:us-east-1:222222222222:stack/enroller/1",
    "RequestId": "req-1",
    "LogicalResourceId": "Bootstrap",
}


def sns_event(body):
    return {"Records": [{"EventSource": "aws:sns", "Sns": {"Message": json.dumps(body)}}]}


class Context:
    log_stream_name = "stream"

    def get_remaining_time_in_millis(self):
        return 900_000


class TestParseTrigger:
    def test_scheduled(self):
        assert handler.parse_trigger(SCHEDULED).kind is TriggerKind.SCHEDULED

    def test_control_tower_account_created(self):
        trigger = handler.parse_trigger(CONTROL_TOWER_CREATED)
        assert trigger.kind is TriggerKind.LIFECYCLE
        assert trigger.account_id == "555555555555"

    def test_organizations_account_created(self):
        assert handler.parse_trigger(ORGANIZATIONS_CREATED).account_id == "666666666666"

    def test_failed_account_creation_is_ignored(self):
        event = json.loads(json.dumps(CONTROL_TOWER_CREATED))
        event["detail"]["serviceEventDetails"]["createManagedAccountStatus"]["state"] = "FAILED"
        assert handler.parse_trigger(event) is None

    def test_continuation(self):
        cursor = RunCursor(run_id="run-1", trigger="scheduled", page_token="tok")
        trigger = handler.parse_trigger(sns_event({"message_type": "continuation", "cursor": cursor.to_dict()}))
        assert trigger.kind is TriggerKind.CONTINUATION
        assert trigger.cursor == cursor

    def test_own_run_report_is_ignored(self):
        assert handler.parse_trigger(sns_event({"message_type": "run_report", "report": {}})) is None

    @pytest.mark.parametrize(
        "body",
        [
            {"message_type": "continuation"},
            {"message_type": "continuation", "cursor": {"page_token": "tok"}},
            {"message_type": "continuation", "cursor": "run-1"},
            {"message_type": "continuation", "cursor": {"run_id": "run-1", "invocation": "second"}},
        ],
    )
    def test_malformed_continuation_is_ignored(self, body):
        assert handler.parse_trigger(sns_event(body)) is None

    def test_bootstrap(self):
        assert handler.parse_trigger(BOOTSTRAP).kind is TriggerKind.BOOTSTRAP


@pytest.fixture
def wired(monkeypatch, settings, scope, world):
    """Replace settings loading and client wiring with in-memory fakes."""
    notifier = FakeNotifier()
    state = {"inventory": FakeInventory([account(1), account(2)]), "notifier": notifier}

    def build(settings, dry_run=False, session=None, time_budget_seconds="settings"):
        return RunCoordinator(
            settings=settings,
            inventory=state["inventory"],
            broker=FakeBroker(),
            reconciler=MembershipReconciler(
                ADMIN, settings.standards, NO_WAIT, dry_run=dry_run, client_factory=world.client_factory
            ),
            notifier=notifier,
            scope=scope,
            time_budget_seconds=time_budget_seconds,
        )

    monkeypatch.setattr(handler, "get_settings", lambda: settings)
    monkeypatch.setattr(handler, "build_coordinator", build)
    sent = []
    monkeypatch.setattr(
        handler.cfn, "send", lambda event, context, status, data=None, reason="": sent.append((status, data, reason))
    )
    state["sent"] = sent
    return state


class TestLambdaHandler:
    def test_scheduled_run_completes(self, wired, world):
        result = handler.lambda_handler(SCHEDULED, Context())
        assert result["status"] == "completed"
        assert result["processed"] == 2
        assert len(wired["notifier"].reports) == 1

    def test_new_account_is_enrolled_by_lifecycle_event(self, wired, world):
        new_account = account(3)
        wired["inventory"] = FakeInventory([account(1), account(2), new_account])
        event = json.loads(json.dumps(CONTROL_TOWER_CREATED))
        event["detail"]["serviceEventDetails"]["createManagedAccountStatus"]["account"]["accountId"] = (
            new_account.account_id
        )

        result = handler.lambda_handler(event, Context())

        assert result["status"] == "completed"
        assert result["trigger"] == "lifecycle"
        assert world.members[("eu-west-1", new_account.account_id)] == "Enabled"

    def test_unrelated_event_is_ignored(self, wired):
        assert handler.lambda_handler({"source": "aws.ec2"}, Context()) == {"status": "ignored"}

    def test_continuation_without_cursor_is_ignored(self, wired, world):
        result = handler.lambda_handler(sns_event({"message_type": "continuation"}), Context())
        assert result == {"status": "ignored"}
        assert world.writes == []

    def test_bad_configuration_fails_without_raising(self, wired, monkeypatch):
        def broken():
            raise ConfigurationError("security_account must be a 12-digit account ID")

        monkeypatch.setattr(handler, "get_settings", broken)
        assert handler.lambda_handler(SCHEDULED, Context())["status"] == "failed"

    def test_unreadable_organization_publishes_failed_report(self, wired):
        class BrokenInventory(FakeInventory):
            def pages(self, start_token=None):
                raise OrganizationUnavailable("list_accounts failed")
                yield

        wired["inventory"] = BrokenInventory([])
        result = handler.lambda_handler(SCHEDULED, Context())

        assert result["status"] == "failed"
        assert "list_accounts failed" in result["error"]
        assert wired["notifier"].reports[0].error == "list_accounts failed"


class TestBootstrap:
    def test_create_runs_and_reports_success(self, wired, world):
        result = handler.lambda_handler(BOOTSTRAP, Context())

        assert result["status"] == "SUCCESS"
        status, data, _ = wired["sent"][0]
        assert status == "SUCCESS"
        assert data["Processed"] == 2
        assert data["Completed"] == "true"

    def test_delete_offboards_when_configured(self, wired, world, settings, monkeypatch):
        monkeypatch.setattr(handler, "get_settings", lambda: replace(settings, disassociate_on_delete=True))
        world.enroll(account(1).account_id, "eu-west-1")

        result = handler.lambda_handler({**BOOTSTRAP, "RequestType": "Delete"}, Context())

        assert result["removed"] == 1
        assert wired["sent"][0][0] == "SUCCESS"
        assert ("eu-west-1", account(1).account_id) not in world.members

    def test_failure_is_reported_to_cloudformation(self, wired):
        class BrokenInventory(FakeInventory):
            def pages(self, start_token=None):
                raise OrganizationUnavailable("no organization")
                yield

        wired["inventory"] = BrokenInventory([])
        result = handler.lambda_handler(BOOTSTRAP, Context())

        assert result["status"] == "FAILED"
        assert wired["sent"][0][0] == "FAILED"
        assert wired["sent"][0][2] == "no organization"

    def test_failed_delete_still_succeeds(self, wired, monkeypatch):
        def broken():
            raise ConfigurationError("missing")

        monkeypatch.setattr(handler, "get_settings", broken)
        result = handler.lambda_handler({**BOOTSTRAP, "RequestType": "Delete"}, Context())
        assert result["status"] == "SUCCESS"
