"""Shared fixtures: an in-memory Security Hub and fake engine collaborators."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError

from securityhub_enroller.config import Settings
from securityhub_enroller.credentials import CredentialLease
from securityhub_enroller.errors import AssumeRoleDenied
from securityhub_enroller.inventory import Account, InventoryPage
from securityhub_enroller.reconciler import MembershipReconciler
from securityhub_enroller.retry import RetryPolicy
from securityhub_enroller.scope import Scope

ADMIN = "222222222222"
REGIONS = ("eu-west-1", "us-east-1")
NO_WAIT = RetryPolicy(max_attempts=2, base_delay=0, max_delay=0)

WRITE_OPERATIONS = {
    "create_members",
    "invite_members",
    "disassociate_members",
    "delete_members",
    "enable_security_hub",
    "accept_administrator_invitation",
    "batch_enable_standards",
    "batch_disable_standards",
}


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


# ---------- fake Security Hub ----------

class FakePaginator:
    def __init__(self, pages):
        self._pages = pages

    def paginate(self, **kwargs):
        return iter(self._pages())


class SecurityHubWorld:
    """State of Security Hub across accounts and regions."""

    def __init__(self, admin_id: str = ADMIN):
        self.admin_id = admin_id
        self.members = {}          # (region, account) -> MemberStatus
        self.invitations = {}      # (region, account) -> InvitationId
        self.administrators = {}   # (region, account) -> admin account id
        self.hubs = set()          # (account, region)
        self.standards = {}        # (account, region) -> {StandardsArn: subscription arn}
        self.writes = []           # (account, region, operation, args)
        self.failures = {}         # (account, region, operation) -> ClientError

    def client(self, account_id: str, region: str) -> "FakeSecurityHub":
        return FakeSecurityHub(self, account_id, region)

    def client_factory(self, lease, service: str, region: str):
        assert service == "securityhub"
        return self.client(lease.account_id, region)

    def writes_for(self, operation: str) -> list:
        return [w for w in self.writes if w[2] == operation]

    # helpers to arrange state
    def enroll(self, account_id: str, region: str, standards=("aws-foundational-security-best-practices/v/1.0.0",)):
        self.members[(region, account_id)] = "Enabled"
        self.administrators[(region, account_id)] = self.admin_id
        self.hubs.add((account_id, region))
        self.standards[(account_id, region)] = {
            f"arn:aws:securityhub:{region}::standards/{s}": f"arn:aws:securityhub:{region}:{account_id}:subscription/{s}"
            for s in standards
        }

    def invite(self, account_id: str, region: str):
        self.members[(region, account_id)] = "Invited"
        self.invitations[(region, account_id)] = f"inv-{account_id}-{region}"


class FakeSecurityHub:
    def __init__(self, world: SecurityHubWorld, account_id: str, region: str):
        self.world = world
        self.account_id = account_id
        self.region = region

    def _write(self, operation: str, **kwargs):
        failure = self.world.failures.get((self.account_id, self.region, operation))
        if failure is not None:
            raise failure
        self.world.writes.append((self.account_id, self.region, operation, kwargs))

    # administrator side
    def get_members(self, AccountIds):
        members = [
            {"AccountId": a, "MemberStatus": self.world.members[(self.region, a)]}
            for a in AccountIds
            if (self.region, a) in self.world.members
        ]
        return {"Members": members, "UnprocessedAccounts": []}

    def create_members(self, AccountDetails):
        self._write("create_members", AccountDetails=AccountDetails)
        for detail in AccountDetails:
            self.world.members[(self.region, detail["AccountId"])] = "Created"
        return {"UnprocessedAccounts": []}

    def invite_members(self, AccountIds):
        self._write("invite_members", AccountIds=AccountIds)
        for account_id in AccountIds:
            self.world.invite(account_id, self.region)
        return {"UnprocessedAccounts": []}

    def disassociate_members(self, AccountIds):
        self._write("disassociate_members", AccountIds=AccountIds)
        for account_id in AccountIds:
            self.world.members[(self.region, account_id)] = "Removed"
            self.world.administrators.pop((self.region, account_id), None)
        return {}

    def delete_members(self, AccountIds):
        self._write("delete_members", AccountIds=AccountIds)
        for account_id in AccountIds:
            self.world.members.pop((self.region, account_id), None)
        return {"UnprocessedAccounts": []}

    def describe_hub(self):
        if (self.account_id, self.region) not in self.world.hubs:
            raise client_error("InvalidAccessException", "not subscribed", "DescribeHub")
        return {"HubArn": f"arn:aws:securityhub:{self.region}:{self.account_id}:hub/default"}

    def enable_security_hub(self, EnableDefaultStandards=True):
        if (self.account_id, self.region) in self.world.hubs:
            raise client_error("ResourceConflictException", "already subscribed", "EnableSecurityHub")
        self._write("enable_security_hub", EnableDefaultStandards=EnableDefaultStandards)
        self.world.hubs.add((self.account_id, self.region))
        return {}

    def get_paginator(self, name):
        if name == "list_members":
            return FakePaginator(
                lambda: [
                    {
                        "Members": [
                            {"AccountId": a, "MemberStatus": s}
                            for (r, a), s in sorted(self.world.members.items())
                            if r == self.region
                        ]
                    }
                ]
            )
        if name == "get_enabled_standards":
            return FakePaginator(
                lambda: [
                    {
                        "StandardsSubscriptions": [
                            {
                                "StandardsArn": arn,
                                "StandardsSubscriptionArn": sub,
                                "StandardsStatus": "READY",
                            }
                            for arn, sub in self.world.standards.get(
                                (self.account_id, self.region), {}
                            ).items()
                        ]
                    }
                ]
            )
        raise AssertionError(f"unexpected paginator {name}")

    # member side
    def list_invitations(self):
        invitation = self.world.invitations.get((self.region, self.account_id))
        if invitation is None:
            return {"Invitations": []}
        return {
            "Invitations": [
                {"AccountId": self.world.admin_id, "InvitationId": invitation, "MemberStatus": "Pending"}
            ]
        }

    def get_administrator_account(self):
        admin = self.world.administrators.get((self.region, self.account_id))
        if admin is None:
            return {}
        return {"Administrator": {"AccountId": admin, "MemberStatus": "Enabled"}}

    def accept_administrator_invitation(self, AdministratorId, InvitationId):
        assert InvitationId == self.world.invitations[(self.region, self.account_id)]
        self._write("accept_administrator_invitation", AdministratorId=AdministratorId)
        self.world.invitations.pop((self.region, self.account_id))
        self.world.members[(self.region, self.account_id)] = "Enabled"
        self.world.administrators[(self.region, self.account_id)] = AdministratorId
        return {}

    def batch_enable_standards(self, StandardsSubscriptionRequests):
        self._write("batch_enable_standards", Requests=StandardsSubscriptionRequests)
        subs = self.world.standards.setdefault((self.account_id, self.region), {})
        for request in StandardsSubscriptionRequests:
            arn = request["StandardsArn"]
            subs[arn] = f"arn:aws:securityhub:{self.region}:{self.account_id}:subscription/{arn.split('/', 1)[1]}"
        return {}

    def batch_disable_standards(self, StandardsSubscriptionArns):
        self._write("batch_disable_standards", Arns=StandardsSubscriptionArns)
        subs = self.world.standards.get((self.account_id, self.region), {})
        for arn in [a for a, s in subs.items() if s in StandardsSubscriptionArns]:
            del subs[arn]
        return {}


# ---------- fake collaborators ----------

def make_lease(account_id: str, role_name: str = "AWSControlTowerExecution") -> CredentialLease:
    return CredentialLease(
        account_id=account_id,
        role_name=role_name,
        access_key_id="AKIDEXAMPLE",
        secret_access_key="secret",
        session_token="token",
        expiration=datetime.now(timezone.utc) + timedelta(hours=1),
    )


class FakeBroker:
    """Hands out leases without STS; accounts in `denied` are refused."""

    def __init__(self, denied=()):
        self.denied = set(denied)
        self.assumed = []

    def assume(self, account_id, role_name):
        self.assumed.append(account_id)
        if account_id in self.denied:
            raise AssumeRoleDenied(account_id, role_name, "AccessDenied")
        return make_lease(account_id, role_name)

    @contextmanager
    def lease(self, account_id, role_name):
        yield self.assume(account_id, role_name)


class FakeInventory:
    """Serves a fixed account list in pages of page_size."""

    def __init__(self, accounts, page_size: int = 4, org_ids=None, organization="o-exampleorg1"):
        self.accounts_list = list(accounts)
        self.page_size = page_size
        self.org_ids = org_ids
        self.organization = organization
        self.requested_tokens = []

    def organization_id(self):
        return self.organization

    def pages(self, start_token=None):
        start = int(start_token.split("-")[1]) if start_token else 0
        for offset in range(start, len(self.accounts_list), self.page_size):
            token = f"page-{offset}" if offset else None
            self.requested_tokens.append(token)
            next_offset = offset + self.page_size
            yield InventoryPage(
                token=token,
                accounts=tuple(self.accounts_list[offset:next_offset]),
                next_token=f"page-{next_offset}" if next_offset < len(self.accounts_list) else None,
            )

    def account_ids(self):
        if self.org_ids is not None:
            return set(self.org_ids)
        return {a.account_id for a in self.accounts_list}


class FakeNotifier:
    def __init__(self):
        self.continuations = []
        self.reports = []

    def publish_continuation(self, cursor):
        self.continuations.append(cursor)
        return "msg-continuation"

    def publish_report(self, report):
        self.reports.append(report)
        return "msg-report"


class TickClock:
    """Advances one second every time it is read."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        value = self.now
        self.now += 1.0
        return value


# ---------- fixtures ----------

@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real credentials."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def world():
    world = SecurityHubWorld()
    for region in REGIONS:
        world.hubs.add((ADMIN, region))
    return world


@pytest.fixture
def settings():
    return Settings(
        security_account=ADMIN,
        org_id="o-exampleorg1",
        standards={"aws-foundational": True},
        max_workers=3,
        time_budget_seconds=840,
        account_reserve_seconds=0,
        retry=NO_WAIT,
    )


@pytest.fixture
def scope():
    return Scope(
        region_filter="SecurityHub",
        ou_filter="All",
        regions=frozenset(REGIONS),
        excluded_accounts=frozenset({ADMIN}),
    )


@pytest.fixture
def reconciler(world):
    return MembershipReconciler(
        ADMIN, {"aws-foundational": True}, retry=NO_WAIT, client_factory=world.client_factory
    )


def account(n: int, ou_path=(), regions=None) -> Account:
    account_id = f"{100000000000 + n}"
    return Account(
        account_id=account_id,
        name=f"account-{n}",
        email=f"account-{n}@example.com",
        ou_path=tuple(ou_path),
        regions=regions,
    )
