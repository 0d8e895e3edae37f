"""
Membership state reconciler.

For each (account, region) pair the current Security Hub membership is read
from the administrator account first, then exactly the transition needed to
reach "member, invitation accepted, standards enabled" is applied.
Security Hub member operations are not idempotent across call types
(inviting an existing member fails), so nothing is written before the state
has been read.

Failures are returned as tagged outcomes, never raised, so one region or
account cannot stop the rest of the batch.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    EnrollerError,
    InvitationConflict,
    error_code,
    is_already_in_desired_state,
)
from .retry import DEFAULT_RETRY, RetryPolicy, call_with_backoff
from .standards import ensure_standards

logger = logging.getLogger(__name__)


class EnrollmentStatus(Enum):
    UNMANAGED = "Unmanaged"
    INVITED = "Invited"
    MEMBER = "Member"
    DISASSOCIATED = "Disassociated"


class Result(Enum):
    SUCCESS = "Success"
    SKIPPED = "Skipped"
    FAILED = "Failed"


# Security Hub MemberStatus (lower-cased) -> enrollment status
MEMBER_STATUS_MAP = {
    "created": EnrollmentStatus.UNMANAGED,
    "invited": EnrollmentStatus.INVITED,
    "enabled": EnrollmentStatus.MEMBER,
    "associated": EnrollmentStatus.MEMBER,
    "removed": EnrollmentStatus.DISASSOCIATED,
    "resigned": EnrollmentStatus.DISASSOCIATED,
    "deleted": EnrollmentStatus.DISASSOCIATED,
    "disassociated": EnrollmentStatus.DISASSOCIATED,
}

HUB_NOT_ENABLED_CODES = {"InvalidAccessException", "ResourceNotFoundException"}


@dataclass(frozen=True)
class MemberState:
    """Membership of one account in one region, as the administrator sees it."""

    status: EnrollmentStatus
    raw: str = ""

    @property
    def exists(self) -> bool:
        return bool(self.raw)

    @property
    def suspended(self) -> bool:
        return self.raw.lower() == "accountsuspended"


NOT_A_MEMBER = MemberState(EnrollmentStatus.UNMANAGED)


@dataclass(frozen=True)
class RegionOutcome:
    account_id: str
    region: str
    result: Result
    actions: tuple = ()
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "region": self.region,
            "result": self.result.value,
            "actions": list(self.actions),
            "reason": self.reason,
        }


@dataclass
class AccountOutcome:
    account_id: str
    regions: list = field(default_factory=list)

    @property
    def failures(self) -> list:
        return [o for o in self.regions if o.result is Result.FAILED]

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def actions(self) -> list:
        return [a for o in self.regions for a in o.actions]

    @classmethod
    def failed(cls, account_id: str, regions, reason: str) -> "AccountOutcome":
        """Every region failed for the same reason (e.g. role denied)."""
        return cls(
            account_id,
            [RegionOutcome(account_id, r, Result.FAILED, reason=reason) for r in sorted(regions)],
        )


def default_client_factory(lease, service: str, region: str):
    return lease.client(service, region)


def status_from_member(member: Optional[dict]) -> MemberState:
    if not member:
        return NOT_A_MEMBER
    raw = member.get("MemberStatus", "")
    status = MEMBER_STATUS_MAP.get(raw.lower(), EnrollmentStatus.DISASSOCIATED)
    return MemberState(status, raw)


class MembershipReconciler:
    """Applies membership transitions for one administrator account."""

    def __init__(
        self,
        admin_account_id: str,
        standards: dict,
        retry: RetryPolicy = DEFAULT_RETRY,
        dry_run: bool = False,
        client_factory=default_client_factory,
    ):
        self.admin_account_id = admin_account_id
        self.standards = standards
        self.retry = retry
        self.dry_run = dry_run
        self.client_factory = client_factory

    def _securityhub(self, lease, region: str):
        return self.client_factory(lease, "securityhub", region)

    def _call(self, fn, **kwargs):
        return call_with_backoff(fn, retry=self.retry, **kwargs)

    def _action(self, name: str) -> str:
        return f"would-{name}" if self.dry_run else name

    # -------------------------------------------------------------------------
    # State reads
    # -------------------------------------------------------------------------

    def member_state(self, admin_client, account_id: str) -> MemberState:
        response = self._call(admin_client.get_members, AccountIds=[account_id])
        for member in response.get("Members", []):
            if member.get("AccountId") == account_id:
                return status_from_member(member)
        return NOT_A_MEMBER

    def pending_invitation(self, member_client) -> Optional[dict]:
        """The member's open invitation from our administrator, if any."""
        response = self._call(member_client.list_invitations)
        for invitation in response.get("Invitations", []):
            if invitation.get("AccountId") == self.admin_account_id:
                return invitation
        return None

    def current_administrator(self, member_client) -> dict:
        response = self._call(member_client.get_administrator_account)
        return response.get("Administrator") or {}

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _check_unprocessed(self, response: dict, account_id: str, operation: str):
        for item in response.get("UnprocessedAccounts", []):
            if item.get("AccountId") != account_id:
                continue
            reason = item.get("ProcessingResult", "unprocessed")
            if "already" in reason.lower():
                return
            raise InvitationConflict(f"{operation} for {account_id}: {reason}")

    def _create_member(self, admin_client, account) -> str:
        if not self.dry_run:
            details = {"AccountId": account.account_id}
            if account.email:
                details["Email"] = account.email
            response = self._call(admin_client.create_members, AccountDetails=[details])
            self._check_unprocessed(response, account.account_id, "CreateMembers")
        return self._action("create-member")

    def _invite(self, admin_client, account_id: str) -> str:
        if not self.dry_run:
            response = self._call(admin_client.invite_members, AccountIds=[account_id])
            self._check_unprocessed(response, account_id, "InviteMembers")
        return self._action("invite")

    def _enable_hub(self, client) -> list:
        """Enable Security Hub without default standards; already enabled is fine."""
        if self.dry_run:
            return []
        try:
            self._call(client.enable_security_hub, EnableDefaultStandards=False)
        except ClientError as e:
            if is_already_in_desired_state(e):
                return []
            raise
        return ["enable-hub"]

    def _accept(self, admin_client, member_client, account_id: str, invited_now: bool) -> list:
        """Accept the administrator's invitation from inside the member account."""
        if self.dry_run:
            return [self._action("accept")]

        actions = self._enable_hub(member_client)
        invitation = self.pending_invitation(member_client)

        if invitation is None:
            administrator = self.current_administrator(member_client)
            admin_id = administrator.get("AccountId")
            if admin_id == self.admin_account_id:
                # Accepted earlier; the administrator view has not caught up
                return actions
            if admin_id:
                raise InvitationConflict(
                    f"{account_id} is already associated with administrator {admin_id}"
                )
            if not invited_now:
                actions.append(self._invite(admin_client, account_id))
                invitation = self.pending_invitation(member_client)
            if invitation is None:
                raise InvitationConflict(f"No pending invitation found in {account_id}")

        self._call(
            member_client.accept_administrator_invitation,
            AdministratorId=self.admin_account_id,
            InvitationId=invitation["InvitationId"],
        )
        actions.append("accept")
        return actions

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def reconcile(self, account, regions, admin_lease, member_lease) -> AccountOutcome:
        """Converge one in-scope account in every applicable region."""
        outcome = AccountOutcome(account.account_id)
        for region in sorted(regions):
            outcome.regions.append(
                self._guarded(
                    account.account_id,
                    region,
                    self._reconcile_region,
                    account,
                    region,
                    admin_lease,
                    member_lease,
                )
            )
        return outcome

    def _reconcile_region(self, account, region, admin_lease, member_lease) -> RegionOutcome:
        account_id = account.account_id
        admin = self._securityhub(admin_lease, region)
        state = self.member_state(admin, account_id)

        if state.suspended:
            return RegionOutcome(account_id, region, Result.SKIPPED, reason="account suspended")

        actions = []
        invited_now = False

        if state.status is EnrollmentStatus.UNMANAGED:
            if not state.exists:
                actions.append(self._create_member(admin, account))
            actions.append(self._invite(admin, account_id))
            invited_now = True
        elif state.status is EnrollmentStatus.DISASSOCIATED:
            actions.append(self._invite(admin, account_id))
            invited_now = True

        if state.status is not EnrollmentStatus.MEMBER:
            member = self._securityhub(member_lease, region)
            actions.extend(self._accept(admin, member, account_id, invited_now))
            if self.dry_run:
                return self._done(account_id, region, state, actions)

        member = self._securityhub(member_lease, region)
        actions.extend(
            ensure_standards(member, region, self.standards, self.dry_run, self.retry)
        )
        return self._done(account_id, region, state, actions)

    def _done(self, account_id, region, state, actions) -> RegionOutcome:
        if actions:
            logger.info(
                "%s %s (%s): %s", account_id, region, state.status.value, ", ".join(actions)
            )
        else:
            logger.debug("%s %s already in desired state", account_id, region)
        return RegionOutcome(account_id, region, Result.SUCCESS, tuple(actions))

    def disassociate(self, account_id: str, regions, admin_lease) -> AccountOutcome:
        """Remove an account that has left scope from every region it is in."""
        outcome = AccountOutcome(account_id)
        for region in sorted(regions):
            outcome.regions.append(
                self._guarded(
                    account_id, region, self._disassociate_region, account_id, region, admin_lease
                )
            )
        return outcome

    def _disassociate_region(self, account_id, region, admin_lease) -> RegionOutcome:
        admin = self._securityhub(admin_lease, region)
        state = self.member_state(admin, account_id)
        if not state.exists:
            return RegionOutcome(account_id, region, Result.SKIPPED, reason="not a member")

        actions = []
        if state.status in (EnrollmentStatus.MEMBER, EnrollmentStatus.INVITED):
            if not self.dry_run:
                self._call(admin.disassociate_members, AccountIds=[account_id])
            actions.append(self._action("disassociate"))
        if not self.dry_run:
            self._call(admin.delete_members, AccountIds=[account_id])
        actions.append(self._action("delete-member"))

        logger.info("%s %s left scope: %s", account_id, region, ", ".join(actions))
        return RegionOutcome(account_id, region, Result.SUCCESS, tuple(actions))

    def enrolled_members(self, regions, admin_lease) -> dict:
        """{region: {account_id: MemberStatus}} for every member record."""
        members = {}
        for region in sorted(regions):
            admin = self._securityhub(admin_lease, region)
            found = {}
            try:
                paginator = admin.get_paginator("list_members")
                pages = self._call(lambda: list(paginator.paginate(OnlyAssociated=False)))
                for page in pages:
                    for member in page.get("Members", []):
                        found[member["AccountId"]] = member.get("MemberStatus", "")
            except (ClientError, EnrollerError) as e:
                logger.warning("Could not list members in %s: %s", region, e)
            members[region] = found
        return members

    def prepare_administrator(self, regions, admin_lease) -> list:
        """Make sure Security Hub and standards are enabled in the administrator."""
        return [
            self._guarded(
                self.admin_account_id, region, self._prepare_region, region, admin_lease
            )
            for region in sorted(regions)
        ]

    def _prepare_region(self, region, admin_lease) -> RegionOutcome:
        admin = self._securityhub(admin_lease, region)
        actions = []
        try:
            self._call(admin.describe_hub)
        except ClientError as e:
            if error_code(e) not in HUB_NOT_ENABLED_CODES:
                raise
            if self.dry_run:
                actions.append(self._action("enable-hub"))
                return RegionOutcome(self.admin_account_id, region, Result.SUCCESS, tuple(actions))
            actions.extend(self._enable_hub(admin))
        actions.extend(ensure_standards(admin, region, self.standards, self.dry_run, self.retry))
        if actions:
            logger.info("Administrator %s: %s", region, ", ".join(actions))
        return RegionOutcome(self.admin_account_id, region, Result.SUCCESS, tuple(actions))

    def _guarded(self, account_id, region, fn, *args) -> RegionOutcome:
        """Run one region's work, turning any failure into a FAILED outcome."""
        try:
            return fn(*args)
        except (ClientError, BotoCoreError, EnrollerError) as e:
            logger.error("%s %s failed: %s", account_id, region, e)
            return RegionOutcome(account_id, region, Result.FAILED, reason=str(e))
