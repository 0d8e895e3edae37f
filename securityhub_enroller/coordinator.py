"""
Run coordinator.

One invocation walks the in-scope accounts, reconciling each on a small worker
pool, until the inventory is exhausted or the time budget runs out. In the
second case the progress so far is handed to the next invocation as a
RunCursor published on the notification topic.
"""

import logging
import math
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import ConfigurationError, EnrollerError
from .reconciler import AccountOutcome, Result
from .scope import evaluate, resolve_scope

logger = logging.getLogger(__name__)

# Failure reasons are carried in SNS messages; keep them short
MAX_REASON_LENGTH = 200


class TriggerKind(Enum):
    SCHEDULED = "scheduled"
    LIFECYCLE = "lifecycle"
    CONTINUATION = "continuation"
    BOOTSTRAP = "bootstrap"
    MANUAL = "manual"


COUNTERS = ("processed", "succeeded", "failed", "excluded", "removed")


def short_reason(reason: str) -> str:
    reason = " ".join(str(reason).split())
    if len(reason) <= MAX_REASON_LENGTH:
        return reason
    return reason[: MAX_REASON_LENGTH - 3] + "..."


def summarize_failures(outcomes) -> list:
    """One failure entry per account and reason, listing the regions it hit."""
    grouped = {}
    for outcome in outcomes:
        key = (outcome.account_id, short_reason(outcome.reason))
        grouped.setdefault(key, []).append(outcome.region)
    return [
        {"account_id": account_id, "regions": sorted(regions), "reason": reason}
        for (account_id, reason), regions in grouped.items()
    ]


@dataclass(frozen=True)
class RunCursor:
    """Where an interrupted run picks up again."""

    run_id: str
    trigger: str
    page_token: Optional[str] = None
    processed: tuple = ()
    counters: dict = field(default_factory=dict)
    failures: tuple = ()
    invocation: int = 1

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "page_token": self.page_token,
            "processed": list(self.processed),
            "counters": dict(self.counters),
            "failures": list(self.failures),
            "invocation": self.invocation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunCursor":
        if not data.get("run_id"):
            raise EnrollerError("Continuation cursor has no run_id")
        return cls(
            run_id=data["run_id"],
            trigger=data.get("trigger", TriggerKind.SCHEDULED.value),
            page_token=data.get("page_token"),
            processed=tuple(data.get("processed", ())),
            counters={k: int(v) for k, v in (data.get("counters") or {}).items()},
            failures=tuple(data.get("failures", ())),
            invocation=int(data.get("invocation", 1)),
        )


@dataclass(frozen=True)
class Trigger:
    kind: TriggerKind
    cursor: Optional[RunCursor] = None
    account_id: Optional[str] = None


@dataclass
class RunReport:
    run_id: str
    trigger: str
    counters: dict = field(default_factory=lambda: {name: 0 for name in COUNTERS})
    failures: list = field(default_factory=list)
    changes: list = field(default_factory=list)
    processed_ids: set = field(default_factory=set)
    completed: bool = False
    cursor: Optional[RunCursor] = None
    invocation: int = 1
    dry_run: bool = False
    error: Optional[str] = None

    def __post_init__(self):
        self._lock = threading.Lock()

    @classmethod
    def resume(cls, cursor: RunCursor, dry_run: bool = False) -> "RunReport":
        report = cls(run_id=cursor.run_id, trigger=cursor.trigger, dry_run=dry_run)
        report.counters.update(cursor.counters)
        report.failures = list(cursor.failures)
        report.processed_ids = set(cursor.processed)
        report.invocation = cursor.invocation
        return report

    def record(self, outcome: AccountOutcome, removed: bool = False):
        """Append one account's outcome. Safe to call from worker threads."""
        failures = summarize_failures(outcome.failures)
        changes = [
            {"account_id": o.account_id, "region": o.region, "actions": list(o.actions)}
            for o in outcome.regions
            if o.actions
        ]
        with self._lock:
            self.processed_ids.add(outcome.account_id)
            self.changes.extend(changes)
            self.counters["processed"] += 1
            if removed:
                self.counters["removed"] += 1
            if failures:
                self.counters["failed"] += 1
                self.failures.extend(failures)
            else:
                self.counters["succeeded"] += 1

    def exclude(self, account_id: str):
        with self._lock:
            self.processed_ids.add(account_id)
            self.counters["excluded"] += 1

    @property
    def failed_accounts(self) -> list:
        return sorted({f["account_id"] for f in self.failures})

    def continuation(self, page_token: Optional[str]) -> RunCursor:
        return RunCursor(
            run_id=self.run_id,
            trigger=self.trigger,
            page_token=page_token,
            processed=tuple(sorted(self.processed_ids)),
            counters=dict(self.counters),
            failures=tuple(self.failures),
            invocation=self.invocation + 1,
        )

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "completed": self.completed,
            "dry_run": self.dry_run,
            "invocation": self.invocation,
            **self.counters,
            "changes": len(self.changes),
            "failures": list(self.failures),
            "error": self.error,
        }


class RunCoordinator:
    """Drive one invocation of a reconciliation run."""

    def __init__(
        self,
        settings,
        inventory,
        broker,
        reconciler,
        notifier,
        region_source=None,
        scope=None,
        clock=time.monotonic,
        time_budget_seconds="settings",
    ):
        self.settings = settings
        self.inventory = inventory
        self.broker = broker
        self.reconciler = reconciler
        self.notifier = notifier
        self.region_source = region_source
        self.scope = scope
        self.clock = clock
        if time_budget_seconds == "settings":
            time_budget_seconds = settings.time_budget_seconds
        # None means no budget (operator runs from the CLI)
        self.time_budget_seconds = time_budget_seconds

    @property
    def dry_run(self) -> bool:
        return self.reconciler.dry_run

    def _deadline(self, remaining_ms: Optional[int]) -> float:
        budget = math.inf if self.time_budget_seconds is None else self.time_budget_seconds
        if remaining_ms is not None:
            budget = min(budget, remaining_ms / 1000.0)
        return self.clock() + budget - self.settings.account_reserve_seconds

    def current_scope(self):
        if self.scope is None:
            self.scope = resolve_scope(self.settings, self.inventory, self.region_source)
        return self.scope

    def check_organization(self):
        """Refuse to run against any organization other than the configured one."""
        org_id = self.inventory.organization_id()
        if org_id != self.settings.org_id:
            raise ConfigurationError(
                f"Credentials belong to organization {org_id}, expected {self.settings.org_id}"
            )

    def _admin_lease(self):
        return self.broker.lease(self.settings.security_account, self.settings.assume_role)

    # -------------------------------------------------------------------------
    # Per-account work (runs on worker threads)
    # -------------------------------------------------------------------------

    def _process_account(self, account, regions, report: RunReport):
        try:
            with self._admin_lease() as admin_lease, self.broker.lease(
                account.account_id, self.settings.assume_role
            ) as member_lease:
                outcome = self.reconciler.reconcile(account, regions, admin_lease, member_lease)
        except (EnrollerError, ClientError, BotoCoreError) as e:
            logger.error("Account %s failed: %s", account.account_id, e)
            outcome = AccountOutcome.failed(account.account_id, regions, str(e))
        report.record(outcome)

    def _remove_account(self, account_id: str, regions, report: RunReport):
        try:
            with self._admin_lease() as admin_lease:
                outcome = self.reconciler.disassociate(account_id, regions, admin_lease)
        except (EnrollerError, ClientError, BotoCoreError) as e:
            logger.error("Removing %s failed: %s", account_id, e)
            outcome = AccountOutcome.failed(account_id, regions, str(e))
        report.record(outcome, removed=True)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, trigger: Trigger, remaining_ms: Optional[int] = None) -> RunReport:
        """Process in-scope accounts until done or out of time.

        Raises OrganizationUnavailable when the inventory cannot be read;
        per-account failures are collected in the report instead.
        """
        deadline = self._deadline(remaining_ms)
        self.check_organization()
        cursor = trigger.cursor
        if cursor is not None:
            report = RunReport.resume(cursor, dry_run=self.dry_run)
            logger.info(
                "Resuming run %s (invocation %d, %d accounts done)",
                cursor.run_id,
                cursor.invocation,
                len(cursor.processed),
            )
        else:
            report = RunReport(
                run_id=uuid.uuid4().hex, trigger=trigger.kind.value, dry_run=self.dry_run
            )
            logger.info("Starting %s run %s", trigger.kind.value, report.run_id)

        scope = self.current_scope()

        with self._admin_lease() as admin_lease:
            if cursor is None:
                outcomes = self.reconciler.prepare_administrator(scope.regions, admin_lease)
                report.failures.extend(
                    summarize_failures(o for o in outcomes if o.result is Result.FAILED)
                )
            enrolled = self.reconciler.enrolled_members(scope.regions, admin_lease)

        resume_token = self._walk(cursor, scope, enrolled, deadline, report)

        if resume_token is not False:
            report.cursor = report.continuation(resume_token)
            logger.info(
                "Time budget exhausted after %d accounts; continuing in a new invocation",
                report.counters["processed"] + report.counters["excluded"],
            )
            if not self.dry_run:
                self.notifier.publish_continuation(report.cursor)
            return report

        self._sweep_departed(scope, enrolled, report)
        report.completed = True
        logger.info(
            "Run %s complete: %d processed, %d succeeded, %d failed, %d excluded, %d removed",
            report.run_id,
            report.counters["processed"],
            report.counters["succeeded"],
            report.counters["failed"],
            report.counters["excluded"],
            report.counters["removed"],
        )
        if not self.dry_run:
            self.notifier.publish_report(report)
        return report

    def _walk(self, cursor, scope, enrolled: dict, deadline: float, report: RunReport):
        """Submit accounts to the pool until done or the deadline passes.

        Returns False when the inventory was exhausted, otherwise the page
        token to resume from (None meaning the first page).
        """
        start_token = cursor.page_token if cursor else None
        done = set(report.processed_ids)
        resume_token = False
        started = 0

        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as pool:
            pending = set()
            for page in self.inventory.pages(start_token):
                for account in page.accounts:
                    if account.account_id in done:
                        continue
                    # Every invocation makes progress on at least one account
                    if started and self.clock() >= deadline:
                        resume_token = page.token
                        break
                    done.add(account.account_id)
                    started += 1

                    decision = evaluate(account, scope)
                    if decision.included:
                        job = (self._process_account, account, decision.regions)
                    else:
                        member_regions = {
                            region
                            for region, members in enrolled.items()
                            if account.account_id in members
                        }
                        if not member_regions:
                            report.exclude(account.account_id)
                            continue
                        job = (self._remove_account, account.account_id, member_regions)

                    if len(pending) >= self.settings.max_workers:
                        finished, pending = wait(pending, return_when=FIRST_COMPLETED)
                        for future in finished:
                            future.result()
                    pending.add(pool.submit(*job, report))

                if resume_token is not False:
                    break

            for future in pending:
                future.result()

        return resume_token

    def _sweep_departed(self, scope, enrolled: dict, report: RunReport):
        """Remove members whose account is no longer in the organization."""
        org_ids = self.inventory.account_ids()
        departed = {}
        for region, members in enrolled.items():
            for account_id in members:
                if account_id not in org_ids and account_id != self.settings.security_account:
                    departed.setdefault(account_id, set()).add(region)

        for account_id, regions in sorted(departed.items()):
            logger.info("%s is no longer in the organization", account_id)
            self._remove_account(account_id, regions, report)

    def offboard(self) -> RunReport:
        """Disassociate every member in every scope region."""
        self.check_organization()
        report = RunReport(
            run_id=uuid.uuid4().hex, trigger=TriggerKind.BOOTSTRAP.value, dry_run=self.dry_run
        )
        scope = self.current_scope()
        with self._admin_lease() as admin_lease:
            enrolled = self.reconciler.enrolled_members(scope.regions, admin_lease)

        regions_by_account = {}
        for region, members in enrolled.items():
            for account_id in members:
                regions_by_account.setdefault(account_id, set()).add(region)

        for account_id, regions in sorted(regions_by_account.items()):
            self._remove_account(account_id, regions, report)

        report.completed = True
        logger.info("Offboarded %d member accounts", report.counters["removed"])
        return report
