"""
Operator command line for the Security Hub enroller.

Usage:
    # Dry run (show what would be enrolled)
    securityhub-enroller plan

    # Actually enroll accounts
    securityhub-enroller apply

    # Member counts per region in the security account
    securityhub-enroller status
"""

import argparse
import logging
import sys
from pathlib import Path

from .config import load_config
from .coordinator import Trigger, TriggerKind
from .errors import EnrollerError
from .handler import build_coordinator


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Enroll organization accounts as Security Hub members"
    )
    parser.add_argument(
        "command",
        choices=("plan", "apply", "status"),
        help="plan: dry run, apply: enroll accounts, status: member counts",
    )
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--verbose", action="store_true", help="Log every API transition")
    return parser.parse_args(argv)


def print_report(report) -> None:
    print("")
    print("=" * 60)
    print("  Dry Run Summary" if report.dry_run else "  Summary")
    print("=" * 60)
    counters = report.counters
    print(f"  Accounts processed: {counters['processed']}")
    print(f"  Succeeded: {counters['succeeded']}")
    print(f"  Failed: {counters['failed']}")
    print(f"  Out of scope: {counters['excluded']}")
    print(f"  Removed from membership: {counters['removed']}")

    if report.failures:
        print("")
        print("Failures:")
        for failure in report.failures[:20]:
            print(f"  - {failure['account_id']} {', '.join(failure['regions'])}: {failure['reason']}")
        if len(report.failures) > 20:
            print(f"  ... and {len(report.failures) - 20} more")


def run_enrollment(settings, dry_run: bool) -> int:
    coordinator = build_coordinator(settings, dry_run=dry_run, time_budget_seconds=None)
    report = coordinator.run(Trigger(TriggerKind.MANUAL))

    if report.changes:
        print("Would change:" if dry_run else "Changed:")
        for change in sorted(report.changes, key=lambda c: (c["account_id"], c["region"])):
            print(f"  {change['account_id']} {change['region']}: {', '.join(change['actions'])}")

    print_report(report)
    print("")
    if report.failures:
        print("Some accounts had errors. Review the output above.")
        return 1
    if dry_run:
        print("Dry run complete. Use 'apply' to enroll accounts.")
    else:
        print("Security Hub enrollment complete!")
    return 0


def show_status(settings) -> int:
    coordinator = build_coordinator(settings, dry_run=True)
    scope = coordinator.current_scope()

    with coordinator.broker.lease(settings.security_account, settings.assume_role) as lease:
        enrolled = coordinator.reconciler.enrolled_members(scope.regions, lease)

    print(f"Security account: {settings.security_account}")
    print(f"Regions in scope: {len(scope.regions)}")
    print("")
    for region in sorted(enrolled):
        statuses = [s.lower() for s in enrolled[region].values()]
        active = sum(1 for s in statuses if s in ("enabled", "associated"))
        pending = sum(1 for s in statuses if s in ("invited", "created"))
        other = len(statuses) - active - pending
        print(f"  {region}: {active} active, {pending} pending, {other} other")
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    print("Security Hub Member Enrollment")
    print("=" * 50)

    try:
        settings = load_config(args.config)
        print(f"Security account: {settings.security_account}")
        print(f"Region filter: {settings.region_filter}, OU filter: {settings.ou_filter}")
        print("")

        if args.command == "status":
            return show_status(settings)
        return run_enrollment(settings, dry_run=args.command == "plan")

    except EnrollerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
