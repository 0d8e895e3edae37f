"""
Scope filter: which accounts and regions this engine manages.
"""

import logging
from dataclasses import dataclass

from .inventory import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Scope:
    """Resolved filter policy for one run."""

    region_filter: str
    ou_filter: str
    regions: frozenset
    managed_ous: frozenset = frozenset()
    excluded_accounts: frozenset = frozenset()


@dataclass(frozen=True)
class ScopeDecision:
    included: bool
    regions: frozenset = frozenset()


EXCLUDED = ScopeDecision(included=False)


def evaluate(account: Account, scope: Scope) -> ScopeDecision:
    """Decide whether an account is managed and in which regions.

    Pure: the same account and scope always give the same answer.
    """
    if account.account_id in scope.excluded_accounts:
        return EXCLUDED

    if scope.ou_filter == "ControlTower":
        # Control Tower governs the root, so accounts attached to it are in
        if account.ou_path and not scope.managed_ous.intersection(account.ou_path):
            return EXCLUDED

    regions = scope.regions
    if account.regions is not None:
        regions = regions & account.regions
    if not regions:
        return EXCLUDED

    return ScopeDecision(included=True, regions=frozenset(regions))


def managed_organizational_units(inventory, guardrail_prefix: str, extra=()) -> frozenset:
    """OUs registered with Control Tower, detected by their guardrail SCPs."""
    managed = set(extra)
    for ou in inventory.organizational_units():
        policies = inventory.policies_for_target(ou["id"])
        if any(name.startswith(guardrail_prefix) for name in policies):
            managed.add(ou["id"])
            logger.debug("OU %s (%s) is managed by Control Tower", ou["path"], ou["id"])
    return frozenset(managed)


def resolve_scope(settings, inventory, region_source) -> Scope:
    """Build the Scope for this run from settings and the live organization."""
    regions = set(region_source.regions_for(settings.region_filter))
    if settings.regions:
        regions &= set(settings.regions)

    managed_ous = frozenset(settings.managed_ous)
    if settings.ou_filter == "ControlTower":
        managed_ous = managed_organizational_units(
            inventory, settings.guardrail_prefix, settings.managed_ous
        )

    scope = Scope(
        region_filter=settings.region_filter,
        ou_filter=settings.ou_filter,
        regions=frozenset(regions),
        managed_ous=managed_ous,
        excluded_accounts=frozenset({settings.security_account}),
    )
    logger.info(
        "Scope: %d regions (%s filter), OU filter %s with %d managed OUs",
        len(scope.regions),
        scope.region_filter,
        scope.ou_filter,
        len(scope.managed_ous),
    )
    return scope
