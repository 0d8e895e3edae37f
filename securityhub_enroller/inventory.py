"""
Organization inventory reader.

Enumerates organization accounts with their OU ancestry, page by page, so a
continuation can resume from the page it stopped on.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import OrganizationUnavailable, ServiceApiThrottled, error_code
from .retry import DEFAULT_RETRY, RetryPolicy, call_with_backoff

logger = logging.getLogger(__name__)

# Raised by Organizations when a NextToken is stale or unknown
EXPIRED_TOKEN_CODES = {
    "InvalidInputException",
    "ExpiredTokenException",
    "InvalidNextTokenException",
}


@dataclass(frozen=True)
class Account:
    """An active organization account as seen on this pass."""

    account_id: str
    name: str
    email: str
    status: str = "ACTIVE"
    ou_path: tuple = ()
    regions: Optional[frozenset] = None


@dataclass(frozen=True)
class InventoryPage:
    """One ListAccounts page. token is the NextToken that requested it."""

    token: Optional[str]
    accounts: tuple
    next_token: Optional[str]


class OrganizationInventory:
    """Read-only view of the organization for one run."""

    def __init__(
        self,
        org_client,
        retry: RetryPolicy = DEFAULT_RETRY,
        account_client=None,
        page_size: int = 20,
    ):
        self.org_client = org_client
        self.retry = retry
        self.account_client = account_client
        self.page_size = page_size
        self._ou_parents = {}
        self._root_id = None

    def _call(self, method: str, **kwargs) -> dict:
        """Call an Organizations API, mapping failures to OrganizationUnavailable."""
        try:
            return call_with_backoff(
                getattr(self.org_client, method), retry=self.retry, **kwargs
            )
        except ServiceApiThrottled as e:
            raise OrganizationUnavailable(str(e)) from e
        except ClientError as e:
            raise OrganizationUnavailable(f"{method} failed: {e}") from e
        except BotoCoreError as e:
            raise OrganizationUnavailable(f"{method} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def _list_accounts_page(self, token: Optional[str]) -> dict:
        kwargs = {"MaxResults": self.page_size}
        if token:
            kwargs["NextToken"] = token
        return self._call("list_accounts", **kwargs)

    def pages(self, start_token: Optional[str] = None) -> Iterator[InventoryPage]:
        """Yield pages of active accounts, starting at start_token.

        If start_token has expired the read restarts from the first page;
        callers skip accounts they have already handled.
        """
        token = start_token
        while True:
            try:
                response = self._list_accounts_page(token)
            except OrganizationUnavailable as e:
                cause = e.__cause__
                if (
                    token
                    and token == start_token
                    and isinstance(cause, ClientError)
                    and error_code(cause) in EXPIRED_TOKEN_CODES
                ):
                    logger.warning("Pagination token expired; restarting from the first page")
                    start_token = token = None
                    continue
                raise

            accounts = tuple(
                self._build_account(raw)
                for raw in response.get("Accounts", [])
                if raw.get("Status") == "ACTIVE"
            )
            next_token = response.get("NextToken")
            yield InventoryPage(token=token, accounts=accounts, next_token=next_token)

            if not next_token:
                return
            token = next_token

    def accounts(self, start_token: Optional[str] = None) -> Iterator[Account]:
        for page in self.pages(start_token):
            yield from page.accounts

    def account_ids(self) -> set:
        """IDs of every active account, without OU lookups."""
        ids = set()
        token = None
        while True:
            response = self._list_accounts_page(token)
            for raw in response.get("Accounts", []):
                if raw.get("Status") == "ACTIVE":
                    ids.add(raw["Id"])
            token = response.get("NextToken")
            if not token:
                return ids

    def describe(self, account_id: str) -> Account:
        raw = self._call("describe_account", AccountId=account_id)["Account"]
        return self._build_account(raw)

    def _build_account(self, raw: dict) -> Account:
        return Account(
            account_id=raw["Id"],
            name=raw.get("Name", ""),
            email=raw.get("Email", ""),
            status=raw.get("Status", "ACTIVE"),
            ou_path=self.ou_path(raw["Id"]),
            regions=self._account_regions(raw["Id"]),
        )

    # -------------------------------------------------------------------------
    # OU ancestry
    # -------------------------------------------------------------------------

    def _parent(self, child_id: str) -> dict:
        parents = self._call("list_parents", ChildId=child_id).get("Parents", [])
        if not parents:
            raise OrganizationUnavailable(f"No parent returned for {child_id}")
        return parents[0]

    def ou_path(self, account_id: str) -> tuple:
        """OU ids from just below the root down to the account's parent.

        Accounts attached directly to the root have an empty path.
        """
        path = []
        parent = self._parent(account_id)
        while parent["Type"] == "ORGANIZATIONAL_UNIT":
            ou_id = parent["Id"]
            path.append(ou_id)
            if ou_id not in self._ou_parents:
                self._ou_parents[ou_id] = self._parent(ou_id)
            parent = self._ou_parents[ou_id]
        return tuple(reversed(path))

    def organization_id(self) -> str:
        return self._call("describe_organization")["Organization"]["Id"]

    def root_id(self) -> str:
        if self._root_id is None:
            roots = self._call("list_roots").get("Roots", [])
            if not roots:
                raise OrganizationUnavailable("Organization has no root")
            self._root_id = roots[0]["Id"]
        return self._root_id

    def organizational_units(self) -> list:
        """Discover all organizational units."""
        ous = []

        def get_ous_recursive(parent_id: str, parent_path: str = ""):
            token = None
            while True:
                kwargs = {"ParentId": parent_id}
                if token:
                    kwargs["NextToken"] = token
                response = self._call("list_organizational_units_for_parent", **kwargs)
                for ou in response.get("OrganizationalUnits", []):
                    ou_path = f"{parent_path}/{ou['Name']}" if parent_path else ou["Name"]
                    ous.append({"id": ou["Id"], "name": ou["Name"], "path": ou_path})
                    get_ous_recursive(ou["Id"], ou_path)
                token = response.get("NextToken")
                if not token:
                    return

        get_ous_recursive(self.root_id())
        return ous

    def policies_for_target(self, target_id: str) -> list:
        """Names of the service control policies attached to an OU or account."""
        names = []
        token = None
        while True:
            kwargs = {"TargetId": target_id, "Filter": "SERVICE_CONTROL_POLICY"}
            if token:
                kwargs["NextToken"] = token
            response = self._call("list_policies_for_target", **kwargs)
            names.extend(p["Name"] for p in response.get("Policies", []))
            token = response.get("NextToken")
            if not token:
                return names

    # -------------------------------------------------------------------------
    # Account regions
    # -------------------------------------------------------------------------

    def _account_regions(self, account_id: str) -> Optional[frozenset]:
        """Regions enabled for the account, or None when unknown."""
        if self.account_client is None:
            return None

        regions = set()
        token = None
        try:
            while True:
                kwargs = {
                    "AccountId": account_id,
                    "RegionOptStatusContains": ["ENABLED", "ENABLED_BY_DEFAULT"],
                }
                if token:
                    kwargs["NextToken"] = token
                response = call_with_backoff(
                    self.account_client.list_regions, retry=self.retry, **kwargs
                )
                regions.update(r["RegionName"] for r in response.get("Regions", []))
                token = response.get("NextToken")
                if not token:
                    return frozenset(regions)
        except (ClientError, ServiceApiThrottled) as e:
            logger.warning("Could not list regions for %s: %s", account_id, e)
            return None
