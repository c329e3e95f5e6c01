#!/usr/bin/env python3
"""
Google Analytics Spam Filter Sync Tool
======================================

This script synchronizes a declared list of referral/campaign spam patterns
into a Google Analytics account as exclude filters, and links those filters
to the account's reporting views (profiles).

It uses the Google Analytics Management API v3 through google-api-python-client:
- Service account authentication via google-auth
- Filter listing, creation and update at the account level
- Filter link listing and creation at the view level

IMPORTANT NOTES:
- Mutating calls are opt-in: --create, --update and --apply must be passed
  explicitly. Without them the tool only reports what it would do.
- The Management API has a low write quota per account, so only filters and
  links that are genuinely missing or stale are written.
- Filters are never deleted and their order inside a view is not managed.

Installation:
    pip install -e .

Configuration:
    Create a .env file (or pass the equivalent command line flags):

        GA_KEY_FILE=service-account.json
        GA_ACCOUNT=My Analytics Account
        GA_FILTERS_FILE=spam-filters.txt
        GA_VIEWS=*

Usage:
    ga-spam-filter-sync --filters spam-filters.txt --account "My Account" \\
        --views "*" --create --update --apply -v

Version: 1.0
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httplib2
from dotenv import load_dotenv
from google.auth import exceptions as google_auth_exceptions
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

# Load environment variables from .env file (if it exists)
load_dotenv()

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

ANALYTICS_EDIT_SCOPE = "https://www.googleapis.com/auth/analytics.edit"

FILTER_TYPE = "EXCLUDE"
FILTER_FIELD = "CAMPAIGN_SOURCE"
FILTER_MATCH_TYPE = "MATCHES"
ALL_VIEWS = "*"
DEFAULT_PREFIX = "sa_Spam_filter_#"

# Management API list calls return at most 1000 items per page
PAGE_SIZE = 1000

EXIT_OK = 0
EXIT_SERVICE_ERROR = 1
EXIT_FAILURE = 2


# =============================================================================
# ERRORS
# =============================================================================

class SpamFilterSyncError(Exception):
    """Base class for all errors raised by this tool."""


class ConfigurationError(SpamFilterSyncError):
    """Bad or missing local input (credentials, flags, filters file)."""


class InvalidInputError(ConfigurationError):
    """The desired-state input is empty after normalization."""


class NotFoundError(SpamFilterSyncError):
    """A requested account or view does not exist."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class ServiceError(SpamFilterSyncError):
    """The Analytics service rejected a call."""

    def __init__(self, code: int, message: str):
        super().__init__(f"{code} : {message}")
        self.code = code
        self.message = message


class TransportError(SpamFilterSyncError):
    """The Analytics service could not be reached."""


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class CredentialsConfig:
    """
    Service account credentials for the Management API.

    Values are loaded from environment variables when not provided.

    Environment variables:
        GA_KEY_FILE - Path to the service account JSON key
        GA_SCOPES   - OAuth scopes (comma-separated)
    """
    key_file: str = None
    scopes: str = None

    def __post_init__(self):
        """Load from environment variables if not provided"""
        if self.key_file is None:
            self.key_file = os.getenv("GA_KEY_FILE", "")
        if self.scopes is None:
            self.scopes = os.getenv("GA_SCOPES", ANALYTICS_EDIT_SCOPE)

    def is_configured(self) -> bool:
        """Check if a key file has been set"""
        return bool(self.key_file)

    @property
    def scope_list(self) -> List[str]:
        return [s.strip() for s in self.scopes.split(",") if s.strip()]

    def load_credentials(self) -> service_account.Credentials:
        """
        Load service account credentials from the key file.

        Raises:
            ConfigurationError: if no key file is configured or it is unreadable
        """
        if not self.is_configured():
            raise ConfigurationError(
                "No service account key configured (use --key-file or GA_KEY_FILE)"
            )
        path = Path(self.key_file)
        if not path.is_file():
            raise ConfigurationError(f"Key file [{self.key_file}] does not exist")
        try:
            return service_account.Credentials.from_service_account_file(
                str(path), scopes=self.scope_list
            )
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Key file [{self.key_file}] can not be read: {e}") from e


@dataclass
class SyncConfig:
    """
    Options controlling which mutating calls a run may issue.

    Every flag defaults to False, so a default run is a dry run that only
    reports what is missing or stale.

    Attributes:
        allow_create: Create filters that do not exist in the account
        allow_update: Update existing filters whose definition differs
        apply_links: Link available filters to the selected views
        prefix: Prefix for generated filter names

    Examples:
        config = SyncConfig(allow_create=True, apply_links=True)
        sync = SpamFilterSynchronizer.for_account(accessor, "My Account", config)
    """
    allow_create: bool = False
    allow_update: bool = False
    apply_links: bool = False
    prefix: str = DEFAULT_PREFIX


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class FilterSpec:
    """A desired filter: generated name and raw match expression."""
    name: str
    pattern: str

    def to_api(self) -> Dict[str, Any]:
        """Build a Management API filter resource from this definition"""
        return {
            "name": self.name,
            "type": FILTER_TYPE,
            "excludeDetails": {
                "field": FILTER_FIELD,
                "matchType": FILTER_MATCH_TYPE,
                "expressionValue": self.pattern,
                "caseSensitive": False,
            },
        }


@dataclass(frozen=True)
class RemoteFilter:
    """A filter as it exists in the Analytics account."""
    id: str
    name: str
    exclude_field: Optional[str] = None
    match_type: Optional[str] = None
    pattern: Optional[str] = None
    case_sensitive: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "RemoteFilter":
        details = item.get("excludeDetails") or {}
        return cls(
            id=item.get("id"),
            name=item.get("name"),
            exclude_field=details.get("field"),
            match_type=details.get("matchType"),
            pattern=details.get("expressionValue"),
            case_sensitive=bool(details.get("caseSensitive", False)),
            raw=item,
        )

    def to_update_api(self, spec: FilterSpec) -> Dict[str, Any]:
        """
        Build an update body from this filter with the desired pattern.

        Only the pattern, field and match type are replaced. Every other
        attribute, case sensitivity included, is sent back unchanged.
        """
        body = {key: value for key, value in self.raw.items() if key != "excludeDetails"}
        details = dict(self.raw.get("excludeDetails") or {"caseSensitive": self.case_sensitive})
        details.update(
            field=FILTER_FIELD,
            matchType=FILTER_MATCH_TYPE,
            expressionValue=spec.pattern,
        )
        body.update(id=self.id, name=self.name, type=FILTER_TYPE, excludeDetails=details)
        return body

    def matches(self, spec: FilterSpec) -> bool:
        """
        Check whether this filter is equivalent to the desired spec.

        Only pattern, field and match type are compared. Case sensitivity is
        set on create but is not part of the comparison.
        """
        return (
            self.pattern == spec.pattern
            and self.exclude_field == FILTER_FIELD
            and self.match_type == FILTER_MATCH_TYPE
        )


@dataclass(frozen=True)
class Account:
    id: str
    name: str

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "Account":
        return cls(id=item.get("id"), name=item.get("name"))


@dataclass(frozen=True)
class Property:
    id: str
    name: str
    account_id: str

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "Property":
        return cls(id=item.get("id"), name=item.get("name"), account_id=item.get("accountId"))


@dataclass(frozen=True)
class View:
    """A reporting view ("profile") under a property."""
    id: str
    name: str
    account_id: str
    property_id: str

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "View":
        return cls(
            id=item.get("id"),
            name=item.get("name"),
            account_id=item.get("accountId"),
            property_id=item.get("webPropertyId"),
        )

    def __str__(self) -> str:
        return f"{self.name} ({self.property_id})"


@dataclass(frozen=True)
class FilterLink:
    """Association between one view and one filter."""
    id: Optional[str]
    view_id: str
    filter_id: str
    filter_name: Optional[str]

    @classmethod
    def from_api(cls, item: Dict[str, Any], view_id: Optional[str] = None) -> "FilterLink":
        filter_ref = item.get("filterRef") or {}
        profile_ref = item.get("profileRef") or {}
        return cls(
            id=item.get("id"),
            view_id=profile_ref.get("id", view_id),
            filter_id=filter_ref.get("id"),
            filter_name=filter_ref.get("name"),
        )


# =============================================================================
# DESIRED-STATE LOADER
# =============================================================================

def load_filters(content: str, prefix: str = DEFAULT_PREFIX) -> Dict[str, str]:
    """
    Parse a comma separated list of patterns into named filter definitions.

    Line breaks and single quotes are stripped before splitting. Every
    segment becomes one filter, including empty segments, and the i-th
    segment (1-based) is named ``prefix + str(i)``.

    Args:
        content: Raw file content
        prefix: Filter name prefix

    Returns:
        Dict of filter name -> pattern, in file order

    Raises:
        InvalidInputError: if nothing is left after normalization

    Examples:
        >>> load_filters("foo,bar,,baz", "p_")
        {'p_1': 'foo', 'p_2': 'bar', 'p_3': '', 'p_4': 'baz'}
    """
    normalized = content.translate(str.maketrans("", "", "\r\n'"))
    if not normalized:
        raise InvalidInputError("Filters data is empty")

    return {f"{prefix}{i}": pattern for i, pattern in enumerate(normalized.split(","), start=1)}


def read_filters_file(path: str, prefix: str = DEFAULT_PREFIX) -> Dict[str, str]:
    """Read and parse the filters file, see load_filters()"""
    file_path = Path(path)
    if not file_path.is_file():
        raise ConfigurationError(f"File [{path}] does not exist")
    try:
        content = file_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"File [{path}] can not be read: {e}") from e

    try:
        return load_filters(content, prefix)
    except InvalidInputError:
        raise InvalidInputError(f"Filters file [{path}] is empty") from None


# =============================================================================
# REMOTE STATE ACCESSOR
# =============================================================================

class AnalyticsAccessor(Protocol):
    """The Management API operations the reconcilers need."""

    def list_accounts(self) -> List[Account]: ...

    def list_properties(self, account_id: str) -> List[Property]: ...

    def list_views(self, account_id: str, property_id: str) -> List[View]: ...

    def list_filters(self, account_id: str) -> List[RemoteFilter]: ...

    def create_filter(self, account_id: str, spec: FilterSpec) -> RemoteFilter: ...

    def update_filter(self, account_id: str, current: RemoteFilter, spec: FilterSpec) -> RemoteFilter: ...

    def list_filter_links(self, account_id: str, property_id: str, view_id: str) -> List[FilterLink]: ...

    def create_filter_link(
        self, account_id: str, property_id: str, view_id: str, filter_id: str
    ) -> FilterLink: ...


def find_account_by_name(accounts: Sequence[Account], name: str) -> Optional[Account]:
    """Return the first account with exactly this name"""
    for account in accounts:
        if account.name == name:
            return account
    return None


class GoogleAnalyticsAccessor:
    """
    AnalyticsAccessor backed by the googleapiclient Analytics v3 resource.

    Every request goes through _execute(), which converts client errors
    into ServiceError / TransportError.
    """

    def __init__(self, service: Any):
        self.service = service

    @property
    def management(self) -> Any:
        return self.service.management()

    def _execute(self, request: Any, description: str) -> Dict[str, Any]:
        """
        Execute a prepared API request.

        Args:
            request: googleapiclient HttpRequest
            description: Short label used in error messages

        Returns:
            Decoded JSON response

        Raises:
            ServiceError: the API answered with an error status
            TransportError: the API could not be reached
        """
        try:
            return request.execute()
        except HttpError as e:
            raise ServiceError(e.resp.status, e.reason or str(e)) from e
        except (httplib2.HttpLib2Error, google_auth_exceptions.TransportError, OSError) as e:
            raise TransportError(f"{description} failed: {e}") from e

    def _list_all(self, collection: Any, description: str, **params) -> List[Dict[str, Any]]:
        """Fetch every page of a Management API list call"""
        items: List[Dict[str, Any]] = []
        start_index = 1
        while True:
            response = self._execute(
                collection.list(start_index=start_index, max_results=PAGE_SIZE, **params),
                description,
            )
            page = response.get("items", [])
            items.extend(page)
            total = response.get("totalResults", len(items))
            if not page or len(items) >= total:
                return items
            start_index += len(page)

    def list_accounts(self) -> List[Account]:
        items = self._list_all(self.management.accounts(), "List accounts")
        return [Account.from_api(item) for item in items]

    def list_properties(self, account_id: str) -> List[Property]:
        items = self._list_all(
            self.management.webproperties(), "List properties", accountId=account_id
        )
        return [Property.from_api(item) for item in items]

    def list_views(self, account_id: str, property_id: str) -> List[View]:
        items = self._list_all(
            self.management.profiles(),
            "List views",
            accountId=account_id,
            webPropertyId=property_id,
        )
        return [View.from_api(item) for item in items]

    def list_filters(self, account_id: str) -> List[RemoteFilter]:
        items = self._list_all(self.management.filters(), "List filters", accountId=account_id)
        return [RemoteFilter.from_api(item) for item in items]

    def create_filter(self, account_id: str, spec: FilterSpec) -> RemoteFilter:
        request = self.management.filters().insert(accountId=account_id, body=spec.to_api())
        return RemoteFilter.from_api(self._execute(request, "Create filter"))

    def update_filter(self, account_id: str, current: RemoteFilter, spec: FilterSpec) -> RemoteFilter:
        request = self.management.filters().update(
            accountId=account_id, filterId=current.id, body=current.to_update_api(spec)
        )
        return RemoteFilter.from_api(self._execute(request, "Update filter"))

    def list_filter_links(self, account_id: str, property_id: str, view_id: str) -> List[FilterLink]:
        items = self._list_all(
            self.management.profileFilterLinks(),
            "List filter links",
            accountId=account_id,
            webPropertyId=property_id,
            profileId=view_id,
        )
        return [FilterLink.from_api(item, view_id) for item in items]

    def create_filter_link(
        self, account_id: str, property_id: str, view_id: str, filter_id: str
    ) -> FilterLink:
        request = self.management.profileFilterLinks().insert(
            accountId=account_id,
            webPropertyId=property_id,
            profileId=view_id,
            body={"filterRef": {"id": filter_id}},
        )
        return FilterLink.from_api(self._execute(request, "Create filter link"), view_id)


def build_accessor(credentials_config: Optional[CredentialsConfig] = None) -> GoogleAnalyticsAccessor:
    """
    Authenticate and build the Management API accessor.

    Args:
        credentials_config: Service account configuration.
                            If None, loads from environment variables.
    """
    if credentials_config is None:
        credentials_config = CredentialsConfig()

    logger.info("Authorizing...")
    credentials = credentials_config.load_credentials()
    service = build("analytics", "v3", credentials=credentials, cache_discovery=False)
    logger.info("Initialized Analytics Management API")
    return GoogleAnalyticsAccessor(service)


# =============================================================================
# FILTER RECONCILER
# =============================================================================

class FilterStatus(Enum):
    MATCHED = "matched"
    NEEDS_UPDATE = "needs_update"
    NEEDS_CREATE = "needs_create"


@dataclass(frozen=True)
class FilterDecision:
    """Classification of one desired filter against the account's filters."""
    spec: FilterSpec
    status: FilterStatus
    remote: Optional[RemoteFilter] = None


def classify_filters(
    desired: Dict[str, str],
    remote_filters: Sequence[RemoteFilter],
) -> List[FilterDecision]:
    """
    Classify each desired filter as matched, needing update or needing create.

    The remote list is scanned linearly and the first filter with the same
    name wins. Decisions are returned in desired order.

    Args:
        desired: Filter name -> pattern
        remote_filters: Filters currently in the account

    Returns:
        One FilterDecision per desired name
    """
    decisions = []
    for name, pattern in desired.items():
        spec = FilterSpec(name=name, pattern=pattern)
        remote = next((f for f in remote_filters if f.name == name), None)
        if remote is None:
            decisions.append(FilterDecision(spec, FilterStatus.NEEDS_CREATE))
        elif remote.matches(spec):
            decisions.append(FilterDecision(spec, FilterStatus.MATCHED, remote))
        else:
            decisions.append(FilterDecision(spec, FilterStatus.NEEDS_UPDATE, remote))
    return decisions


@dataclass
class FilterSyncResult:
    """
    Outcome of filter reconciliation.

    available holds matched filters, then created ones, then updated ones.
    It is the only filter set the linking phase may use.
    """
    decisions: List[FilterDecision] = field(default_factory=list)
    available: List[RemoteFilter] = field(default_factory=list)
    created: List[RemoteFilter] = field(default_factory=list)
    updated: List[RemoteFilter] = field(default_factory=list)
    failed: List[Tuple[str, ServiceError]] = field(default_factory=list)

    def with_status(self, status: FilterStatus) -> List[FilterDecision]:
        return [d for d in self.decisions if d.status is status]

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "matched": len(self.with_status(FilterStatus.MATCHED)),
            "needs_update": len(self.with_status(FilterStatus.NEEDS_UPDATE)),
            "needs_create": len(self.with_status(FilterStatus.NEEDS_CREATE)),
            "created": len(self.created),
            "updated": len(self.updated),
            "failed": len(self.failed),
            "available": len(self.available),
        }


# =============================================================================
# VIEW SELECTOR
# =============================================================================

@dataclass
class ViewSelection:
    """Views resolved from a selector, with found / not found requested names."""
    views: List[View]
    requested: List[str] = field(default_factory=list)
    found: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    wildcard: bool = False


def select_views(accessor: AnalyticsAccessor, account: Account, selector: str) -> ViewSelection:
    """
    Resolve a view selector into the concrete views of an account.

    The selector is either "*" (every view of every property) or a comma
    separated list of view names. Names are matched exactly, and every view
    with a requested name is selected, even when several properties hold a
    view with that name.

    Raises:
        ConfigurationError: the account has no properties
        NotFoundError: none of the requested views exist
    """
    wildcard = selector.strip() == ALL_VIEWS
    requested = [] if wildcard else [name for name in selector.strip().split(",") if name]

    properties = accessor.list_properties(account.id)
    if not properties:
        raise ConfigurationError(f"No properties found for the account [{account.name}]")

    views: List[View] = []
    for prop in properties:
        for view in accessor.list_views(account.id, prop.id):
            if wildcard or view.name in requested:
                views.append(view)

    view_names = {view.name for view in views}
    found = [name for name in requested if name in view_names]
    missing = [name for name in requested if name not in view_names]

    if not views and not wildcard:
        raise NotFoundError(f"Requested views {requested} were not found", missing=missing)

    return ViewSelection(
        views=views, requested=requested, found=found, missing=missing, wildcard=wildcard
    )


# =============================================================================
# LINK RECONCILER
# =============================================================================

def find_missing_filters(
    available: Sequence[RemoteFilter],
    existing_links: Sequence[FilterLink],
) -> List[RemoteFilter]:
    """Return the available filters not linked yet, matched by filter name"""
    linked_names = {link.filter_name for link in existing_links}
    return [f for f in available if f.name not in linked_names]


@dataclass
class LinkSyncResult:
    """Outcome of the linking phase across all selected views."""
    selection: Optional[ViewSelection] = None
    plans: List[Tuple[View, List[RemoteFilter]]] = field(default_factory=list)
    linked: List[Tuple[View, RemoteFilter]] = field(default_factory=list)
    failed: List[Tuple[View, RemoteFilter, ServiceError]] = field(default_factory=list)
    applied: bool = False

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "views": len(self.selection.views) if self.selection else 0,
            "views_with_missing": len(self.plans),
            "missing": sum(len(missing) for _, missing in self.plans),
            "linked": len(self.linked),
            "failed": len(self.failed),
        }


# =============================================================================
# SPAM FILTER SYNC CLASS
# =============================================================================

class SpamFilterSynchronizer:
    """
    Reconciles desired spam filters and their view links for one account.

    Every phase re-reads the account state it needs, and every mutating call
    is gated by the SyncConfig flags.
    """

    def __init__(
        self,
        accessor: AnalyticsAccessor,
        account: Account,
        config: Optional[SyncConfig] = None,
    ):
        self.accessor = accessor
        self.account = account
        self.config = config or SyncConfig()

    @classmethod
    def for_account(
        cls,
        accessor: AnalyticsAccessor,
        account_name: str,
        config: Optional[SyncConfig] = None,
    ) -> "SpamFilterSynchronizer":
        """
        Look up the target account by name and build a synchronizer for it.

        Raises:
            NotFoundError: no account with that name is visible
        """
        logger.info(f"Checking target account [{account_name}]...")
        account = find_account_by_name(accessor.list_accounts(), account_name)
        if account is None:
            raise NotFoundError(f"Account [{account_name}] was not found", missing=[account_name])
        logger.info(f"Account found: {account.name} ({account.id})")
        return cls(accessor, account, config)

    # =========================================================================
    # FILTERS
    # =========================================================================

    def sync_filters(self, desired: Dict[str, str]) -> FilterSyncResult:
        """
        Bring the account's filters in line with the desired definitions.

        Missing filters are created (in name order) when allow_create is set,
        and stale filters are updated when allow_update is set. A rejected
        create or update is logged and the remaining filters still run.

        Args:
            desired: Filter name -> pattern, see load_filters()

        Returns:
            FilterSyncResult whose available list feeds the linking phase
        """
        account = self.account
        logger.info("=" * 60)
        logger.info(f"Checking for existing filters in account [{account.name}]")
        logger.info("=" * 60)

        remote_filters = self.accessor.list_filters(account.id)
        result = FilterSyncResult(decisions=classify_filters(desired, remote_filters))

        for decision in result.decisions:
            label = {
                FilterStatus.MATCHED: "Match",
                FilterStatus.NEEDS_UPDATE: "Doesn't match",
                FilterStatus.NEEDS_CREATE: "Doesn't exist",
            }[decision.status]
            logger.info(f"{account.name} > {decision.spec.name}... {label}")
            if decision.status is FilterStatus.MATCHED:
                result.available.append(decision.remote)

        to_create = sorted(
            (d.spec for d in result.with_status(FilterStatus.NEEDS_CREATE)),
            key=lambda spec: spec.name,
        )
        if not to_create:
            logger.info("Creating new filters... Nothing to do")
        elif not self.config.allow_create:
            logger.info(f"Creating {len(to_create)} new filters... Skipped")
        else:
            logger.info(f"Creating {len(to_create)} new filters in [{account.name}] account")
            for spec in to_create:
                try:
                    created = self.accessor.create_filter(account.id, spec)
                except ServiceError as e:
                    logger.error(f"Creating filter {account.name} > {spec.name} failed. "
                                 f"There was a service error: {e.code} : {e.message}")
                    result.failed.append((spec.name, e))
                    continue
                result.created.append(created)
                result.available.append(created)
                logger.info(f"Creating filter {account.name} > {spec.name}... Done")

        to_update = result.with_status(FilterStatus.NEEDS_UPDATE)
        if not to_update:
            logger.info("Updating existing filters... Nothing to do")
        elif not self.config.allow_update:
            logger.info(f"Updating {len(to_update)} existing filters... Skipped")
        else:
            logger.info(f"Updating {len(to_update)} existing filters in [{account.name}] account")
            for decision in to_update:
                spec = decision.spec
                try:
                    updated = self.accessor.update_filter(account.id, decision.remote, spec)
                except ServiceError as e:
                    logger.error(f"Updating filter {account.name} > {spec.name} failed. "
                                 f"There was a service error: {e.code} : {e.message}")
                    result.failed.append((spec.name, e))
                    continue
                result.updated.append(updated)
                result.available.append(updated)
                logger.info(f"Updating filter {account.name} > {spec.name}... Done")

        stats = result.stats
        logger.info(f"Filters: {stats['matched']} matched, {stats['needs_update']} stale, "
                    f"{stats['needs_create']} missing, {stats['available']} available")
        return result

    # =========================================================================
    # LINKS
    # =========================================================================

    def find_missing_links(self, view: View, available: Sequence[RemoteFilter]) -> List[RemoteFilter]:
        """List the view's filter links and return the available filters it lacks"""
        logger.info(f"Checking for existing links. View [{view.name}] ({view.property_id})")
        links = self.accessor.list_filter_links(view.account_id, view.property_id, view.id)
        missing = find_missing_filters(available, links)
        for f in available:
            logger.info(f"{view.name} > {f.name}... {'Not found' if f in missing else 'Found'}")
        return missing

    def link_filters(self, view: View, missing: Sequence[RemoteFilter], result: LinkSyncResult) -> None:
        """Link each missing filter to the view, one call per filter"""
        logger.info(f"Linking filters to view [{view.name}] ({view.property_id})")
        for f in missing:
            try:
                self.accessor.create_filter_link(view.account_id, view.property_id, view.id, f.id)
            except ServiceError as e:
                logger.error(f"Linking {view.name} > {f.name} failed. "
                             f"There was a service error: {e.code} : {e.message}")
                result.failed.append((view, f, e))
                continue
            result.linked.append((view, f))
            logger.info(f"{view.name} > {f.name}... Done")

    def sync_links(self, available: Sequence[RemoteFilter], selector: Optional[str]) -> LinkSyncResult:
        """
        Link available filters to the views picked by the selector.

        The missing links of every view are computed before any link is
        created, and links are only created when apply_links is set.

        Args:
            available: Filters from sync_filters().available
            selector: "*" or a comma separated list of view names (None skips linking)
        """
        result = LinkSyncResult()
        logger.info("=" * 60)
        logger.info("Linking filters")
        logger.info("=" * 60)

        if selector is None:
            logger.info("Linking filters... No views specified. Nothing to do")
            return result

        result.selection = select_views(self.accessor, self.account, selector)
        selection = result.selection
        if selection.wildcard and not selection.views:
            logger.info(f"Account [{self.account.name}] doesn't have any views")
        for name in selection.found:
            logger.info(f"{name}... Found")
        for name in selection.missing:
            logger.warning(f"{name}... Not found")

        for view in selection.views:
            missing = self.find_missing_links(view, available)
            if missing:
                result.plans.append((view, missing))

        if not result.plans:
            logger.info("Linking filters... Nothing to do")
        elif not self.config.apply_links:
            logger.info(f"Linking {result.stats['missing']} filters... Skipped")
        else:
            result.applied = True
            for view, missing in result.plans:
                self.link_filters(view, missing, result)

        return result

    # =========================================================================
    # FULL RUN
    # =========================================================================

    def sync_all(self, desired: Dict[str, str], selector: Optional[str] = None) -> Dict[str, Any]:
        """
        Run filter reconciliation followed by linking.

        Returns:
            JSON serializable report of the run
        """
        filters = self.sync_filters(desired)
        links = self.sync_links(filters.available, selector)
        return build_report(self.account, self.config, filters, links)


# =============================================================================
# REPORTING
# =============================================================================

def build_report(
    account: Account,
    config: SyncConfig,
    filters: FilterSyncResult,
    links: LinkSyncResult,
) -> Dict[str, Any]:
    """Summarize a run as a plain dict (suitable for json.dump)"""
    return {
        "account": {"id": account.id, "name": account.name},
        "config": {
            "allow_create": config.allow_create,
            "allow_update": config.allow_update,
            "apply_links": config.apply_links,
            "prefix": config.prefix,
        },
        "filters": {
            "stats": filters.stats,
            "decisions": {d.spec.name: d.status.value for d in filters.decisions},
            "available": [f.name for f in filters.available],
            "failed": {name: {"code": e.code, "message": e.message} for name, e in filters.failed},
        },
        "links": {
            "stats": links.stats,
            "applied": links.applied,
            "missing_views": links.selection.missing if links.selection else [],
            "missing": {view.id: [f.name for f in missing] for view, missing in links.plans},
            "failed": [
                {"view": view.id, "filter": f.name, "code": e.code, "message": e.message}
                for view, f, e in links.failed
            ],
        },
    }


def check_connection(accessor: AnalyticsAccessor) -> bool:
    """
    Verify the credentials by listing accessible accounts and properties.

    Returns:
        True if at least one account is visible
    """
    accounts = accessor.list_accounts()
    if not accounts:
        print("    ✗ No accounts visible to this service account")
        return False

    print(f"    ✓ Found {len(accounts)} account(s):")
    for account in accounts:
        print(f"      - {account.name} (ID: {account.id})")
        for prop in accessor.list_properties(account.id):
            print(f"          {prop.name} ({prop.id})")
    return True


# =============================================================================
# MAIN EXECUTION
# =============================================================================

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ga-spam-filter-sync",
        description="Create, update and link Google Analytics spam exclude filters.",
    )
    parser.add_argument("--filters", default=os.getenv("GA_FILTERS_FILE"),
                        help="Path to filters file (comma separated patterns)")
    parser.add_argument("--prefix", default=os.getenv("GA_FILTER_PREFIX", DEFAULT_PREFIX),
                        help="Filter name prefix")
    parser.add_argument("--account", default=os.getenv("GA_ACCOUNT"),
                        help="Target account name (EDIT permission is required)")
    parser.add_argument("--views", "--profiles", dest="views", default=os.getenv("GA_VIEWS"),
                        help="Comma separated list of view names, or '*' for all views")
    parser.add_argument("--create", action="store_true", help="Create missing filters")
    parser.add_argument("--update", action="store_true", help="Update existing filters")
    parser.add_argument("--apply", action="store_true", help="Link filters to the selected views")
    parser.add_argument("--key-file", default=None,
                        help="Path to service account JSON key (default: GA_KEY_FILE)")
    parser.add_argument("--report", default=None, help="Write a JSON run report to this file")
    parser.add_argument("--check-connection", action="store_true",
                        help="Only verify credentials and list accessible accounts")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print progress to console")
    return parser.parse_args(argv)


def run(argv: Optional[Sequence[str]] = None, accessor: Optional[AnalyticsAccessor] = None) -> int:
    """
    Execute one sync run.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])
        accessor: Pre-built accessor; if None one is built from credentials

    Returns:
        Process exit status
    """
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )

    try:
        if accessor is None:
            accessor = build_accessor(CredentialsConfig(key_file=args.key_file))

        if args.check_connection:
            return EXIT_OK if check_connection(accessor) else EXIT_FAILURE

        if not args.account:
            raise ConfigurationError("No target account given (use --account or GA_ACCOUNT)")
        if not args.filters:
            raise ConfigurationError("No filters file given (use --filters or GA_FILTERS_FILE)")

        config = SyncConfig(
            allow_create=args.create,
            allow_update=args.update,
            apply_links=args.apply,
            prefix=args.prefix,
        )
        sync = SpamFilterSynchronizer.for_account(accessor, args.account, config)

        logger.info("Reading filters data...")
        desired = read_filters_file(args.filters, config.prefix)
        logger.info(f"{len(desired)} filters found")

        report = sync.sync_all(desired, args.views)

        if args.report:
            with open(args.report, 'w') as f:
                json.dump(report, f, indent=2)
            logger.info(f"Report saved to: {args.report}")

    except ServiceError as e:
        logger.error(f"There was a service error: {e.code} : {e.message}")
        return EXIT_SERVICE_ERROR
    except SpamFilterSyncError as e:
        logger.error(str(e))
        return EXIT_FAILURE
    except Exception:
        logger.exception("Unexpected failure")
        return EXIT_FAILURE

    return EXIT_OK


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
