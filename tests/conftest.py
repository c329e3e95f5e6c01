"""Pytest configuration and shared fixtures."""

import itertools
from typing import Dict, List, Optional, Set, Tuple

import pytest

from ga_spam_filter_sync import (
    FILTER_FIELD,
    FILTER_MATCH_TYPE,
    Account,
    FilterLink,
    FilterSpec,
    Property,
    RemoteFilter,
    ServiceError,
    TransportError,
    View,
)


class FakeAccessor:
    """In-memory Analytics account that records every mutating call.

    Failures can be injected per call by adding keys to ``fail_on`` (service
    rejection) or ``unreachable_on`` (transport failure):
    ("create", filter_name), ("update", filter_name) or ("link", view_id, filter_id).
    """

    def __init__(self):
        self.accounts: List[Account] = []
        self.properties: Dict[str, List[Property]] = {}
        self.views: Dict[Tuple[str, str], List[View]] = {}
        self.filters: Dict[str, List[RemoteFilter]] = {}
        self.links: Dict[str, List[FilterLink]] = {}
        self.fail_on: Set[tuple] = set()
        self.unreachable_on: Set[tuple] = set()
        self.update_bodies: List[dict] = []
        self.calls: List[tuple] = []
        self._ids = itertools.count(1000)

    # -- setup helpers -------------------------------------------------------

    def add_account(self, account_id: str, name: str) -> Account:
        account = Account(id=account_id, name=name)
        self.accounts.append(account)
        self.properties.setdefault(account_id, [])
        self.filters.setdefault(account_id, [])
        return account

    def add_property(self, account_id: str, property_id: str, name: Optional[str] = None) -> Property:
        prop = Property(id=property_id, name=name or property_id, account_id=account_id)
        self.properties[account_id].append(prop)
        self.views.setdefault((account_id, property_id), [])
        return prop

    def add_view(self, account_id: str, property_id: str, view_id: str, name: str) -> View:
        view = View(id=view_id, name=name, account_id=account_id, property_id=property_id)
        self.views[(account_id, property_id)].append(view)
        self.links.setdefault(view_id, [])
        return view

    def add_filter(
        self,
        account_id: str,
        name: str,
        pattern: str,
        field: str = FILTER_FIELD,
        match_type: str = FILTER_MATCH_TYPE,
        case_sensitive: bool = False,
    ) -> RemoteFilter:
        remote = RemoteFilter(
            id=str(next(self._ids)),
            name=name,
            exclude_field=field,
            match_type=match_type,
            pattern=pattern,
            case_sensitive=case_sensitive,
        )
        self.filters[account_id].append(remote)
        return remote

    def add_link(self, view: View, remote: RemoteFilter) -> FilterLink:
        link = FilterLink(id=str(next(self._ids)), view_id=view.id, filter_id=remote.id, filter_name=remote.name)
        self.links[view.id].append(link)
        return link

    def _check(self, key: tuple, message: str) -> None:
        if key in self.unreachable_on:
            raise TransportError(f"{message}: connection reset")
        if key in self.fail_on:
            raise ServiceError(403 if key[0] == "link" else 400, message)

    @property
    def mutations(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in ("create_filter", "update_filter", "create_filter_link")]

    # -- AnalyticsAccessor ---------------------------------------------------

    def list_accounts(self):
        self.calls.append(("list_accounts",))
        return list(self.accounts)

    def list_properties(self, account_id):
        self.calls.append(("list_properties", account_id))
        return list(self.properties.get(account_id, []))

    def list_views(self, account_id, property_id):
        self.calls.append(("list_views", account_id, property_id))
        return list(self.views.get((account_id, property_id), []))

    def list_filters(self, account_id):
        self.calls.append(("list_filters", account_id))
        return list(self.filters.get(account_id, []))

    def create_filter(self, account_id, spec: FilterSpec):
        self.calls.append(("create_filter", account_id, spec.name))
        self._check(("create", spec.name), f"Invalid filter {spec.name}")
        return self.add_filter(account_id, spec.name, spec.pattern)

    def update_filter(self, account_id, current: RemoteFilter, spec: FilterSpec):
        self.calls.append(("update_filter", account_id, current.id, spec.name))
        self._check(("update", spec.name), f"Invalid filter {spec.name}")
        self.update_bodies.append(current.to_update_api(spec))
        filters = self.filters[account_id]
        for i, existing in enumerate(filters):
            if existing.id == current.id:
                updated = RemoteFilter.from_api(self.update_bodies[-1])
                filters[i] = updated
                return updated
        raise ServiceError(404, f"Filter {current.id} not found")

    def list_filter_links(self, account_id, property_id, view_id):
        self.calls.append(("list_filter_links", account_id, property_id, view_id))
        return list(self.links.get(view_id, []))

    def create_filter_link(self, account_id, property_id, view_id, filter_id):
        self.calls.append(("create_filter_link", account_id, property_id, view_id, filter_id))
        self._check(("link", view_id, filter_id), "User does not have permission to perform this operation")
        remote = next(f for f in self.filters[account_id] if f.id == filter_id)
        link = FilterLink(id=str(next(self._ids)), view_id=view_id, filter_id=filter_id, filter_name=remote.name)
        self.links[view_id].append(link)
        return link


@pytest.fixture
def fake():
    """Account "Main" with two properties and three views."""
    accessor = FakeAccessor()
    accessor.add_account("1", "Main")
    accessor.add_account("2", "Other")
    accessor.add_property("1", "UA-1-1")
    accessor.add_property("1", "UA-1-2")
    accessor.add_view("1", "UA-1-1", "v1", "All Web Site Data")
    accessor.add_view("1", "UA-1-1", "v2", "Filtered")
    accessor.add_view("1", "UA-1-2", "v3", "All Web Site Data")
    return accessor


@pytest.fixture
def account(fake):
    return fake.accounts[0]
