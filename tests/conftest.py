"""
Shared test fixtures.

The mock Supabase client is stateful: inserts, updates and deletes
change the rows later queries see, and the link tables enforce their
unique (message_id, shipment_id) key the way Postgres does.
"""

import os
import sys
from pathlib import Path

# Settings are read at import time
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")
os.environ.setdefault("ENVIRONMENT", "development")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import threading
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Optional
from unittest.mock import patch
from uuid import uuid4

import pytest

from config.linking import LinkingConfig

# Store modules that call get_supabase_client() in their constructors
STORE_MODULES = (
    "config.database",
    "services.entity_service",
    "services.message_service",
    "services.shipment_service",
    "services.link_service",
    "services.audit_service",
    "services.conflict_service",
    "services.pending_document_service",
)

# Unique keys enforced on insert, per table
UNIQUE_KEYS = {
    "shipment_links": ("message_id", "shipment_id"),
    "shipment_link_candidates": ("message_id", "shipment_id"),
}


# ===================
# MOCK SUPABASE CLIENT
# ===================

class MockAPIError(Exception):
    """Stands in for postgrest.APIError: carries a Postgres error code."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data=None, count: int = None):
        self.data = data if data is not None else []
        self.count = count


def _sort_key(column):
    def key(row):
        value = row.get(column)
        return (value is None, value if value is not None else "")
    return key


class MockSupabaseQuery:
    """Chainable query builder evaluated against the table's rows."""

    def __init__(self, table: "MockSupabaseTable", action: str, payload=None, count: str = None):
        self._table = table
        self._action = action
        self._payload = payload
        self._count_mode = count
        self._filters: list[Callable[[dict], bool]] = []
        self._orders: list[tuple[str, bool]] = []
        self._range: Optional[tuple[int, int]] = None
        self._limit: Optional[int] = None
        self._is_single = False

    # Filters

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self._filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self._filters.append(lambda row: row.get(column) in values)
        return self

    def is_(self, column, value):
        if value in (None, "null"):
            self._filters.append(lambda row: row.get(column) is None)
        else:
            self._filters.append(lambda row: row.get(column) is value)
        return self

    def contains(self, column, values):
        values = list(values)
        self._filters.append(lambda row: all(v in (row.get(column) or []) for v in values))
        return self

    # Modifiers

    def order(self, column, desc: bool = False, **kwargs):
        self._orders.append((column, desc))
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def single(self):
        self._is_single = True
        return self

    def execute(self) -> MockSupabaseResponse:
        return self._table.client.run(self)

    # Evaluation, called by the client under its lock

    def matches(self, row: dict) -> bool:
        return all(f(row) for f in self._filters)

    def shape(self, rows: list[dict]) -> list[dict]:
        for column, desc in reversed(self._orders):
            rows = sorted(rows, key=_sort_key(column), reverse=desc)
        if self._range is not None:
            start, end = self._range
            rows = rows[start:end + 1]
        if self._limit is not None:
            rows = rows[:self._limit]
        return rows


class MockSupabaseTable:
    """Entry point for queries against one table."""

    def __init__(self, client: "MockSupabaseClient", name: str):
        self.client = client
        self.name = name

    def select(self, *columns, count: str = None):
        return MockSupabaseQuery(self, "select", count=count)

    def insert(self, data):
        return MockSupabaseQuery(self, "insert", payload=data)

    def update(self, data):
        return MockSupabaseQuery(self, "update", payload=data)

    def delete(self):
        return MockSupabaseQuery(self, "delete")


class MockSupabaseClient:
    """
    Stateful mock Supabase client.

    Usage:
        def test_something(mock_supabase):
            mock_supabase.set_table_data("shipments", [ShipmentFactory.create()])
            ...
            assert len(mock_supabase.rows("shipment_links")) == 1
    """

    def __init__(self):
        self._tables: dict[str, list[dict]] = {}
        self._lock = threading.RLock()
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._failures: dict[tuple[str, str], Exception] = {}
        self._before_insert: dict[str, Callable[[dict], None]] = {}
        self.calls: list[tuple[str, str]] = []

    # Setup helpers

    def set_table_data(self, table_name: str, data: list):
        """Configure rows for a table (copied)."""
        with self._lock:
            self._tables[table_name] = [dict(row) for row in data]

    def add_rows(self, table_name: str, data: list):
        with self._lock:
            self._tables.setdefault(table_name, []).extend(dict(row) for row in data)

    def rows(self, table_name: str) -> list[dict]:
        """Current rows of a table (copies)."""
        with self._lock:
            return [dict(row) for row in self._tables.get(table_name, [])]

    def fail_on(self, table_name: str, action: str, error: Exception = None):
        """Make every `action` on `table_name` raise."""
        self._failures[(table_name, action)] = error or MockAPIError("connection reset")

    def before_insert(self, table_name: str, hook: Callable[[dict], None]):
        """Run `hook(row)` once, just before the next insert into the table."""
        self._before_insert[table_name] = hook

    def table(self, name: str) -> MockSupabaseTable:
        return MockSupabaseTable(self, name)

    # Execution

    def _now(self) -> str:
        # Strictly increasing so created_at ordering is deterministic
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def run(self, query: MockSupabaseQuery) -> MockSupabaseResponse:
        name = query._table.name
        hook = None
        if query._action == "insert":
            hook = self._before_insert.pop(name, None)
        if hook is not None:
            payload = query._payload
            hook(dict(payload if isinstance(payload, dict) else payload[0]))

        with self._lock:
            self.calls.append((name, query._action))
            failure = self._failures.get((name, query._action))
            if failure is not None:
                raise failure

            rows = self._tables.setdefault(name, [])
            handler = getattr(self, f"_{query._action}")
            return handler(name, rows, query)

    def _select(self, name, rows, query):
        matched = [row for row in rows if query.matches(row)]
        total = len(matched)
        shaped = [dict(row) for row in query.shape(matched)]
        count = total if query._count_mode else None
        if query._is_single:
            return MockSupabaseResponse(data=shaped[0] if shaped else None, count=count)
        return MockSupabaseResponse(data=shaped, count=count)

    def _insert(self, name, rows, query):
        payload = query._payload
        items = [payload] if isinstance(payload, dict) else list(payload)
        key = UNIQUE_KEYS.get(name)

        inserted = []
        for item in items:
            row = dict(item)
            if key and any(all(r.get(k) == row.get(k) for k in key) for r in rows):
                raise MockAPIError(
                    f'duplicate key value violates unique constraint "{name}_pkey"',
                    code="23505",
                )
            now = self._now()
            row.setdefault("id", str(uuid4()))
            row.setdefault("created_at", now)
            row.setdefault("updated_at", now)
            rows.append(row)
            inserted.append(dict(row))
        return MockSupabaseResponse(data=inserted, count=len(inserted))

    def _update(self, name, rows, query):
        updated = []
        for row in rows:
            if query.matches(row):
                row.update(query._payload)
                row["updated_at"] = self._now()
                updated.append(dict(row))
        return MockSupabaseResponse(data=updated, count=len(updated))

    def _delete(self, name, rows, query):
        removed = [row for row in rows if query.matches(row)]
        rows[:] = [row for row in rows if not query.matches(row)]
        return MockSupabaseResponse(data=[dict(r) for r in removed], count=len(removed))


# ===================
# FIXTURES
# ===================

@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    """Fresh, empty mock Supabase client."""
    return MockSupabaseClient()


@pytest.fixture
def mock_db(mock_supabase) -> Generator:
    """
    Patch the database client with mock in every store module.

    Usage:
        def test_something(mock_db, mock_supabase):
            mock_supabase.set_table_data("shipments", [...])
            # Any store constructed now talks to the mock
    """
    with ExitStack() as stack:
        for module in STORE_MODULES:
            stack.enter_context(
                patch(f"{module}.get_supabase_client", return_value=mock_supabase)
            )
        yield mock_supabase


@pytest.fixture
def linking_config() -> LinkingConfig:
    """Default thresholds (85 / 60), first-match policy, intoglo.com internal."""
    return LinkingConfig()


def build_linking_service(config: LinkingConfig):
    """Wire a LinkingService from fresh store instances (no singletons)."""
    from services.audit_service import AuditService
    from services.conflict_service import ConflictService
    from services.entity_service import EntityService
    from services.identifier_service import IdentifierService
    from services.link_service import LinkService
    from services.linking_service import LinkingService
    from services.message_service import MessageService
    from services.pending_document_service import PendingDocumentService
    from services.shipment_matcher_service import ShipmentMatcher
    from services.shipment_service import ShipmentService
    from services.thread_authority_service import ThreadAuthorityResolver

    entity_service = EntityService()
    message_service = MessageService()
    shipment_service = ShipmentService()
    identifier_service = IdentifierService(entity_service)

    return LinkingService(
        message_service=message_service,
        identifier_service=identifier_service,
        thread_resolver=ThreadAuthorityResolver(message_service, identifier_service),
        matcher=ShipmentMatcher(shipment_service),
        shipment_service=shipment_service,
        link_service=LinkService(),
        audit_service=AuditService(),
        conflict_service=ConflictService(),
        pending_document_service=PendingDocumentService(),
        entity_service=entity_service,
        config=config,
    )


@pytest.fixture
def linking_service(mock_db, linking_config):
    """LinkingService backed by the mock client."""
    return build_linking_service(linking_config)


@pytest.fixture
def backfill_service(linking_service):
    """BackfillService sharing the linking service's collaborators."""
    from services.backfill_service import BackfillService
    return BackfillService(linking_service)


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client_with_mock_db(mock_db, linking_service, backfill_service):
    """
    FastAPI test client whose linking routes use the mocked services.

    Usage:
        def test_endpoint(test_client_with_mock_db, mock_supabase):
            mock_supabase.set_table_data("raw_emails", [...])
            response = test_client_with_mock_db.post("/api/linking/messages/m1")
    """
    from fastapi.testclient import TestClient
    from main import app

    with patch("routes.linking.get_linking_service", return_value=linking_service):
        with patch("routes.linking.get_backfill_service", return_value=backfill_service):
            with patch(
                "routes.linking.get_thread_authority_resolver",
                return_value=linking_service.thread_resolver
            ):
                yield TestClient(app)
