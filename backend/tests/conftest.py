"""
Pytest fixtures for posync backend tests.

Provides the test app (in-memory SQLite), a clean database per test, an in-process
fake of the remote API plugged into httpx, and a fresh sync scheduler wired to it.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from posync import create_app
from posync.extensions import db
from posync.models import AuthoritativeRecord, IdMapping
from posync.services.scheduler import build_scheduler
from posync.time_utils import utcnow


BATCH_FIELDS = ("sales", "items")


class FakeRemoteServer:
    """
    Minimal stand-in for the remote API.

    - issues server ids S1, S2, ... in creation order
    - replays the stored response for a repeated Idempotency-Key
    - batch creates honour accept_limit[collection] (server accepts only a prefix)
    - fail(method, collection, status) queues error responses (status 0 = network error)
    """

    def __init__(self):
        self.collections = {}
        self.calls = []
        self.idempotent = {}
        self.failures = {}
        self.accept_limit = {}
        self._next_id = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def _new_id(self) -> str:
        self._next_id += 1
        return f"S{self._next_id}"

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def records(self, collection: str) -> dict:
        return self.collections.setdefault(collection, {})

    def seed(self, collection: str, record: dict) -> dict:
        stored = {"updatedAt": self._now(), **record}
        self.records(collection)[str(record["id"])] = stored
        return stored

    def fail(self, method: str, collection: str, status: int, *, times: int = 1, message: str = "boom"):
        queue = self.failures.setdefault((method, collection), [])
        queue.extend([(status, message)] * times)

    def calls_for(self, method: str, collection: str) -> list:
        return [c for c in self.calls if c["method"] == method and c["collection"] == collection]

    def _create(self, collection: str, data: dict) -> dict:
        record = {k: v for k, v in data.items() if k not in ("idempotencyKey", "backOrder")}
        backorder = data.get("backOrder")
        if isinstance(backorder, dict):
            created_backorder = {**backorder, "id": self._new_id(), "updatedAt": self._now()}
            self.records("backorder")[created_backorder["id"]] = created_backorder
            record["backorderId"] = created_backorder["id"]
        record["id"] = self._new_id()
        record["updatedAt"] = self._now()
        self.records(collection)[record["id"]] = record
        return record

    def handle(self, request: httpx.Request) -> httpx.Response:
        parts = [p for p in request.url.path.split("/") if p][1:]  # drop "api"
        collection = parts[0]
        record_id = parts[1] if len(parts) > 1 else None
        body = json.loads(request.content) if request.content else None
        self.calls.append({
            "method": request.method,
            "collection": collection,
            "id": record_id,
            "json": body,
            "headers": dict(request.headers),
        })

        queue = self.failures.get((request.method, collection))
        if queue:
            status, message = queue.pop(0)
            if status == 0:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(status, json={"message": message})

        if request.method == "POST":
            key = request.headers.get("Idempotency-Key")
            if key and key in self.idempotent:
                status, payload = self.idempotent[key]
                return httpx.Response(status, json=payload)
            batch_field = next((f for f in BATCH_FIELDS if f in body), None)
            if batch_field:
                shared = {k: v for k, v in body.items() if k not in (batch_field, "idempotencyKey")}
                items = body[batch_field]
                limit = self.accept_limit.get(collection)
                if limit is not None:
                    items = items[:limit]
                payload = {"data": [self._create(collection, {**shared, **item}) for item in items]}
            else:
                payload = {"data": self._create(collection, body)}
            if key:
                self.idempotent[key] = (201, payload)
            return httpx.Response(201, json=payload)

        if request.method == "PUT":
            existing = self.records(collection).get(record_id)
            if existing is None:
                return httpx.Response(404, json={"message": "Not found"})
            existing.update(body or {})
            existing["updatedAt"] = self._now()
            return httpx.Response(200, json={"data": existing})

        if request.method == "DELETE":
            if self.records(collection).pop(record_id, None) is None:
                return httpx.Response(404, json={"message": "Not found"})
            return httpx.Response(200, json={"message": "Deleted"})

        return httpx.Response(200, json={"data": list(self.records(collection).values())})


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'REMOTE_API_BASE_URL': 'http://remote.test/api',
        'SYNC_RETRY_BACKOFF_SECONDS': 0,
        'SYNC_ONLINE_DELAY_SECONDS': 0.01,
        'SYNC_FOCUS_DELAY_SECONDS': 0.01,
        'SYNC_AUTOSTART': False,
        'SYNC_ASSUME_ONLINE': True,
        'LOG_LEVEL': 'DEBUG',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def remote():
    return FakeRemoteServer()


@pytest.fixture(scope='function')
def scheduler(app, db_session, remote):
    """A fresh scheduler talking to the fake remote, installed on the app."""
    scheduler = build_scheduler(app, transport=remote.transport)
    previous = app.extensions.get("sync_scheduler")
    app.extensions["sync_scheduler"] = scheduler
    yield scheduler
    scheduler.stop()
    scheduler.api.close()
    app.extensions["sync_scheduler"] = previous


@pytest.fixture(scope='function')
def store(scheduler):
    return scheduler.store


@pytest.fixture(scope='function')
def engines(scheduler):
    return scheduler.engines


@pytest.fixture(scope='function')
def client(app, scheduler):
    """Create test client (scheduler already wired to the fake remote)."""
    return app.test_client()


def seed_authoritative(entity: str, record: dict, *, remote=None, collection=None) -> AuthoritativeRecord:
    """Put a server record in the local authoritative set (and optionally on the fake server)."""
    row = AuthoritativeRecord(
        entity=entity,
        server_id=str(record["id"]),
        payload=dict(record),
        updated_at=utcnow(),
        fetched_at=utcnow(),
    )
    db.session.add(row)
    db.session.commit()
    if remote is not None:
        remote.seed(collection, record)
    return row


def seed_mapping(entity: str, local_id: str, server_id: str) -> IdMapping:
    row = IdMapping(entity=entity, local_id=local_id, server_id=server_id, synced_at=utcnow())
    db.session.add(row)
    db.session.commit()
    return row
