from datetime import datetime

import pytest

from conftest import seed_authoritative, seed_mapping
from posync.entities import PRODUCT, STOCKIN
from posync.extensions import db
from posync.models import AbandonedRecord, StagedRecord
from posync.services import offline_service
from posync.time_utils import utcnow


def _staged_count():
    return db.session.query(StagedRecord).count()


def test_add_is_posted_once_and_mapped(engines, remote, store):
    record = offline_service.stage_add("product", {"productName": "Widget"})
    local_id = record.local_id

    result = engines["product"].sync_entity()

    assert result.adds.processed == 1
    assert result.refreshed is True
    assert store.get_mapping("product", local_id).server_id == "S1"
    assert store.get_authoritative("product", "S1").payload["productName"] == "Widget"
    assert _staged_count() == 0

    engines["product"].sync_entity()
    assert len(remote.calls_for("POST", "products")) == 1


def test_failed_local_commit_is_absorbed_by_duplicate_guard(engines, remote, store, monkeypatch):
    record = offline_service.stage_add("product", {"productName": "Widget", "brand": "Acme"})
    local_id = record.local_id
    original = store.commit_add
    crashes = []

    def crash_once(*args, **kwargs):
        if not crashes:
            crashes.append(1)
            raise RuntimeError("terminal lost power")
        return original(*args, **kwargs)

    monkeypatch.setattr(store, "commit_add", crash_once)

    first = engines["product"].sync_entity()
    assert first.adds.errors == 1
    assert store.get_staged(PRODUCT, StagedRecord.OP_ADD, local_id).sync_retry_count == 1
    # The refresh after the failed pass pulled the server copy in
    assert store.get_authoritative("product", "S1") is not None

    second = engines["product"].sync_entity()

    assert second.adds.skipped == 1
    assert len(remote.calls_for("POST", "products")) == 1
    assert store.get_mapping("product", local_id).server_id == "S1"
    assert _staged_count() == 0


def test_resubmission_reuses_idempotency_key(engines, remote, store, monkeypatch):
    engine = engines["product"]
    record = offline_service.stage_add("product", {"productName": "Widget"})
    local_id = record.local_id
    original = store.commit_add
    crashes = []

    def crash_once(*args, **kwargs):
        if not crashes:
            crashes.append(1)
            raise RuntimeError("terminal lost power")
        return original(*args, **kwargs)

    monkeypatch.setattr(store, "commit_add", crash_once)
    # No refresh, so the duplicate guard has nothing to match against
    engine.last_refresh_at = utcnow()

    engine.sync_adds()
    engine.sync_adds()

    posts = remote.calls_for("POST", "products")
    assert len(posts) == 2
    assert posts[0]["headers"]["idempotency-key"] == posts[1]["headers"]["idempotency-key"]
    assert posts[0]["json"]["idempotencyKey"] == posts[0]["headers"]["idempotency-key"]
    assert len(remote.records("products")) == 1
    assert store.get_mapping("product", local_id).server_id == "S1"


def test_requeued_add_keeps_its_idempotency_key(engines, remote, store, monkeypatch):
    engine = engines["product"]
    record = offline_service.stage_add("product", {"productName": "Widget"})
    local_id = record.local_id
    key_before = engine.idempotency_key(record, record.payload)

    def disk_full(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "commit_add", disk_full)
    engine.last_refresh_at = utcnow()

    engine.sync_adds()
    entry = store.abandon(
        store.get_staged(PRODUCT, StagedRecord.OP_ADD, local_id), "disk full", AbandonedRecord.REASON_MAX_RETRIES
    )
    requeued = offline_service.requeue_abandoned(entry.id)
    monkeypatch.undo()

    assert engine.idempotency_key(requeued, requeued.payload) == key_before

    result = engine.sync_adds()

    assert result.processed == 1
    assert len(remote.records("products")) == 1
    assert store.get_mapping("product", local_id).server_id == "S1"


def _edit_during_create(engine, monkeypatch, edit):
    create = engine.api.create

    def create_then_edit(*args, **kwargs):
        envelope = create(*args, **kwargs)
        edit()
        return envelope

    monkeypatch.setattr(engine.api, "create", create_then_edit)


def test_edit_made_while_add_in_flight_is_staged_as_update(engines, remote, store, monkeypatch):
    engine = engines["product"]
    record = offline_service.stage_add("product", {"productName": "Widget"})
    local_id = record.local_id
    _edit_during_create(
        engine, monkeypatch, lambda: offline_service.stage_update("product", local_id, {"brand": "Acme"})
    )

    result = engine.sync_entity()

    assert result.adds.processed == 1
    assert result.updates.processed == 1
    put = remote.calls_for("PUT", "products")[0]
    assert put["id"] == "S1"
    assert put["json"] == {"brand": "Acme"}
    assert remote.records("products")["S1"]["brand"] == "Acme"
    assert store.get_authoritative("product", "S1").payload["brand"] == "Acme"
    assert _staged_count() == 0


def test_delete_made_while_add_in_flight_is_staged_as_delete(engines, remote, store, monkeypatch):
    engine = engines["product"]
    record = offline_service.stage_add("product", {"productName": "Widget"})
    local_id = record.local_id
    _edit_during_create(engine, monkeypatch, lambda: offline_service.stage_delete("product", local_id))

    result = engine.sync_entity()

    assert result.adds.processed == 1
    assert result.deletes.processed == 1
    assert remote.calls_for("DELETE", "products")[0]["id"] == "S1"
    assert remote.records("products") == {}
    assert store.get_authoritative("product", "S1") is None
    assert _staged_count() == 0


def test_dependent_add_waits_for_its_reference(scheduler, remote, store):
    product = offline_service.stage_add("product", {"productName": "Widget"})
    stockin = offline_service.stage_add("stockin", {"productId": product.local_id, "quantity": 3})
    stockin_local = stockin.local_id

    # Alone, the stock-in cannot go: its product has no server id yet
    skipped = scheduler.engines["stockin"].sync_adds()
    assert skipped.skipped == 1
    assert remote.calls_for("POST", "stockin") == []

    outcome = scheduler.sync_entity("stockin")

    assert outcome.success
    posts = [c for c in remote.calls if c["method"] == "POST"]
    assert [c["collection"] for c in posts] == ["products", "stockin"]
    assert posts[1]["json"]["productId"] == "S1"
    assert store.get_mapping("stockin", stockin_local).server_id == "S2"


@pytest.mark.parametrize(
    "status,message",
    [(409, "Product exists"), (400, "Duplicate product name")],
)
def test_server_duplicate_clears_stage_without_mapping(engines, remote, store, status, message):
    record = offline_service.stage_add("product", {"productName": "Widget"})
    local_id = record.local_id
    remote.fail("POST", "products", status, message=message)

    result = engines["product"].sync_adds()

    assert result.skipped == 1
    assert result.errors == 0
    assert store.get_mapping("product", local_id) is None
    assert _staged_count() == 0
    assert db.session.query(AbandonedRecord).count() == 0


def test_record_is_abandoned_after_max_retries(engines, remote, store):
    engine = engines["product"]
    record = offline_service.stage_add("product", {"productName": "Widget"})
    local_id = record.local_id
    remote.fail("POST", "products", 400, times=5, message="productName rejected")

    for attempt in range(1, 5):
        result = engine.sync_adds()
        assert result.errors == 1
        assert result.abandoned == 0
        assert store.get_staged(PRODUCT, StagedRecord.OP_ADD, local_id).sync_retry_count == attempt

    result = engine.sync_adds()

    assert result.abandoned == 1
    assert store.get_staged(PRODUCT, StagedRecord.OP_ADD, local_id) is None
    entry = db.session.query(AbandonedRecord).one()
    assert entry.local_id == local_id
    assert entry.retry_count == 5
    assert entry.last_error == "productName rejected"


@pytest.mark.parametrize("status", [500, 0])
def test_transient_failure_is_retried_next_pass(engines, remote, store, status):
    engine = engines["product"]
    record = offline_service.stage_add("product", {"productName": "Widget"})
    local_id = record.local_id
    remote.fail("POST", "products", status)

    first = engine.sync_adds()
    staged = store.get_staged(PRODUCT, StagedRecord.OP_ADD, local_id)
    assert first.errors == 1
    assert staged.sync_retry_count == 1
    assert staged.last_sync_error

    second = engine.sync_adds()
    assert second.processed == 1
    assert store.get_mapping("product", local_id) is not None


def test_delete_of_record_missing_on_server_converges(engines, remote, store):
    seed_authoritative("product", {"id": "S9", "productName": "Gone"})
    offline_service.stage_delete("product", "S9")

    result = engines["product"].sync_deletes()

    assert result.processed == 1
    assert result.errors == 0
    assert store.get_authoritative("product", "S9") is None
    assert _staged_count() == 0


def test_update_is_put_and_merged_into_authoritative(engines, remote, store):
    seed_authoritative("product", {"id": "S3", "productName": "Old"}, remote=remote, collection="products")
    offline_service.stage_update("product", "S3", {"brand": "Acme"})

    result = engines["product"].sync_updates()

    assert result.processed == 1
    put = remote.calls_for("PUT", "products")[0]
    assert put["id"] == "S3"
    assert put["json"] == {"brand": "Acme"}
    payload = store.get_authoritative("product", "S3").payload
    assert payload["brand"] == "Acme"
    assert payload["productName"] == "Old"
    assert _staged_count() == 0


def test_update_conflict_is_terminal(engines, remote, store):
    seed_authoritative("product", {"id": "S3", "productName": "Old"}, remote=remote, collection="products")
    offline_service.stage_update("product", "S3", {"brand": "Acme"})
    remote.fail("PUT", "products", 409, message="Version conflict")

    result = engines["product"].sync_updates()

    assert result.skipped == 1
    assert result.errors == 0
    assert _staged_count() == 0


def test_refresh_prunes_mappings_missing_on_server(engines, remote, store):
    remote.seed("products", {"id": "S1", "productName": "Kept"})
    seed_authoritative("product", {"id": "S1", "productName": "Kept"})
    seed_authoritative("product", {"id": "S5", "productName": "Deleted elsewhere"})
    seed_mapping("product", "local-kept", "S1")
    seed_mapping("product", "local-gone", "S5")

    result = engines["product"].sync_entity()

    assert result.refreshed is True
    assert store.get_mapping("product", "local-kept") is not None
    assert store.get_mapping("product", "local-gone") is None
    assert store.get_authoritative("product", "S5") is None


def test_refresh_respects_cooldown_when_nothing_changed(engines, remote):
    engine = engines["product"]

    assert engine.sync_entity().refreshed is True
    assert engine.sync_entity().refreshed is False
    assert len(remote.calls_for("GET", "products")) == 1


def test_refresh_failure_does_not_fail_the_pass(engines, remote):
    remote.fail("GET", "products", 503)

    result = engines["product"].sync_entity()

    assert result.refreshed is False
    assert engines["product"].last_refresh_at is None


def test_idempotency_key_is_stable_and_readable(engines):
    record = offline_service.stage_add(
        "stockin",
        {"productId": "S1", "quantity": 3},
        created_at=datetime(2026, 1, 1),
    )

    key = engines["stockin"].idempotency_key(record, record.payload)

    assert key == f"stockin-{record.local_id}-1767225600000-S1-3"

    product = offline_service.stage_add("product", {"productName": "Blue  Widget"}, created_at=datetime(2026, 1, 1))
    assert engines["product"].idempotency_key(product, product.payload).endswith("-1767225600000-Blue-Widget")


def test_status_reports_containers(engines):
    offline_service.stage_add("stockin", {"productId": "local-p", "quantity": 1})

    status = engines["stockin"].status()

    assert status["entity"] == "stockin"
    assert status["containers"]["stockins_offline_add"] == 1
    assert status["processing"] == []
