from datetime import timedelta

import pytest

from conftest import seed_authoritative, seed_mapping
from posync.config import SyncPolicy
from posync.entities import PRODUCT, STOCKOUT
from posync.extensions import db
from posync.services import offline_service
from posync.services.duplicate_guard import MATCH_CONTENT, MATCH_MAPPED, DuplicateGuard, same_content
from posync.services.staging_service import StagingStore
from posync.time_utils import utcnow


@pytest.fixture
def guard(db_session):
    return DuplicateGuard(StagingStore(SyncPolicy()))


def test_same_content_normalizes_numbers_and_ignores_unset_fields():
    fields = ("stockinId", "quantity", "clientName", "soldPrice")
    local = {"stockinId": "S2", "quantity": 5, "clientName": "Ann", "soldPrice": None}
    assert same_content(fields, local, {"stockinId": "S2", "quantity": "5.0", "clientName": "Ann", "soldPrice": 9})
    assert not same_content(fields, local, {"stockinId": "S2", "quantity": 4, "clientName": "Ann"})
    assert not same_content(fields, {}, {"stockinId": "S2"})


def test_existing_mapping_is_a_duplicate(guard):
    record = offline_service.stage_add("product", {"productName": "Widget"})
    seed_mapping("product", record.local_id, "S1")

    match = guard.check(PRODUCT, record, record.payload)

    assert match.reason == MATCH_MAPPED
    assert match.server_id == "S1"


def test_recent_content_match_is_a_duplicate(guard):
    record = offline_service.stage_add("product", {"productName": "Widget", "brand": "Acme"})
    seed_authoritative("product", {"id": "S7", "productName": "Widget", "brand": "Acme"})

    match = guard.check(PRODUCT, record, record.payload)

    assert match.reason == MATCH_CONTENT
    assert match.server_id == "S7"


def test_content_match_outside_window_is_ignored(guard):
    record = offline_service.stage_add("product", {"productName": "Widget"})
    row = seed_authoritative("product", {"id": "S7", "productName": "Widget"})
    row.updated_at = utcnow() - timedelta(minutes=11)
    db.session.commit()

    assert guard.check(PRODUCT, record, record.payload) is None


def test_record_mapped_to_another_local_id_is_not_a_match(guard):
    record = offline_service.stage_add("product", {"productName": "Widget"})
    seed_authoritative("product", {"id": "S7", "productName": "Widget"})
    seed_mapping("product", "local-other", "S7")

    assert guard.check(PRODUCT, record, record.payload) is None


def test_each_server_record_absorbs_one_staged_record_per_pass(guard):
    first = offline_service.stage_add("product", {"productName": "Widget"})
    second = offline_service.stage_add("product", {"productName": "Widget"})
    seed_authoritative("product", {"id": "S7", "productName": "Widget"})
    claimed = set()

    assert guard.check(PRODUCT, first, first.payload, claimed=claimed).server_id == "S7"
    assert guard.check(PRODUCT, second, second.payload, claimed=claimed) is None


def test_grouped_record_requires_same_transaction(guard):
    record = offline_service.stage_add(
        "stockout", {"stockinId": "S2", "quantity": 1, "clientName": "Ann", "transactionId": "T1"}
    )
    seed_authoritative("stockout", {"id": "S8", "stockinId": "S2", "quantity": 1, "clientName": "Ann", "transactionId": "T0"})
    assert guard.check(STOCKOUT, record, record.payload) is None

    seed_authoritative("stockout", {"id": "S9", "stockinId": "S2", "quantity": 1, "clientName": "Ann", "transactionId": "T1"})
    assert guard.check(STOCKOUT, record, record.payload).server_id == "S9"


def test_grouped_record_uses_transaction_window(guard):
    record = offline_service.stage_add(
        "stockout", {"stockinId": "S2", "quantity": 1, "clientName": "Ann", "transactionId": "T1"}
    )
    row = seed_authoritative(
        "stockout", {"id": "S9", "stockinId": "S2", "quantity": 1, "clientName": "Ann", "transactionId": "T1"}
    )
    row.updated_at = utcnow() - timedelta(minutes=6)
    db.session.commit()

    assert guard.check(STOCKOUT, record, record.payload) is None
