from dataclasses import replace
from datetime import datetime

from conftest import seed_authoritative, seed_mapping
from posync.entities import STOCKOUT
from posync.extensions import db
from posync.models import StagedRecord
from posync.services import offline_service
from posync.services.transaction_grouper import NOT_PROCESSED, TransactionGrouper


def _sale(stockin_id, quantity, transaction_id=None, **extra):
    payload = {"stockinId": stockin_id, "quantity": quantity, "clientName": "Ann", **extra}
    if transaction_id:
        payload["transactionId"] = transaction_id
    return offline_service.stage_add("stockout", payload)


def test_transaction_is_sent_in_one_call_after_its_stockin(scheduler, remote, store):
    seed_authoritative("product", {"id": "P100", "productName": "Widget"})
    stockin = offline_service.stage_add("stockin", {"productId": "P100", "quantity": 10})
    first = _sale(stockin.local_id, 1, "T1", paymentMethod="cash")
    second = _sale(stockin.local_id, 2, "T1", paymentMethod="cash")
    first_local, second_local = first.local_id, second.local_id

    outcome = scheduler.sync_entity("stockout")

    assert outcome.success
    assert outcome.results["stockout"].adds.processed == 2
    posts = remote.calls_for("POST", "stockout")
    assert len(posts) == 1
    body = posts[0]["json"]
    assert [line["stockinId"] for line in body["sales"]] == ["S1", "S1"]
    assert [line["quantity"] for line in body["sales"]] == [1, 2]
    assert body["transactionId"] == "T1"
    assert body["clientName"] == "Ann"
    assert body["paymentMethod"] == "cash"
    assert "clientName" not in body["sales"][0]
    assert store.get_mapping("stockout", first_local).server_id == "S2"
    assert store.get_mapping("stockout", second_local).server_id == "S3"
    assert db.session.query(StagedRecord).count() == 0


def test_partial_acceptance_commits_prefix_and_retries_rest(engines, remote, store):
    seed_authoritative("stockin", {"id": "SI1", "productId": "P1", "quantity": 10})
    sales = [_sale("SI1", qty, "T2") for qty in (1, 2, 3)]
    local_ids = [s.local_id for s in sales]
    remote.accept_limit["stockout"] = 2

    first = engines["stockout"].sync_adds()

    assert first.processed == 2
    assert first.errors == 1
    assert store.get_mapping("stockout", local_ids[0]) is not None
    assert store.get_mapping("stockout", local_ids[1]) is not None
    leftover = store.get_staged(STOCKOUT, StagedRecord.OP_ADD, local_ids[2])
    assert leftover.sync_retry_count == 1
    assert leftover.last_sync_error == NOT_PROCESSED

    del remote.accept_limit["stockout"]
    second = engines["stockout"].sync_adds()

    assert second.processed == 1
    assert store.get_mapping("stockout", local_ids[2]) is not None
    posts = remote.calls_for("POST", "stockout")
    assert len(posts) == 2
    assert posts[0]["headers"]["idempotency-key"] != posts[1]["headers"]["idempotency-key"]
    assert local_ids[2] in posts[1]["headers"]["idempotency-key"]
    assert local_ids[0] not in posts[1]["headers"]["idempotency-key"]
    assert len(posts[1]["json"]["sales"]) == 1


def test_group_conflict_clears_every_member(engines, remote, store):
    seed_authoritative("stockin", {"id": "SI1", "productId": "P1", "quantity": 10})
    sales = [_sale("SI1", qty, "T3") for qty in (1, 2)]
    local_ids = [s.local_id for s in sales]
    remote.fail("POST", "stockout", 409, message="Transaction already recorded")

    result = engines["stockout"].sync_adds()

    assert result.skipped == 2
    assert result.errors == 0
    assert db.session.query(StagedRecord).count() == 0
    assert all(store.get_mapping("stockout", lid) is None for lid in local_ids)


def test_group_is_held_while_any_member_dependency_is_unsynced(engines, remote):
    seed_authoritative("stockin", {"id": "SI1", "productId": "P1", "quantity": 10})
    _sale("SI1", 1, "T4")
    _sale("local-unsynced-stockin", 1, "T4")

    result = engines["stockout"].sync_adds()

    assert result.skipped == 2
    assert remote.calls_for("POST", "stockout") == []
    assert db.session.query(StagedRecord).count() == 2


def test_group_failure_retries_every_member(engines, remote, store):
    seed_authoritative("stockin", {"id": "SI1", "productId": "P1", "quantity": 10})
    sales = [_sale("SI1", qty, "T5") for qty in (1, 2)]
    local_ids = [s.local_id for s in sales]
    remote.fail("POST", "stockout", 502)

    result = engines["stockout"].sync_adds()

    assert result.errors == 2
    for lid in local_ids:
        assert store.get_staged(STOCKOUT, StagedRecord.OP_ADD, lid).sync_retry_count == 1


def test_group_key_uses_sorted_local_ids_and_earliest_creation():
    records = [
        StagedRecord(local_id="local-b", created_at=datetime(2026, 1, 1, 0, 0, 1)),
        StagedRecord(local_id="local-a", created_at=datetime(2026, 1, 1)),
    ]

    assert TransactionGrouper.group_key("T9", records) == "transaction-T9-local-a-local-b-1767225600000"


def test_group_keeps_staging_order():
    records = [
        StagedRecord(local_id="a", transaction_id="T1"),
        StagedRecord(local_id="b", transaction_id=None),
        StagedRecord(local_id="c", transaction_id="T2"),
        StagedRecord(local_id="d", transaction_id="T1"),
    ]

    groups = TransactionGrouper.group(records)

    assert list(groups) == ["T1", "T2"]
    assert [r.local_id for r in groups["T1"]] == ["a", "d"]


def test_chunks_never_split_a_group(engines):
    engine = engines["stockout"]
    engine.policy = replace(engine.policy, batch_size=2)
    units = [(None, ["a"]), ("T1", ["b", "c"]), (None, ["d"])]

    chunks = list(engine._chunks(units))

    assert chunks == [[(None, ["a"])], [("T1", ["b", "c"])], [(None, ["d"])]]


def test_sale_embeds_staged_backorder_and_links_it(engines, remote, store):
    backorder = offline_service.stage_add("backorder", {"productName": "Gadget", "quantity": 2})
    backorder_local = backorder.local_id
    _sale(None, 2, backorderLocalId=backorder_local, productName="Gadget")

    result = engines["stockout"].sync_entity()

    assert result.adds.processed == 1
    line = remote.calls_for("POST", "stockout")[0]["json"]["sales"][0]
    assert line["isBackOrder"] is True
    assert line["backOrder"] == {"productName": "Gadget", "quantity": 2}
    assert "backorderLocalId" not in line
    assert store.get_mapping("backorder", backorder_local).server_id == "S1"
    assert store.get_authoritative("backorder", "S1") is not None
    assert db.session.query(StagedRecord).count() == 0


def test_sale_references_synced_backorder_by_server_id(engines):
    seed_mapping("backorder", "local-bo", "B7")
    record = StagedRecord(
        entity="stockout",
        operation=StagedRecord.OP_ADD,
        local_id="local-sale",
        payload={"quantity": 1, "clientName": "Ann", "backorderLocalId": "local-bo"},
    )

    item, shared = engines["stockout"].split_line(record, record.payload)

    assert item == {"quantity": 1, "isBackOrder": True, "backorderId": "B7"}
    assert shared == {"clientName": "Ann"}


def _sales_return(stockout_id, quantity, transaction_id="R1", reason="damaged"):
    return offline_service.stage_add(
        "sales_return",
        {"stockoutId": stockout_id, "quantity": quantity, "transactionId": transaction_id, "reason": reason},
    )


def test_sales_return_waits_for_its_sale(engines, remote):
    seed_authoritative("stockin", {"id": "SI1", "productId": "P1", "quantity": 10})
    sale = _sale("SI1", 3)
    _sales_return(sale.local_id, 1)

    result = engines["sales_return"].sync_adds()

    assert result.skipped == 1
    assert remote.calls_for("POST", "sales-return") == []


def test_sales_return_transaction_is_one_call_after_its_sale(scheduler, remote, store):
    seed_authoritative("stockin", {"id": "SI1", "productId": "P1", "quantity": 10})
    sale = _sale("SI1", 3)
    returns = [_sales_return(sale.local_id, qty) for qty in (1, 2)]
    local_ids = [r.local_id for r in returns]

    outcome = scheduler.sync_entity("sales_return")

    assert outcome.success
    assert list(outcome.results)[-2:] == ["stockout", "sales_return"]
    assert outcome.results["sales_return"].adds.processed == 2
    posts = [c["collection"] for c in remote.calls if c["method"] == "POST"]
    assert posts == ["stockout", "sales-return"]
    body = remote.calls_for("POST", "sales-return")[0]["json"]
    assert body["items"] == [{"stockoutId": "S1", "quantity": 1}, {"stockoutId": "S1", "quantity": 2}]
    assert body["transactionId"] == "R1"
    assert body["reason"] == "damaged"
    assert body["idempotencyKey"].startswith("transaction-R1-")
    assert [store.get_mapping("sales_return", lid).server_id for lid in local_ids] == ["S2", "S3"]
    assert db.session.query(StagedRecord).count() == 0
