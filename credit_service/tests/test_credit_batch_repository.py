from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from bson import ObjectId

from credit_service.app.exceptions import ValidationError
from credit_service.app.repositories.credit_batch_repository import (
    FIFO_SORT,
    CreditBatchRepository,
)


NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _repository() -> tuple[CreditBatchRepository, MagicMock, MagicMock]:
    collection = MagicMock()
    database = MagicMock()
    database.__getitem__.return_value = collection
    session = database.client.start_session.return_value.__enter__.return_value
    session.with_transaction.side_effect = lambda callback: callback(session)
    return CreditBatchRepository(database), collection, session


def test_update_remaining_is_conditional_on_expected_value() -> None:
    repo, collection, _ = _repository()
    batch_id = ObjectId()
    collection.update_one.return_value.modified_count = 1

    assert repo.update_remaining(str(batch_id), 3, expected_remaining=4, now=NOW)

    filter_, update = collection.update_one.call_args.args
    assert filter_ == {
        "_id": batch_id,
        "credits_remaining": 4,
        "original_credits": {"$gte": 3},
        "expiration_date": {"$gt": NOW},
    }
    assert update["$set"]["credits_remaining"] == 3


def test_update_remaining_reports_lost_race() -> None:
    repo, collection, _ = _repository()
    collection.update_one.return_value.modified_count = 0

    assert not repo.update_remaining(str(ObjectId()), 3, expected_remaining=4, now=NOW)


def test_update_remaining_rejects_negative_balance() -> None:
    repo, collection, _ = _repository()

    with pytest.raises(ValidationError):
        repo.update_remaining(str(ObjectId()), -1, expected_remaining=0, now=NOW)
    collection.update_one.assert_not_called()


def test_update_remaining_with_malformed_id_does_not_touch_store() -> None:
    repo, collection, _ = _repository()

    assert not repo.update_remaining("not-an-id", 1, expected_remaining=2, now=NOW)
    collection.update_one.assert_not_called()


def test_delete_batches_runs_one_transaction_per_chunk() -> None:
    repo, collection, session = _repository()
    ids = [ObjectId() for _ in range(5)]
    collection.delete_many.side_effect = lambda flt, session: MagicMock(
        deleted_count=len(flt["_id"]["$in"])
    )

    deleted = repo.delete_batches([str(oid) for oid in ids], chunk_size=2)

    assert deleted == 5
    assert session.with_transaction.call_count == 3
    chunks = [c.args[0]["_id"]["$in"] for c in collection.delete_many.call_args_list]
    assert chunks == [ids[0:2], ids[2:4], ids[4:5]]


def test_delete_batches_with_nothing_to_delete() -> None:
    repo, collection, session = _repository()

    assert repo.delete_batches([]) == 0
    collection.delete_many.assert_not_called()
    session.with_transaction.assert_not_called()


def test_create_batch_validates_inputs() -> None:
    repo, collection, _ = _repository()

    with pytest.raises(ValidationError):
        repo.create_batch("s", "studio", 0, NOW, NOW + timedelta(days=1), None)
    with pytest.raises(ValidationError):
        repo.create_batch("s", "studio", 3, NOW, NOW, None)
    collection.insert_one.assert_not_called()


def test_create_batch_stores_full_grant() -> None:
    repo, collection, _ = _repository()
    inserted = ObjectId()
    collection.insert_one.return_value.inserted_id = inserted

    batch_id = repo.create_batch(
        "student-1", "studio-1", 5, NOW, NOW + timedelta(days=30), "pkg-1"
    )

    assert batch_id == str(inserted)
    record = collection.insert_one.call_args.args[0]
    assert record["credits_remaining"] == 5
    assert record["original_credits"] == 5
    assert record["source_package_id"] == "pkg-1"
    assert record["source"] == "purchase"
    assert record["expiration_date"] == NOW + timedelta(days=30)
    assert "_id" not in record


def test_list_non_expired_batches_uses_fifo_sort() -> None:
    repo, collection, _ = _repository()
    collection.find.return_value = []

    repo.list_non_expired_batches("student-1", "studio-1", NOW)

    query = collection.find.call_args.args[0]
    assert query["expiration_date"] == {"$gt": NOW}
    assert collection.find.call_args.kwargs["sort"] == FIFO_SORT


def test_sum_available_defaults_to_zero() -> None:
    repo, collection, _ = _repository()
    collection.aggregate.return_value = iter([])

    assert repo.sum_available("student-1", "studio-1", NOW) == 0

    collection.aggregate.return_value = iter([{"_id": None, "total": 9}])
    assert repo.sum_available("student-1", "studio-1", NOW) == 9


def test_list_expired_batches_filters_on_expiration_in_query() -> None:
    repo, collection, _ = _repository()
    collection.find.return_value = []

    repo.list_expired_batches("student-1", NOW)

    query = collection.find.call_args.args[0]
    assert query == {"student_id": "student-1", "expiration_date": {"$lte": NOW}}


def test_list_all_batches_returns_every_batch_in_fifo_order() -> None:
    repo, collection, _ = _repository()
    batch_id = ObjectId()
    collection.find.return_value = [
        {
            "_id": batch_id,
            "student_id": "student-1",
            "studio_id": "studio-1",
            "credits_remaining": 0,
            "original_credits": 2,
            "purchase_date": NOW - timedelta(days=40),
            "expiration_date": NOW - timedelta(days=10),
            "created_at": NOW - timedelta(days=40),
            "updated_at": NOW - timedelta(days=20),
        }
    ]

    batches = repo.list_all_batches("student-1")

    assert collection.find.call_args.args[0] == {"student_id": "student-1"}
    assert collection.find.call_args.kwargs["sort"] == FIFO_SORT
    assert [b.id for b in batches] == [str(batch_id)]
    assert batches[0].source_package_id is None
    assert batches[0].is_expired(NOW)
