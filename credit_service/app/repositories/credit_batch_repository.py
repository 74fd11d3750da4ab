"""크레딧 배치 레포지토리 구현체 (LedgerStore).

FIFO(만료 임박 순 -> 구매 순) 조회, 단일 배치 CAS 갱신, 청크 단위 삭제를 지원한다.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterator

from bson import ObjectId
from pymongo import ASCENDING
from pymongo.client_session import ClientSession
from pymongo.database import Database

from common.mongo.types import ensure_utc_datetime, parse_object_id

from ..exceptions import ValidationError
from ..models.credit_batch import SOURCE_PURCHASE, CreditBatch
from .documents.credit_batch_document import CreditBatchDocument
from .interfaces import CreditBatchRepositoryInterface


logger = logging.getLogger(__name__)


# 트랜잭션당 최대 변경 수보다 충분히 작게 유지한다.
DEFAULT_DELETE_CHUNK_SIZE = 500

FIFO_SORT = [
    ("expiration_date", ASCENDING),
    ("purchase_date", ASCENDING),
    ("_id", ASCENDING),
]


def _chunked(items: list[ObjectId], size: int) -> Iterator[list[ObjectId]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class CreditBatchRepository(CreditBatchRepositoryInterface):
    """credit_batches 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database["credit_batches"]

    @staticmethod
    def _from_document(doc: dict) -> CreditBatch:
        return CreditBatchDocument.model_validate(doc).to_domain()

    def create_batch(
        self,
        student_id: str,
        studio_id: str,
        credits: int,
        purchase_date: datetime,
        expiration_date: datetime,
        source_package_id: str | None,
        source: str = SOURCE_PURCHASE,
    ) -> str:
        """새 배치를 생성하고 배치 ID 를 반환한다."""
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise ValidationError(f"credits must be a positive integer, got {credits!r}")

        purchase_date = ensure_utc_datetime(purchase_date)
        expiration_date = ensure_utc_datetime(expiration_date)
        if expiration_date <= purchase_date:
            raise ValidationError("expiration_date must be after purchase_date")

        now = datetime.now(timezone.utc)
        document = CreditBatchDocument(
            student_id=student_id,
            studio_id=studio_id,
            credits_remaining=credits,
            original_credits=credits,
            purchase_date=purchase_date,
            expiration_date=expiration_date,
            source_package_id=source_package_id,
            source=source,
            created_at=now,
            updated_at=now,
        )
        result = self._col.insert_one(document.to_mongo_record())
        return str(result.inserted_id)

    def find_by_id(self, batch_id: str) -> CreditBatch | None:
        object_id = parse_object_id(batch_id)
        if object_id is None:
            return None
        doc = self._col.find_one({"_id": object_id})
        if not doc:
            return None
        return self._from_document(doc)

    def list_non_expired_batches(
        self, student_id: str, studio_id: str, now: datetime
    ) -> list[CreditBatch]:
        """만료되지 않은 배치를 FIFO 순으로 조회한다 (잔량 0 배치 포함)."""
        cursor = self._col.find(
            {
                "student_id": student_id,
                "studio_id": studio_id,
                "expiration_date": {"$gt": now},
            },
            sort=FIFO_SORT,
        )
        return [self._from_document(doc) for doc in cursor]

    def list_all_batches(self, student_id: str) -> list[CreditBatch]:
        """학생의 모든 배치 조회. 만료 스윕 전용."""
        cursor = self._col.find({"student_id": student_id}, sort=FIFO_SORT)
        return [self._from_document(doc) for doc in cursor]

    def list_expired_batches(self, student_id: str, now: datetime) -> list[CreditBatch]:
        """만료일이 지난 배치 조회 (idx_student_expiration 사용)."""
        cursor = self._col.find(
            {"student_id": student_id, "expiration_date": {"$lte": now}},
            sort=FIFO_SORT,
        )
        return [self._from_document(doc) for doc in cursor]

    def update_remaining(
        self,
        batch_id: str,
        new_remaining: int,
        *,
        expected_remaining: int,
        now: datetime,
    ) -> bool:
        """단일 배치의 잔량을 compare-and-swap 으로 갱신한다.

        저장된 credits_remaining 이 expected_remaining 과 같고, 아직 만료 전이며,
        최초 지급량을 넘지 않는 경우에만 갱신된다. 조건이 깨졌으면 False 를 반환하고
        호출자가 최신 상태를 다시 읽어 재시도한다.
        """
        if new_remaining < 0:
            raise ValidationError("credits_remaining cannot be negative")

        object_id = parse_object_id(batch_id)
        if object_id is None:
            return False

        result = self._col.update_one(
            {
                "_id": object_id,
                "credits_remaining": expected_remaining,
                "original_credits": {"$gte": new_remaining},
                "expiration_date": {"$gt": now},
            },
            {
                "$set": {
                    "credits_remaining": new_remaining,
                    "updated_at": datetime.now(timezone.utc),
                }
            },
        )
        return result.modified_count == 1

    def delete_batches(
        self, batch_ids: list[str], chunk_size: int = DEFAULT_DELETE_CHUNK_SIZE
    ) -> int:
        """배치를 chunk_size 단위 트랜잭션으로 순차 삭제한다.

        청크 사이에서 실패하더라도 남은 배치는 다음 스윕에서 다시 발견되어 삭제된다.
        """
        if chunk_size <= 0:
            raise ValidationError("chunk_size must be positive")

        object_ids = [oid for oid in map(parse_object_id, batch_ids) if oid is not None]
        if not object_ids:
            return 0

        deleted = 0
        with self._db.client.start_session() as session:
            for chunk in _chunked(object_ids, chunk_size):

                def _delete_chunk(s: ClientSession, ids: list[ObjectId] = chunk) -> int:
                    result = self._col.delete_many({"_id": {"$in": ids}}, session=s)
                    return result.deleted_count

                count = session.with_transaction(_delete_chunk)
                deleted += count
                logger.debug("deleted credit batch chunk size=%d deleted=%d", len(chunk), count)
        return deleted

    def sum_available(self, student_id: str, studio_id: str, now: datetime) -> int:
        """만료되지 않은 배치의 잔량 합계 (AvailableBalance)."""
        pipeline = [
            {
                "$match": {
                    "student_id": student_id,
                    "studio_id": studio_id,
                    "expiration_date": {"$gt": now},
                    "credits_remaining": {"$gt": 0},
                }
            },
            {"$group": {"_id": None, "total": {"$sum": "$credits_remaining"}}},
        ]
        for doc in self._col.aggregate(pipeline):
            return int(doc["total"])
        return 0
