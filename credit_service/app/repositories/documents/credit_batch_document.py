"""크레딧 배치 MongoDB 도큐먼트.

학생-스튜디오당 여러 배치를 저장한다. 만료된 배치는 TTL 이 아닌 스윕이 삭제한다.
"""

from __future__ import annotations

from common.mongo.types import BaseDocument, MongoDateTime, from_object_id

from ...models.credit_batch import SOURCE_PURCHASE, CreditBatch


class CreditBatchDocument(BaseDocument):
    """MongoDB credit_batches 컬렉션 도큐먼트 모델."""

    student_id: str
    studio_id: str
    credits_remaining: int
    original_credits: int
    purchase_date: MongoDateTime
    expiration_date: MongoDateTime
    source_package_id: str | None = None
    source: str = SOURCE_PURCHASE

    def to_domain(self) -> CreditBatch:
        return CreditBatch(
            id=from_object_id(self.id),
            student_id=self.student_id,
            studio_id=self.studio_id,
            credits_remaining=self.credits_remaining,
            original_credits=self.original_credits,
            purchase_date=self.purchase_date,
            expiration_date=self.expiration_date,
            source_package_id=self.source_package_id,
            source=self.source,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_mongo_record(self) -> dict:
        # source_package_id=None 도 명시적으로 저장한다.
        record = super().to_mongo_record()
        record.setdefault("source_package_id", None)
        return record
