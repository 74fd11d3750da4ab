"""크레딧 배치 도메인 모델.

학생은 스튜디오별로 여러 배치를 가질 수 있으며, 각 배치는 독립적인 만료일을 가진다.
잔액은 만료되지 않은 배치의 credits_remaining 합계로 계산하고,
소비 시 FIFO(만료 임박 순, 같으면 먼저 구매한 순)로 차감한다.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


SOURCE_PURCHASE = "purchase"
SOURCE_LEGACY_MIGRATION = "legacy_migration"


class CreditBatch(BaseModel):
    """구매 단위 크레딧 배치."""

    id: str | None = None
    student_id: str
    studio_id: str
    credits_remaining: int  # 현재 남은 수량
    original_credits: int  # 최초 지급량
    purchase_date: datetime
    expiration_date: datetime
    source_package_id: str | None = None
    source: str = SOURCE_PURCHASE  # "purchase" | "legacy_migration"
    created_at: datetime
    updated_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expiration_date <= now

    def fifo_key(self) -> tuple[datetime, datetime, str]:
        return (self.expiration_date, self.purchase_date, self.id or "")


class CreditSummary(BaseModel):
    """학생-스튜디오 크레딧 집계 결과."""

    student_id: str
    studio_id: str
    total_remaining: int  # 유효한 크레딧 합계
    batches: list[CreditBatch]  # 소비 가능한 배치 목록 (FIFO 순)


class ExpirationResult(BaseModel):
    """만료 스윕 결과."""

    total_expired: int = 0
    affected_student_count: int = 0
