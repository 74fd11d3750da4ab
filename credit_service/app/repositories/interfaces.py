from __future__ import annotations

from datetime import datetime
from typing import Iterator, Protocol

from ..models.credit_batch import CreditBatch
from ..models.student import Student, StudentProfile


class CreditBatchRepositoryInterface(Protocol):
    """크레딧 원장(LedgerStore)이 따라야 할 최소한의 계약.

    Service 레이어는 이 인터페이스에만 의존하고, 구체 구현(Mongo 등)은 몰라도 된다.
    - list_non_expired_batches 의 정렬 순서가 FIFO 소비 순서의 기준이다.
    - update_remaining 은 단일 배치 문서에 대한 조건부(CAS) 갱신이어야 한다.
    """

    def create_batch(
        self,
        student_id: str,
        studio_id: str,
        credits: int,
        purchase_date: datetime,
        expiration_date: datetime,
        source_package_id: str | None,
        source: str = ...,
    ) -> str:  # pragma: no cover - Protocol
        ...

    def find_by_id(
        self, batch_id: str
    ) -> CreditBatch | None:  # pragma: no cover - Protocol
        ...

    def list_non_expired_batches(
        self, student_id: str, studio_id: str, now: datetime
    ) -> list[CreditBatch]:  # pragma: no cover - Protocol
        ...

    def list_all_batches(
        self, student_id: str
    ) -> list[CreditBatch]:  # pragma: no cover - Protocol
        ...

    def list_expired_batches(
        self, student_id: str, now: datetime
    ) -> list[CreditBatch]:  # pragma: no cover - Protocol
        """expiration_date <= now 인 배치 (잔량 0 배치 포함)."""
        ...

    def update_remaining(
        self,
        batch_id: str,
        new_remaining: int,
        *,
        expected_remaining: int,
        now: datetime,
    ) -> bool:  # pragma: no cover - Protocol
        """expected_remaining 이 그대로이고 아직 만료 전일 때만 갱신하고 성공 여부를 반환한다."""
        ...

    def delete_batches(
        self, batch_ids: list[str], chunk_size: int = ...
    ) -> int:  # pragma: no cover - Protocol
        """배치를 chunk_size 단위로 나눠 순차 삭제하고 삭제된 개수를 반환한다."""
        ...

    def sum_available(
        self, student_id: str, studio_id: str, now: datetime
    ) -> int:  # pragma: no cover - Protocol
        ...


class StudentRepositoryInterface(Protocol):
    """학생 레코드/프로필에 대한 원장 쪽 계약.

    - write_credit_projection 은 students 와 student_profiles 두 위치를 원자적으로 덮어쓴다.
    - claim_legacy_migration 은 credits_synced_at 이 비어 있을 때만 성공하는 조건부 갱신이다.
    """

    def find_by_id(
        self, student_id: str
    ) -> Student | None:  # pragma: no cover - Protocol
        ...

    def iter_student_ids(self) -> Iterator[str]:  # pragma: no cover - Protocol
        ...

    def find_profile_by_auth_uid(
        self, auth_uid: str
    ) -> StudentProfile | None:  # pragma: no cover - Protocol
        ...

    def claim_legacy_migration(
        self, student_id: str
    ) -> datetime | None:  # pragma: no cover - Protocol
        """이관 권한을 선점한다. 성공하면 기록한 시각, 이미 선점/동기화됐으면 None."""
        ...

    def release_legacy_migration(
        self, student_id: str, claimed_at: datetime
    ) -> None:  # pragma: no cover - Protocol
        """claimed_at 으로 선점한 표시를 되돌린다. 그 사이 sync 가 기록했으면 그대로 둔다."""
        ...

    def write_credit_projection(
        self,
        student_id: str,
        studio_id: str,
        total: int,
        profile_id: str | None,
        *,
        update_student: bool = True,
    ) -> None:  # pragma: no cover - Protocol
        """update_student=False 이면 프로필의 studios[studio_id] 만 갱신한다."""
        ...
