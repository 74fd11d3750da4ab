from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest

from credit_service.app.config import LedgerConfig
from credit_service.app.exceptions import ValidationError
from credit_service.app.models.credit_batch import SOURCE_PURCHASE, CreditBatch
from credit_service.app.models.student import Student, StudentProfile, StudioMembership
from credit_service.app.services.balance_projector import BalanceProjector
from credit_service.app.services.credit_ledger_service import CreditLedgerService


START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """시뮬레이션 시간. advance 로 시간을 앞으로 돌린다."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeCreditBatchRepository:
    """메모리 기반 원장. CAS 충돌과 삭제 실패를 주입할 수 있다."""

    def __init__(self) -> None:
        self.batches: dict[str, CreditBatch] = {}
        self._seq = 0
        self.create_error: Exception | None = None
        self.create_calls: list[dict] = []
        # update_remaining 이 강제로 False 를 반환할 횟수 (동시 쓰기 패배 시뮬레이션)
        self.forced_conflicts = 0
        self.update_calls: list[tuple[str, int, int]] = []
        self.delete_calls: list[list[str]] = []
        self.fail_delete_for_students: set[str] = set()
        self.expired_queries: list[tuple[str, datetime]] = []

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
        self.create_calls.append(
            {
                "student_id": student_id,
                "studio_id": studio_id,
                "credits": credits,
                "purchase_date": purchase_date,
                "expiration_date": expiration_date,
                "source_package_id": source_package_id,
                "source": source,
            }
        )
        if self.create_error is not None:
            raise self.create_error
        if credits <= 0:
            raise ValidationError("credits must be positive")
        if expiration_date <= purchase_date:
            raise ValidationError("expiration_date must be after purchase_date")

        self._seq += 1
        batch_id = f"batch-{self._seq}"
        self.batches[batch_id] = CreditBatch(
            id=batch_id,
            student_id=student_id,
            studio_id=studio_id,
            credits_remaining=credits,
            original_credits=credits,
            purchase_date=purchase_date,
            expiration_date=expiration_date,
            source_package_id=source_package_id,
            source=source,
            created_at=purchase_date,
            updated_at=purchase_date,
        )
        return batch_id

    def find_by_id(self, batch_id: str) -> CreditBatch | None:
        batch = self.batches.get(batch_id)
        return batch.model_copy() if batch else None

    def list_non_expired_batches(
        self, student_id: str, studio_id: str, now: datetime
    ) -> list[CreditBatch]:
        found = [
            b.model_copy()
            for b in self.batches.values()
            if b.student_id == student_id
            and b.studio_id == studio_id
            and b.expiration_date > now
        ]
        return sorted(found, key=CreditBatch.fifo_key)

    def list_all_batches(self, student_id: str) -> list[CreditBatch]:
        found = [b.model_copy() for b in self.batches.values() if b.student_id == student_id]
        return sorted(found, key=CreditBatch.fifo_key)

    def list_expired_batches(self, student_id: str, now: datetime) -> list[CreditBatch]:
        self.expired_queries.append((student_id, now))
        return [b for b in self.list_all_batches(student_id) if b.expiration_date <= now]

    def update_remaining(
        self,
        batch_id: str,
        new_remaining: int,
        *,
        expected_remaining: int,
        now: datetime,
    ) -> bool:
        self.update_calls.append((batch_id, expected_remaining, new_remaining))
        if new_remaining < 0:
            raise ValidationError("credits_remaining cannot be negative")
        if self.forced_conflicts > 0:
            self.forced_conflicts -= 1
            return False
        batch = self.batches.get(batch_id)
        if (
            batch is None
            or batch.credits_remaining != expected_remaining
            or batch.expiration_date <= now
            or new_remaining > batch.original_credits
        ):
            return False
        batch.credits_remaining = new_remaining
        batch.updated_at = now
        return True

    def delete_batches(self, batch_ids: list[str], chunk_size: int = 500) -> int:
        deleted = 0
        for start in range(0, len(batch_ids), chunk_size):
            chunk = batch_ids[start : start + chunk_size]
            self.delete_calls.append(chunk)
            for batch_id in chunk:
                batch = self.batches.get(batch_id)
                if batch is not None and batch.student_id in self.fail_delete_for_students:
                    raise RuntimeError("simulated delete failure")
                if self.batches.pop(batch_id, None) is not None:
                    deleted += 1
        return deleted

    def sum_available(self, student_id: str, studio_id: str, now: datetime) -> int:
        return sum(
            b.credits_remaining
            for b in self.list_non_expired_batches(student_id, studio_id, now)
        )

    # 테스트 편의용 ---------------------------------------------------------
    def put(
        self,
        *,
        student_id: str,
        studio_id: str,
        credits: int,
        purchase_date: datetime,
        expiration_date: datetime,
    ) -> str:
        return self.create_batch(
            student_id, studio_id, credits, purchase_date, expiration_date, None
        )


class FakeStudentRepository:
    def __init__(self) -> None:
        self.students: dict[str, Student] = {}
        self.profiles: dict[str, StudentProfile] = {}  # auth_uid -> profile
        self.projection_writes: list[tuple[str, str, int, str | None]] = []
        self.fail_projection_for: set[str] = set()
        self.migration_claims: list[str] = []

    def add_student(
        self,
        student_id: str,
        studio_id: str,
        *,
        auth_uid: str | None = None,
        credits: int = 0,
        with_profile: bool = True,
    ) -> Student:
        student = Student(
            id=student_id, studio_id=studio_id, auth_uid=auth_uid, credits=credits
        )
        self.students[student_id] = student
        if auth_uid and with_profile:
            self.profiles[auth_uid] = StudentProfile(
                id=f"profile-{student_id}",
                auth_uid=auth_uid,
                studios={studio_id: StudioMembership(credits=credits)},
            )
        return student

    def find_by_id(self, student_id: str) -> Student | None:
        student = self.students.get(student_id)
        return student.model_copy() if student else None

    def iter_student_ids(self) -> Iterator[str]:
        yield from list(self.students)

    def find_profile_by_auth_uid(self, auth_uid: str) -> StudentProfile | None:
        return self.profiles.get(auth_uid)

    def claim_legacy_migration(self, student_id: str) -> datetime | None:
        student = self.students.get(student_id)
        if student is None or student.credits_synced_at is not None:
            return None
        claimed_at = datetime.now(timezone.utc)
        student.credits_synced_at = claimed_at
        self.migration_claims.append(student_id)
        return claimed_at

    def release_legacy_migration(self, student_id: str, claimed_at: datetime) -> None:
        student = self.students[student_id]
        if student.credits_synced_at == claimed_at:
            student.credits_synced_at = None

    def write_credit_projection(
        self,
        student_id: str,
        studio_id: str,
        total: int,
        profile_id: str | None,
        *,
        update_student: bool = True,
    ) -> None:
        if student_id in self.fail_projection_for:
            raise RuntimeError("simulated projection failure")
        self.projection_writes.append((student_id, studio_id, total, profile_id))
        if update_student:
            student = self.students[student_id]
            student.credits = total
            student.credits_synced_at = datetime.now(timezone.utc)
        if profile_id is None:
            return
        for profile in self.profiles.values():
            if profile.id == profile_id:
                membership = profile.studios.setdefault(studio_id, StudioMembership())
                membership.credits = total

    def profile_credits(self, auth_uid: str, studio_id: str) -> int:
        return self.profiles[auth_uid].studios[studio_id].credits


@dataclass
class LedgerFixture:
    service: CreditLedgerService
    projector: BalanceProjector
    batch_repo: FakeCreditBatchRepository
    student_repo: FakeStudentRepository
    clock: FakeClock


def build_ledger_fixture(config: LedgerConfig | None = None) -> LedgerFixture:
    clock = FakeClock()
    batch_repo = FakeCreditBatchRepository()
    student_repo = FakeStudentRepository()
    projector = BalanceProjector(batch_repo, student_repo, clock=clock)
    service = CreditLedgerService(
        batch_repo=batch_repo,
        student_repo=student_repo,
        projector=projector,
        config=config,
        clock=clock,
    )
    return LedgerFixture(
        service=service,
        projector=projector,
        batch_repo=batch_repo,
        student_repo=student_repo,
        clock=clock,
    )


@pytest.fixture
def ledger() -> LedgerFixture:
    return build_ledger_fixture()


@pytest.fixture
def ledger_factory():
    return build_ledger_fixture
