"""크레딧 원장 서비스.

배치 생성, FIFO 소비, 복원, 만료 스윕, 레거시 잔액 마이그레이션을 처리한다.
원장을 변경한 뒤에는 항상 BalanceProjector.sync 로 잔액 캐시를 다시 계산한다.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from pymongo.database import Database

from ..config import LedgerConfig
from ..exceptions import (
    AccessDeniedError,
    ExpiredCreditError,
    LedgerConflictError,
    NoAvailableCreditsError,
    NotFoundError,
    ValidationError,
)
from ..models.credit_batch import (
    SOURCE_LEGACY_MIGRATION,
    SOURCE_PURCHASE,
    CreditSummary,
    ExpirationResult,
)
from ..models.student import Student
from ..repositories.credit_batch_repository import CreditBatchRepository
from ..repositories.interfaces import (
    CreditBatchRepositoryInterface,
    StudentRepositoryInterface,
)
from ..repositories.student_repository import StudentRepository
from .balance_projector import BalanceProjector, Clock, utc_now


logger = logging.getLogger(__name__)


def _require_positive_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer, got {value!r}")
    return value


class CreditLedgerService:
    """학생-스튜디오 크레딧 원장 비즈니스 로직."""

    def __init__(
        self,
        batch_repo: CreditBatchRepositoryInterface,
        student_repo: StudentRepositoryInterface,
        projector: BalanceProjector | None = None,
        *,
        config: LedgerConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._batch_repo = batch_repo
        self._student_repo = student_repo
        self._clock = clock
        self._config = config or LedgerConfig()
        self._projector = projector or BalanceProjector(
            batch_repo, student_repo, clock=clock
        )

    # 적립 ----------------------------------------------------------------
    def add_credits(
        self,
        student_id: str,
        studio_id: str,
        credits: int,
        expiration_days: int,
        source_package_id: str | None = None,
    ) -> str:
        """새 배치를 만들고 잔액 캐시를 갱신한다. 생성된 배치 ID 반환."""
        _require_positive_int("credits", credits)
        _require_positive_int("expiration_days", expiration_days)

        student = self._require_student(student_id)

        # 첫 적립의 sync 가 레거시 잔액을 덮어쓰기 전에 먼저 원장으로 옮긴다.
        # 여기서는 폴백 없이 실패를 그대로 전파한다.
        if self._is_legacy_candidate(student, studio_id) and (
            self._batch_repo.sum_available(student_id, studio_id, self._clock()) == 0
        ):
            self._migrate_legacy_credits(student, studio_id)

        batch_id = self._create_batch(
            student_id,
            studio_id,
            credits,
            expiration_days,
            source_package_id,
            SOURCE_PURCHASE,
        )
        self._projector.sync(student_id, studio_id)

        logger.info(
            "credit batch created batch_id=%s student_id=%s studio_id=%s credits=%d expiration_days=%d",
            batch_id,
            student_id,
            studio_id,
            credits,
            expiration_days,
            extra={
                "student_id": student_id,
                "studio_id": studio_id,
                "batch_id": batch_id,
                "credits": credits,
            },
        )
        return batch_id

    def _create_batch(
        self,
        student_id: str,
        studio_id: str,
        credits: int,
        expiration_days: int,
        source_package_id: str | None,
        source: str,
    ) -> str:
        purchase_date = self._clock()
        return self._batch_repo.create_batch(
            student_id=student_id,
            studio_id=studio_id,
            credits=credits,
            purchase_date=purchase_date,
            expiration_date=purchase_date + timedelta(days=expiration_days),
            source_package_id=source_package_id,
            source=source,
        )

    # 조회 ----------------------------------------------------------------
    def get_available_credits(self, student_id: str, studio_id: str) -> int:
        """만료되지 않은 배치의 잔량 합계.

        합계가 0 이고 원장이 아직 관리하지 않는 학생이면, 레거시 students.credits 값을
        배치 하나로 옮긴 뒤 다시 합산한다. 이관에 실패하면 레거시 값을 그대로 반환한다.
        """
        total = self._batch_repo.sum_available(student_id, studio_id, self._clock())
        if total > 0:
            return total

        student = self._student_repo.find_by_id(student_id)
        if student is None or not self._is_legacy_candidate(student, studio_id):
            return total

        try:
            return self._migrate_legacy_credits(student, studio_id)
        except Exception:  # noqa: BLE001
            # 읽기를 실패시키지 않고 기존 캐시 값을 그대로 돌려준다.
            logger.exception(
                "legacy credit migration failed, falling back to cached value student_id=%s",
                student_id,
            )
            return student.credits

    def get_summary(self, student_id: str, studio_id: str) -> CreditSummary:
        """소비 가능한 배치 목록(FIFO 순)과 합계."""
        batches = [
            batch
            for batch in self._batch_repo.list_non_expired_batches(
                student_id, studio_id, self._clock()
            )
            if batch.credits_remaining > 0
        ]
        return CreditSummary(
            student_id=student_id,
            studio_id=studio_id,
            total_remaining=sum(batch.credits_remaining for batch in batches),
            batches=batches,
        )

    @staticmethod
    def _is_legacy_candidate(student: Student, studio_id: str) -> bool:
        # credits_synced_at 이 있으면 credits 는 원장이 쓴 캐시이므로 이관 대상이 아니다.
        return (
            student.studio_id == studio_id
            and student.credits > 0
            and student.credits_synced_at is None
        )

    def _migrate_legacy_credits(self, student: Student, studio_id: str) -> int:
        """레거시 잔액을 배치 하나로 옮기고 원장 합계를 반환한다.

        credits_synced_at 을 조건부로 선점한 호출만 배치를 만든다. 선점에 실패하면
        다른 호출이 이미 이관 중이거나 끝낸 것이므로 원장을 다시 합산만 한다.
        """
        claimed_at = self._student_repo.claim_legacy_migration(student.id)
        if claimed_at is None:
            logger.info(
                "legacy credit migration already claimed student_id=%s studio_id=%s",
                student.id,
                studio_id,
            )
            return self._batch_repo.sum_available(student.id, studio_id, self._clock())

        logger.info(
            "migrating %d legacy credits student_id=%s studio_id=%s",
            student.credits,
            student.id,
            studio_id,
            extra={
                "student_id": student.id,
                "studio_id": studio_id,
                "credits": student.credits,
            },
        )
        try:
            self._create_batch(
                student.id,
                studio_id,
                student.credits,
                self._config.migration_expiration_days,
                None,
                SOURCE_LEGACY_MIGRATION,
            )
        except Exception:
            # 배치가 없으면 다음 호출이 다시 이관할 수 있도록 선점을 푼다.
            self._student_repo.release_legacy_migration(student.id, claimed_at)
            raise

        self._projector.sync(student.id, studio_id)
        return self._batch_repo.sum_available(student.id, studio_id, self._clock())

    def _require_student(self, student_id: str) -> Student:
        student = self._student_repo.find_by_id(student_id)
        if student is None:
            raise NotFoundError(f"student not found (student_id={student_id})")
        return student

    # 소비 / 복원 -----------------------------------------------------------
    def consume_credit(self, student_id: str, studio_id: str) -> str:
        """FIFO 순 첫 배치에서 1 크레딧 차감. 차감한 배치 ID 반환 (복원 시 필요)."""
        # 학생 확인은 배치 차감보다 먼저 한다.
        self._require_student(student_id)

        for attempt in range(1, self._config.max_update_retries + 1):
            now = self._clock()
            batches = self._batch_repo.list_non_expired_batches(
                student_id, studio_id, now
            )
            batch = next((b for b in batches if b.credits_remaining > 0), None)
            if batch is None or batch.id is None:
                raise NoAvailableCreditsError(
                    f"No available credits (student_id={student_id}, studio_id={studio_id})"
                )

            if self._batch_repo.update_remaining(
                batch.id,
                batch.credits_remaining - 1,
                expected_remaining=batch.credits_remaining,
                now=now,
            ):
                self._projector.sync(student_id, studio_id)
                logger.debug(
                    "credit consumed batch_id=%s student_id=%s remaining_in_batch=%d",
                    batch.id,
                    student_id,
                    batch.credits_remaining - 1,
                )
                return batch.id

            logger.warning(
                "credit batch update conflict on consume batch_id=%s attempt=%d",
                batch.id,
                attempt,
            )

        raise LedgerConflictError(
            f"could not consume credit after {self._config.max_update_retries} attempts "
            f"(student_id={student_id})"
        )

    def restore_credit(self, student_id: str, studio_id: str, batch_id: str) -> None:
        """이전에 차감한 배치에 1 크레딧을 되돌린다. 만료된 배치에는 복원할 수 없다."""
        self._require_student(student_id)

        for attempt in range(1, self._config.max_update_retries + 1):
            now = self._clock()
            batch = self._batch_repo.find_by_id(batch_id)
            if batch is None or batch.student_id != student_id:
                raise NotFoundError(f"Credit entry not found (batch_id={batch_id})")
            if batch.studio_id != studio_id:
                raise AccessDeniedError("Credit entry does not belong to this studio")
            if batch.is_expired(now):
                raise ExpiredCreditError("Cannot restore expired credit")
            if batch.credits_remaining >= batch.original_credits:
                raise ValidationError(
                    f"credit batch already holds its full grant (batch_id={batch_id})"
                )

            if self._batch_repo.update_remaining(
                batch_id,
                batch.credits_remaining + 1,
                expected_remaining=batch.credits_remaining,
                now=now,
            ):
                self._projector.sync(student_id, studio_id)
                logger.debug(
                    "credit restored batch_id=%s student_id=%s remaining_in_batch=%d",
                    batch_id,
                    student_id,
                    batch.credits_remaining + 1,
                )
                return

            logger.warning(
                "credit batch update conflict on restore batch_id=%s attempt=%d",
                batch_id,
                attempt,
            )

        raise LedgerConflictError(
            f"could not restore credit after {self._config.max_update_retries} attempts "
            f"(batch_id={batch_id})"
        )

    # 만료 스윕 -------------------------------------------------------------
    def expire_credits(self) -> ExpirationResult:
        """만료일이 지난 배치를 삭제하고 영향받은 잔액 캐시를 다시 계산한다.

        학생 단위로 실패를 격리하며, 새로 만료된 배치가 없으면 아무것도 바꾸지 않는다.
        """
        now = self._clock()
        total_expired = 0
        affected_students: set[str] = set()
        # 삽입 순서를 유지하기 위해 dict 를 ordered set 으로 사용한다.
        affected_pairs: dict[tuple[str, str], None] = {}

        for student_id in self._student_repo.iter_student_ids():
            try:
                expired = self._batch_repo.list_expired_batches(student_id, now)
                if not expired:
                    continue

                self._batch_repo.delete_batches(
                    [batch.id for batch in expired if batch.id is not None],
                    chunk_size=self._config.delete_chunk_size,
                )
            except Exception:  # noqa: BLE001
                logger.exception(
                    "failed to expire credits for student_id=%s, skipping", student_id
                )
                continue

            student_expired = sum(batch.credits_remaining for batch in expired)
            total_expired += student_expired
            affected_students.add(student_id)
            for batch in expired:
                affected_pairs.setdefault((student_id, batch.studio_id))

            logger.debug(
                "expired %d credits in %d batches student_id=%s",
                student_expired,
                len(expired),
                student_id,
            )

        for student_id, studio_id in affected_pairs:
            try:
                self._projector.sync(student_id, studio_id)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "failed to sync credit projection after expiration student_id=%s studio_id=%s",
                    student_id,
                    studio_id,
                )

        result = ExpirationResult(
            total_expired=total_expired,
            affected_student_count=len(affected_students),
        )
        logger.info(
            "credit expiration sweep completed total_expired=%d affected_students=%d",
            result.total_expired,
            result.affected_student_count,
            extra={
                "total_expired": result.total_expired,
                "affected_students": result.affected_student_count,
            },
        )
        return result


def build_credit_ledger_service(
    database: Database, config: LedgerConfig | None = None
) -> CreditLedgerService:
    """Mongo 레포지토리로 서비스를 조립한다."""
    batch_repo = CreditBatchRepository(database)
    student_repo = StudentRepository(database)
    return CreditLedgerService(
        batch_repo=batch_repo,
        student_repo=student_repo,
        config=config,
    )
