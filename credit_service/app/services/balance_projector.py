"""잔액 캐시(projection) 동기화.

원장 합계를 다시 계산해 students.credits(학생 소속 스튜디오일 때만)와
student_profiles.studios[studio].credits 를 덮어쓴다.
증감(delta)을 적용하지 않으므로 몇 번을 호출해도 결과가 같다.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from ..exceptions import NotFoundError
from ..repositories.interfaces import (
    CreditBatchRepositoryInterface,
    StudentRepositoryInterface,
)


logger = logging.getLogger(__name__)


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BalanceProjector:
    def __init__(
        self,
        batch_repo: CreditBatchRepositoryInterface,
        student_repo: StudentRepositoryInterface,
        clock: Clock = utc_now,
    ) -> None:
        self._batch_repo = batch_repo
        self._student_repo = student_repo
        self._clock = clock

    def sync(self, student_id: str, studio_id: str) -> int:
        """원장 합계를 두 캐시 위치에 기록하고 기록한 값을 반환한다."""
        student = self._student_repo.find_by_id(student_id)
        if student is None:
            raise NotFoundError(f"student not found (student_id={student_id})")

        total = self._batch_repo.sum_available(student_id, studio_id, self._clock())

        profile_id: str | None = None
        if student.auth_uid:
            profile = self._student_repo.find_profile_by_auth_uid(student.auth_uid)
            if profile is not None:
                profile_id = profile.id

        # students 레코드는 스튜디오당 1건이라 credits 는 자기 스튜디오 잔액만 담는다.
        own_studio = student.studio_id == studio_id
        self._student_repo.write_credit_projection(
            student_id, studio_id, total, profile_id, update_student=own_studio
        )
        logger.debug(
            "credit projection synced student_id=%s studio_id=%s total=%d profile=%s student_record=%s",
            student_id,
            studio_id,
            total,
            profile_id or "-",
            own_studio,
        )
        return total
