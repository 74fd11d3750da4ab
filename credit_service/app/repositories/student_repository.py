from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterator

from bson import ObjectId
from pymongo.client_session import ClientSession
from pymongo.database import Database

from common.mongo.types import parse_object_id, to_object_id

from ..exceptions import NotFoundError
from ..models.student import Student, StudentProfile
from .documents.student_document import StudentDocument, StudentProfileDocument
from .interfaces import StudentRepositoryInterface


class StudentRepository(StudentRepositoryInterface):
    """students / student_profiles 컬렉션에 대한 MongoDB 접근 레이어.

    두 컬렉션 모두 외부 서비스가 소유하며, 여기서는 잔액 캐시와 credits_synced_at 만 쓴다.
    """

    def __init__(self, database: Database) -> None:
        self._db = database
        self._students = database["students"]
        self._profiles = database["student_profiles"]

    def find_by_id(self, student_id: str) -> Student | None:
        object_id = parse_object_id(student_id)
        if object_id is None:
            return None
        doc = self._students.find_one({"_id": object_id})
        if not doc:
            return None
        return StudentDocument.model_validate(doc).to_domain()

    def iter_student_ids(self) -> Iterator[str]:
        """전체 학생 ID 를 커서로 순회한다 (스윕 전용)."""
        cursor = self._students.find({}, projection={"_id": 1}, sort=[("_id", 1)])
        for doc in cursor.batch_size(500):
            yield str(doc["_id"])

    def find_profile_by_auth_uid(self, auth_uid: str) -> StudentProfile | None:
        doc = self._profiles.find_one({"auth_uid": auth_uid})
        if not doc:
            return None
        return StudentProfileDocument.model_validate(doc).to_domain()

    def claim_legacy_migration(self, student_id: str) -> datetime | None:
        """credits_synced_at 이 비어 있을 때만 현재 시각을 기록한다.

        동시에 여러 인스턴스가 같은 학생을 이관하려 해도 modified_count == 1 인 쪽만 진행한다.
        """
        object_id = parse_object_id(student_id)
        if object_id is None:
            return None

        # Mongo 는 밀리초까지만 저장하므로 release 의 일치 비교를 위해 잘라 둔다.
        now = datetime.now(timezone.utc)
        claimed_at = now.replace(microsecond=now.microsecond // 1000 * 1000)
        result = self._students.update_one(
            {"_id": object_id, "credits_synced_at": None},
            {"$set": {"credits_synced_at": claimed_at}},
        )
        return claimed_at if result.modified_count == 1 else None

    def release_legacy_migration(self, student_id: str, claimed_at: datetime) -> None:
        self._students.update_one(
            {"_id": to_object_id(student_id), "credits_synced_at": claimed_at},
            {"$unset": {"credits_synced_at": ""}},
        )

    def write_credit_projection(
        self,
        student_id: str,
        studio_id: str,
        total: int,
        profile_id: str | None,
        *,
        update_student: bool = True,
    ) -> None:
        """students.credits 와 student_profiles.studios[studio_id].credits 를 한 트랜잭션으로 덮어쓴다.

        profile_id 가 None 이면 학생 레코드만 갱신한다.
        update_student=False 이면(학생 레코드가 다른 스튜디오 소속) 프로필만 갱신한다.
        """
        student_oid = to_object_id(student_id)
        profile_oid = to_object_id(profile_id) if profile_id is not None else None
        if not update_student and profile_oid is None:
            return

        def _write(session: ClientSession) -> None:
            now = datetime.now(timezone.utc)
            if not update_student:
                self._write_profile(profile_oid, studio_id, total, now, session)
                return

            result = self._students.update_one(
                {"_id": student_oid},
                {
                    "$set": {
                        "credits": total,
                        "credits_synced_at": now,
                        "updated_at": now,
                    }
                },
                session=session,
            )
            if result.matched_count == 0:
                # 예외가 전파되면 with_transaction 이 트랜잭션을 abort 한다.
                raise NotFoundError(f"student not found (student_id={student_id})")

            if profile_oid is not None:
                self._write_profile(profile_oid, studio_id, total, now, session)

        with self._db.client.start_session() as session:
            session.with_transaction(_write)

    def _write_profile(
        self,
        profile_oid: ObjectId,
        studio_id: str,
        total: int,
        now: datetime,
        session: ClientSession,
    ) -> None:
        self._profiles.update_one(
            {"_id": profile_oid},
            {
                "$set": {
                    f"studios.{studio_id}.credits": total,
                    "updated_at": now,
                }
            },
            session=session,
        )

