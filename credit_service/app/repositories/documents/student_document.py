"""students / student_profiles 도큐먼트.

외부 서비스가 소유하는 컬렉션이므로 created_at/updated_at 이 없는 레거시 문서도 읽을 수 있어야 한다.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from common.mongo.types import MongoDateTime, PyObjectId, from_object_id

from ...models.student import Student, StudentProfile, StudioMembership


class StudentDocument(BaseModel):
    """MongoDB students 컬렉션 도큐먼트 모델 (원장이 사용하는 필드만)."""

    model_config = ConfigDict(
        arbitrary_types_allowed=True, populate_by_name=True, extra="ignore"
    )

    id: PyObjectId = Field(alias="_id")
    studio_id: str
    auth_uid: Optional[str] = None
    credits: int = 0
    credits_synced_at: Optional[MongoDateTime] = None

    def to_domain(self) -> Student:
        return Student(
            id=str(from_object_id(self.id)),
            studio_id=self.studio_id,
            auth_uid=self.auth_uid or None,
            credits=self.credits,
            credits_synced_at=self.credits_synced_at,
        )


class StudentProfileDocument(BaseModel):
    """MongoDB student_profiles 컬렉션 도큐먼트 모델."""

    model_config = ConfigDict(
        arbitrary_types_allowed=True, populate_by_name=True, extra="ignore"
    )

    id: PyObjectId = Field(alias="_id")
    auth_uid: str
    studios: Any = None

    def to_domain(self) -> StudentProfile:
        # 과거 프로필은 studios 가 없거나 dict 가 아닐 수 있다.
        raw = self.studios if isinstance(self.studios, dict) else {}
        studios: dict[str, StudioMembership] = {}
        for studio_id, entry in raw.items():
            if isinstance(entry, dict):
                studios[str(studio_id)] = StudioMembership.model_validate(entry)
            else:
                studios[str(studio_id)] = StudioMembership()
        return StudentProfile(
            id=str(from_object_id(self.id)),
            auth_uid=self.auth_uid,
            studios=studios,
        )
