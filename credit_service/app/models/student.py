"""원장이 읽고 쓰는 학생 레코드 모델.

학생/프로필 CRUD 는 외부 서비스 소관이며, 여기서는 잔액 캐시와 레거시 마이그레이션에
필요한 필드만 다룬다.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class Student(BaseModel):
    """students 컬렉션의 학생 레코드 (스튜디오당 1건)."""

    id: str
    studio_id: str
    auth_uid: str | None = None
    credits: int = 0  # 레거시 잔액 겸 1차 캐시
    # 원장이 credits 를 한 번이라도 기록했으면 설정된다. 없으면 credits 는 레거시 값이다.
    credits_synced_at: datetime | None = None


class StudioMembership(BaseModel):
    """프로필의 studios 맵 엔트리. credits 외 필드는 그대로 보존한다."""

    model_config = ConfigDict(extra="allow")

    credits: int = 0


class StudentProfile(BaseModel):
    """auth_uid 로 연결된 학생 프로필 (2차 캐시 위치)."""

    id: str
    auth_uid: str
    studios: dict[str, StudioMembership] = Field(default_factory=dict)
