from __future__ import annotations

import logging
import threading
from typing import Optional, cast

from pymongo import ASCENDING, IndexModel, MongoClient
from pymongo.database import Database

from .config import get_mongo_db_name, get_mongo_timeout_ms, get_mongo_uri


logger = logging.getLogger(__name__)


_client: Optional[MongoClient] = None
_db: Optional[Database] = None
_lock = threading.Lock()


def get_client() -> MongoClient:
    """전역 MongoClient 싱글톤을 반환한다.

    - MONGO_URI 에서 URI 를 읽어온다.
    - ping 으로 연결을 검증한다.
    - URI 에 기본 데이터베이스가 포함되어 있지 않으면 에러를 발생시킨다.
    - 원장/학생 컬렉션에 필요한 인덱스를 한 번만 생성한다.
    """

    global _client, _db

    if _client is not None:
        return _client

    with _lock:
        if _client is not None:
            return _client

        uri = get_mongo_uri()
        timeout_ms = get_mongo_timeout_ms()
        # 만료일 비교가 aware datetime 끼리 이루어지도록 tz_aware 로 연결한다.
        client: MongoClient = MongoClient(
            uri,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
            retryWrites=True,
        )

        try:
            client.admin.command("ping")
        except Exception as exc:  # noqa: BLE001
            client.close()
            raise RuntimeError(f"failed to connect to MongoDB: {exc}") from exc

        # 사용할 DB 이름 결정: MONGO_DB_NAME 우선, 없으면 URI의 기본 DB 사용
        db_name = get_mongo_db_name()
        try:
            if db_name:
                db = client[db_name]
            else:
                db = client.get_default_database()
        except Exception as exc:  # noqa: BLE001
            client.close()
            raise RuntimeError(
                "MongoDB database name must be specified via MONGO_DB_NAME or in MONGO_URI (mongodb://.../db_name)",
            ) from exc

        _client = client
        _db = db

        try:
            _ensure_indexes(_db)
        except Exception as exc:  # noqa: BLE001
            # 인덱스 생성 실패는 치명적 오류로 간주한다.
            logger.error("failed to ensure MongoDB indexes: %s", exc)
            raise

        safe_db = cast(Database, _db)
        logger.info("MongoDB connected and indexes ensured (db=%s)", safe_db.name)
        return _client


def get_database() -> Database:
    """전역 기본 Database 객체를 반환한다."""

    global _db

    if _db is None:
        get_client()
    assert (
        _db is not None
    )  # get_client 에서 _db 를 초기화하지 못했다면 예외가 이미 발생했어야 한다.
    return _db


def close_client() -> None:
    """애플리케이션 종료 시 커넥션 풀을 정리한다."""

    global _client, _db

    with _lock:
        if _client is not None:
            _client.close()
        _client = None
        _db = None


def _ensure_indexes(db: Database) -> None:
    """필수 인덱스를 생성한다.

    중복 생성해도 MongoDB 가 처리하므로 idempotent 하다.
    credit_batches 에는 TTL 인덱스를 두지 않는다. 만료 배치 삭제는 스윕이 담당한다.
    """

    batches = db["credit_batches"]
    batches.create_indexes(
        [
            # FIFO 조회: student + studio 로 필터 후 (만료일, 구매일) 오름차순
            IndexModel(
                [
                    ("student_id", ASCENDING),
                    ("studio_id", ASCENDING),
                    ("expiration_date", ASCENDING),
                    ("purchase_date", ASCENDING),
                ],
                name="idx_student_studio_fifo",
            ),
            IndexModel(
                [("student_id", ASCENDING), ("expiration_date", ASCENDING)],
                name="idx_student_expiration",
            ),
        ]
    )

    students = db["students"]
    students.create_index(
        [("auth_uid", ASCENDING), ("studio_id", ASCENDING)],
        name="idx_auth_uid_studio",
    )

    profiles = db["student_profiles"]
    profiles.create_index(
        [("auth_uid", ASCENDING)],
        name="uniq_auth_uid",
        unique=True,
    )
