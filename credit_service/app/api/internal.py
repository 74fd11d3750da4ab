"""만료 스윕 트리거용 내부 API.

외부 스케줄러(Cloud Scheduler, cron 등)가 하루 1회 호출하는 것을 전제로 한다.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database

from common.mongo.client import get_database

from ..config import load_config
from ..services.credit_ledger_service import (
    CreditLedgerService,
    build_credit_ledger_service,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal/credits", tags=["internal"])


def get_credit_ledger_service(
    db: Database = Depends(get_database),
) -> CreditLedgerService:
    """FastAPI DI용 CreditLedgerService 팩토리."""
    return build_credit_ledger_service(db, load_config().ledger)


class ExpireCreditsResponse(BaseModel):
    """만료 스윕 결과."""

    success: bool = True
    total_expired: int
    affected_students: int


@router.post("/expire", response_model=ExpireCreditsResponse)
def expire_credits(
    service: Annotated[CreditLedgerService, Depends(get_credit_ledger_service)],
) -> ExpireCreditsResponse | JSONResponse:
    """만료된 크레딧 배치를 삭제하고 잔액 캐시를 갱신한다."""
    logger.info("credit expiration job triggered via internal API")
    try:
        result = service.expire_credits()
    except Exception as exc:  # noqa: BLE001
        logger.exception("credit expiration job failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(exc)},
        )

    return ExpireCreditsResponse(
        total_expired=result.total_expired,
        affected_students=result.affected_student_count,
    )
