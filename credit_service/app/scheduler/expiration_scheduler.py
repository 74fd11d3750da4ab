from __future__ import annotations

import logging
import threading
import time

from common.mongo.client import get_database

from ..config import SweepConfig, load_config
from ..services.credit_ledger_service import (
    CreditLedgerService,
    build_credit_ledger_service,
)


logger = logging.getLogger(__name__)


_EXPIRATION_SCHEDULER_THREAD: threading.Thread | None = None
_EXPIRATION_SCHEDULER_STOP_EVENT: threading.Event | None = None


def run_expiration_once(service: CreditLedgerService, label: str) -> bool:
    """스윕을 한 번 실행한다. 실패는 로그만 남기고 False 를 반환한다."""

    logger.info("credit expiration sweep starting (%s run)", label)
    started = time.monotonic()
    try:
        result = service.expire_credits()
    except Exception:  # noqa: BLE001
        logger.exception("credit expiration sweep failed (%s run)", label)
        return False

    logger.info(
        "credit expiration sweep completed (%s run) total_expired=%d affected_students=%d",
        label,
        result.total_expired,
        result.affected_student_count,
        extra={"duration": round(time.monotonic() - started, 3)},
    )
    return True


def _run_scheduler_loop(
    stop_event: threading.Event,
    service: CreditLedgerService,
    sweep: SweepConfig,
) -> None:
    logger.info(
        "credit expiration scheduler thread started (interval=%.0f seconds)",
        sweep.interval_seconds,
    )

    try:
        if sweep.run_on_startup:
            run_expiration_once(service, "initial")

        while not stop_event.wait(sweep.interval_seconds):
            run_expiration_once(service, "scheduled")
    finally:
        logger.info("credit expiration scheduler thread stopped")


def start_expiration_scheduler(service: CreditLedgerService | None = None) -> None:
    """만료 스윕 스케줄러 스레드를 시작한다.

    FastAPI lifespan 에서 호출된다. 이미 실행 중이면 아무것도 하지 않는다.
    """

    global _EXPIRATION_SCHEDULER_THREAD, _EXPIRATION_SCHEDULER_STOP_EVENT

    if _EXPIRATION_SCHEDULER_THREAD and _EXPIRATION_SCHEDULER_THREAD.is_alive():
        return

    cfg = load_config()
    if service is None:
        service = build_credit_ledger_service(get_database(), cfg.ledger)

    stop_event = threading.Event()
    thread = threading.Thread(
        target=_run_scheduler_loop,
        args=(stop_event, service, cfg.sweep),
        name="credit-expiration-scheduler",
        daemon=True,
    )

    _EXPIRATION_SCHEDULER_STOP_EVENT = stop_event
    _EXPIRATION_SCHEDULER_THREAD = thread

    thread.start()
    logger.info("credit expiration scheduler thread launched")


def stop_expiration_scheduler() -> None:
    """만료 스윕 스케줄러 스레드를 정지한다.

    FastAPI lifespan 종료 시 호출된다.
    """

    global _EXPIRATION_SCHEDULER_THREAD, _EXPIRATION_SCHEDULER_STOP_EVENT

    if _EXPIRATION_SCHEDULER_THREAD is None or _EXPIRATION_SCHEDULER_STOP_EVENT is None:
        return

    _EXPIRATION_SCHEDULER_STOP_EVENT.set()
    _EXPIRATION_SCHEDULER_THREAD.join(timeout=10.0)

    _EXPIRATION_SCHEDULER_THREAD = None
    _EXPIRATION_SCHEDULER_STOP_EVENT = None

    logger.info("credit expiration scheduler thread stopped by shutdown")
