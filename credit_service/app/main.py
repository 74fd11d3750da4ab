from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from common.logger import setup_logger
from common.mongo.client import close_client

from .api.health import router as health_router
from .api.internal import router as internal_router
from .scheduler.expiration_scheduler import (
    start_expiration_scheduler,
    stop_expiration_scheduler,
)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - framework hook
    """애플리케이션 생명주기 동안 만료 스윕 스케줄러 스레드를 관리한다."""

    start_expiration_scheduler()
    try:
        yield
    finally:
        stop_expiration_scheduler()
        close_client()


def create_app() -> FastAPI:
    setup_logger(name="credit-service")
    app = FastAPI(
        title="Studio Credit Service",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health_router, tags=["health"])
    app.include_router(internal_router)

    return app


app = create_app()


def main() -> None:
    """명령행에서 실행할 수 있도록 uvicorn 런처를 제공한다."""

    import uvicorn

    port = int(os.getenv("CREDIT_SERVICE_PORT", "8003"))
    uvicorn.run(
        "credit_service.app.main:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        access_log=False,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
