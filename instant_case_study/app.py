import asyncio
import json
import logging
import os
import time
import uuid
from functools import lru_cache

from fastapi import FastAPI, Request
from mangum import Mangum

from instant_case_study.routers import billing_router, case_studies_router, users_router

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("instant_case_study.app")


def _json_log(fields):
    return json.dumps(fields, separators=(",", ":"))


def create_app() -> FastAPI:
    app = FastAPI(
        title="Instant Case Study Backend",
        version=os.environ.get("VERSION", "dev"),
    )

    @app.middleware("http")
    async def log_request(request: Request, call_next):
        request_id = (
            request.headers.get("x-correlation-id")
            or request.headers.get("x-request-id")
            or str(uuid.uuid4())
        )
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["x-request-id"] = request_id
        logger.info(
            _json_log(
                {
                    "event": "request",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "elapsed_ms": round(elapsed_ms, 2),
                }
            )
        )
        return response

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/version")
    async def version():
        return {"version": os.environ.get("VERSION", "dev")}

    app.include_router(users_router)
    app.include_router(case_studies_router)
    app.include_router(billing_router)

    return app


app = create_app()


@lru_cache(maxsize=1)
def _mangum_adapter() -> Mangum:
    # Mangum reads the current event loop when it is built; cold starts have none.
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        asyncio.set_event_loop(asyncio.new_event_loop())
    return Mangum(app, lifespan="off")


def handler(event, context):
    """API Gateway HTTP API entrypoint for the webhook and user routes."""
    return _mangum_adapter()(event, context)
