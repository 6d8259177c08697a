import time
import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from carevault.core.config import settings
from carevault.core.logging import setup_logging, request_id_ctx
from carevault.core.errors import AppError
from carevault.api.router import api_router
from carevault.core.db import init_models, SessionLocal
from carevault.modules.notifications.live import LiveConnectionRegistry
from carevault.modules.notifications.push import PushDelivery, run_push_relay
from carevault.modules.sessions.service import run_session_sweeper
from carevault.platform.provider_registry import registry


setup_logging()
app = FastAPI(title=settings.APP_NAME)

app.state.live_registry = LiveConnectionRegistry()
app.state.push_delivery = PushDelivery(SessionLocal, registry.push(), registry.event_bus())

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id", "-")
    token = request_id_ctx.set(rid)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    return response


logger = logging.getLogger(__name__)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    process_time = (time.time() - start_time) * 1000
    formatted_process_time = f"{process_time:.2f}ms"

    logger.info(
        f"Request: {request.method} {request.url.path} - Response: {response.status_code} - Time: {formatted_process_time}"
    )

    return response

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "code": "VALIDATION_ERROR",
            "message": "Invalid request",
            "errors": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
                for e in exc.errors()
            ],
        },
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.critical(f"Unhandled exception for request {request.method} {request.url.path}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "code": "INTERNAL", "message": "An internal server error occurred."},
    )


@app.on_event("startup")
async def on_startup():
    await init_models()
    app.state.sweeper_task = asyncio.create_task(run_session_sweeper(SessionLocal))
    app.state.push_relay_task = asyncio.create_task(run_push_relay(app.state.push_delivery))

@app.on_event("shutdown")
async def on_shutdown():
    for name in ("sweeper_task", "push_relay_task"):
        task = getattr(app.state, name, None)
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
    await app.state.live_registry.close_all()
    await app.state.push_delivery.drain()
    for provider in (registry.event_bus(), registry.push()):
        if hasattr(provider, "close"):
            await provider.close()


app.include_router(api_router, prefix=settings.API_PREFIX)
