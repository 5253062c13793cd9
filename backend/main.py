import logging
import time
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import AppConfig, configure_logging, load_config
from backend.errors import AppError, InternalError, ValidationError
from backend.routers import chains, core, scans, sessions
from backend.security import RoleResolver
from backend.services.attendance import AttendanceBook
from backend.services.chains import ChainMachine
from backend.services.notifications import LoggingSink, NotificationSink, Notifier
from backend.services.rotation import RotationLoop, RotationScheduler
from backend.services.scans import ScanProcessor
from backend.services.sessions import SessionService
from backend.services.tokens import TokenManager
from backend.services.validators import RateLimiter
from database.db import EntityStore

logger = logging.getLogger(__name__)


def create_app(
    config: AppConfig | None = None,
    *,
    store: EntityStore | None = None,
    sink: NotificationSink | None = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    config = config or load_config()
    configure_logging(config.log_level)

    store = store or EntityStore(config.db_path, config.retry_policy())
    notifier = Notifier(sink or LoggingSink())
    tokens = TokenManager(store, clock=clock)
    attendance = AttendanceBook(store, clock=clock)
    chain_machine = ChainMachine(store, tokens, attendance, notifier, clock=clock)
    limiter = RateLimiter(
        window_seconds=config.rate_limit_window_seconds,
        device_max=config.rate_limit_device_max,
        ip_max=config.rate_limit_ip_max,
        clock=clock,
    )
    scheduler = RotationScheduler(
        store,
        tokens,
        chain_machine,
        interval_seconds=config.rotation_interval_seconds,
        late_rotation_seconds=config.late_rotation_seconds,
        early_leave_rotation_seconds=config.early_leave_rotation_seconds,
        stall_threshold_seconds=config.stall_threshold_seconds,
        clock=clock,
    )
    loop = RotationLoop(scheduler, config.rotation_interval_seconds)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        store.create_tables()
        if config.rotation_autostart:
            loop.start()
        yield
        loop.stop()

    app = FastAPI(title="QR Chain Attendance API", lifespan=lifespan)

    app.state.config = config
    app.state.store = store
    app.state.notifier = notifier
    app.state.role_resolver = RoleResolver(config.teacher_email_domains, config.student_email_domains)
    app.state.sessions = SessionService(store, config, tokens, chain_machine, attendance, clock=clock)
    app.state.scans = ScanProcessor(store, tokens, chain_machine, attendance, limiter, notifier, clock=clock)
    app.state.rotation = scheduler

    # -----------------------------
    # Errors
    # -----------------------------
    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        if not exc.operational:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code.value)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(_request: Request, exc: RequestValidationError):
        errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
        error = ValidationError("Invalid request body.", {"errors": errors})
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = InternalError()
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    # -----------------------------
    # CORS
    # -----------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(core.router)
    app.include_router(sessions.router)
    app.include_router(chains.router)
    app.include_router(scans.router)
    return app


app = create_app()
