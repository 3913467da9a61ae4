from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from . import config
from .db import Base, engine, SessionLocal
from . import models  # noqa: F401 ensure models are imported so tables are known
from .api.routes import router as api_router
from .errors import (
    ValidationError, InvalidTransitionError, NotFoundError, ForbiddenError, TransientStoreError,
)
from .scheduler import ExpirationSweeper
from .utils import logger
from .verification import VerificationCodeIssuer, InMemoryCodeStore, SqlCodeStore


def build_issuer(session_factory=SessionLocal) -> VerificationCodeIssuer:
    if config.VERIFICATION_STORE == "database":
        store = SqlCodeStore(session_factory)
    else:
        store = InMemoryCodeStore()
    return VerificationCodeIssuer(store)


def create_app(session_factory=SessionLocal, bind=engine, start_scheduler=None) -> FastAPI:
    app = FastAPI(title="carmarket")
    app.include_router(api_router)
    app.state.issuer = build_issuer(session_factory)
    app.state.sweeper = ExpirationSweeper(session_factory)
    if start_scheduler is None:
        start_scheduler = config.SCHEDULER_ENABLED

    @app.exception_handler(InvalidTransitionError)
    def _conflict(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    def _invalid(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})

    @app.exception_handler(NotFoundError)
    def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ForbiddenError)
    def _forbidden(request: Request, exc: ForbiddenError):
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(TransientStoreError)
    def _unavailable(request: Request, exc: TransientStoreError):
        logger.error("Store failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})

    @app.on_event("startup")
    def on_startup():
        # Ensure database tables are created on startup
        Base.metadata.create_all(bind=bind)
        if start_scheduler:
            app.state.sweeper.start()

    @app.on_event("shutdown")
    def on_shutdown():
        app.state.sweeper.stop()
        app.state.issuer.shutdown(wait=False)

    return app


app = create_app()
