import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  (registers tables on Base.metadata)
from .rate_limit import limiter
from .routes.contractor import router as contractor_router
from .routes.work_orders import router as work_orders_router
from .services.errors import PortalError


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    structlog.get_logger().info(
        "portal_error", kind=exc.kind, status_code=exc.status_code, path=request.url.path
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(PortalError, portal_error_handler)

    # Routers
    app.include_router(contractor_router)
    app.include_router(work_orders_router)

    @app.on_event("startup")
    def _startup():
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
        structlog.get_logger().info("startup_complete", environment=settings.environment)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    Instrumentator().instrument(app).expose(app)
    return app


app = create_app()
