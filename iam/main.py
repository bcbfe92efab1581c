from typing import Optional

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from iam.core import config
from iam.core.config import AuthorizationOptions
from iam.features.authorization.exceptions import AuthorizationError
from iam.features.authorization.routes import router as authorization_router
from iam.features.authorization.service import create_authorization_service
from iam.utils import get_logger


log = get_logger(__name__)


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.iam.features."), timing=timing, tags=tags))


def create_app(options: Optional[AuthorizationOptions] = None) -> FastAPI:
    """
    Build the demo API around one AuthorizationService.

    The service is created on startup unless `app.state.authorization` was
    already set (tests inject their own).
    """
    log.info("Initializing server")
    app = FastAPI(
        title="IAM",
        description="Role and policy based authorization with a denormalized access index",
        version="0.1.0",
        docs_url="/docs" if config.ENABLE_DOCS else None,
        redoc_url="/redoc" if config.ENABLE_DOCS else None,
        openapi_url="/openapi.json" if config.ENABLE_DOCS else None
    )
    app.state.authorization = None

    app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

    if config.ENABLE_DOCS:
        log.warning("Docs enabled")
    if config.ALLOW_ORIGIN:
        log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
        origins = [config.ALLOW_ORIGIN]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError):
        errors = dict()
        for error in exc.errors():
            if "loc" not in error or "msg" not in error:
                continue
            key = error["loc"][-1] if error["loc"] else "root"
            if key == "__root__":
                key = "root"
            errors[key] = error["msg"]
        log.info("Request validation error %s", errors)
        return JSONResponse(status_code=400, content=jsonable_encoder(errors))

    @app.exception_handler(AuthorizationError)
    async def authorization_exception_handler(_request: Request, exc: AuthorizationError):
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.on_event("startup")
    async def startup():
        """Create the authorization service and its tables or indexes."""
        if app.state.authorization is None:
            log.info("Initializing authorization store...")
            app.state.authorization = await create_authorization_service(options)
            log.info("Authorization store initialized successfully")

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.authorization is not None:
            await app.state.authorization.close()

    @app.get("/")
    async def root():
        """Root endpoint - API health check."""
        return {
            "message": "IAM API",
            "version": "0.1.0",
            "status": "online",
            "docs": "/docs" if config.ENABLE_DOCS else None,
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    app.include_router(authorization_router, prefix="/iam", tags=["iam"])
    return app


app = create_app()
