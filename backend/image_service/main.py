"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from image_service.config import Settings, settings as default_settings
from image_service.routes.images import router as images_router
from image_service.services.artifact_service import build_artifact_service
from image_service.services.errors import ImageServiceError

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, run_sweeper: bool = True) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create storage roots, load the catalog, start the retention sweeper."""
        service = build_artifact_service(settings)
        # A corrupt catalog snapshot raises here and aborts startup
        await service.start(run_sweeper=run_sweeper)
        app.state.artifact_service = service

        yield

        # Cleanup
        await service.shutdown()

    app = FastAPI(
        title="Image Service API",
        version="1.0.0",
        description="Upload, transform and retain raster images.",
        lifespan=lifespan,
    )

    # CORS
    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ImageServiceError)
    async def image_service_error_handler(request: Request, exc: ImageServiceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "error", "message": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        # Malformed bodies are caller errors, same as any other ValidationError
        errors = exc.errors()
        detail = errors[0] if errors else {}
        field = ".".join(str(part) for part in detail.get("loc", ()) if part != "body")
        message = f"Invalid request: {field or 'body'}: {detail.get('msg', 'malformed')}"
        logger.info(f"{request.method} {request.url.path} rejected: {message}")
        return JSONResponse(status_code=400, content={"status": "error", "message": message})

    @app.get("/api/health")
    async def health_check(request: Request):
        """Verify the catalog can still accept writes."""
        service = request.app.state.artifact_service
        writable = service.catalog.is_writable
        return {
            "status": "ok" if writable else "degraded",
            "catalog": "writable" if writable else "read-only",
            "records": len(service.catalog),
        }

    app.include_router(images_router)
    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=default_settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "image_service.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=default_settings.API_PORT,
    )
