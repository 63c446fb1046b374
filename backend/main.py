"""
PaperTalk API - main entry point.
Creates FastAPI app, sets up lifespan (service wiring + AI queue), CORS,
registers all routes.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware

from papertalk.config import logger, get_version_info, CORS_ORIGINS
from papertalk.routes import register_all_routes
from papertalk.services import Services, build_services


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the app. Passing ``services`` skips the MongoDB connection (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        mongo_client = None
        if services is None:
            from papertalk.database import client, db, fs

            logger.info("🚀 FastAPI app starting up...")
            mongo_client = client
            app.state.services = build_services(db, fs)
            await app.state.services.ingestion.ensure_indexes()
        else:
            app.state.services = services

        queue = app.state.services.queue
        logger.info(
            f"🔄 AI queue ready (max_concurrent={queue.max_concurrent}, max_queue_size={queue.max_queue_size})"
        )
        logger.info("=" * 60)

        yield

        logger.info("🛑 FastAPI app shutting down...")
        await app.state.services.aclose()
        if mongo_client is not None:
            mongo_client.close()

    app = FastAPI(title="PaperTalk API", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    # Create a router with the /api prefix
    api_router = APIRouter(prefix="/api")

    @api_router.get("/version")
    async def get_version():
        """Public version endpoint for deployment verification"""
        return get_version_info()

    register_all_routes(api_router)
    app.include_router(api_router)

    # Root-level health check endpoint (for Kubernetes probes)
    @app.get("/health")
    async def root_health_check():
        """Health check for Kubernetes liveness/readiness probes"""
        return {"status": "healthy", "service": "PaperTalk API"}

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()
