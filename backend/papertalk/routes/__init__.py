"""API route registration."""

from fastapi import APIRouter
from .submissions import router as submissions_router
from .grading import router as grading_router
from .files import router as files_router


def register_all_routes(api_router: APIRouter):
    """Include all route modules on the main API router."""
    api_router.include_router(submissions_router)
    api_router.include_router(grading_router)
    api_router.include_router(files_router)
