"""API route registration."""

from fastapi import APIRouter
from .grading import router as grading_router
from .evaluations import router as evaluations_router
from .uploads import router as uploads_router
from .functions import router as functions_router
from .files import router as files_router


def register_all_routes(api_router: APIRouter):
    """Include all route modules on the main API router."""
    api_router.include_router(grading_router)
    api_router.include_router(evaluations_router)
    api_router.include_router(uploads_router)
    api_router.include_router(functions_router)
    api_router.include_router(files_router)
