"""API router composition for the service."""

from fastapi import APIRouter

from docstore.api import documents, health

router = APIRouter()
router.include_router(health.router)
router.include_router(documents.router)
