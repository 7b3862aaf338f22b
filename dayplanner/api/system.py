"""System / health endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from dayplanner.config import settings

router = APIRouter(prefix="/api", tags=["system"])


@router.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "app": settings.app_name,
        "version": settings.app_version,
    }
