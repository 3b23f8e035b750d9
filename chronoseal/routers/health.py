from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from chronoseal import __version__
from chronoseal.db import get_session

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "service": "chronoseal-store",
                "error": str(exc),
            },
        )

    return {
        "status": "healthy",
        "service": "chronoseal-store",
        "version": __version__,
    }
