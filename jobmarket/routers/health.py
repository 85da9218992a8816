import logging

from fastapi import APIRouter, Depends, HTTPException

from ..deps import Services, get_services

router = APIRouter(tags=["health"])

logger = logging.getLogger("uvicorn")


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/health/db")
def health_db(services: Services = Depends(get_services)):
    try:
        return {"ok": True, "db": "up" if services.store.ping() else "down",
                "store": type(services.store).__name__}
    except Exception as e:
        # surface the error so we know exactly what's wrong
        logger.error(f"DB check failed: {e}")
        raise HTTPException(status_code=503, detail=f"DB check failed: {e}")
