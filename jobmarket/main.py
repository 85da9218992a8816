# jobmarket/main.py
from __future__ import annotations

import os
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import MarketError
from .payments import router as payments_router
from .routers.bids import router as bids_router
from .routers.change_orders import router as change_orders_router
from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.notifications import router as notifications_router
from .stripe_webhook import router as stripe_router

log = logging.getLogger("uvicorn.error")

app = FastAPI(
    title="Jobmarket API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url=None,
)

# ──────────────────────────────────────────────────────────────────────────────
# CORS (CORS_ORIGINS is a comma-separated list; "*" by default)
# ──────────────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────────────────────
# Core errors become JSON bodies the mobile client can render
# ──────────────────────────────────────────────────────────────────────────────
@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    if exc.status_code >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        log.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/", tags=["default"])
def read_root():
    return {"ok": True, "service": "jobmarket-api"}


# routers
app.include_router(health_router)
app.include_router(jobs_router)
app.include_router(bids_router)
app.include_router(change_orders_router)
app.include_router(notifications_router)
app.include_router(payments_router)
app.include_router(stripe_router)

# ──────────────────────────────────────────────────────────────────────────────
# Local dev entrypoint
# ──────────────────────────────────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "jobmarket.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=True,
    )
