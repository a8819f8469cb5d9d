from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database import get_db

# ENV
from config.env import ENV, CORS_ALLOWED_ORIGINS, validate_production_env

# ROUTES
from routes.orders import router as orders_router
from routes.shiprocket import router as shiprocket_router
from routes.webhooks import router as webhook_router

# WORKERS
from workers.status_sync_worker import status_sync_worker
from workers.refund_status_worker import refund_status_worker

from utils.indexes import ensure_indexes

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

validate_production_env()
logger.info("ENV: %s", ENV)

app = FastAPI(
    title="Storefront Orders API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(orders_router, prefix="/api")
app.include_router(shiprocket_router, prefix="/api")
app.include_router(webhook_router, prefix="/api")

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():

    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db():
    db = get_db()
    await db.command("ping")
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP (ONE PLACE ONLY)
# -----------------------------

_background_tasks = set()


@app.on_event("startup")
async def start_background_workers():
    await ensure_indexes(get_db())

    for worker in (status_sync_worker, refund_status_worker):
        task = asyncio.create_task(worker())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
