import logging
import math
import os

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orgbilling import app_context
from orgbilling.app.routes.billing import router as billing_router
from orgbilling.app.services.billing import get_billing_engine
from orgbilling.billing_jobs import get_job_runner

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("billing")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "orgbilling"),
    user=os.getenv("DB_USER", "billing_user"),
    password=os.getenv("DB_PASSWORD", "billing_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Organization Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("FRONTEND_URL", "http://localhost:3000")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


@app.on_event("startup")
def start_billing_jobs() -> None:
    config = get_billing_engine().config
    if not config.scheduler_enabled:
        logger.info("Billing job scheduler disabled (BILLING_SCHEDULER_ENABLED not set)")
        return
    get_job_runner().start()


@app.on_event("shutdown")
def stop_billing_jobs() -> None:
    runner = get_job_runner()
    if runner.running:
        runner.shutdown()


@app.get("/api/health")
def health() -> dict:
    return {"ok": True}
