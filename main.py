# -*- coding: utf-8 -*-
# main.py: AiCourse billing backend (resilient startup, error envelope, routers)

import os
import asyncio
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

import config
from db import init_db
from errors import BillingError, ValidationError

import health_routes
from signup_routes import router as signup_router
from admin_routes import router as admin_router
from admin_bootstrap import router as admin_bootstrap_router
from admin_billing_routes import router as admin_billing_router
from admin_metrics_routes import router as admin_metrics_router
from payment_routes import router as payment_router
from routes_public_config import router as public_config_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("aicourse")

VERSION = "1.0.0"


# --------------------------------------------------------------------------------------
# Lifespan: warm the DB with retries; never hard-crash the process
# --------------------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    tries = int(os.getenv("DB_WARMUP_TRIES", "20"))
    delay = float(os.getenv("DB_WARMUP_DELAY", "1.5"))
    try:
        for i in range(tries):
            try:
                init_db()
                health_routes.STARTUP["db_ready"] = True
                break
            except Exception as e:
                logger.warning("init_db attempt %s/%s failed: %s", i + 1, tries, e)
                await asyncio.sleep(delay)
        health_routes.STARTUP["startup_ok"] = True
        health_routes.STARTUP["startup_error"] = ""
        logger.info("startup: env=%s providers=%s", config.APP_ENV, sorted(config.ENABLED_PROVIDERS))
    except Exception:
        health_routes.STARTUP["startup_ok"] = False
        health_routes.STARTUP["startup_error"] = traceback.format_exc()
        logger.error("Startup failed:\n%s", health_routes.STARTUP["startup_error"])
    # still serve so /api/ready can report what went wrong
    yield


app = FastAPI(title="AiCourse Backend", version=VERSION, lifespan=lifespan)

# --------------------------------------------------------------------------------------
# CORS
# --------------------------------------------------------------------------------------
ALLOWED_ORIGINS = [
    config.WEBSITE_URL,
    "http://localhost:3000",
    "http://localhost:4173",
    "http://127.0.0.1:4173",
]
extra = (os.getenv("ALLOWED_ORIGINS") or "").strip()
if extra:
    ALLOWED_ORIGINS += [o.strip() for o in extra.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=86400,
)


# --------------------------------------------------------------------------------------
# Error envelope
# --------------------------------------------------------------------------------------
@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        if loc and loc[0] not in fields:
            fields.append(loc[0])
    body = ValidationError("Invalid request: " + ", ".join(fields) if fields else "Invalid request",
                           fields=fields).to_dict()
    return JSONResponse(status_code=400, content=body)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"success": False, "error": "internal_error", "message": "Internal server error"}
    if config.DIAGNOSTIC_ERRORS:
        content["detail"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content=content)


# --------------------------------------------------------------------------------------
# Routers
# --------------------------------------------------------------------------------------
@app.get("/")
def root():
    return {"ok": True, "service": "aicourse-backend", "version": VERSION}


app.include_router(health_routes.router)
app.include_router(signup_router)
app.include_router(admin_router)
app.include_router(admin_bootstrap_router)
app.include_router(admin_billing_router)
app.include_router(admin_metrics_router)
app.include_router(payment_router)
app.include_router(public_config_router)
