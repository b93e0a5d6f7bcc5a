from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from app.api import router as api_router
from app.auth import router as auth_router, require_user, ensure_bootstrap_admin
from app.email_utils import validate_email_config, get_email_status
import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("referraltracker")

CORS_ORIGINS = [
    o.strip() for o in os.getenv("REFTRACK_CORS_ORIGINS", "*").split(",") if o.strip()
]

app = FastAPI(
    title="ReferralTracker",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/ping")
@app.get("/api/ping")
def ping():
    return {"status": "ok"}


@app.on_event("startup")
def startup_event():
    logger.info("ReferralTracker backend started")
    try:
        validate_email_config()
        email_status = get_email_status()
        logger.info(
            "Email status: configured=%s transport=%s source=%s",
            email_status.get("configured"),
            email_status.get("transport"),
            email_status.get("source"),
        )
    except RuntimeError as e:
        logger.error("Email validation failed: %s", e)
        raise
    ensure_bootstrap_admin()


@app.on_event("shutdown")
def shutdown_event():
    logger.info("ReferralTracker backend stopped")


# ======================
# API ROUTES
# ======================
app.include_router(auth_router, prefix="/api")
app.include_router(api_router, prefix="/api", dependencies=[Depends(require_user)])
