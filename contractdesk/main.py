"""ContractDesk – agreement lifecycle and counter-signature API."""
# Load .env before any app code that might read config
from dotenv import load_dotenv
from pathlib import Path
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from contractdesk.config import get_settings
from contractdesk.database import Base, engine
# Import models so Base.metadata has all tables before create_all (schema source of truth)
from contractdesk.models import (  # noqa: F401
    User, Project, Client, ProjectClient, Agreement, AgreementDeliverable, AgreementPaymentTerms,
    AgreementPaymentMilestone, AgreementSignature, ClientLink, AuditLog,
)
from contractdesk.exceptions import ContractDeskError
from contractdesk.routers import agreements, projects

log = logging.getLogger("uvicorn.error")

settings = get_settings()
app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ContractDeskError)
def contractdesk_error_handler(request: Request, exc: ContractDeskError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "code": exc.code, **exc.extra()},
    )


app.include_router(agreements.router)
app.include_router(projects.router)

scheduler = None


@app.on_event("startup")
def startup():
    global scheduler
    if not (settings.mailgun_api_key and settings.mailgun_domain):
        log.warning("[Mailgun] Not configured - signing links and signed copies will not be emailed; set MAILGUN_API_KEY and MAILGUN_DOMAIN in .env")
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        log.warning("Database startup failed (tables skipped). Check DATABASE_URL and network. Error: %s", e)

    if settings.link_expiry_sweep_enabled:
        try:
            from apscheduler.schedulers.background import BackgroundScheduler
            from contractdesk.services.link_expiry import run_link_expiry_job
            scheduler = BackgroundScheduler()
            scheduler.add_job(run_link_expiry_job, "interval", minutes=settings.link_expiry_sweep_minutes)
            scheduler.start()
        except Exception as e:
            log.warning("Link expiry scheduler not started: %s", e)


@app.on_event("shutdown")
def shutdown():
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)


@app.get("/")
def root():
    return {"app": settings.app_name, "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
