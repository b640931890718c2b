from pathlib import Path
from dotenv import load_dotenv
import logging
import os

# ========================================
# Load .env from the project root
# ========================================
BASE_DIR = Path(__file__).resolve().parent.parent
env_path = BASE_DIR / ".env"
load_dotenv(env_path)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.supabase_client import ping_database
from api.auth import router as auth_router
from api.routers.admin import router as admin_router
from api.routers.manager import router as manager_router
from api.routers.reports import router as reports_router
from api.routers.payments import router as payments_router
from api.routers.invoices import router as invoices_router
from api.routers.notifications import router as notifications_router
from api.routers.user import router as user_router
from api.routers.rls import router as rls_router


# ========================================
# FastAPI app
# ========================================
app = FastAPI(title="ReportFlow API")


# ========================================
# CORS
# ========================================
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ========================================
# Routers
# ========================================

# Login / token
app.include_router(auth_router)

# Accounts, stats, audit log
app.include_router(admin_router)

# Row-level security maintenance (admin)
app.include_router(rls_router)

# Approval queue
app.include_router(manager_router)

# Statement processing + submission
app.include_router(reports_router)

app.include_router(payments_router)
app.include_router(invoices_router)
app.include_router(notifications_router)

# End-user dashboard
app.include_router(user_router)


# ========================================
# Root
# ========================================
@app.get("/")
def root():
    return {"message": "ReportFlow API running"}


@app.get("/health")
def health():
    status = ping_database()
    status["ok"] = status["database"] == "ok"
    return status
