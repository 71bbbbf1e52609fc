# server.py
import logging
import os
import re
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from threely import storage
from threely.assets import router as assets_router
from threely.auth import router as auth_router
from threely.db import Base, engine
from threely.generation import router as generation_router
from threely.payment import router as payment_router
from threely.settings import settings

# --- Logging Configuration ---
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)

if not settings.MESHY_API_KEY:
    log.warning("MESHY_API_KEY env var not set. Generation endpoints will fail.")
if not settings.STRIPE_WEBHOOK_SECRET:
    log.warning("STRIPE_WEBHOOK_SECRET env var not set. Webhooks will fail.")

# --- App Initialization ---
app = FastAPI(
    title="Threely Backend API",
    description="Photo to 3D model generation, asset gallery and token payments.",
    version="1.0.0",
)
app.state.pending_generations = {}

# --- CORS Middleware ---
origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error Envelope ---
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Every error leaves as {"error": "..."} (or the dict detail itself)."""
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


FIELD_ERROR_MESSAGES = {
    "email": "Please enter a valid email address",
}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    loc = first.get("loc", ())
    if loc and loc[-1] in FIELD_ERROR_MESSAGES:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": FIELD_ERROR_MESSAGES[loc[-1]]})
    field = ".".join(str(part) for part in loc[1:]) or "request"
    message = first.get("msg", "Invalid request")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": f"{field}: {message}"})


# --- Database Startup Event ---
@app.on_event("startup")
async def on_startup():
    """Create database tables on startup."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("Database tables verified/created.")


# =======================================
# ROUTER INCLUSION
# =======================================

app.include_router(auth_router, prefix=settings.API_PREFIX)          # /api/auth/...
app.include_router(generation_router, prefix=settings.API_PREFIX)    # /api/generateModel, /api/status/...
app.include_router(assets_router, prefix=settings.API_PREFIX)        # /api/assets/...
app.include_router(payment_router, prefix=settings.API_PREFIX)       # /api/payment/...


@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.ENVIRONMENT,
        "services": {
            "meshy": bool(settings.MESHY_API_KEY),
            "cloudinary": storage.is_configured(),
            "stripe": bool(settings.STRIPE_SECRET_KEY),
        },
    }


# =======================================
# FRONTEND SERVING
# =======================================

# Top-level pages such as /generate.html live in FRONTEND_DIR/html/.
HTML_PAGE_RE = re.compile(r"^(?!api)[\w-]+\.html$")

if os.path.isdir(settings.FRONTEND_DIR):
    app.mount("/frontend", StaticFiles(directory=settings.FRONTEND_DIR), name="frontend")
else:
    log.warning(f"Frontend directory '{settings.FRONTEND_DIR}' not found. Serving API only.")


@app.get("/")
async def serve_frontend_root():
    """Serves the SPA home page."""
    homepage = os.path.join(settings.FRONTEND_DIR, "html", "homepage.html")
    if os.path.isfile(homepage):
        return FileResponse(homepage, media_type="text/html")
    return {"message": "Threely Backend", "status": "Frontend file not found"}


@app.get("/{path:path}")
async def serve_frontend_spa(path: str):
    """Serves known HTML pages; other non-API paths fall back to the home page."""
    if path.startswith("api/"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API endpoint not found")
    if HTML_PAGE_RE.match(path):
        page = os.path.join(settings.FRONTEND_DIR, "html", path)
        if os.path.isfile(page):
            return FileResponse(page, media_type="text/html")
    if "." in path:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File Not Found")
    return await serve_frontend_root()
