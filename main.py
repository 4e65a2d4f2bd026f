"""
main.py

FastAPI entry point for CardExtract — batch business-card recognition.

Access gate:
    POST /verify-password checks the page password (plaintext or bcrypt
    hash from the environment) and returns success/failure only.  No
    session token is issued; the browser keeps its own "authenticated" flag.

Jobs:
    One process, one event loop, one shared JobRegistry.  Uploads create
    pending jobs; "recognize all" runs them in the background through the
    BatchController with at most BATCH_CONCURRENCY provider calls in flight;
    clients poll GET /jobs for per-job state.

For local dev:  python main.py
"""

import asyncio
import logging
import os
import secrets
import sys
from contextlib import asynccontextmanager

import bcrypt

# Ensure src/ is on the path so all module imports resolve
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "src"))

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from batch_controller import BatchBusyError, BatchController
from config import BATCH_CONCURRENCY, PAGE_ACCESS_PASSWORD, PAGE_ACCESS_PASSWORD_HASH
from image_loader import ImageRejected, prepare_image
from job_registry import InvalidTransitionError, JobNotFoundError, JobRegistry
from recognition_client import InputError, RecognitionError, close_http_client, recognize_card


# ── Logging ────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Access gate ────────────────────────────────────────────────────────────────

class PasswordRequest(BaseModel):
    password: str = ""


def _check_password(password: str) -> bool:
    """
    Verify the page password.
    A bcrypt hash takes precedence over the plaintext setting.
    Caller must ensure at least one of them is configured.
    """
    if PAGE_ACCESS_PASSWORD_HASH:
        try:
            return bcrypt.checkpw(password.encode(), PAGE_ACCESS_PASSWORD_HASH.encode())
        except ValueError:
            logger.error("PAGE_ACCESS_PASSWORD_HASH is not a valid bcrypt hash.")
            return False
    return secrets.compare_digest(password.encode(), PAGE_ACCESS_PASSWORD.encode())


# ── Rate Limiter ───────────────────────────────────────────────────────────────

_limiter = Limiter(key_func=get_remote_address)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": f"Rate limit exceeded. {exc.detail}"},
    )


# ── Job state ──────────────────────────────────────────────────────────────────

registry = JobRegistry()
controller = BatchController(registry, recognize=recognize_card, concurrency=BATCH_CONCURRENCY)


async def _read_image(upload: UploadFile):
    if not upload.filename:
        raise HTTPException(status_code=400, detail="File missing filename.")
    content = await upload.read()
    try:
        return await asyncio.to_thread(prepare_image, upload.filename, content)
    except ImageRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


# ── App lifecycle ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"CardExtract API started (batch concurrency {BATCH_CONCURRENCY}).")
    yield
    if controller.busy:
        logger.warning("Shutting down with a batch still in flight.")
    await close_http_client()
    logger.info("CardExtract API shutting down.")


# ── App setup ─────────────────────────────────────────────────────────────────

app = FastAPI(
    title="CardExtract",
    description="Batch business-card recognition with a vision model.",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = _limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

# CORS — restrict origins in production via ALLOWED_ORIGINS env var.
# Example: ALLOWED_ORIGINS=https://cards.example.com
_ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(RecognitionError)
async def _recognition_error_handler(request: Request, exc: RecognitionError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


# ── Routes ─────────────────────────────────────────────────────────────────────

@app.get("/health", include_in_schema=False)
async def health_check():
    """Health probe. Used by load balancers and Docker HEALTHCHECK."""
    return {"status": "ok"}


@app.post("/verify-password")
@_limiter.limit("10/minute")
async def verify_password(request: Request, body: PasswordRequest):
    """
    Check the page access password.
    500 when no password is configured (fail closed), 401 on mismatch.
    """
    if not PAGE_ACCESS_PASSWORD and not PAGE_ACCESS_PASSWORD_HASH:
        logger.error("Access gate called but no page password is configured.")
        return JSONResponse(
            status_code=500,
            content={"error": "Password not configured on server."},
        )

    if _check_password(body.password):
        return {"success": True}
    return JSONResponse(status_code=401, content={"error": "Invalid password."})


@app.post("/recognize")
@_limiter.limit("60/minute")
async def recognize(request: Request, file: UploadFile | None = File(None)):
    """
    Stateless single recognition — one image in, one card record out.
    Errors come back as {"error": ..., "apiError": ...} with the provider's status.
    """
    if file is None:
        raise InputError()
    image = await _read_image(file)
    record = await recognize_card(image.data, image.media_type)
    return {"filename": image.filename, "result": record}


@app.post("/jobs", status_code=201)
@_limiter.limit("20/minute")
async def upload_cards(request: Request, files: list[UploadFile] = File(...)):
    """
    Accept one or more card images and register each as a pending job.
    All files are validated before any job is created.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded.")

    images = [await _read_image(upload) for upload in files]
    jobs = [registry.submit(img.filename, img.data, img.media_type) for img in images]

    logger.info(f"{len(jobs)} card(s) added; registry now holds {len(registry)}.")
    return {"jobs": [job.to_payload() for job in jobs]}


@app.get("/jobs")
async def list_jobs():
    """Poll per-job state, in upload order."""
    return controller.get_status_payload()


@app.post("/jobs/recognize-all", status_code=202)
async def recognize_all():
    """Start a background batch over every job that still needs a result."""
    eligible = len(controller.eligible_jobs())
    try:
        controller.start_batch()
    except BatchBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"started": True, "eligible": eligible}


@app.get("/jobs/export")
async def export_results():
    """Download the current results table as .xlsx."""
    if len(registry) == 0:
        raise HTTPException(status_code=404, detail="No cards to export.")

    excel_bytes, filename = await asyncio.to_thread(controller.export_excel)
    return Response(
        content=excel_bytes,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(excel_bytes)),
        },
    )


@app.post("/jobs/{job_id}/recognize")
async def recognize_job(job_id: str):
    """Recognise (or retry) one job and return it once it settles."""
    try:
        job = await controller.recognize_one(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return job.to_payload()


@app.delete("/jobs")
async def clear_jobs():
    """Remove every job. Recognitions already in flight finish but are discarded."""
    cleared = controller.clear()
    return {"cleared": cleared, "epoch": registry.epoch}


# ── Entry point ────────────────────────────────────────────────────────────────
# This block is for local dev only: python main.py

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
