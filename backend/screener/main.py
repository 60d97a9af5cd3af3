from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from pydantic import BaseModel, Field, field_validator
from typing import Any, Optional
import logging
import re
import time
import uuid

from .config import get_settings
from .errors import ScreenerError, SessionNotFound
from .logging_config import setup_logging
from .services import Services, build_services
from .stages import FIND_VALUE, FULL_ANALYSIS, ORIGIN_ANALYSIS, VISUAL_SEARCH, now_ms
from .store import ANALYSIS, METADATA, ORIGIN, read_optional

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
DRAIN_TIMEOUT_S = 120

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ==================== MODELS ====================

class SessionRequest(BaseModel):
    sessionId: str = Field(min_length=1)

class EmailSubmission(BaseModel):
    email: str
    sessionId: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _valid_email(cls, v: str) -> str:
        v = v.strip()
        if not _EMAIL_RE.match(v):
            raise ValueError("Invalid email format.")
        return v

class PremiumRequest(BaseModel):
    sessionId: str = Field(min_length=1)
    subscriptionKey: Optional[str] = None

class StageResponse(BaseModel):
    success: bool
    message: str
    results: Optional[dict] = None
    cached: bool = False

class PipelineResponse(BaseModel):
    success: bool
    message: str
    results: dict
    errors: list[dict]

class UploadResponse(BaseModel):
    success: bool
    message: str
    imageUrl: str
    sessionId: str

class EmailResponse(BaseModel):
    success: bool
    message: str
    submissionTime: int


# ==================== HELPERS ====================

def get_services(request: Request) -> Services:
    return request.app.state.services


async def _require_session(services: Services, session_id: str) -> None:
    if not await services.store.exists(session_id, METADATA):
        raise SessionNotFound(session_id)


async def _run_stage(services: Services, session_id: str, stage_name: str, label: str) -> StageResponse:
    await _require_session(services, session_id)
    result = await services.invoker.invoke(session_id, stage_name)
    if not result.ok:
        raise result.error
    return StageResponse(
        success=True,
        message=f"{label} completed successfully.",
        results=result.value,
        cached=result.cached,
    )


# ==================== ROUTES ====================

router = APIRouter()


@router.get("/health")
def health(services: Services = Depends(get_services)):
    return {"status": "healthy", "backgroundTasks": services.background.outstanding}


@router.post("/upload-temp", response_model=UploadResponse)
async def upload_temp(image: UploadFile = File(...), services: Services = Depends(get_services)):
    """Store the image and create a session with its metadata artifact."""
    if image.content_type not in ALLOWED_MIME_TYPES:
        raise HTTPException(
            status_code=400,
            detail="Invalid file type. Only JPEG, PNG, and WebP images are allowed.",
        )
    data = await image.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="Maximum file size is 10MB.")

    session_id = str(uuid.uuid4())
    image_url = await services.store.save_image(session_id, data, image.content_type)
    await services.store.write(session_id, METADATA, {
        "originalName": image.filename or "",
        "timestamp": now_ms(),
        "mimeType": image.content_type,
        "size": len(data),
        "imageUrl": image_url,
    })
    logger.info("Session %s created for %s (%d bytes)", session_id, image.filename, len(data))
    return UploadResponse(success=True, message="Image uploaded successfully.",
                          imageUrl=image_url, sessionId=session_id)


@router.post("/visual-search", response_model=StageResponse)
async def visual_search(req: SessionRequest, services: Services = Depends(get_services)):
    return await _run_stage(services, req.sessionId, VISUAL_SEARCH, "Visual search")


@router.post("/origin-analysis", response_model=StageResponse)
async def origin_analysis(req: SessionRequest, services: Services = Depends(get_services)):
    return await _run_stage(services, req.sessionId, ORIGIN_ANALYSIS, "Origin analysis")


@router.post("/full-analysis", response_model=StageResponse)
async def full_analysis(req: SessionRequest, services: Services = Depends(get_services)):
    return await _run_stage(services, req.sessionId, FULL_ANALYSIS, "Full analysis")


@router.post("/find-value", response_model=StageResponse)
async def find_value(req: SessionRequest, services: Services = Depends(get_services)):
    return await _run_stage(services, req.sessionId, FIND_VALUE, "Value estimation")


@router.post("/analyze-session", response_model=PipelineResponse)
async def analyze_session(req: SessionRequest, services: Services = Depends(get_services)):
    """Run every missing stage; partial failures come back in ``errors``."""
    run = await services.coordinator.run(req.sessionId)
    errors = [e.to_dict() for e in run.errors]
    return PipelineResponse(
        success=True,
        message="Analysis completed with errors." if errors else "Analysis completed successfully.",
        results=run.artifacts,
        errors=errors,
    )


@router.get("/session-status/{session_id}")
async def session_status(session_id: str, services: Services = Depends(get_services)):
    status = await services.status.status(session_id)
    results = None
    if status["overall"] == "complete":
        results = await services.status.results(session_id)
    return {
        "success": True,
        "data": {
            "sessionId": session_id,
            "status": status["overall"],
            "perStage": status["perStage"],
            "results": results,
        },
        "timestamp": now_ms(),
    }


@router.get("/session/{session_id}")
async def get_session(session_id: str, services: Services = Depends(get_services)):
    await _require_session(services, session_id)
    store = services.store
    return {
        "success": True,
        "session": {
            "id": session_id,
            "metadata": await store.read(session_id, METADATA),
            "analysis": await read_optional(store, session_id, ANALYSIS),
            "origin": await read_optional(store, session_id, ORIGIN),
        },
    }


@router.post("/submit-email", response_model=EmailResponse)
async def submit_email(req: EmailSubmission, services: Services = Depends(get_services)):
    """Record the address, answer right away, and deliver reports in the background."""
    await _require_session(services, req.sessionId)

    submitted_at = time.time()
    protected = await services.cipher.protect(req.email)
    metadata = await services.store.read(req.sessionId, METADATA)
    metadata["email"] = {
        "submissionTime": int(submitted_at * 1000),
        "hash": protected["hash"],
        "encrypted": protected["encrypted"],
        "verified": False,
    }
    await services.store.write(req.sessionId, METADATA, metadata)

    services.background.spawn(
        services.delivery.run(req.sessionId, req.email, submitted_at),
        name=f"delivery-{req.sessionId}",
    )
    return EmailResponse(
        success=True,
        message="Email submission received and processing started.",
        submissionTime=metadata["email"]["submissionTime"],
    )


@router.post("/premium-auction-data")
async def premium_auction_data(req: PremiumRequest, services: Services = Depends(get_services)):
    data = await services.premium.fetch(req.sessionId, req.subscriptionKey)
    return {"success": True, "data": data, "message": "Premium auction data retrieved successfully"}


# ==================== APP ====================

def _error_body(exc: ScreenerError, environment: str) -> dict[str, Any]:
    if exc.status_code < 500:
        return {"success": False, "message": exc.message}
    body: dict[str, Any] = {"success": False, "message": "Error processing request."}
    body["error"] = exc.message if environment == "development" else "Internal Server Error."
    return body


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services(get_settings())
        setup_logging(app.state.services.settings.log_level)
        yield
        # Detached deliveries must finish before the process exits
        await app.state.services.background.drain(timeout=DRAIN_TIMEOUT_S)
        await app.state.services.aclose()

    app = FastAPI(title="Art Screener API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "https://appraisers-frontend-856401495068.us-central1.run.app",
            "http://localhost:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ScreenerError)
    async def screener_error_handler(request: Request, exc: ScreenerError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        environment = request.app.state.services.settings.environment
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc, environment))

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request.") if errors else "Invalid request."
        return JSONResponse(status_code=400, content={"success": False, "message": message})

    app.include_router(router)
    return app


app = create_app()
