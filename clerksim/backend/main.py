"""
FastAPI backend for ClerkSim
AI operation proxy, case sessions, batch persistence and saved case retrieval
"""
from fastapi import FastAPI, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Any, Dict
import logging
import os

from ..cache import close_cache
from ..errors import (
    AIServiceError,
    CaseValidationError,
    InvalidResponseError,
    QuotaExceededError,
    RateLimitError,
)
from ..gateway import OPERATIONS, OperationGateway
from ..llm import LangChainGateway
from .database import dispose_db, init_db
from .schemas import BatchSaveAction, BatchSaveRequest, BatchSaveResponse, SessionValidationRequest, VisibilityRequest
from .services import CaseStore

# Configure logging
log_dir = os.getenv("LOG_DIR", "./logs")
os.makedirs(log_dir, exist_ok=True)
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(os.path.join(log_dir, "app.log")),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

_gateway = None
_store = None


def get_gateway() -> OperationGateway:
    global _gateway
    if _gateway is None:
        _gateway = LangChainGateway()
    return _gateway


def get_store() -> CaseStore:
    global _store
    if _store is None:
        _store = CaseStore()
    return _store


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown events"""
    # Startup
    logger.info("Starting ClerkSim API")
    await init_db()
    yield
    # Shutdown
    logger.info("Shutting down ClerkSim API")
    await close_cache()
    await dispose_db()


# Initialize FastAPI app
app = FastAPI(
    title="ClerkSim API",
    description="Case generation, clerking and feedback for clinical education",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("ALLOWED_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# Health Check Endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for container orchestration"""
    return {
        "status": "healthy",
        "service": "clerksim-api",
        "version": "1.0.0"
    }


@app.post("/api/ai/{operation}", tags=["AI"])
async def run_operation(operation: str, payload: Dict[str, Any],
                        gateway: OperationGateway = Depends(get_gateway)):
    """Run one AI operation. Failures come back as ``{"error": str}``."""
    if operation not in OPERATIONS:
        return error_response(404, f"Unknown operation: {operation}")

    try:
        result = await gateway.dispatch(operation, payload)
    except CaseValidationError as e:
        return error_response(400, str(e))
    except (QuotaExceededError, RateLimitError) as e:
        logger.warning(f"{operation} throttled: {e}")
        return error_response(429, str(e))
    except InvalidResponseError as e:
        logger.error(f"{operation} produced an invalid response: {e}")
        return error_response(502, e.user_message)
    except AIServiceError as e:
        logger.error(f"{operation} failed: {e}")
        return error_response(e.status_code or 502, str(e))
    except Exception as e:
        logger.exception(f"Unexpected error in {operation}: {e}")
        return error_response(500, "Internal server error")

    return result.model_dump(mode="json")


@app.post("/api/sessions/validate", tags=["Cases"])
async def validate_session(request: SessionValidationRequest, store: CaseStore = Depends(get_store)):
    validation = await store.validate_session(request.case_id)
    return validation.model_dump()


@app.post("/api/cases/batch-save", tags=["Cases"], response_model=BatchSaveResponse)
async def batch_save(request: BatchSaveRequest, store: CaseStore = Depends(get_store)):
    """Run one persistence step; earlier steps of the batch are never rolled back."""
    if not request.user_email or not request.case_id:
        return error_response(400, "userEmail and caseId are required")

    email, case_id = request.user_email, request.case_id
    try:
        if request.user_country:
            await store.create_or_get_user(email, request.user_country)

        if request.action == BatchSaveAction.SAVE_CONVERSATION:
            await store.save_conversation(email, case_id, request.messages)
        elif request.action == BatchSaveAction.SAVE_CASE_STATE:
            await store.save_case_state(email, case_id, request.case_state)
        elif request.action == BatchSaveAction.SAVE_RESULTS:
            await store.save_results(email, case_id, request.examination_results, request.investigation_results)
        else:
            if request.feedback is None:
                return error_response(400, "feedback is required")
            kind = "detailed" if request.action == BatchSaveAction.SAVE_DETAILED_FEEDBACK else "simple"
            await store.save_feedback(email, case_id, request.feedback, kind=kind)
    except CaseValidationError as e:
        return error_response(404, str(e))
    except Exception as e:
        logger.error(f"Batch save {request.action.value} failed for case {case_id}: {e}")
        return error_response(500, f"Failed to {request.action.value}")

    return BatchSaveResponse(success=True, action=request.action, case_id=case_id)


@app.post("/api/cases/visibility", tags=["Cases"])
async def update_visibility(request: VisibilityRequest, store: CaseStore = Depends(get_store)):
    try:
        await store.update_visibility(request.user_email, request.case_id, request.is_visible)
    except CaseValidationError as e:
        return error_response(404, str(e))
    return {"success": True, "isVisible": request.is_visible}


@app.get("/api/cases/completed", tags=["Cases"])
async def list_completed_cases(email: str = Query(..., min_length=1), store: CaseStore = Depends(get_store)):
    """Visible completed cases of a user"""
    try:
        cases = await store.list_completed_cases(email)
    except CaseValidationError as e:
        return error_response(404, str(e))
    return {"success": True, "cases": cases}


@app.get("/api/cases/{case_id}", tags=["Cases"])
async def get_case(case_id: str, email: str = Query(..., min_length=1), store: CaseStore = Depends(get_store)):
    """Saved case with transcript, results and feedback. Only the owner can read it."""
    try:
        case = await store.get_case(email, case_id)
    except CaseValidationError as e:
        return error_response(404, str(e))
    return {"success": True, "case": case}


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return error_response(500, "Internal server error")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clerksim.backend.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        reload=os.getenv("ENV", "production") == "development",
        log_level=os.getenv("LOG_LEVEL", "info").lower()
    )
