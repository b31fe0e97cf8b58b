import logging
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List

from fastapi import FastAPI, Response, Depends, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatbot import word_blocks
from chatbot.config import settings
from chatbot.envfile import EnvFileError, read_env_file, update_env_file
from chatbot.logging_utils import setup_logging, RequestLoggingMiddleware
from chatbot.metrics import get_metrics, get_metrics_content_type
from chatbot.schemas import (
    ArrangementRequest,
    BlockCreateRequest,
    BlockCreateResponse,
    BlockUpdateRequest,
    ErrorResponse,
    HealthResponse,
    InformationRequest,
    InformationUpdateResponse,
    InformationValues,
    MessageResponse,
    ServiceStartResponse,
    ServiceStatusResponse,
    WordBlockResponse,
)
from chatbot.services import ServiceAlreadyRunning, ServiceManager, ServiceStartError, get_service_manager
from chatbot.storage import check_db_health, get_blocks_db, init_blocks_db
from chatbot.utils import WHATSAPP_PREFIX, clean_phone_number


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"
HIDDEN_TOKEN = "***hidden***"
PHONE_NUMBER_RE = re.compile(r"^\+\d+$")
INFORMATION_KEYS = ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER", "GEMINI_API_KEYS")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create the word blocks table and seed the default blocks.
    Shutdown: stop the chat server and tunnel if this process started them.
    """
    init_blocks_db()
    yield
    # Same manager the service routes resolve, overrides included
    manager_factory = app.dependency_overrides.get(get_service_manager, get_service_manager)
    manager_factory().stop()


app = FastAPI(
    title="WhatsApp Chatbot Admin",
    description="Word block management, provider configuration and local service control",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException) -> JSONResponse:
    """Render errors as {"error": ...}, the shape the admin page reads."""
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = ErrorResponse(error=str(exc.detail)).model_dump()
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError) -> JSONResponse:
    errors = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    )
    logger.warning(f"Invalid request body: {errors}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error=errors or "Invalid request").model_dump(),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="Internal server error").model_dump(),
    )


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Block not found")


# =============================================================================
# Word Block Routes
# =============================================================================

@app.get("/api/blocks", response_model=List[WordBlockResponse])
async def get_blocks(db: Session = Depends(get_blocks_db)) -> List[WordBlockResponse]:
    """All blocks: active ones in arrangement order, then inactive ones newest first."""
    return [WordBlockResponse.model_validate(block) for block in word_blocks.list_blocks(db)]


@app.post("/api/blocks", response_model=BlockCreateResponse)
async def create_block(body: BlockCreateRequest, db: Session = Depends(get_blocks_db)) -> BlockCreateResponse:
    if not body.id or not body.text:
        raise _bad_request("ID and text are required")

    try:
        block = word_blocks.create_block(
            db,
            block_id=body.id,
            text=body.text,
            is_active=body.is_active,
            is_default=body.is_default,
            arrangement=body.arrangement,
        )
    except word_blocks.BlockRuleViolation as e:
        raise _bad_request(str(e))
    except word_blocks.BlockAlreadyExists:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Block ID already exists")

    return BlockCreateResponse.model_validate(block)


@app.put("/api/blocks/arrangement", response_model=MessageResponse)
async def update_arrangement(body: ArrangementRequest, db: Session = Depends(get_blocks_db)) -> MessageResponse:
    """Reorder active blocks; every listed block gets its list index as arrangement."""
    try:
        word_blocks.update_arrangement(db, [item.id for item in body.blocks])
    except word_blocks.BlockRuleViolation as e:
        raise _bad_request(str(e))
    return MessageResponse(message="Arrangement updated successfully")


@app.put("/api/blocks/{block_id}", response_model=MessageResponse)
async def update_block(
    block_id: str,
    body: BlockUpdateRequest,
    db: Session = Depends(get_blocks_db),
) -> MessageResponse:
    changes = {field: getattr(body, field) for field in body.model_fields_set}
    if not changes:
        raise _bad_request("No fields to update")
    if "is_active" in changes and changes["is_active"] is None:
        raise _bad_request("isActive must be true or false")

    try:
        word_blocks.update_block(db, block_id, changes)
    except word_blocks.BlockNotFound:
        raise _not_found()
    except word_blocks.BlockRuleViolation as e:
        raise _bad_request(str(e))
    return MessageResponse(message="Block updated successfully")


@app.delete("/api/blocks/{block_id}", response_model=MessageResponse)
async def delete_block(block_id: str, db: Session = Depends(get_blocks_db)) -> MessageResponse:
    try:
        word_blocks.delete_block(db, block_id)
    except word_blocks.BlockNotFound:
        raise _not_found()
    except word_blocks.BlockRuleViolation as e:
        raise _bad_request(str(e))
    return MessageResponse(message="Block deleted successfully")


# =============================================================================
# Provider Information Routes
# =============================================================================

@app.get("/api/information", response_model=InformationValues)
async def get_information() -> InformationValues:
    """
    Current values from the chat server's .env file. The auth token is
    masked and the phone number is shown without the 'whatsapp:' prefix.
    """
    try:
        values = read_env_file(settings.ENV_FILE_PATH)
    except EnvFileError as e:
        logger.error(str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to read configuration")

    return InformationValues(
        TWILIO_ACCOUNT_SID=values.get("TWILIO_ACCOUNT_SID", ""),
        TWILIO_AUTH_TOKEN=HIDDEN_TOKEN if values.get("TWILIO_AUTH_TOKEN") else "",
        TWILIO_PHONE_NUMBER=clean_phone_number(values.get("TWILIO_PHONE_NUMBER", "")),
        GEMINI_API_KEYS=values.get("GEMINI_API_KEYS", ""),
    )


@app.put("/api/information", response_model=InformationUpdateResponse)
async def update_information(body: InformationRequest) -> InformationUpdateResponse:
    """
    Write Twilio and Gemini credentials to the chat server's .env file.
    They take effect the next time the chat server starts.
    """
    if not all(getattr(body, key) for key in INFORMATION_KEYS):
        raise _bad_request(f"{', '.join(INFORMATION_KEYS)} are required")

    if not PHONE_NUMBER_RE.match(body.TWILIO_PHONE_NUMBER):
        raise _bad_request("TWILIO_PHONE_NUMBER must start with + followed by numbers only")

    env_path = settings.ENV_FILE_PATH
    try:
        auth_token = body.TWILIO_AUTH_TOKEN
        if auth_token == HIDDEN_TOKEN:
            # Masked value echoed back from GET: keep the stored token
            auth_token = read_env_file(env_path).get("TWILIO_AUTH_TOKEN", "")
            if not auth_token:
                raise _bad_request("TWILIO_AUTH_TOKEN is required")

        phone_number = f"{WHATSAPP_PREFIX}{body.TWILIO_PHONE_NUMBER}"
        update_env_file(
            env_path,
            {
                "TWILIO_ACCOUNT_SID": body.TWILIO_ACCOUNT_SID,
                "TWILIO_AUTH_TOKEN": auth_token,
                "TWILIO_PHONE_NUMBER": phone_number,
                "GEMINI_API_KEYS": body.GEMINI_API_KEYS,
            },
        )
    except EnvFileError as e:
        logger.error(f"Error updating Twilio configuration: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to update configuration", "details": str(e)},
        )

    return InformationUpdateResponse(
        message="Twilio configuration updated successfully",
        updated=InformationValues(
            TWILIO_ACCOUNT_SID=body.TWILIO_ACCOUNT_SID,
            TWILIO_AUTH_TOKEN=HIDDEN_TOKEN,
            TWILIO_PHONE_NUMBER=phone_number,
            GEMINI_API_KEYS=body.GEMINI_API_KEYS,
        ),
    )


# =============================================================================
# Service Routes
# =============================================================================

@app.get("/api/service/start", response_model=ServiceStartResponse)
def start_services(manager: ServiceManager = Depends(get_service_manager)) -> ServiceStartResponse:
    """Start the chat server and the ngrok tunnel, returning the public URL."""
    try:
        url = manager.start()
    except ServiceAlreadyRunning as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": str(e), "url": e.url},
        )
    except ServiceStartError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return ServiceStartResponse(message="Services started successfully", url=url)


@app.get("/api/service/stop", response_model=MessageResponse)
def stop_services(manager: ServiceManager = Depends(get_service_manager)) -> MessageResponse:
    if manager.stop():
        return MessageResponse(message="Services stopped successfully")
    return MessageResponse(message="Services were not running")


@app.get("/api/service/status", response_model=ServiceStatusResponse)
async def services_status(manager: ServiceManager = Depends(get_service_manager)) -> ServiceStatusResponse:
    return ServiceStatusResponse.model_validate(manager.status())


# =============================================================================
# Page, Health and Metrics Routes
# =============================================================================

@app.get("/", include_in_schema=False)
async def index() -> FileResponse:
    return FileResponse(STATIC_DIR / "index.html")


@app.get("/health", response_model=HealthResponse)
async def health(response: Response) -> HealthResponse:
    """Returns 503 when the word blocks database is not usable."""
    if not check_db_health(include_history=False):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")
    return HealthResponse(status="ok")


@app.get("/metrics")
async def metrics() -> Response:
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
