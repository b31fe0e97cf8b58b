import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from html import escape

from fastapi import FastAPI, Response, Request, Depends, status
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from chatbot.config import settings
from chatbot.gemini import GeminiResponder, get_responder
from chatbot.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from chatbot.messaging import TwilioMessenger, build_twiml_reply, get_messenger
from chatbot.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from chatbot.pipeline import ConversationPipeline
from chatbot.schemas import (
    ChatConfigResponse,
    ConversationsResponse,
    ConversationSummary,
    HealthResponse,
    HistoryMessage,
    HistoryResponse,
    SendMessageRequest,
    SendMessageResponse,
    WordBlockPreview,
    WordBlocksPreviewResponse,
)
from chatbot.storage import (
    SENDER_CHATBOT,
    check_db_health,
    get_blocks_db,
    get_chat_history,
    get_history_db,
    get_or_create_phone_number,
    init_blocks_db,
    init_history_db,
    list_conversations,
    store_message,
)
from chatbot.utils import clean_phone_number, format_whatsapp_number, verify_twilio_signature
from chatbot.word_blocks import get_active_blocks


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

ERROR_REPLY = "Sorry, I encountered an error. Please try again later."

ENDPOINTS = {
    "webhook": "/webhook",
    "sendMessage": "/send-message",
    "history": "/history/{phoneNumber}",
    "conversations": "/conversations",
    "config": "/config",
    "testWordBlocks": "/test-word-blocks",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create the history tables and make sure the word blocks
    database exists with its default blocks.
    """
    init_history_db()
    init_blocks_db()
    logger.info(
        "Chat server ready",
        extra={
            "phone_number": settings.TWILIO_PHONE_NUMBER,
            "sandbox": settings.is_sandbox,
            "gemini_configured": bool(settings.GEMINI_API_KEYS),
        },
    )
    if not settings.GEMINI_API_KEYS:
        logger.warning("GEMINI_API_KEYS is not set; webhook replies will fail")
    yield


app = FastAPI(
    title="WhatsApp Gemini Chatbot",
    description="Relays inbound WhatsApp messages to Gemini and replies through Twilio",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def _xml(body: str) -> Response:
    return Response(content=body, media_type="text/xml")


def _public_url(request: Request) -> str:
    # Behind ngrok the app sees http while Twilio signed the https URL
    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto:
        return str(request.url.replace(scheme=forwarded_proto))
    return str(request.url)


# =============================================================================
# Webhook Route
# =============================================================================

@app.post("/webhook", response_class=Response)
async def webhook(
    request: Request,
    history_db: Session = Depends(get_history_db),
    blocks_db: Session = Depends(get_blocks_db),
    responder: GeminiResponder = Depends(get_responder),
) -> Response:
    """
    Twilio WhatsApp webhook.

    Form fields: Body (message text), From (sender, 'whatsapp:+...').
    Always answers 200 with a TwiML message; failures are logged and the
    sender gets a generic apology.
    """
    form = await request.form()
    incoming_msg = form.get("Body") or ""
    sender = form.get("From") or ""

    if settings.TWILIO_VALIDATE_SIGNATURE:
        signature = request.headers.get("X-Twilio-Signature")
        if not verify_twilio_signature(settings.TWILIO_AUTH_TOKEN, _public_url(request), form, signature):
            record_webhook_outcome("invalid_signature")
            log_webhook_data(request=request, sender=sender or None, result="invalid_signature")
            return Response(status_code=status.HTTP_403_FORBIDDEN)

    logger.info(f"Received message from {sender}", extra={"sender": sender, "chars": len(incoming_msg)})

    try:
        if not sender:
            raise ValueError("Webhook request without a From field")
        pipeline = ConversationPipeline(history_db, blocks_db, responder)
        reply = await run_in_threadpool(pipeline.handle, sender, incoming_msg)
    except Exception:
        logger.exception("Error processing webhook", extra={"sender": sender})
        record_webhook_outcome("error")
        log_webhook_data(request=request, sender=sender or None, result="error")
        return _xml(build_twiml_reply(ERROR_REPLY))

    record_webhook_outcome("replied")
    log_webhook_data(request=request, sender=sender, result="replied")
    return _xml(build_twiml_reply(reply))


# =============================================================================
# Outbound Messages
# =============================================================================

@app.post("/send-message", response_model=SendMessageResponse)
def send_message(
    body: SendMessageRequest,
    history_db: Session = Depends(get_history_db),
    messenger: TwilioMessenger = Depends(get_messenger),
):
    """
    Send a message programmatically and record it as a chatbot message.
    A failure to record is logged but does not fail the request.
    """
    recipient = format_whatsapp_number(body.to)

    try:
        result = messenger.send(to=recipient, body=body.message)
    except Exception as e:
        logger.error(f"Error sending message to {recipient}: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(e)},
        )

    try:
        phone_number_id = get_or_create_phone_number(history_db, recipient)
        store_message(history_db, phone_number_id, SENDER_CHATBOT, body.message)
        logger.info("Programmatic message stored", extra={"to": recipient})
    except Exception as e:
        logger.error(f"Error storing programmatic message: {e}")

    return SendMessageResponse(
        success=True,
        messageSid=result.get("sid"),
        status=result.get("status"),
        from_number=messenger.from_number,
        to=recipient,
    )


# =============================================================================
# History Routes
# =============================================================================

@app.get("/history/{phone_number}", response_model=HistoryResponse)
def history(phone_number: str, history_db: Session = Depends(get_history_db)) -> HistoryResponse:
    """Full conversation with one phone number, oldest first."""
    clean_number = clean_phone_number(phone_number)
    messages = get_chat_history(history_db, clean_number)
    return HistoryResponse(
        phoneNumber=clean_number,
        messages=[
            HistoryMessage(
                id=m.id,
                phone_number_id=m.phone_number_id,
                sender_type=m.sender_type,
                message=m.message,
                message_date=m.message_date,
                message_time=m.message_time,
                created_at=m.created_at,
                phone_number=clean_number,
            )
            for m in messages
        ],
    )


@app.get("/conversations", response_model=ConversationsResponse)
def conversations(history_db: Session = Depends(get_history_db)) -> ConversationsResponse:
    """Every known phone number with its message count, most recent first."""
    rows = list_conversations(history_db)
    return ConversationsResponse(conversations=[ConversationSummary(**row) for row in rows])


@app.get("/test-word-blocks", response_model=WordBlocksPreviewResponse)
def test_word_blocks(blocks_db: Session = Depends(get_blocks_db)) -> WordBlocksPreviewResponse:
    """The active word blocks the next prompt will be built from."""
    blocks = get_active_blocks(blocks_db)
    return WordBlocksPreviewResponse(
        wordBlocks=[WordBlockPreview.model_validate(block) for block in blocks]
    )


# =============================================================================
# Configuration and Status Routes
# =============================================================================

def _set_or_not(value: str) -> str:
    return "Set" if value else "Not set"


@app.get("/config", response_model=ChatConfigResponse)
async def config() -> ChatConfigResponse:
    """Current phone number and which credentials are configured."""
    sid = settings.TWILIO_ACCOUNT_SID
    return ChatConfigResponse(
        currentPhoneNumber=settings.TWILIO_PHONE_NUMBER,
        isSandbox=settings.is_sandbox,
        phoneNumberType="Sandbox" if settings.is_sandbox else "Business",
        accountSid=f"{sid[:8]}..." if sid else "Not configured",
        geminiApiConfigured="Yes" if settings.GEMINI_API_KEYS else "No",
        environmentVariables={
            "TWILIO_PHONE_NUMBER": settings.TWILIO_PHONE_NUMBER,
            "TWILIO_ACCOUNT_SID": _set_or_not(settings.TWILIO_ACCOUNT_SID),
            "TWILIO_AUTH_TOKEN": _set_or_not(settings.TWILIO_AUTH_TOKEN),
            "GEMINI_API_KEYS": _set_or_not(settings.GEMINI_API_KEYS),
        },
    )


@app.get("/status")
async def service_status() -> dict:
    return {
        "status": "running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "databases": {
            "history": settings.HISTORY_DATABASE_URL,
            "wordBlocks": settings.WORD_BLOCKS_DATABASE_URL,
        },
        "phoneNumber": {
            "current": settings.TWILIO_PHONE_NUMBER,
            "type": "sandbox" if settings.is_sandbox else "business",
            "isSandbox": settings.is_sandbox,
        },
        "geminiAI": {
            "configured": bool(settings.GEMINI_API_KEYS),
            "model": settings.GEMINI_MODEL,
        },
        "endpoints": ENDPOINTS,
    }


@app.get("/", response_class=HTMLResponse)
async def index() -> HTMLResponse:
    phone_type = "Sandbox" if settings.is_sandbox else "Business"
    gemini_status = "Configured" if settings.GEMINI_API_KEYS else "Not configured"
    endpoints = "".join(f"<li><code>{escape(path)}</code></li>" for path in ENDPOINTS.values())
    return HTMLResponse(
        f"""
        <h1>WhatsApp Gemini AI Chatbot is running</h1>
        <p><strong>Current Phone Number:</strong> <code>{escape(settings.TWILIO_PHONE_NUMBER)}</code></p>
        <p><strong>Phone Type:</strong> {phone_type}</p>
        <p><strong>Gemini AI:</strong> {gemini_status} ({escape(settings.GEMINI_MODEL)})</p>
        <hr>
        <p><strong>Endpoints:</strong></p>
        <ul>{endpoints}</ul>
        <p><strong>Server time:</strong> {datetime.now(timezone.utc).isoformat()}</p>
        """
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. Both databases are reachable and their schema is applied
    2. GEMINI_API_KEYS is set

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.GEMINI_API_KEYS:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="GEMINI_API_KEYS not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
