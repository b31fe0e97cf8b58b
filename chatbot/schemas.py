"""
Pydantic schemas for request/response validation.

This module contains:
- Chat server models (send-message, history, conversations, config)
- Admin server models (word blocks, provider information, services)

Admin models use camelCase on the wire to match the admin page.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Shared
# =============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ErrorResponse(BaseModel):
    """Response model for admin error responses."""
    error: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """Plain acknowledgement."""
    message: str


# =============================================================================
# Chat Server Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Request body for POST /send-message.

    'to' may be given as 'whatsapp:+1...', '+1...' or bare digits.
    """
    to: str = Field(..., min_length=1, description="Recipient phone number")
    message: str = Field(..., min_length=1, description="Message text")


class SendMessageResponse(BaseModel):
    success: bool = True
    messageSid: Optional[str] = None
    status: Optional[str] = None
    from_number: str = Field(..., alias="from")
    to: str

    model_config = ConfigDict(populate_by_name=True)


class HistoryMessage(BaseModel):
    """One row of a conversation as returned by GET /history/{phone_number}."""
    id: int
    phone_number_id: int
    sender_type: str
    message: str
    message_date: str
    message_time: str
    created_at: str
    phone_number: str


class HistoryResponse(BaseModel):
    phoneNumber: str
    messages: List[HistoryMessage] = Field(default_factory=list)


class ConversationSummary(BaseModel):
    phone_number: str
    message_count: int = Field(..., ge=0)
    last_message_time: Optional[str] = None


class ConversationsResponse(BaseModel):
    conversations: List[ConversationSummary] = Field(default_factory=list)


class WordBlockPreview(BaseModel):
    text: str
    arrangement: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class WordBlocksPreviewResponse(BaseModel):
    wordBlocks: List[WordBlockPreview] = Field(default_factory=list)


class ChatConfigResponse(BaseModel):
    """Response model for GET /config."""
    currentPhoneNumber: str
    isSandbox: bool
    phoneNumberType: str
    accountSid: str
    geminiApiConfigured: str
    environmentVariables: Dict[str, str]


# =============================================================================
# Admin Server Models
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class WordBlockResponse(CamelModel):
    """A word block as shown in the admin page."""
    id: str
    text: str
    is_active: bool
    is_default: bool
    arrangement: Optional[int] = None
    created_at: str
    updated_at: str


class BlockCreateRequest(CamelModel):
    """
    Request body for POST /api/blocks.

    id and text are optional here so that missing values produce the
    admin API's 400 error instead of a validation error.
    """
    id: Optional[str] = None
    text: Optional[str] = None
    is_active: bool = False
    is_default: bool = False
    arrangement: Optional[int] = None


class BlockCreateResponse(WordBlockResponse):
    message: str = "Block created successfully"


class BlockUpdateRequest(CamelModel):
    """Partial update; only fields present in the body are applied."""
    text: Optional[str] = None
    is_active: Optional[bool] = None
    arrangement: Optional[int] = None


class ArrangementItem(BaseModel):
    id: str


class ArrangementRequest(BaseModel):
    """Active blocks in their new order; arrangement = position in the list."""
    blocks: List[ArrangementItem]


class InformationRequest(BaseModel):
    """Provider and AI credentials written to the chat server's .env file."""
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None
    GEMINI_API_KEYS: Optional[str] = None


class InformationValues(BaseModel):
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_PHONE_NUMBER: str = ""
    GEMINI_API_KEYS: str = ""


class InformationUpdateResponse(BaseModel):
    message: str
    updated: InformationValues


class ServiceStartResponse(BaseModel):
    message: str
    url: str


class ServiceInfo(BaseModel):
    running: bool
    pid: Optional[int] = None


class TunnelServiceInfo(ServiceInfo):
    url: Optional[str] = None


class ServiceStatusResponse(BaseModel):
    status: str
    chatService: ServiceInfo
    ngrokService: TunnelServiceInfo
