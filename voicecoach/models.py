from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union
from datetime import datetime
from uuid import UUID


# Request Models
class ClientUpsertRequest(BaseModel):
    clientId: Optional[str] = None
    username: Optional[str] = None
    gender: Optional[Union[int, str]] = None
    language: Optional[str] = None


class SessionCreateRequest(BaseModel):
    clientId: str = Field(..., min_length=1)
    therapistId: UUID
    therapyIntent: Optional[str] = None
    language: Optional[str] = None


class PaymentRequest(BaseModel):
    clientId: Optional[str] = None
    sessionId: Optional[str] = None
    provider: Optional[Union[int, str]] = None
    transactionId: Optional[str] = None
    amount: Optional[Any] = None
    currency: Optional[str] = None
    status: Union[int, str] = "completed"
    paidAt: Optional[str] = None
    rawPayload: Optional[Dict[str, Any]] = None
    note: Optional[str] = None


# Response Models
class ClientUpsertResponse(BaseModel):
    id: str


class TrialInfo(BaseModel):
    active: bool
    days_left: int = 0


class SessionCreateResponse(BaseModel):
    id: UUID
    created: datetime
    number: int
    mainSessionId: UUID
    language: str
    therapyIntent: str
    access: str
    trial: TrialInfo
    introUrl: Optional[str] = None
    openingText: Optional[str] = None
    openingAudioBase64: Optional[str] = None
    openingAudioMime: Optional[str] = None


class TurnResponse(BaseModel):
    sessionId: str
    userMessageId: Optional[UUID] = None
    aiMessageId: UUID
    transcript: str
    aiText: str
    audioBase64: Optional[str] = None
    audioMime: Optional[str] = None
    fallback: Optional[bool] = None


class SessionEndResponse(BaseModel):
    id: UUID
    ended: datetime
    message: Optional[str] = None
    summary: Optional[str] = None
    summary_preview: Optional[str] = None


class PaymentResponse(BaseModel):
    id: UUID
    clientId: str
    sessionId: Optional[UUID] = None
    provider: int
    providerLabel: Optional[str] = None
    transactionId: str
    amount: Optional[float] = None
    currency: str
    status: int
    statusLabel: Optional[str] = None
    paidAt: Optional[datetime] = None
    created: Optional[datetime] = None
    note: Optional[str] = None
    clientUsername: Optional[str] = None


class PaymentListResponse(BaseModel):
    count: int
    limit: int
    offset: int
    items: List[PaymentResponse]
