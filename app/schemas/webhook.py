from pydantic import BaseModel
from typing import Optional


class WebhookResponse(BaseModel):
    """Acknowledgment returned to the provider"""
    success: bool
    outcome: str
    provider: Optional[str] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    booking_id: Optional[str] = None
    state: Optional[str] = None
    version: Optional[int] = None
    prior_outcome: Optional[str] = None
    code: Optional[str] = None
    message: str = ""


class ErrorResponse(BaseModel):
    success: bool = False
    code: str
    message: str
