from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from datetime import datetime


class BookingCreate(BaseModel):
    """Booking intent created before any provider event arrives"""
    amount: Optional[int] = Field(None, ge=0, description="Amount in minor units (cents)")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    builder_id: Optional[str] = Field(None, max_length=255)
    client_id: Optional[str] = Field(None, max_length=255)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    @model_validator(mode='after')
    def validate_times(self):
        """end_time must be after start_time"""
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError('end_time must be after start_time')
        return self


class BookingCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class BookingResponse(BaseModel):
    id: str
    state: str
    version: int
    payment_attempts: int = 0
    scheduling_ref: Optional[str] = None
    payment_ref: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    builder_id: Optional[str] = None
    client_id: Optional[str] = None
    source: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BookingTransitionResponse(BaseModel):
    id: str
    event_type: str
    from_state: str
    to_state: str
    via_state: Optional[str] = None
    version: int
    provider: Optional[str] = None
    event_id: Optional[str] = None
    actor: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
