"""
Pydantic request/response models.

Rationale:
- Keep the JSON contract explicit so the Mini App knows exactly what it gets.
- Python attributes are snake_case; the wire format is camelCase, as the
  frontend reads it.
"""

from dataclasses import dataclass
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@dataclass(frozen=True)
class AnalysisRequest:
    image: bytes
    mime_type: str
    timeframe: str

    @property
    def auto_timeframe(self) -> bool:
        return self.timeframe.strip().lower() == "auto"


class AnalysisResult(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    recommendation: str = "N/A"
    certainty: int = Field(default=0, ge=0, le=100)
    entry_price: str = "Not specified"
    stop_loss: str = "Not specified"
    take_profit: str = "Not specified"
    risk_reward_ratio: str = "N/A"
    report: str = ""
    detected_timeframe: Optional[str] = None
    timeframe_confidence: Optional[Literal["high", "medium", "low"]] = None
    chart_type: Optional[Literal["candlestick", "line", "area"]] = None


@dataclass(frozen=True)
class VerifiedIdentity:
    id: int
    name: str
    username: Optional[str] = None


class HealthResponse(_CamelModel):
    status: str = "ok"
    api_configured: bool


class Credentials(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)


class AuthUser(BaseModel):
    id: str
    email: Optional[str] = None
    credits: Optional[int] = None


class AuthSession(_CamelModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    user: Optional[AuthUser] = None


class PaymentInitRequest(_CamelModel):
    wallet_address: str = Field(min_length=32, max_length=44)
    credits: int = Field(default=1, ge=1, le=1000)


class PaymentVerifyRequest(_CamelModel):
    payment_id: str = Field(min_length=1)


class PaymentResponse(_CamelModel):
    payment_id: str
    status: Literal["pending", "verified", "cancelled"]
    sender_address: str
    receiver_address: str
    amount: float
    credits: int
    expires_at: str
    signature: Optional[str] = None
    balance: Optional[int] = None
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
