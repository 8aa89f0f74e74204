from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Models
class STKPushRequest(BaseModel):
    amount: Optional[Union[int, float]] = Field(None, description="Amount to charge")
    phone: Optional[str] = Field(None, description="Payer MSISDN, e.g. 254712345678")
    accountReference: Optional[str] = None
    transactionDesc: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "amount": 10,
                "phone": "254712345678",
                "accountReference": "INV-001",
                "transactionDesc": "Payment for service",
            }
        }
    )

    @field_validator("phone", mode="before")
    @classmethod
    def phone_as_string(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def is_complete(self) -> bool:
        """Amount and phone must both be present and non-empty."""
        return bool(self.amount) and bool(self.phone)


class TokenResponse(BaseModel):
    accessToken: str


class CallbackAck(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str
    message: str
    timestamp: str


class MessageResponse(BaseModel):
    message: str


class ErrorDetail(BaseModel):
    message: str
    stack: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
