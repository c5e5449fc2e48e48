"""Request schemas for the admin audit and security endpoints."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from starlette.requests import Request

from app.api.responses import ErrorCode, error_response
from app.governance.audit_repository import as_utc


class DaysQuery(BaseModel):
    days: int = Field(30, ge=1, le=3650)


class UserActivityQuery(BaseModel):
    days: int = Field(30, ge=1, le=3650)
    limit: int = Field(50, ge=1, le=500)


class DateRangeQuery(BaseModel):
    start_date: datetime
    end_date: datetime

    @field_validator("start_date", "end_date")
    @classmethod
    def utc_dates(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def check_range(self) -> "DateRangeQuery":
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class ComplianceQuery(DateRangeQuery):
    user_id: Optional[str] = None
    actions: Optional[List[str]] = None
    resources: Optional[List[str]] = None
    include_failures: bool = True

    @field_validator("actions", "resources", mode="before")
    @classmethod
    def split_csv(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class ExportQuery(BaseModel):
    format: Literal["json", "csv"] = "json"


class RetentionRequest(BaseModel):
    policy: Optional[str] = None


class AlertRuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    condition: str = Field(..., min_length=1, max_length=100)
    severity: Literal["low", "medium", "high", "critical"]
    description: str = ""
    enabled: bool = True
    cooldown_minutes: int = Field(0, ge=0, le=10080)


class AlertRuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    condition: Optional[str] = Field(None, min_length=1, max_length=100)
    severity: Optional[Literal["low", "medium", "high", "critical"]] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None
    cooldown_minutes: Optional[int] = Field(None, ge=0, le=10080)


class TestNotificationRequest(BaseModel):
    severity: Literal["low", "medium", "high", "critical"] = "medium"


def validation_error(exc: ValidationError):
    details = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return error_response(ErrorCode.VALIDATION_ERROR, "Invalid request parameters", details)


def query_dict(request: Request) -> dict:
    return {key: value for key, value in request.query_params.items() if value != ""}


async def json_body(request: Request) -> dict:
    """Parsed JSON object body; ValueError when absent or not an object."""
    body = await request.body()
    if not body:
        return {}
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data
