from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

COUNTRY_CODES = ("IT", "US", "GB", "DE", "FR", "ES", "BR", "AR", "AU", "OTHER")
CountryCode = Literal["IT", "US", "GB", "DE", "FR", "ES", "BR", "AR", "AU", "OTHER"]

TEAM_NAME_PATTERN = r"^[A-Za-zÀ-ÿ0-9\s\-_'.]+$"
PERSON_NAME_PATTERN = r"^[A-Za-zÀ-ÿ\s]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^[\d\s+\-()]+$"
# Hidden form field that only bots fill in.
HONEYPOT_FIELD = "website"


class RegistrationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    team_name: str = Field(min_length=3, max_length=50, pattern=TEAM_NAME_PATTERN)
    team_city: str = Field(min_length=2, max_length=50)
    team_country: CountryCode
    captain_first_name: str = Field(min_length=2, max_length=30, pattern=PERSON_NAME_PATTERN)
    captain_last_name: str = Field(min_length=2, max_length=30, pattern=PERSON_NAME_PATTERN)
    captain_email: str = Field(max_length=100, pattern=EMAIL_PATTERN)
    captain_phone: str = Field(min_length=10, max_length=20, pattern=PHONE_PATTERN)
    captain_birth_date: date
    from_province: Literal["yes", "no"]
    players_count: int = Field(ge=11, le=25)
    notes: Optional[str] = Field(default=None, max_length=500)
    privacy_accepted: bool
    rules_accepted: bool
    website: Optional[str] = None  # HONEYPOT_FIELD

    @field_validator("captain_email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("privacy_accepted", "rules_accepted")
    @classmethod
    def must_accept(cls, value: bool) -> bool:
        if not value:
            raise ValueError("must be accepted")
        return value


class RegistrationResponse(BaseModel):
    success: bool = True
    id: str
    message: str


class AnalyticsBase(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId", max_length=64)
    timestamp: Optional[datetime] = None
    time_on_page: Optional[int] = Field(default=None, alias="timeOnPage", ge=0)


class PageviewRequest(AnalyticsBase):
    page: str = Field(default="/", min_length=1, max_length=256)
    referrer: Optional[str] = Field(default=None, max_length=512)
    screen_width: Optional[int] = Field(default=None, alias="screenWidth", ge=0, le=100_000)
    screen_height: Optional[int] = Field(default=None, alias="screenHeight", ge=0, le=100_000)


class EventRequest(AnalyticsBase):
    # Anything beyond the known fields is kept as event metadata.
    model_config = ConfigDict(extra="allow", str_strip_whitespace=True, populate_by_name=True)

    category: str = Field(min_length=1, max_length=64)
    action: str = Field(min_length=1, max_length=64)
    # Long labels (error messages) are clipped on storage rather than rejected.
    label: Optional[str] = Field(default=None, max_length=4096)
    value: Optional[float] = None


class PuzzleRequest(AnalyticsBase):
    action: Literal["start", "complete"]
    completion_time: Optional[int] = Field(default=None, alias="completionTime", ge=0)
    total_clicks: Optional[int] = Field(default=None, alias="totalClicks", ge=0)


class FormRequest(AnalyticsBase):
    action: Literal["start", "submit", "error"]
    field: Optional[str] = Field(default=None, max_length=64)


class TrackResponse(BaseModel):
    success: bool = True


class UnblockRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    ip: str = Field(min_length=1, max_length=64)
    key: Optional[str] = None


class UnblockResponse(BaseModel):
    success: bool = True
    unblocked: bool
    message: str
