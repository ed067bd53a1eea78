from __future__ import annotations

from datetime import date
import logging
from typing import TYPE_CHECKING, Any
import uuid

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .analytics import sanitize_input
from .db import as_utc
from .models import Registration
from .schemas import HONEYPOT_FIELD, RegistrationRequest

if TYPE_CHECKING:
    from .context import AppContext

logger = logging.getLogger("regdesk.registrations")

GENERIC_ERROR_DETAIL = "Something went wrong. Please try again."
RATE_LIMITED_DETAIL = "Too many registration attempts. Please try again later."
UNAVAILABLE_DETAIL = "Registration is temporarily unavailable. Please try again later."


def age_on(birth_date: date, today: date) -> int:
    years = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        years -= 1
    return years


class RegistrationService:
    def __init__(self, ctx: "AppContext") -> None:
        self.ctx = ctx

    def _check_honeypot(self, payload: RegistrationRequest, ip: str, user_agent: str) -> None:
        if not getattr(payload, HONEYPOT_FIELD):
            return
        try:
            self.ctx.audit.security_event(ip, "honeypot_filled", path="/api/registrations", user_agent=user_agent)
        except SQLAlchemyError:
            logger.exception("Failed to persist honeypot event", extra={"event": "audit_store_error", "ip": ip})
        # Bots get the same answer as any other failure.
        raise HTTPException(status_code=400, detail=GENERIC_ERROR_DETAIL)

    def _check_age(self, birth_date: date) -> None:
        settings = self.ctx.settings
        age = age_on(birth_date, as_utc(self.ctx.clock()).date())
        if settings.min_captain_age <= age <= settings.max_captain_age:
            return
        try:
            self.ctx.analytics.record_form_errors(["captain_birth_date"])
        except SQLAlchemyError:
            logger.exception("Failed to track form errors", extra={"event": "analytics_store_error"})
        message = (
            f"Captain must be at least {settings.min_captain_age} years old"
            if age < settings.min_captain_age
            else "Invalid birth date"
        )
        raise HTTPException(
            status_code=422,
            detail=[{"loc": ["body", "captain_birth_date"], "msg": message, "type": "value_error"}],
        )

    def _enforce_limit(self, key: str, max_requests: int, window_seconds: int) -> None:
        decision = self.ctx.gate.check(key, max_requests, window_seconds, fail_open=False)
        if decision.allowed:
            return
        if decision.store_error:
            raise HTTPException(status_code=503, detail=UNAVAILABLE_DETAIL)
        headers = {"Retry-After": str(decision.retry_after_seconds)} if decision.retry_after_seconds else None
        raise HTTPException(status_code=429, detail=RATE_LIMITED_DETAIL, headers=headers)

    def submit(self, payload: RegistrationRequest, ip: str, user_agent: str) -> dict[str, Any]:
        settings = self.ctx.settings
        self._check_honeypot(payload, ip, user_agent)
        self._check_age(payload.captain_birth_date)

        email = payload.captain_email
        # Both limits must pass, email first.
        self._enforce_limit(f"email:{email}", settings.registration_email_max, settings.registration_email_window_seconds)
        self._enforce_limit(f"ip:{ip}", settings.registration_ip_max, settings.registration_ip_window_seconds)

        registration_id = str(uuid.uuid4())
        team_name = sanitize_input(payload.team_name)
        try:
            with self.ctx.db.session() as session:
                session.add(
                    Registration(
                        id=registration_id,
                        team_name=team_name,
                        team_city=sanitize_input(payload.team_city),
                        team_country=payload.team_country,
                        captain_first_name=sanitize_input(payload.captain_first_name),
                        captain_last_name=sanitize_input(payload.captain_last_name),
                        captain_email=email,
                        captain_phone=sanitize_input(payload.captain_phone),
                        captain_birth_date=payload.captain_birth_date,
                        from_province=payload.from_province,
                        players_count=payload.players_count,
                        notes=sanitize_input(payload.notes) or None,
                        ip_address=ip,
                        user_agent=(user_agent or "")[:256],
                    )
                )
        except IntegrityError as exc:
            raise HTTPException(status_code=409, detail="A registration with this email already exists") from exc

        # Registration is already committed at this point.
        try:
            self.ctx.audit.record(
                "registration_created",
                entity_type="registration",
                entity_id=registration_id,
                new_value={"team_name": team_name},
                ip=ip,
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to persist registration audit",
                extra={"event": "audit_store_error", "ip": ip},
            )
        logger.info("Registration created", extra={"event": "registration_created", "ip": ip})
        return {
            "success": True,
            "id": registration_id,
            "message": "Registration received. We will be in touch shortly.",
        }
