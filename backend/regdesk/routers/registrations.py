from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..context import AppContext, get_context
from ..schemas import RegistrationRequest, RegistrationResponse
from ..security import client_ip

router = APIRouter(prefix="/api", tags=["registrations"])

REGISTRATION_PATH = "/api/registrations"


@router.post(
    "/registrations",
    response_model=RegistrationResponse,
    responses={
        400: {"description": "Request rejected"},
        409: {"description": "Email already registered"},
        422: {"description": "Invalid registration payload"},
        429: {"description": "Too many registration attempts"},
        503: {"description": "Rate limit store unavailable"},
    },
)
async def submit_registration(
    payload: RegistrationRequest,
    request: Request,
    ctx: AppContext = Depends(get_context),
) -> RegistrationResponse:
    result = ctx.registrations.submit(
        payload,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )
    return RegistrationResponse(**result)
