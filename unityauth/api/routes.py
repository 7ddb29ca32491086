from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from unityauth.api.schemas import (
    AuthResponse,
    CreateInvitationRequest,
    Envelope,
    InvitationListResponse,
    InvitationResponse,
    InvitationUseListResponse,
    InvitationUseResponse,
    InvitationValidationResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    UserInfo,
)
from unityauth.service.auth import AuthContext, AuthResult
from unityauth.service.runtime import get_runtime
from unityauth.storage.models import InvitationToken, InvitationUse, User

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


def _client_meta(request: Request) -> tuple[Optional[str], Optional[str]]:
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


def _user_info(user: User) -> UserInfo:
    return UserInfo(
        id=user.id,
        username=user.username,
        email=user.email,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
        is_verified=user.is_verified,
        territory_code=user.territory_code,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_info(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
    )


def _invitation_response(invitation: InvitationToken) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        token=invitation.token,
        token_type=invitation.token_type,
        email=invitation.email,
        max_uses=invitation.max_uses,
        current_uses=invitation.current_uses,
        is_active=invitation.is_active,
        purpose=invitation.purpose,
        expires_at=invitation.expires_at,
        created_at=invitation.created_at,
        revoked_at=invitation.revoked_at,
    )


def _use_response(use: InvitationUse) -> InvitationUseResponse:
    return InvitationUseResponse(
        id=use.id,
        token_id=use.token_id,
        used_by_user_id=use.used_by_user_id,
        used_at=use.used_at,
        ip_address=use.ip_address,
        user_agent=use.user_agent,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account in a territory using an invitation token.

    Raises:
        400: Unknown territory or a rejected invitation (``details.reason``)
        409: Username or email already taken
    """
    runtime = get_runtime()
    ip_address, user_agent = _client_meta(request)
    result = await runtime.auth.register(
        body.territory_code,
        body.username,
        body.password,
        body.invitation_token,
        email=body.email,
        full_name=body.full_name,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with territory, username and password.

    Raises:
        400: Unknown territory
        401: Credentials rejected
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.territory_code, body.username, body.password)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.territory_code, body.refresh_token)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.me(principal)
    return Envelope(status="ok", data=ProfileResponse(**user.public_view()))


@router.post("/invitations", response_model=Envelope, status_code=201, tags=["invitations"])
async def create_invitation(
    body: CreateInvitationRequest, principal: AuthContext = Depends(get_user)
):
    """Mint an invitation token in the caller's territory."""
    runtime = get_runtime()
    invitation = runtime.invitations.create(
        principal.territory_code,
        body.token_type,
        email=body.email,
        max_uses=body.max_uses,
        expires_in_days=body.expires_in_days,
        created_by=principal.user_id,
        purpose=body.purpose,
    )
    return Envelope(status="ok", data=_invitation_response(invitation))


@router.get("/invitations", response_model=Envelope, tags=["invitations"])
async def list_invitations(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    invitations = runtime.invitations.list(principal.territory_code, principal.user_id)
    return Envelope(
        status="ok",
        data=InvitationListResponse(items=[_invitation_response(i) for i in invitations]),
    )


@router.get("/invitations/validate/{token}", response_model=Envelope, tags=["invitations"])
async def validate_invitation(
    token: str = Path(..., max_length=128),
    territory_code: str = Query(..., min_length=2, max_length=10),
    email: Optional[str] = Query(None, max_length=254),
):
    """Check an invitation token without consuming it.

    Public endpoint used by registration forms before the account exists.

    Raises:
        400: Token rejected; ``details.reason`` is one of invalid, revoked,
            exhausted, expired or email_mismatch
    """
    runtime = get_runtime()
    invitation = runtime.invitations.validate(territory_code, token, email)
    return Envelope(
        status="ok",
        data=InvitationValidationResponse(**runtime.invitations.describe(invitation)),
    )


@router.delete("/invitations/{token_id}", response_model=Envelope, tags=["invitations"])
async def revoke_invitation(
    token_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    invitation = runtime.invitations.revoke(
        principal.territory_code, token_id, principal.user_id
    )
    return Envelope(status="ok", data=_invitation_response(invitation))


@router.get("/invitations/{token_id}/uses", response_model=Envelope, tags=["invitations"])
async def invitation_uses(
    token_id: str = Path(..., max_length=64), principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    uses = runtime.invitations.usage(
        principal.territory_code, token_id, requester_id=principal.user_id
    )
    return Envelope(
        status="ok",
        data=InvitationUseListResponse(items=[_use_response(u) for u in uses]),
    )
