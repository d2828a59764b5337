from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from wastewise.api.deps import get_current_claims, require_role
from wastewise.domain.models import (
    BootstrapAdminRequest,
    LoginRequest,
    RegisterRequest,
    TokenResponse,
    UserCreate,
    UserRead,
    UserUpdate,
)
from wastewise.domain.roles import UserRole
from wastewise.infra.audit import set_audit_context
from wastewise.infra.auth import create_access_token
from wastewise.services.identity_service import AuthError, ConflictError, IdentityService, NotFoundError

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_identity_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, request: Request, service: Service) -> UserRead:
    set_audit_context(request, action="identity.register", detail={"what": {"email": payload.email}})
    try:
        return UserRead.model_validate(service.register_resident(payload))
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, request: Request, service: Service) -> UserRead:
    set_audit_context(request, action="identity.bootstrap_admin", detail={"what": {"email": payload.email}})
    try:
        return UserRead.model_validate(service.bootstrap_admin(payload))
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, service: Service) -> TokenResponse:
    try:
        user = service.login(payload.email, payload.password)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise
    token = create_access_token(user_id=user.id, role=user.role.value)
    return TokenResponse(access_token=token, user_id=user.id, role=user.role)


@router.get("/me", response_model=UserRead)
def me(claims: Claims, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(claims["sub"]))
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def create_user(payload: UserCreate, request: Request, service: Service) -> UserRead:
    set_audit_context(
        request,
        action="identity.user.create",
        detail={"what": {"email": payload.email, "role": payload.role.value}},
    )
    try:
        return UserRead.model_validate(service.create_user(payload))
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.patch(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def update_user(user_id: str, payload: UserUpdate, request: Request, service: Service) -> UserRead:
    set_audit_context(
        request,
        action="identity.user.update",
        detail={"what": {"user_id": user_id, "is_active": payload.is_active}},
    )
    try:
        return UserRead.model_validate(service.update_user(user_id, payload))
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.get(
    "/collectors",
    response_model=list[UserRead],
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def list_collectors(service: Service, active_only: bool = True) -> list[UserRead]:
    rows = service.list_collectors(active_only=active_only)
    return [UserRead.model_validate(item) for item in rows]
