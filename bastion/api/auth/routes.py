"""
Authentication Routes

API endpoints for registration, login and API keys.
"""

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.access.gate import enforce_ip_blocklist, get_current_principal, require_permission
from bastion.api.audit.context import RequestContext
from bastion.api.audit.events import (
    ApiKeyChangePayload,
    AuditAction,
    AuditOutcome,
    AuditResource,
    AuthFailurePayload,
    AuthMethod,
)
from bastion.api.audit.recorder import AuditRecorder
from bastion.api.auth.principal import Principal
from bastion.api.auth.schemas import (
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyResponse,
    AuthResponse,
    UserLoginRequest,
    UserRegisterRequest,
    UserResponse,
)
from bastion.api.auth.service import AuthService
from bastion.api.db.session import get_db
from bastion.api.dependencies import (
    get_audit_recorder,
    get_login_rate_limiter,
    get_request_context,
)
from bastion.api.errors import ConflictError, RateLimitedError, UnauthorizedError
from bastion.api.services.rate_limit import SlidingWindowRateLimiter


router = APIRouter()


def get_auth_service(db: AsyncSession = Depends(get_db)) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db)


@router.post(
    "/register",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
    dependencies=[Depends(enforce_ip_blocklist)],
)
async def register(
    data: UserRegisterRequest,
    auth_service: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> UserResponse:
    """
    Register a new user account.

    - **email**: Valid email address (must be unique)
    - **password**: Minimum 8 characters
    - **name**: Optional display name

    The first account registered becomes an administrator.
    """
    try:
        user, is_first = await auth_service.register(data, context.ip_address)
    except ConflictError as e:
        recorder.record(
            context,
            AuditAction.REGISTER,
            AuditResource.USER,
            AuditOutcome.failure(e.message, email=data.email),
        )
        raise

    await auth_service.db.commit()
    recorder.record(
        context,
        AuditAction.REGISTER,
        AuditResource.USER,
        AuditOutcome.success(resource_id=user.id, email=user.email, first_user=is_first),
    )
    return UserResponse.model_validate(user)


@router.post(
    "/login",
    response_model=AuthResponse,
    summary="Login and get an access token",
    dependencies=[Depends(enforce_ip_blocklist)],
)
async def login(
    data: UserLoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    limiter: SlidingWindowRateLimiter = Depends(get_login_rate_limiter),
) -> AuthResponse:
    """
    Authenticate with email and password.

    Attempts are rate limited per client address.
    """
    decision = limiter.hit(f"login:{context.ip_address or 'unknown'}")
    if not decision.allowed:
        recorder.record(
            context,
            AuditAction.RATE_LIMIT_EXCEEDED,
            AuditResource.AUTH,
            AuditOutcome.failure(
                "Too many login attempts",
                payload=AuthFailurePayload(
                    attempted_method=AuthMethod.UNAUTHENTICATED,
                    reason="rate_limited",
                    email=data.email,
                ),
            ),
        )
        raise RateLimitedError("Too many login attempts", retry_after=decision.retry_after)

    user = await auth_service.authenticate(data.email, data.password)

    if not user:
        recorder.record(
            context,
            AuditAction.LOGIN_FAILED,
            AuditResource.AUTH,
            AuditOutcome.failure(
                "Invalid email or password",
                payload=AuthFailurePayload(
                    attempted_method=AuthMethod.UNAUTHENTICATED,
                    reason="invalid_credentials",
                    email=data.email,
                ),
            ),
        )
        raise UnauthorizedError("Invalid email or password")

    access_token, expires_in = auth_service.create_token(user)

    await auth_service.db.commit()
    context.principal = Principal(user=user, auth_method=AuthMethod.JWT)
    recorder.record(context, AuditAction.LOGIN, AuditResource.AUTH, AuditOutcome.success(resource_id=user.id))

    return AuthResponse(
        access_token=access_token,
        expires_in=expires_in,
        user=UserResponse.model_validate(user),
    )


@router.get("/me", response_model=UserResponse, summary="Current user")
async def me(principal: Principal = Depends(get_current_principal)) -> UserResponse:
    return UserResponse.model_validate(principal.user)


# ==================== API Keys ====================


@router.post(
    "/api-keys",
    response_model=ApiKeyCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an API key",
)
async def create_api_key(
    data: ApiKeyCreateRequest,
    principal: Principal = Depends(require_permission("api-keys", "create")),
    auth_service: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> ApiKeyCreatedResponse:
    """
    Create an API key for the calling user.

    The raw key is returned in this response only.
    """
    raw_key, api_key = await auth_service.create_api_key(principal.user, data.name, data.expires_at)

    await auth_service.db.commit()
    recorder.record(
        context,
        AuditAction.CREATE,
        AuditResource.API_KEY,
        AuditOutcome.success(
            resource_id=api_key.id,
            payload=ApiKeyChangePayload(api_key_id=api_key.id, name=api_key.name, active=True),
        ),
    )

    response = ApiKeyResponse.model_validate(api_key)
    return ApiKeyCreatedResponse(**response.model_dump(), key=raw_key)


@router.get("/api-keys", response_model=List[ApiKeyResponse], summary="List own API keys")
async def list_api_keys(
    principal: Principal = Depends(require_permission("api-keys", "read")),
    auth_service: AuthService = Depends(get_auth_service),
) -> List[ApiKeyResponse]:
    keys = await auth_service.list_api_keys(principal.id)
    return [ApiKeyResponse.model_validate(k) for k in keys]


@router.delete("/api-keys/{key_id}", response_model=ApiKeyResponse, summary="Deactivate an API key")
async def delete_api_key(
    key_id: int,
    principal: Principal = Depends(require_permission("api-keys", "delete")),
    auth_service: AuthService = Depends(get_auth_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> ApiKeyResponse:
    api_key = await auth_service.deactivate_api_key(key_id, principal.id, principal.is_admin)

    await auth_service.db.commit()
    recorder.record(
        context,
        AuditAction.DELETE,
        AuditResource.API_KEY,
        AuditOutcome.success(
            resource_id=api_key.id,
            payload=ApiKeyChangePayload(api_key_id=api_key.id, name=api_key.name, active=False),
        ),
    )
    return ApiKeyResponse.model_validate(api_key)
