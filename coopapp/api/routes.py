from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response
from pydantic import BaseModel

from coopapp.api.schemas import (
    AdminCreateUserRequest,
    Envelope,
    LoginChallengeResponse,
    LoginRequest,
    OrganizationCreateRequest,
    OrganizationListResponse,
    OrganizationResponse,
    OrganizationUpdateRequest,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    RoleChangeRequest,
    SessionResponse,
    TransactionCreateRequest,
    TransactionListResponse,
    TransactionResponse,
    TransactionStatusRequest,
    UserListResponse,
    VerifyAccountRequest,
    VerifyCodeRequest,
    to_public_view,
)
from coopapp.logging import bind_identity, get_logger
from coopapp.service.auth import AuthContext
from coopapp.service.errors import AuthenticationError
from coopapp.service.roles import is_admin, is_root
from coopapp.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ADMINS_ONLY_MESSAGE = "Forbidden: Admins only."
ROOT_ONLY_MESSAGE = "Forbidden: Root access required."

Tenant = Annotated[str, Path(min_length=1, max_length=64, description="Organization name")]


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


def _ok(payload: BaseModel | dict | None = None) -> Envelope:
    data = payload.model_dump(by_alias=True, mode="json") if isinstance(payload, BaseModel) else payload
    return Envelope(status="ok", data=data)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> int:
    """Consume one token for ``key``; raise 429 when the bucket is empty.

    Returns the remaining budget.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", key=key, retry_after=reset_seconds)
        raise _http_error(
            "rate_limited",
            "Too many requests, try again later",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )
    return remaining


def _login_key(prefix: str, tenant: Optional[str], identifier: str) -> str:
    return f"{prefix}:{tenant or '_root'}:{identifier.strip().lower()}"


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# identity dependencies


async def get_identity(request: Request) -> AuthContext:
    """Authenticate the request and attach the identity to ``request.state``."""
    runtime = get_runtime()
    identity = runtime.auth.authenticate_request(request)
    request.state.identity = identity
    bind_identity(identity.user_id, identity.tenant_id, identity.role)
    return identity


async def get_optional_identity(request: Request) -> Optional[AuthContext]:
    runtime = get_runtime()
    try:
        identity = runtime.auth.authenticate_request(request)
    except AuthenticationError:
        return None
    request.state.identity = identity
    return identity


async def get_admin_identity(identity: AuthContext = Depends(get_identity)) -> AuthContext:
    if not is_admin(identity.role):
        raise _http_error("forbidden", ADMINS_ONLY_MESSAGE, status_code=403)
    return identity


async def get_root_identity(identity: AuthContext = Depends(get_identity)) -> AuthContext:
    if not is_root(identity.role):
        raise _http_error("forbidden", ROOT_ONLY_MESSAGE, status_code=403)
    return identity


async def _admin_budget(runtime, identity: AuthContext) -> None:
    await _enforce_rate_limit(
        runtime,
        f"admin:{identity.user_id}",
        runtime.settings.admin_rate_limit_per_minute,
        60,
    )


# login flow shared by the organization and root realms


async def _submit_credentials(tenant: Optional[str], body: LoginRequest) -> Envelope:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        _login_key("login", tenant, body.identifier),
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    issued = await runtime.auth.submit_credentials(tenant, body.identifier, body.password)
    return _ok(LoginChallengeResponse(expires_in_seconds=issued.expires_in_seconds))


async def _verify_code(
    tenant: Optional[str], body: VerifyCodeRequest, response: Response
) -> Envelope:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        _login_key("login_verify", tenant, body.identifier),
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user, token = await runtime.auth.verify_two_factor(tenant, body.identifier, body.code)
    runtime.tokens.attach_to_transport(response, token)
    return _ok(
        SessionResponse(
            user=to_public_view(user),
            token=token,
            expires_in=runtime.tokens.session_ttl_seconds,
        )
    )


def _logout(identity: Optional[AuthContext], response: Response) -> Envelope:
    runtime = get_runtime()
    runtime.auth.logout(identity)
    runtime.tokens.revoke(response)
    return _ok({"message": "Logged out"})


@router.post("/organizations/{tenant}/users/login-2fa", response_model=Envelope, tags=["auth"])
async def login_two_factor(body: LoginRequest, tenant: Tenant):
    """Check credentials and email a one-time code.

    Every credential failure returns the same 401 body.
    """
    return await _submit_credentials(tenant, body)


@router.post(
    "/organizations/{tenant}/users/login-2fa/verify", response_model=Envelope, tags=["auth"]
)
async def verify_login_code(body: VerifyCodeRequest, response: Response, tenant: Tenant):
    """Exchange a valid code for a session token (cookie and Authorization header)."""
    return await _verify_code(tenant, body, response)


@router.put("/organizations/{tenant}/users/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    tenant: Tenant,
    identity: Optional[AuthContext] = Depends(get_optional_identity),
):
    return _logout(identity, response)


@router.post("/users/login-2fa", response_model=Envelope, tags=["auth"])
async def root_login_two_factor(body: LoginRequest):
    return await _submit_credentials(None, body)


@router.post("/users/login-2fa/verify", response_model=Envelope, tags=["auth"])
async def root_verify_login_code(body: VerifyCodeRequest, response: Response):
    return await _verify_code(None, body, response)


@router.put("/users/logout", response_model=Envelope, tags=["auth"])
async def root_logout(
    response: Response, identity: Optional[AuthContext] = Depends(get_optional_identity)
):
    return _logout(identity, response)


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def root_me(identity: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    return _ok(to_public_view(runtime.members.get_me(identity)))


# self-service


@router.post("/organizations/{tenant}/users/register", response_model=Envelope, tags=["users"])
async def register(body: RegisterRequest, request: Request, tenant: Tenant):
    """Guest sign-up. The account stays inactive until an admin activates it."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{tenant}:{_client_host(request)}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    user = await runtime.members.register(
        tenant,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        user_name=body.user_name,
        phone_number=body.phone_number,
    )
    return _ok(to_public_view(user))


@router.put(
    "/organizations/{tenant}/users/verify-account", response_model=Envelope, tags=["users"]
)
async def verify_account(body: VerifyAccountRequest, request: Request, tenant: Tenant):
    """Set the first password of an admin-created account from its emailed link."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify_account:{tenant}:{_client_host(request)}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    user = await runtime.members.verify_account(tenant, body.token, body.password)
    return _ok(to_public_view(user))


@router.get("/organizations/{tenant}/users/me", response_model=Envelope, tags=["users"])
async def get_me(tenant: Tenant, identity: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    return _ok(to_public_view(runtime.members.get_me(identity, tenant)))


@router.put("/organizations/{tenant}/users/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: ProfileUpdateRequest,
    tenant: Tenant,
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    user = runtime.members.update_profile(
        identity,
        identity.user_id,
        organization_name=tenant,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _ok(to_public_view(user))


@router.put("/organizations/{tenant}/users/me/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: PasswordChangeRequest,
    tenant: Tenant,
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    runtime.members.change_password(
        identity, body.current_password, body.new_password, organization_name=tenant
    )
    return _ok({"message": "Password updated"})


# administration


@router.get("/organizations/{tenant}/users", response_model=Envelope, tags=["admin"])
async def list_members(
    tenant: Tenant,
    role: Optional[str] = Query(None, max_length=20),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    q: Optional[str] = Query(None, max_length=100),
    limit: int = Query(100, ge=1, le=500),
    identity: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    users = runtime.members.list_members(
        identity, tenant, role=role, is_active=is_active, q=q, limit=limit
    )
    return _ok(UserListResponse(items=[to_public_view(u) for u in users]))


@router.post("/organizations/{tenant}/users", response_model=Envelope, tags=["admin"])
async def admin_create_member(
    body: AdminCreateUserRequest,
    tenant: Tenant,
    identity: AuthContext = Depends(get_admin_identity),
):
    """Create an active, unverified member and email a verification link."""
    runtime = get_runtime()
    await _admin_budget(runtime, identity)
    user = await runtime.members.admin_create(
        identity,
        tenant,
        role=body.role.value,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        user_name=body.user_name,
        phone_number=body.phone_number,
    )
    return _ok(to_public_view(user))


@router.get("/organizations/{tenant}/users/{user_id}", response_model=Envelope, tags=["admin"])
async def get_member(
    tenant: Tenant,
    user_id: str = Path(..., max_length=64),
    identity: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    return _ok(to_public_view(runtime.members.get_member(identity, tenant, user_id)))


@router.put("/organizations/{tenant}/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_member_profile(
    body: ProfileUpdateRequest,
    tenant: Tenant,
    user_id: str = Path(..., max_length=64),
    identity: AuthContext = Depends(get_identity),
):
    """Profile edits are self-only, even for admins."""
    runtime = get_runtime()
    user = runtime.members.update_profile(
        identity,
        user_id,
        organization_name=tenant,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _ok(to_public_view(user))


@router.put(
    "/organizations/{tenant}/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"]
)
async def deactivate_member(
    tenant: Tenant,
    user_id: str = Path(..., max_length=64),
    identity: AuthContext = Depends(get_identity),
):
    # Role is checked inside the service so the self-action guard answers first
    runtime = get_runtime()
    await _admin_budget(runtime, identity)
    return _ok(to_public_view(runtime.members.deactivate(identity, tenant, user_id)))


@router.put(
    "/organizations/{tenant}/users/{user_id}/activate", response_model=Envelope, tags=["admin"]
)
async def activate_member(
    tenant: Tenant,
    user_id: str = Path(..., max_length=64),
    identity: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    await _admin_budget(runtime, identity)
    return _ok(to_public_view(runtime.members.activate(identity, tenant, user_id)))


@router.put("/organizations/{tenant}/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def change_member_role(
    body: RoleChangeRequest,
    tenant: Tenant,
    user_id: str = Path(..., max_length=64),
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    await _admin_budget(runtime, identity)
    user = runtime.members.change_role(identity, tenant, user_id, body.role.value)
    return _ok(to_public_view(user))


@router.delete("/organizations/{tenant}/users/{user_id}", response_model=Envelope, tags=["admin"])
async def delete_member(
    tenant: Tenant,
    user_id: str = Path(..., max_length=64),
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    await _admin_budget(runtime, identity)
    runtime.members.delete(identity, tenant, user_id)
    return _ok({"id": user_id, "deleted": True})


# organizations


@router.post("/organizations", response_model=Envelope, tags=["organizations"])
async def create_organization(
    body: OrganizationCreateRequest, identity: AuthContext = Depends(get_root_identity)
):
    runtime = get_runtime()
    org = runtime.organizations.create(
        identity,
        body.name,
        label=body.label,
        description=body.description,
        logo_url=body.logo_url,
    )
    return _ok(OrganizationResponse.from_record(org))


@router.get("/organizations", response_model=Envelope, tags=["organizations"])
async def list_organizations(
    limit: int = Query(100, ge=1, le=500),
    identity: AuthContext = Depends(get_root_identity),
):
    runtime = get_runtime()
    orgs = runtime.organizations.list(identity, limit=limit)
    return _ok(OrganizationListResponse(items=[OrganizationResponse.from_record(o) for o in orgs]))


@router.get("/organizations/me", response_model=Envelope, tags=["organizations"])
async def my_organization(identity: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    return _ok(OrganizationResponse.from_record(runtime.organizations.get_mine(identity)))


@router.get("/organizations/{tenant}", response_model=Envelope, tags=["organizations"])
async def get_organization(tenant: Tenant):
    """Public branding lookup used by the login page; active organizations only."""
    runtime = get_runtime()
    return _ok(OrganizationResponse.from_record(runtime.organizations.get_public(tenant)))


@router.put("/organizations/{tenant}", response_model=Envelope, tags=["organizations"])
async def update_organization(
    body: OrganizationUpdateRequest,
    tenant: Tenant,
    identity: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    org = runtime.organizations.update(
        identity,
        tenant,
        label=body.label,
        description=body.description,
        logo_url=body.logo_url,
    )
    return _ok(OrganizationResponse.from_record(org))


@router.put("/organizations/{tenant}/deactivate", response_model=Envelope, tags=["organizations"])
async def deactivate_organization(
    tenant: Tenant, identity: AuthContext = Depends(get_root_identity)
):
    runtime = get_runtime()
    org = runtime.organizations.set_active(identity, tenant, False)
    return _ok(OrganizationResponse.from_record(org))


@router.put("/organizations/{tenant}/reactivate", response_model=Envelope, tags=["organizations"])
async def reactivate_organization(
    tenant: Tenant, identity: AuthContext = Depends(get_root_identity)
):
    runtime = get_runtime()
    org = runtime.organizations.set_active(identity, tenant, True)
    return _ok(OrganizationResponse.from_record(org))


@router.delete("/organizations/{tenant}", response_model=Envelope, tags=["organizations"])
async def delete_organization(
    tenant: Tenant, identity: AuthContext = Depends(get_root_identity)
):
    runtime = get_runtime()
    runtime.organizations.delete(identity, tenant)
    return _ok({"name": tenant, "deleted": True})


# transactions


@router.post("/organizations/{tenant}/transactions", response_model=Envelope, tags=["transactions"])
async def create_transaction(
    body: TransactionCreateRequest,
    tenant: Tenant,
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    txn = runtime.transactions.create(
        identity,
        tenant,
        amount=body.amount,
        type=body.type,
        currency=body.currency,
        method=body.method,
        description=body.description,
        user_id=body.user_id,
    )
    return _ok(TransactionResponse.from_record(txn))


@router.get("/organizations/{tenant}/transactions", response_model=Envelope, tags=["transactions"])
async def list_transactions(
    tenant: Tenant,
    status: Optional[str] = Query(None, max_length=20),
    limit: int = Query(100, ge=1, le=500),
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    txns = runtime.transactions.list(identity, tenant, status=status, limit=limit)
    return _ok(TransactionListResponse(items=[TransactionResponse.from_record(t) for t in txns]))


@router.get(
    "/organizations/{tenant}/transactions/me", response_model=Envelope, tags=["transactions"]
)
async def list_my_transactions(
    tenant: Tenant,
    status: Optional[str] = Query(None, max_length=20),
    limit: int = Query(100, ge=1, le=500),
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    txns = runtime.transactions.list_own(identity, tenant, status=status, limit=limit)
    return _ok(TransactionListResponse(items=[TransactionResponse.from_record(t) for t in txns]))


@router.get(
    "/organizations/{tenant}/transactions/users/{user_id}",
    response_model=Envelope,
    tags=["transactions"],
)
async def list_member_transactions(
    tenant: Tenant,
    user_id: str = Path(..., max_length=64),
    status: Optional[str] = Query(None, max_length=20),
    limit: int = Query(100, ge=1, le=500),
    identity: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    txns = runtime.transactions.list_for_member(
        identity, tenant, user_id, status=status, limit=limit
    )
    return _ok(TransactionListResponse(items=[TransactionResponse.from_record(t) for t in txns]))


@router.get(
    "/organizations/{tenant}/transactions/{transaction_id}",
    response_model=Envelope,
    tags=["transactions"],
)
async def get_transaction(
    tenant: Tenant,
    transaction_id: str = Path(..., max_length=64),
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    txn = runtime.transactions.get(identity, tenant, transaction_id)
    return _ok(TransactionResponse.from_record(txn))


@router.put(
    "/organizations/{tenant}/transactions/{transaction_id}/status",
    response_model=Envelope,
    tags=["transactions"],
)
async def update_transaction_status(
    body: TransactionStatusRequest,
    tenant: Tenant,
    transaction_id: str = Path(..., max_length=64),
    identity: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    txn = runtime.transactions.update_status(identity, tenant, transaction_id, body.status)
    return _ok(TransactionResponse.from_record(txn))


@router.delete(
    "/organizations/{tenant}/transactions/{transaction_id}",
    response_model=Envelope,
    tags=["transactions"],
)
async def delete_transaction(
    tenant: Tenant,
    transaction_id: str = Path(..., max_length=64),
    identity: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    runtime.transactions.delete(identity, tenant, transaction_id)
    return _ok({"id": transaction_id, "deleted": True})
