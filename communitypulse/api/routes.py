from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import (
    APIRouter,
    Depends,
    Header,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
)

from communitypulse.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    CommentCreateRequest,
    CurrentTenantResponse,
    Envelope,
    IssueCreateRequest,
    IssueStatusRequest,
    LoginRequest,
    LogoutResponse,
    MarkAllReadResponse,
    MemberListResponse,
    MemberRoleRequest,
    MemberStatusRequest,
    NotificationListResponse,
    OperatorUserUpdateRequest,
    PlatformStatsResponse,
    PrincipalResponse,
    ProfileUpdateRequest,
    RealtimeJoin,
    RegisterRequest,
    RevocationStatsResponse,
    TenantCreateRequest,
    TenantResponse,
    TenantSettingsRequest,
    TenantStatusRequest,
    TenantSummary,
)
from communitypulse.logging import get_logger, set_correlation_id
from communitypulse.service.auth import AuthContext
from communitypulse.service.authz import Role, require_role, require_tenant_membership
from communitypulse.service.errors import (
    AuthenticationError,
    NotFoundError,
    ServiceError,
    TenantNotFoundError,
    ValidationError,
)
from communitypulse.service.issues import OPEN_ISSUE_STATUSES
from communitypulse.service.runtime import get_runtime
from communitypulse.service.tenancy import RequestScope
from communitypulse.storage.models import Tenant, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

TENANT_HEADER = "X-Community-Subdomain"
TENANT_QUERY = "communityId"
WS_UNAUTHORIZED = 4401


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    reason: Optional[str] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message, "reason": reason or code},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _tenant_summary(tenant: Optional[Tenant]) -> Optional[TenantSummary]:
    if tenant is None:
        return None
    return TenantSummary(
        id=tenant.id, name=tenant.name, subdomain=tenant.key, settings=tenant.settings
    )


def _tenant_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        subdomain=tenant.key,
        contact_email=tenant.contact_email,
        description=tenant.description,
        settings=tenant.settings,
        is_active=tenant.is_active,
        created_at=tenant.created_at.isoformat(),
    )


def _principal_response(user: User, tenant: Optional[Tenant]) -> PrincipalResponse:
    return PrincipalResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        is_active=user.is_active,
        apartment_number=user.apartment_number,
        phone=user.phone,
        avatar=user.avatar,
        community=_tenant_summary(tenant),
    )


# -- request pipeline dependencies ---------------------------------------------


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_required_scope(
    principal: AuthContext = Depends(get_principal),
    x_community_subdomain: Optional[str] = Header(
        None, convert_underscores=False, alias=TENANT_HEADER
    ),
    community_id: Optional[str] = Query(None, alias=TENANT_QUERY, max_length=128),
) -> RequestScope:
    runtime = get_runtime()
    return runtime.tenancy.resolve(
        principal.principal,
        tenant_key=x_community_subdomain,
        tenant_id=community_id,
        require=True,
    )


async def get_member_scope(scope: RequestScope = Depends(get_required_scope)) -> RequestScope:
    require_tenant_membership(scope.principal, scope.tenant)
    return scope


async def get_admin_scope(scope: RequestScope = Depends(get_required_scope)) -> RequestScope:
    require_role(scope.principal, Role.TENANT_ADMIN)
    require_tenant_membership(scope.principal, scope.tenant)
    return scope


async def get_operator(principal: AuthContext = Depends(get_principal)) -> AuthContext:
    require_role(principal.principal, Role.PLATFORM_OPERATOR)
    return principal


# -- auth ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user, tenant, token = await runtime.auth.register(
        name=body.name,
        email=body.email,
        password=body.password,
        community_subdomain=body.community_subdomain,
        apartment_number=body.apartment_number,
        phone=body.phone,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=token,
            expires_in=runtime.issuer.ttl_seconds,
            user=_principal_response(user, tenant),
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    user, tenant, token = await runtime.auth.login(body.email, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=token,
            expires_in=runtime.issuer.ttl_seconds,
            user=_principal_response(user, tenant),
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=_principal_response(principal.principal, principal.home_tenant),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """Revoke the presented credential.

    Only the signature is checked here; an expired credential is accepted and
    the call succeeds without writing a revocation entry.
    """
    runtime = get_runtime()
    revoked = await runtime.auth.logout(authorization)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    updated = runtime.store.update_user_profile(
        principal.user_id,
        name=body.name,
        apartment_number=body.apartment_number,
        phone=body.phone,
        avatar=body.avatar,
    )
    if updated is None:
        raise NotFoundError("User not found", reason="user_not_found")
    logger.info(
        "profile_updated",
        user_id=principal.user_id,
        fields=sorted(body.model_dump(exclude_none=True)),
    )
    return Envelope(status="ok", data=_principal_response(updated, principal.home_tenant))


@router.put("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"changed": True})


# -- communities ---------------------------------------------------------------


@router.post("/communities", response_model=Envelope, status_code=201, tags=["communities"])
async def create_community(
    body: TenantCreateRequest, operator: AuthContext = Depends(get_operator)
):
    runtime = get_runtime()
    tenant = runtime.store.create_tenant(
        body.subdomain,
        body.name,
        contact_email=body.contact_email,
        description=body.description,
        settings=body.merged_settings(),
        created_by=operator.user_id,
    )
    logger.info("tenant_created", tenant_id=tenant.id, key=tenant.key, actor=operator.user_id)
    return Envelope(status="ok", data=_tenant_response(tenant))


@router.get("/communities", response_model=Envelope, tags=["communities"])
async def list_communities(operator: AuthContext = Depends(get_operator)):
    runtime = get_runtime()
    tenants = runtime.store.list_tenants()
    return Envelope(status="ok", data=[_tenant_response(t) for t in tenants])


@router.get("/communities/current", response_model=Envelope, tags=["communities"])
async def current_community(scope: RequestScope = Depends(get_member_scope)):
    runtime = get_runtime()
    tenant = scope.tenant
    stats = {
        "members": runtime.store.count_users(tenant.id),
        "issues": runtime.store.count_issues(tenant.id),
        "open_issues": runtime.store.count_issues(tenant.id, status="open"),
    }
    return Envelope(
        status="ok",
        data=CurrentTenantResponse(community=_tenant_response(tenant), stats=stats),
    )


@router.patch("/communities/{tenant_id}/status", response_model=Envelope, tags=["communities"])
async def set_community_status(
    tenant_id: str,
    body: TenantStatusRequest,
    operator: AuthContext = Depends(get_operator),
):
    runtime = get_runtime()
    tenant = runtime.store.set_tenant_active(tenant_id, body.is_active)
    if tenant is None:
        raise NotFoundError("Community not found", reason="tenant_not_found")
    logger.info(
        "tenant_status_changed",
        tenant_id=tenant.id,
        is_active=tenant.is_active,
        actor=operator.user_id,
    )
    return Envelope(status="ok", data=_tenant_response(tenant))


@router.put("/communities/settings", response_model=Envelope, tags=["communities"])
async def update_community_settings(
    body: TenantSettingsRequest, scope: RequestScope = Depends(get_admin_scope)
):
    runtime = get_runtime()
    settings = body.apply_to(scope.tenant.settings)
    tenant = runtime.store.update_tenant_settings(scope.tenant_id, settings)
    if tenant is None:
        raise NotFoundError("Community not found", reason="tenant_not_found")
    logger.info(
        "tenant_settings_updated",
        tenant_id=tenant.id,
        fields=sorted(body.model_dump(exclude_none=True)),
        actor=scope.principal.id,
    )
    return Envelope(status="ok", data=_tenant_response(tenant))


@router.get("/communities/members", response_model=Envelope, tags=["communities"])
async def list_community_members(
    role: Optional[str] = Query(None, pattern="^(tenant_member|tenant_admin)$"),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    scope: RequestScope = Depends(get_admin_scope),
):
    runtime = get_runtime()
    members, total = runtime.store.list_members(
        scope.tenant_id,
        role=role,
        search=search,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return Envelope(
        status="ok",
        data=MemberListResponse(
            members=[_principal_response(m, scope.tenant) for m in members],
            total=total,
            page=page,
            total_pages=(total + limit - 1) // limit,
        ),
    )


def _member_in_scope(runtime, user_id: str, scope: RequestScope) -> User:
    member = runtime.store.get_user(user_id)
    if member is None or member.tenant_id != scope.tenant_id:
        raise NotFoundError("User not found", reason="user_not_found")
    return member


@router.put("/communities/members/{user_id}/status", response_model=Envelope, tags=["communities"])
async def set_member_status(
    user_id: str,
    body: MemberStatusRequest,
    scope: RequestScope = Depends(get_admin_scope),
):
    runtime = get_runtime()
    _member_in_scope(runtime, user_id, scope)
    if user_id == scope.principal.id and not body.is_active:
        raise _http_error(
            "validation_error",
            "cannot deactivate yourself",
            status_code=400,
            reason="self_deactivation",
        )
    updated = runtime.store.set_user_active(user_id, body.is_active)
    logger.info(
        "member_status_changed",
        user_id=user_id,
        tenant_id=scope.tenant_id,
        is_active=body.is_active,
        actor=scope.principal.id,
    )
    return Envelope(status="ok", data=_principal_response(updated, scope.tenant))


@router.put("/communities/members/{user_id}/role", response_model=Envelope, tags=["communities"])
async def set_member_role(
    user_id: str,
    body: MemberRoleRequest,
    scope: RequestScope = Depends(get_admin_scope),
):
    runtime = get_runtime()
    member = _member_in_scope(runtime, user_id, scope)
    if member.role == Role.PLATFORM_OPERATOR.value:
        raise _http_error(
            "forbidden",
            "cannot change an operator's role",
            status_code=403,
            reason="operator_role_immutable",
        )
    updated = runtime.store.update_user_role(user_id, body.role)
    logger.info(
        "member_role_changed",
        user_id=user_id,
        tenant_id=scope.tenant_id,
        role=body.role,
        actor=scope.principal.id,
    )
    return Envelope(status="ok", data=_principal_response(updated, scope.tenant))


# -- issues --------------------------------------------------------------------


@router.get("/issues", response_model=Envelope, tags=["issues"])
async def list_issues(
    status: Optional[str] = Query(None, max_length=32),
    limit: int = Query(50, ge=1, le=200),
    scope: RequestScope = Depends(get_member_scope),
):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=runtime.issues.list(scope.tenant, status=status, limit=limit)
    )


@router.post("/issues", response_model=Envelope, status_code=201, tags=["issues"])
async def create_issue(body: IssueCreateRequest, scope: RequestScope = Depends(get_member_scope)):
    runtime = get_runtime()
    issue = runtime.issues.create(
        scope.principal,
        scope.tenant,
        title=body.title,
        description=body.description,
        category=body.category,
    )
    return Envelope(status="ok", data=issue)


@router.get("/issues/{issue_id}", response_model=Envelope, tags=["issues"])
async def get_issue(issue_id: str, scope: RequestScope = Depends(get_member_scope)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.issues.get(issue_id, scope.tenant))


@router.put("/issues/{issue_id}/status", response_model=Envelope, tags=["issues"])
async def update_issue_status(
    issue_id: str,
    body: IssueStatusRequest,
    scope: RequestScope = Depends(get_admin_scope),
):
    runtime = get_runtime()
    issue = runtime.issues.update_status(
        scope.principal,
        scope.tenant,
        issue_id,
        status=body.status,
        assigned_to=body.assigned_to,
        note=body.note,
    )
    return Envelope(status="ok", data=issue)


@router.get("/issues/{issue_id}/comments", response_model=Envelope, tags=["issues"])
async def list_comments(issue_id: str, scope: RequestScope = Depends(get_member_scope)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.issues.list_comments(issue_id, scope.tenant))


@router.post("/issues/{issue_id}/comments", response_model=Envelope, status_code=201, tags=["issues"])
async def add_comment(
    issue_id: str,
    body: CommentCreateRequest,
    scope: RequestScope = Depends(get_member_scope),
):
    runtime = get_runtime()
    comment = runtime.issues.add_comment(
        scope.principal, scope.tenant, issue_id, content=body.content
    )
    return Envelope(status="ok", data=comment)


# -- notifications -------------------------------------------------------------


@router.get("/notifications", response_model=Envelope, tags=["notifications"])
async def list_notifications(
    limit: Optional[int] = Query(None, ge=1, le=100),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    result = runtime.notifications.list_unread(principal.user_id, limit=limit)
    return Envelope(status="ok", data=NotificationListResponse(**result))


@router.post("/notifications/read-all", response_model=Envelope, tags=["notifications"])
async def mark_all_notifications_read(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    updated = runtime.notifications.mark_all_read(principal.user_id)
    return Envelope(status="ok", data=MarkAllReadResponse(updated=updated))


@router.post("/notifications/{notification_id}/read", response_model=Envelope, tags=["notifications"])
async def mark_notification_read(
    notification_id: str, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=runtime.notifications.mark_read(notification_id, principal.user_id),
    )


# -- operations ----------------------------------------------------------------


def _revocation_backend_name(runtime) -> str:
    return "redis" if runtime.cache is not None else "memory"


@router.get("/admin/revocations", response_model=Envelope, tags=["admin"])
async def revocation_stats(operator: AuthContext = Depends(get_operator)):
    runtime = get_runtime()
    entries = await runtime.revocations.size()
    return Envelope(
        status="ok",
        data=RevocationStatsResponse(entries=entries, backend=_revocation_backend_name(runtime)),
    )


@router.delete("/admin/revocations", response_model=Envelope, tags=["admin"])
async def clear_revocations(operator: AuthContext = Depends(get_operator)):
    runtime = get_runtime()
    removed = await runtime.revocations.clear()
    logger.warning("revocations_cleared_by_operator", actor=operator.user_id, removed=removed)
    return Envelope(status="ok", data={"removed": removed})


@router.get("/admin/stats", response_model=Envelope, tags=["admin"])
async def platform_stats(operator: AuthContext = Depends(get_operator)):
    runtime = get_runtime()
    stats = runtime.store.platform_stats(OPEN_ISSUE_STATUSES)
    return Envelope(status="ok", data=PlatformStatsResponse(**stats))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_platform_users(
    role: Optional[str] = Query(
        None, pattern="^(tenant_member|tenant_admin|platform_operator)$"
    ),
    limit: int = Query(100, ge=1, le=500),
    operator: AuthContext = Depends(get_operator),
):
    runtime = get_runtime()
    tenants = {t.id: t for t in runtime.store.list_tenants()}
    users = runtime.store.list_users(role=role, limit=limit)
    return Envelope(
        status="ok",
        data=[_principal_response(u, tenants.get(u.tenant_id)) for u in users],
    )


@router.put("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def update_platform_user(
    user_id: str,
    body: OperatorUserUpdateRequest,
    operator: AuthContext = Depends(get_operator),
):
    """Change any account's role, community or active flag.

    Every role below operator needs a community. Operators cannot demote or
    deactivate themselves.
    """
    runtime = get_runtime()
    user = runtime.store.get_user(user_id)
    if user is None:
        raise NotFoundError("User not found", reason="user_not_found")
    current_role, current_tenant_id = user.role, user.tenant_id

    tenant_id = current_tenant_id
    if "community_id" in body.model_fields_set:
        tenant_id = body.community_id or None
        if tenant_id is not None and runtime.store.get_tenant(tenant_id) is None:
            raise TenantNotFoundError("Community not found")
    role = body.role or current_role
    if role != Role.PLATFORM_OPERATOR.value and tenant_id is None:
        raise ValidationError(
            "a community is required for this role",
            reason="tenant_required",
            detail={"field": "community_id"},
        )
    if user_id == operator.user_id and (role != current_role or body.is_active is False):
        raise ValidationError(
            "cannot demote or deactivate yourself", reason="self_modification"
        )

    if tenant_id != current_tenant_id:
        runtime.store.set_user_tenant(user_id, tenant_id)
    if role != current_role:
        runtime.store.update_user_role(user_id, role)
    if body.is_active is not None:
        runtime.store.set_user_active(user_id, body.is_active)
    updated = runtime.store.get_user(user_id)
    logger.info(
        "platform_user_updated",
        user_id=user_id,
        role=updated.role,
        tenant_id=updated.tenant_id,
        is_active=updated.is_active,
        actor=operator.user_id,
    )
    tenant = runtime.store.get_tenant(updated.tenant_id) if updated.tenant_id else None
    return Envelope(status="ok", data=_principal_response(updated, tenant))


# -- realtime ------------------------------------------------------------------


def _ws_error(exc: ServiceError) -> Dict[str, Any]:
    return {
        "event": "error",
        "data": {"code": exc.error_code, "reason": exc.reason, "message": exc.message},
    }


async def _pump_outbound(ws: WebSocket, queue: asyncio.Queue) -> None:
    # Single writer: every frame, acks included, goes through the queue
    while True:
        message = await queue.get()
        await ws.send_json(message)


async def _handle_inbound(ws: WebSocket, runtime, auth_ctx: AuthContext, connection) -> None:
    while True:
        raw = await ws.receive_text()
        try:
            frame = RealtimeJoin(**json.loads(raw))
        except (ValueError, TypeError):
            connection.deliver(
                {
                    "event": "error",
                    "data": {
                        "code": "validation_error",
                        "reason": "invalid_message",
                        "message": "message must be a JSON object with a type",
                    },
                }
            )
            continue
        try:
            room = runtime.join_policy.room_for(auth_ctx.principal, frame.type, frame.id)
            runtime.realtime.join(connection.id, room)
        except ServiceError as exc:
            logger.info(
                "realtime_join_rejected",
                connection_id=connection.id,
                join_type=frame.type,
                reason=exc.reason,
            )
            connection.deliver(_ws_error(exc))
            continue
        connection.deliver({"event": "joined", "data": {"room": room}})


@router.websocket("/realtime")
async def realtime(ws: WebSocket):
    """Live event channel.

    The first frame must authenticate; the connection joins no room until the
    client asks. Disconnect drops every membership.
    """
    runtime = get_runtime()
    await ws.accept()
    set_correlation_id(ws.headers.get("X-Request-ID"))
    connection = None
    try:
        init = await ws.receive_json()
        if not isinstance(init, dict) or init.get("type") != "authenticate":
            await ws.close(code=WS_UNAUTHORIZED)
            return
        access_token = init.get("access_token")
        try:
            auth_ctx = await runtime.auth.authenticate(
                f"Bearer {access_token}" if access_token else None
            )
        except AuthenticationError as exc:
            logger.info("realtime_auth_rejected", reason=exc.reason)
            await ws.close(code=WS_UNAUTHORIZED)
            return

        connection = runtime.realtime.connect(auth_ctx.user_id)
        connection.deliver({"event": "ready", "data": {"connection_id": connection.id}})
        sender = asyncio.create_task(_pump_outbound(ws, connection.queue))
        receiver = asyncio.create_task(_handle_inbound(ws, runtime, auth_ctx, connection))
        done, pending = await asyncio.wait(
            {sender, receiver}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    except WebSocketDisconnect:
        return
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json")
        await ws.close(code=WS_UNAUTHORIZED)
    except Exception as exc:
        logger.error("unhandled_websocket_error", error_type=type(exc).__name__, error=str(exc))
        try:
            await ws.close(code=1011)
        except RuntimeError:
            # already closed by the peer
            pass
    finally:
        if connection is not None:
            runtime.realtime.disconnect(connection.id)
