"""Tenant-aware auth dependency for API routes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Set

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from loadhunter.core.config import get_settings
from loadhunter.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass
class TenantContext:
    tenant_id: str
    authenticated: bool
    actor: str
    role: str
    # Granted per request only: platform admin token plus X-Cross-Tenant header.
    cross_tenant: bool = False


SUPPORTED_ROLES = {"dispatcher", "billing", "admin"}


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        return "admin"
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def _parse_tenant_tokens(raw: str) -> Dict[str, str]:
    """Parse `token:tenant` comma-separated values from env."""
    mapping: Dict[str, str] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        if ":" not in item:
            logger.warning("Ignoring malformed tenant token mapping entry", entry=item)
            continue
        token, tenant = item.split(":", 1)
        token = token.strip()
        tenant = tenant.strip()
        if token and tenant:
            mapping[token] = tenant
    return mapping


def _parse_admin_tokens(raw: str) -> Set[str]:
    return {item.strip() for item in (raw or "").split(",") if item.strip()}


def _wants_cross_tenant(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def get_tenant_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
    x_actor: str | None = Header(default=None, alias="X-Actor"),
    x_cross_tenant: str | None = Header(default=None, alias="X-Cross-Tenant"),
) -> TenantContext:
    """Resolve tenant context from bearer token or default tenant header."""
    settings = get_settings()
    actor = (x_actor or "").strip()

    if not settings.auth_enabled:
        default_tenant = (x_tenant_id or settings.default_tenant_id or "").strip()
        if not default_tenant:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Tenant context required",
            )
        return TenantContext(
            tenant_id=default_tenant,
            authenticated=False,
            actor=actor or "anonymous",
            role=_normalize_role(x_actor_role),
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    token = credentials.credentials.strip()
    if token in _parse_admin_tokens(settings.platform_admin_tokens):
        tenant_id = (x_tenant_id or "").strip()
        cross_tenant = _wants_cross_tenant(x_cross_tenant)
        if not tenant_id and not cross_tenant:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Platform admin requests must name a tenant or request cross-tenant access",
            )
        if cross_tenant:
            logger.info("Cross-tenant access granted", actor=actor or "platform_admin", tenant_id=tenant_id or None)
        return TenantContext(
            tenant_id=tenant_id,
            authenticated=True,
            actor=actor or "platform_admin",
            role="admin",
            cross_tenant=cross_tenant,
        )

    token_map = _parse_tenant_tokens(settings.tenant_tokens)
    tenant_id = token_map.get(token)
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )

    if x_tenant_id and x_tenant_id.strip() and x_tenant_id.strip() != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token tenant mismatch",
        )

    return TenantContext(
        tenant_id=tenant_id,
        authenticated=True,
        actor=actor or "token",
        role=_normalize_role(x_actor_role),
    )


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
