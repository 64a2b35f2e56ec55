from __future__ import annotations

from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.persistence.db import get_session
from imagevault.providers.storage.factory import get_storage_provider
from imagevault.services.images import ImageService, ProviderFactory
from imagevault.services.ledger import SqlUsageLedger, UsageLedger


ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "editor": 2,
    "admin": 3,
}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity is authenticated upstream and forwarded as trusted headers.
    user_id: str
    org_id: str
    role: str


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


async def get_current_principal(
    x_user_id: str | None = Header(default=None),
    x_org_id: str | None = Header(default=None),
    x_role: str = Header(default="editor"),
) -> Principal:
    if not x_user_id or not x_org_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "AUTH_UNAUTHORIZED",
                "message": "X-User-Id and X-Org-Id headers are required",
            },
        )
    try:
        role = normalize_role(x_role)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(user_id=x_user_id, org_id=x_org_id, role=role)


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "AUTH_FORBIDDEN", "message": "Insufficient role for this operation"},
            )
        return principal

    return _dependency


@lru_cache
def _default_image_service() -> ImageService:
    return ImageService()


def get_image_service() -> ImageService:
    # Overridden in tests to inject fake providers and seeded randomness.
    return _default_image_service()


def get_usage_ledger() -> UsageLedger:
    return SqlUsageLedger()


def get_provider_factory() -> ProviderFactory:
    return get_storage_provider
