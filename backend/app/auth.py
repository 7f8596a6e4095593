from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings
from backend.app.store import InMemoryStore

logger = logging.getLogger("wa_gateway.auth")

security = HTTPBearer(auto_error=False)
api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


class ApiKeyAuthorizationError(Exception):
    pass


class ApiKeyLookupError(Exception):
    pass


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: set[str]


@dataclass(frozen=True)
class OperatorContext:
    user_id: str
    api_key_id: Optional[str] = None


class OperatorKeyRegistry(Protocol):
    def resolve(self, token: str) -> Optional[OperatorContext]:
        ...


class StoreOperatorKeyRegistry:
    """Resolves operator API keys against the keys held by the record store."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def resolve(self, token: str) -> Optional[OperatorContext]:
        record = self.store.find_active_api_key(token)
        if not record:
            return None
        return OperatorContext(user_id=record.user_id, api_key_id=record.id)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_key_registry(request: Request) -> OperatorKeyRegistry:
    return request.app.state.key_registry


def _developer_context() -> AuthContext:
    return AuthContext(
        user_id="dev-local",
        roles={"admin", "operator", "service"},
    )


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings = get_settings(request)
    if not settings.auth_enabled:
        return _developer_context()

    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer token",
        )

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid auth token",
        ) from exc

    subject = payload.get("sub")
    roles = payload.get("roles", [])
    if not isinstance(subject, str) or not subject.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="token missing subject",
        )
    if not isinstance(roles, list):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="token roles must be a list",
        )
    role_set = {str(role).strip() for role in roles if str(role).strip()}
    if not role_set:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="token has no roles",
        )
    return AuthContext(user_id=subject.strip(), roles=role_set)


def ensure_roles(context: AuthContext, *required_roles: str) -> AuthContext:
    required = {role.strip() for role in required_roles if role.strip()}
    if required and context.roles.isdisjoint(required):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"insufficient role. required any of: {sorted(required)}",
        )
    return context


def resolve_api_key(registry: OperatorKeyRegistry, token: Optional[str]) -> OperatorContext:
    if not token:
        raise ApiKeyAuthorizationError("API key is required in x-api-key header")
    try:
        operator = registry.resolve(token.strip())
    except Exception as exc:
        logger.exception("api_key_lookup_failed")
        raise ApiKeyLookupError(
            "Internal server error during API key authentication"
        ) from exc
    if not operator:
        raise ApiKeyAuthorizationError("Invalid or inactive API key")
    return operator


def require_api_key(
    request: Request,
    token: Optional[str] = Depends(api_key_header),
) -> OperatorContext:
    return resolve_api_key(get_key_registry(request), token)


def get_operator_context(
    request: Request,
    token: Optional[str] = Depends(api_key_header),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> OperatorContext:
    """Operator identity from an API key, falling back to a JWT bearer token."""
    if token:
        return resolve_api_key(get_key_registry(request), token)
    context = ensure_roles(get_auth_context(request, credentials), "operator", "admin")
    return OperatorContext(user_id=context.user_id)
