import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

import jwt
from fastapi import HTTPException, Request, status
from jwt import PyJWKClient
from jwt.exceptions import InvalidTokenError, PyJWKClientError


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=8)
def _jwk_client(jwks_url: str) -> PyJWKClient:
    return PyJWKClient(jwks_url)


def _allowed_algorithms() -> List[str]:
    raw = os.environ.get("AUTH_JWT_ALGORITHMS", "RS256")
    algorithms = [value.strip() for value in raw.split(",") if value.strip()]
    return algorithms or ["RS256"]


def _unverified_claims(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token,
            options={"verify_signature": False, "verify_aud": False, "verify_exp": False},
        )
    except InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


def _verified_claims(token: str) -> Dict[str, Any]:
    issuer = (os.environ.get("AUTH_ISSUER") or "").strip()
    audience = (os.environ.get("AUTH_AUDIENCE") or "").strip()
    if not issuer or not audience:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auth misconfigured: AUTH_ISSUER and AUTH_AUDIENCE are required",
        )
    jwks_url = os.environ.get("AUTH_JWKS_URL") or f"{issuer.rstrip('/')}/.well-known/jwks.json"

    try:
        signing_key = _jwk_client(jwks_url).get_signing_key_from_jwt(token)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    except PyJWKClientError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unable to validate token") from exc

    try:
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=_allowed_algorithms(),
            issuer=issuer,
            audience=audience,
            options={"require": ["exp", "iat", "sub"]},
        )
    except InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


def _decode_jwt(token: str) -> Dict[str, Any]:
    # JWT_VERIFY_SIGNATURE=false is for local runs against hand-made tokens.
    if _as_bool(os.environ.get("JWT_VERIFY_SIGNATURE"), default=True):
        return _verified_claims(token)
    return _unverified_claims(token)


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _extract_claims_from_request_context(request: Request) -> Optional[Dict[str, Any]]:
    event = request.scope.get("aws.event")
    if not isinstance(event, dict):
        return None
    claims = (
        event.get("requestContext", {})
        .get("authorizer", {})
        .get("jwt", {})
        .get("claims")
    )
    if isinstance(claims, dict) and claims:
        return claims
    return None


def _claims_to_user(claims: Dict[str, Any]) -> Dict[str, Any]:
    sub = claims.get("sub") or claims.get("user_id")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing sub claim")

    email = claims.get("email")
    return {
        "sub": str(sub),
        "email": email.strip() if isinstance(email, str) and email.strip() else None,
        "claims": claims,
    }


async def get_current_user(request: Request) -> Dict[str, Any]:
    claims = _extract_claims_from_request_context(request)
    if claims is None:
        token = _get_bearer_token(request)
        if not token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
        claims = _decode_jwt(token)
    return _claims_to_user(claims)
