import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Mapping, Optional, Tuple

import jwt
from jwt import InvalidTokenError, PyJWKClient, PyJWKClientError
from django.conf import settings
from rest_framework.authentication import BaseAuthentication
from rest_framework.exceptions import AuthenticationFailed

logger = logging.getLogger(__name__)


@dataclass
class Principal:
    user_id: Optional[str]
    username: Optional[str]
    roles: list[str]
    permissions: list[str] = field(default_factory=list)
    worker_claim: Optional[str] = None
    is_authenticated: bool = True

    @property
    def worker_id(self) -> Optional[int]:
        """Numeric worker id: the dedicated claim if issued, else a numeric user id."""
        for candidate in (self.worker_claim, self.user_id):
            if candidate is None:
                continue
            try:
                return int(str(candidate).strip())
            except (TypeError, ValueError):
                continue
        return None


@lru_cache(maxsize=4)
def _jwk_client(jwks_url: str) -> PyJWKClient:
    return PyJWKClient(jwks_url, cache_keys=True)


def _decode_token(token: str) -> dict:
    """Verify signature, issuer and audience against the configured JWKS."""
    jwks_url = settings.AUTH_JWKS_URL
    if not jwks_url:
        raise AuthenticationFailed("JWKS URL is not configured.")

    try:
        alg = jwt.get_unverified_header(token).get("alg")
        if not alg:
            raise AuthenticationFailed("JWT alg is missing.")
        if alg not in settings.AUTH_ALGORITHMS:
            raise AuthenticationFailed("JWT alg is not allowed.")

        signing_key = _jwk_client(jwks_url).get_signing_key_from_jwt(token)
        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=[alg],
            issuer=settings.AUTH_ISSUER or None,
            audience=settings.AUTH_AUDIENCE or None,
            options={
                "verify_aud": bool(settings.AUTH_AUDIENCE),
                "verify_iss": bool(settings.AUTH_ISSUER),
            },
        )
    except AuthenticationFailed:
        raise
    except (PyJWKClientError, InvalidTokenError, ValueError) as exc:
        logger.warning("JWT verification failed: %s", exc)
        raise AuthenticationFailed("Invalid bearer token.") from exc

    if not isinstance(payload, dict):
        raise AuthenticationFailed("Invalid JWT payload.")
    return payload


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(value)]


def _claim(payload: Mapping[str, Any], setting_name: str) -> Any:
    name = getattr(settings, setting_name, "")
    return payload.get(name) if name else None


def _principal_from_claims(payload: Mapping[str, Any]) -> Principal:
    user_id = _claim(payload, "AUTH_USER_ID_CLAIM")
    username = _claim(payload, "AUTH_USERNAME_CLAIM")
    worker = _claim(payload, "AUTH_WORKER_ID_CLAIM")
    return Principal(
        user_id=str(user_id) if user_id is not None else None,
        username=str(username) if username is not None else None,
        roles=_as_list(_claim(payload, "AUTH_ROLES_CLAIM")),
        permissions=_as_list(_claim(payload, "AUTH_PERMISSIONS_CLAIM")),
        worker_claim=str(worker) if worker is not None else None,
    )


def _bearer_token(request) -> str:
    header = request.META.get("HTTP_AUTHORIZATION", "")
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise AuthenticationFailed("Missing bearer token.")
    return token.strip()


class LegacyCompatAuthentication(BaseAuthentication):
    """
    Bearer JWT verified against the identity provider's JWKS, or a fixed dev
    principal when DEV_AUTH_ENABLED is set. Token issuance lives elsewhere.
    """

    def authenticate(self, request) -> Optional[Tuple[Principal, None]]:
        if settings.DEV_AUTH_ENABLED:
            dev_user = str(settings.DEV_AUTH_USER_ID)
            return Principal(
                user_id=dev_user,
                username=dev_user,
                roles=list(settings.DEV_AUTH_ROLES),
                permissions=list(settings.DEV_AUTH_PERMISSIONS),
            ), None

        if not settings.AUTH_ENABLED:
            return None

        payload = _decode_token(_bearer_token(request))
        return _principal_from_claims(payload), None

    def authenticate_header(self, request) -> str:
        return "Bearer"
