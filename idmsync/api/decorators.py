"""
Flask decorators and request helpers for authentication and authorization.

Bearer tokens are JWTs validated with PyJWT:
- production: RS256 signature checked against the JWKS endpoint (cached)
- demo mode: HS256 signed with the application secret key

Claims carry an ``entitlements`` mapping (entitlement -> realms) turned into
the :class:`AuthContext` handed to the logic layer.
"""

import logging
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import current_app, g, jsonify, request
from jwt import PyJWKClient
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    PyJWKClientError,
    InvalidTokenError,
)

from ..core.security import AuthContext

logger = logging.getLogger(__name__)

# Global JWKS client (cached singleton)
_jwks_client: Optional[PyJWKClient] = None


class TokenValidationError(Exception):
    """Exception raised when JWT token validation fails."""
    pass


def get_jwks_client() -> PyJWKClient:
    """
    Get cached JWKS client (singleton pattern).

    Returns:
        PyJWKClient: Client for the configured JWKS URL

    Security:
        - Caches up to 16 keys
        - Refreshes cache every 1 hour
        - Uses kid (Key ID) from JWT header to select correct key
    """
    global _jwks_client

    if _jwks_client is None:
        cfg = current_app.config["APP_CONFIG"]
        logger.info(f"Initializing JWKS client for: {cfg.jwks_url}")
        _jwks_client = PyJWKClient(
            cfg.jwks_url,
            cache_keys=True,
            max_cached_keys=16,
            lifespan=3600,
            headers={"User-Agent": "idmsync/1.0"},
        )

    return _jwks_client


def validate_jwt_token(token: str) -> Dict[str, Any]:
    """
    Validate JWT Bearer token.

    Args:
        token: JWT token string (without "Bearer " prefix)

    Returns:
        dict: Validated token claims

    Raises:
        TokenValidationError: If any validation fails
    """
    cfg = current_app.config["APP_CONFIG"]
    options = {
        "verify_signature": True,
        "verify_exp": True,
        "verify_nbf": True,
        "verify_iss": bool(cfg.jwt_issuer),
        "verify_aud": bool(cfg.jwt_audience),
        "require": ["exp", "iat"],
    }

    try:
        if cfg.jwt_uses_jwks:
            key = get_jwks_client().get_signing_key_from_jwt(token).key
            algorithms = ["RS256"]
        else:
            key = cfg.secret_key
            algorithms = ["HS256"]

        claims = jwt.decode(
            token,
            key,
            algorithms=algorithms,
            issuer=cfg.jwt_issuer or None,
            audience=cfg.jwt_audience or None,
            options=options,
            leeway=5,
        )
        logger.debug(f"JWT validated for: {claims.get('preferred_username') or claims.get('sub')}")
        return claims

    except ExpiredSignatureError:
        raise TokenValidationError("Token expired (exp claim)")
    except InvalidIssuerError as e:
        raise TokenValidationError(f"Invalid issuer: {e}")
    except InvalidAudienceError as e:
        raise TokenValidationError(f"Invalid audience (token not for this API): {e}")
    except InvalidSignatureError:
        raise TokenValidationError("Invalid signature (token tampered or wrong key)")
    except DecodeError as e:
        raise TokenValidationError(f"Token decode error (malformed JWT): {e}")
    except (InvalidTokenError, PyJWKClientError) as e:
        logger.error(f"JWT validation failed: {e}")
        raise TokenValidationError(f"Token validation failed: {e}")


def _unauthorized(detail: str):
    return jsonify({"status": 401, "type": "Unauthorized", "message": detail}), 401


def require_auth(fn):
    """
    Decorator requiring a valid Bearer token; sets ``g.auth`` to the caller's AuthContext.

    Example:
        @bp.route("/users/<key>")
        @require_auth
        def read_user(key):
            return jsonify(services().logics[AnyKind.USER].read(g.auth, key).to_dict())
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get("Authorization", "")

        if not auth_header:
            logger.warning("Request missing Authorization header")
            return _unauthorized("Authorization header required. Use 'Authorization: Bearer <token>'")

        if not auth_header.startswith("Bearer "):
            logger.warning(f"Request with invalid Authorization format: {auth_header[:20]}")
            return _unauthorized("Invalid Authorization header format. Expected 'Bearer <token>'")

        token = auth_header[7:]
        if not token:
            return _unauthorized("Bearer token is empty")

        try:
            claims = validate_jwt_token(token)
        except TokenValidationError as e:
            logger.warning(f"JWT validation failed: {e}")
            return _unauthorized(str(e))

        g.oauth_claims = claims
        g.auth = AuthContext.from_claims(claims)
        return fn(*args, **kwargs)

    return wrapper


# ============================================================================
# Request helpers
# ============================================================================

def services():
    """Service container of the running app."""
    return current_app.config["SERVICES"]


def prefer_async() -> bool:
    """True when the client sent ``Prefer: respond-async``."""
    return "respond-async" in request.headers.get("Prefer", "").lower()


def if_match() -> Optional[str]:
    """ETag from the If-Match header, without quotes."""
    value = request.headers.get("If-Match")
    if not value:
        return None
    return value.strip().removeprefix("W/").strip('"')
