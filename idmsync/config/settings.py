"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_RESOURCES_FILE = Path(__file__).resolve().parents[2] / "config" / "resources.yaml"


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                print(f"[settings] ✓ Loaded {secret_name} from /run/secrets")
                return secret_value
        except OSError as e:
            print(f"[settings] ✗ Failed to read /run/secrets/{secret_name}: {e}")

    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            print(f"[settings] ✓ Loaded {env_var} from environment (fallback)")
            return secret_value

    return None


def _env_bool(name: str, default: bool = False) -> bool:
    return os.environ.get(name, str(default)).strip().lower() == "true"


@dataclass
class AppConfig:
    """Application configuration container."""
    # Mode
    demo_mode: bool

    # Flask / JWT
    secret_key: str
    jwt_issuer: str = ""
    jwks_url: str = ""
    jwt_audience: str = ""
    admin_user: str = "admin"

    # Password storage
    cipher_key: str = ""
    default_cipher: str = "SSHA256"

    # Propagation
    propagation_workers: int = 4
    null_priority_async: bool = False

    # Registry
    resources_file: str = str(DEFAULT_RESOURCES_FILE)

    # Audit
    audit_log_signing_key: str = ""

    @property
    def jwt_uses_jwks(self) -> bool:
        """True when bearer tokens are validated against a JWKS endpoint."""
        return bool(self.jwks_url) and not self.demo_mode


def _require(value: Optional[str], name: str, demo_mode: bool, demo_default: str) -> str:
    if value:
        return value
    if demo_mode:
        print(f"[demo-mode] Using default for {name}")
        os.environ[name] = demo_default
        return demo_default
    raise RuntimeError(f"{name} is required in production mode.")


def load_settings() -> AppConfig:
    """Load application settings from environment and /run/secrets."""
    demo_mode = _env_bool("DEMO_MODE")

    # ─────────────────────────────────────────────────────────────────────────
    # Secrets: /run/secrets first, environment variables as fallback
    # ─────────────────────────────────────────────────────────────────────────
    secret_key = _load_secret_from_file("idm_secret_key", "IDM_SECRET_KEY")
    if not secret_key:
        if not demo_mode:
            raise RuntimeError("IDM_SECRET_KEY not found in /run/secrets or environment")
        secret_key = secrets.token_urlsafe(48)
        os.environ["IDM_SECRET_KEY"] = secret_key
        print("[demo-mode] Generated temporary IDM_SECRET_KEY")

    cipher_key = _require(
        _load_secret_from_file("idm_cipher_key", "IDM_CIPHER_KEY"),
        "IDM_CIPHER_KEY", demo_mode, "demo-cipher-key-change-in-production",
    )

    audit_log_signing_key = _load_secret_from_file("audit_log_signing_key", "AUDIT_LOG_SIGNING_KEY")
    if audit_log_signing_key:
        os.environ["AUDIT_LOG_SIGNING_KEY"] = audit_log_signing_key
    elif demo_mode:
        demo_key = os.environ.get("AUDIT_LOG_SIGNING_KEY_DEMO", "demo-audit-signing-key-change-in-production")
        os.environ["AUDIT_LOG_SIGNING_KEY"] = demo_key
        audit_log_signing_key = demo_key
        print(f"[demo-mode] Using demo AUDIT_LOG_SIGNING_KEY: {demo_key[:20]}...")

    # ─────────────────────────────────────────────────────────────────────────
    # JWT validation
    # ─────────────────────────────────────────────────────────────────────────
    jwt_issuer = os.environ.get("IDM_JWT_ISSUER", "")
    jwks_url = os.environ.get("IDM_JWKS_URL", "")
    if not jwks_url and jwt_issuer:
        jwks_url = f"{jwt_issuer.rstrip('/')}/protocol/openid-connect/certs"
    if not demo_mode and not jwks_url:
        raise RuntimeError("IDM_JWKS_URL or IDM_JWT_ISSUER is required when DEMO_MODE is false.")
    jwt_audience = os.environ.get("IDM_JWT_AUDIENCE", "")

    # ─────────────────────────────────────────────────────────────────────────
    # Engine
    # ─────────────────────────────────────────────────────────────────────────
    default_cipher = os.environ.get("IDM_DEFAULT_CIPHER", "SSHA256").strip().upper()
    try:
        propagation_workers = int(os.environ.get("IDM_PROPAGATION_WORKERS", "4"))
    except ValueError:
        print("[settings] ✗ IDM_PROPAGATION_WORKERS is not a number, using 4")
        propagation_workers = 4
    null_priority_async = _env_bool("IDM_NULL_PRIORITY_ASYNC")
    resources_file = os.environ.get("IDM_RESOURCES_FILE", str(DEFAULT_RESOURCES_FILE))
    admin_user = os.environ.get("IDM_ADMIN_USER", "admin")

    mode_label = "DEMO" if demo_mode else "PRODUCTION"
    print(f"[settings] Mode={mode_label}; resources={resources_file}; workers={propagation_workers}")

    if demo_mode:
        print("[settings] WARNING: Demo credentials in use. Do not deploy with these defaults.")

    return AppConfig(
        demo_mode=demo_mode,
        secret_key=secret_key,
        jwt_issuer=jwt_issuer,
        jwks_url=jwks_url,
        jwt_audience=jwt_audience,
        admin_user=admin_user,
        cipher_key=cipher_key,
        default_cipher=default_cipher,
        propagation_workers=propagation_workers,
        null_priority_async=null_priority_async,
        resources_file=resources_file,
        audit_log_signing_key=audit_log_signing_key or "",
    )
