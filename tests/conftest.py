"""Pytest shared fixtures: registry, service container, Flask app and tokens."""
import copy
import os
import pathlib
import sys
import time
from typing import Optional

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Configure test environment BEFORE any app imports
os.environ.setdefault("DEMO_MODE", "true")

import jwt
import pytest

from idmsync.config import AppConfig, Registry
from idmsync.core.security import AuthContext, Entitlement
from idmsync.flask_app import create_app
from idmsync.services import Services
from scripts import audit

TEST_SECRET_KEY = "test-secret-key-for-hs256-tokens"
TEST_CIPHER_KEY = "test-cipher-key"


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────
REGISTRY_DATA = {
    "schemas": {
        "plain": ["email", "firstname", "surname", "department"],
        "derived": {"fullname": "{firstname} {surname}"},
        "virtual": ["badge"],
    },
    "policies": {"password": {"strong": {"minLength": 12, "uppercase": 1, "digit": 1}}},
    "realms": [
        {"path": "/employees", "passwordPolicy": "strong"},
        {"path": "/employees/it"},
        {"path": "/partners"},
    ],
    "resources": {
        "hr": {
            "connector": "memory",
            "randomPwdIfNotProvided": True,
            "provisions": [
                {
                    "anyType": "USER",
                    "objectClass": "__ACCOUNT__",
                    "mapping": [
                        {"intAttrName": "username", "extAttrName": "uid", "connObjectKey": True},
                        {"intAttrName": "email", "extAttrName": "mail"},
                        {"intAttrName": "firstname", "extAttrName": "givenName"},
                        {"intAttrName": "surname", "extAttrName": "sn"},
                        {"intAttrName": "password", "extAttrName": "__PASSWORD__", "password": True,
                         "purpose": "PULL"},
                    ],
                },
                {
                    "anyType": "GROUP",
                    "objectClass": "__GROUP__",
                    "mapping": [{"intAttrName": "name", "extAttrName": "cn", "connObjectKey": True}],
                },
            ],
        },
        "ldap": {
            "connector": "memory",
            "propagationPriority": 1,
            "priorityAbort": True,
            "provisions": [
                {
                    "anyType": "USER",
                    "objectClass": "__ACCOUNT__",
                    "mapping": [
                        {"intAttrName": "username", "extAttrName": "uid", "connObjectKey": True},
                        {"intAttrName": "email", "extAttrName": "mail"},
                        {"intAttrName": "fullname", "extAttrName": "cn", "purpose": "PROPAGATION"},
                    ],
                },
                {
                    "anyType": "GROUP",
                    "objectClass": "__GROUP__",
                    "mapping": [{"intAttrName": "name", "extAttrName": "cn", "connObjectKey": True}],
                },
            ],
        },
        "crm": {
            "connector": "memory",
            "provisions": [
                {
                    "anyType": "USER",
                    "objectClass": "__ACCOUNT__",
                    "mapping": [
                        {"intAttrName": "username", "extAttrName": "login", "connObjectKey": True},
                        {"intAttrName": "email", "extAttrName": "email", "mandatory": True},
                    ],
                },
            ],
        },
    },
    "tasks": {
        "pull": {
            "hr-pull": {
                "resource": "hr",
                "destinationRealm": "/employees",
                "matchingRule": "UPDATE",
                "unmatchingRule": "PROVISION",
                "remediation": True,
                "performDelete": False,
                "actions": ["memberships"],
                "templates": {"USER": {"resources": ["ldap"]}},
            },
        },
        "push": {
            "ldap-push": {
                "resource": "ldap",
                "sourceRealm": "/employees",
                "matchingRule": "UPDATE",
                "unmatchingRule": "ASSIGN",
            },
        },
    },
}


def registry_data() -> dict:
    """Fresh copy of the test registry, safe to mutate."""
    return copy.deepcopy(REGISTRY_DATA)


@pytest.fixture
def registry() -> Registry:
    return Registry.from_dict(registry_data())


@pytest.fixture
def services(registry):
    container = Services(registry, TEST_CIPHER_KEY, propagation_workers=2)
    yield container
    container.shutdown()


@pytest.fixture
def connector(services):
    """Return the in-memory connector of a resource by key."""
    def _get(resource_key: str):
        return services.connector_factory.get_connector(services.resources[resource_key])
    return _get


@pytest.fixture
def admin() -> AuthContext:
    return AuthContext.admin("tester")


# ─────────────────────────────────────────────────────────────────────────────
# Audit isolation
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def temp_audit_dir(monkeypatch, tmp_path):
    """Every test writes its audit trail to its own directory."""
    audit_dir = tmp_path / "audit"
    audit_file = audit_dir / "idm-events.jsonl"
    monkeypatch.setattr(audit, "AUDIT_LOG_DIR", audit_dir)
    monkeypatch.setattr(audit, "AUDIT_LOG_FILE", audit_file)
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "test-signing-key-for-audit-trail")
    yield audit_dir, audit_file


# ─────────────────────────────────────────────────────────────────────────────
# Flask app and bearer tokens
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(demo_mode=True, secret_key=TEST_SECRET_KEY, cipher_key=TEST_CIPHER_KEY)


@pytest.fixture
def app(app_config, services):
    flask_app = create_app(app_config, services)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    with app.test_client() as test_client:
        yield test_client


def make_token(entitlements=None, username: str = "alice", secret: str = TEST_SECRET_KEY,
               exp_offset: int = 300, extra: Optional[dict] = None) -> str:
    """HS256 token as accepted in demo mode; every entitlement on / by default."""
    now = int(time.time())
    claims = {
        "sub": f"{username}-id",
        "preferred_username": username,
        "iat": now,
        "exp": now + exp_offset,
        "entitlements": entitlements if entitlements is not None else sorted(Entitlement.all()),
    }
    claims.update(extra or {})
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}
