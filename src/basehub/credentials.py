"""Credential and role token generation.

Each instance gets its own signing secret. The anon and service_role
tokens are HS256 JWTs signed with that secret and verified again right
after signing; an instance is never created with a token that does not
verify.
"""

import logging
import secrets
import string
import time
from typing import Any

import jwt

from basehub.config import ManagerConfig
from basehub.errors import CredentialError
from basehub.logging_schema import LogEvent
from basehub.models import CredentialBundle

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
JWT_ALGORITHM = "HS256"
TOKEN_ISSUER = "basehub"
TOKEN_LIFETIME_S = 365 * 24 * 60 * 60
ROLE_ANON = "anon"
ROLE_SERVICE = "service_role"


def generate_password(length: int = 16) -> str:
    """Random alphanumeric string from a CSPRNG."""
    if length < 1:
        raise ValueError("Password length must be positive")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def generate_jwt_secret() -> str:
    return generate_password(64)


def sign_role_token(role: str, secret: str, now: int | None = None) -> str:
    """Sign a role token valid for one year."""
    issued_at = int(time.time()) if now is None else now
    payload = {
        "role": role,
        "iss": TOKEN_ISSUER,
        "iat": issued_at,
        "exp": issued_at + TOKEN_LIFETIME_S,
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM, headers={"typ": "JWT"})


def verify_role_token(token: str, secret: str, role: str | None = None) -> dict[str, Any]:
    """Verify *token* against *secret* and return its claims.

    Raises:
        CredentialError: Bad signature, expired, wrong issuer or role.
    """
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            issuer=TOKEN_ISSUER,
            options={"require": ["role", "iss", "iat", "exp"]},
        )
    except jwt.PyJWTError as exc:
        raise CredentialError(f"Invalid role token: {exc}") from exc
    if role is not None and claims.get("role") != role:
        raise CredentialError(f"Token role mismatch: expected {role}, got {claims.get('role')}")
    return claims


class CredentialForge:
    """Builds the credential bundle for a new instance."""

    def __init__(self, config: ManagerConfig) -> None:
        self._config = config

    def generate(self, instance_id: str) -> CredentialBundle:
        """Generate secrets and verified role tokens for *instance_id*.

        Raises:
            CredentialError: A freshly signed token failed verification.
        """
        jwt_secret = generate_jwt_secret()
        now = int(time.time())
        anon_key = sign_role_token(ROLE_ANON, jwt_secret, now)
        service_role_key = sign_role_token(ROLE_SERVICE, jwt_secret, now)

        verify_role_token(anon_key, jwt_secret, ROLE_ANON)
        verify_role_token(service_role_key, jwt_secret, ROLE_SERVICE)

        logger.info(
            "Credentials generated",
            extra={"event": LogEvent.CREDENTIALS_FORGED, "instance_id": instance_id},
        )
        return CredentialBundle(
            postgres_password=generate_password(),
            jwt_secret=jwt_secret,
            anon_key=anon_key,
            service_role_key=service_role_key,
            dashboard_username=self._config.dashboard_username,
            dashboard_password=self._config.dashboard_password,
            vault_enc_key=generate_password(32),
            logflare_api_key=generate_password(24),
        )
