"""Security utilities: shared-secret checks and temporary credentials."""

import hmac
import secrets

import bcrypt


# =============================================================================
# Shared secrets (external system and internal portal surface)
# =============================================================================

def verify_secret(provided: str | None, expected: str) -> bool:
    """Constant-time comparison of a presented secret with the configured one."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


# =============================================================================
# Temporary passwords
# =============================================================================

TEMP_PASSWORD_BYTES = 9  # 12 URL-safe characters


def generate_temp_password() -> str:
    """Random one-time password handed back to the external system once."""
    return secrets.token_urlsafe(TEMP_PASSWORD_BYTES)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False
