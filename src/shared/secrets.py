"""
Secrets and page-token encryption.

Service credentials (database password, token encryption key) are read
from the system keychain (``secret-tool`` / ``libsecret``) with an
environment-variable fallback for development.

Page access tokens are stored in the ``pages`` table encrypted with
Fernet and are only decrypted in memory right before a sync run.
"""

from __future__ import annotations

import logging
import os
import subprocess

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("shared.secrets")

SERVICE_NAME = "msgstats"
TOKEN_KEY_NAME = "token-encryption-key"


# ---------------------------------------------------------------------------
# System keychain
# ---------------------------------------------------------------------------


def get_secret(key_name: str, service: str = SERVICE_NAME) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service msgstats key <key_name>

    Falls back to environment variables (``MSGSTATS_<KEY_NAME>``) if
    ``secret-tool`` is not available or has no entry.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.debug("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")

    env_key = f"MSGSTATS_{key_name.upper().replace('-', '_')}"
    env_val = os.environ.get(env_key)
    if env_val:
        logger.debug("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


# ---------------------------------------------------------------------------
# Page token encryption (Fernet)
# ---------------------------------------------------------------------------


def encrypt_token(token: str, key: str) -> str:
    """Encrypt a page access token for storage."""
    return Fernet(key.encode()).encrypt(token.encode()).decode()


def decrypt_token(ciphertext: str, key: str) -> str:
    """Decrypt a stored page access token.

    Raises:
        cryptography.fernet.InvalidToken: If the key is wrong or the
            ciphertext has been tampered with.
    """
    return Fernet(key.encode()).decrypt(ciphertext.encode()).decode()


def generate_encryption_key() -> str:
    """Generate a new Fernet key (store it in the keychain once)."""
    return Fernet.generate_key().decode()


__all__ = [
    "InvalidToken",
    "decrypt_token",
    "encrypt_token",
    "generate_encryption_key",
    "get_secret",
]
