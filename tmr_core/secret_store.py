from __future__ import annotations

import logging
import os

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

KEYRING_SERVICE_NAME = "tm-retrieval"
OPENAI_API_KEY = "openai_api_key"
SECRET_ENV_VARS = {
    OPENAI_API_KEY: "OPENAI_API_KEY",
}

logger = logging.getLogger(__name__)


def _keyring_available() -> bool:
    try:
        backend = keyring.get_keyring()
    except Exception:  # noqa: BLE001
        return False
    return backend.__class__.__module__ != "keyring.backends.fail"


def mask_secret_value(value: str) -> str:
    normalized = value.strip()
    if not normalized:
        return ""
    if len(normalized) <= 4:
        return "*" * len(normalized)
    if len(normalized) <= 8:
        visible = 2
        hidden = len(normalized) - (visible * 2)
        return f"{normalized[:visible]}{'*' * hidden}{normalized[-visible:]}"
    hidden = len(normalized) - 8
    return f"{normalized[:4]}{'*' * hidden}{normalized[-4:]}"


def set_secret(name: str, value: str) -> None:
    normalized = value.strip()
    if not normalized:
        raise ValueError("Secret value must not be empty.")
    if not _keyring_available():
        raise RuntimeError(
            "No keyring backend available. Install a usable keyring backend "
            f"or export {SECRET_ENV_VARS.get(name, name.upper())}."
        )
    try:
        keyring.set_password(KEYRING_SERVICE_NAME, name, normalized)
    except KeyringError as exc:
        raise RuntimeError(f"Secret storage failed: {exc}") from exc


def get_secret(name: str) -> str | None:
    value: str | None = None
    if _keyring_available():
        try:
            value = keyring.get_password(KEYRING_SERVICE_NAME, name)
        except KeyringError as exc:
            logger.warning("Keyring lookup for %s failed: %s", name, exc)
            value = None

    if not value:
        env_name = SECRET_ENV_VARS.get(name)
        value = os.environ.get(env_name) if env_name else None

    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def delete_secret(name: str) -> None:
    if not _keyring_available():
        return
    try:
        keyring.delete_password(KEYRING_SERVICE_NAME, name)
    except PasswordDeleteError:
        return
    except KeyringError as exc:
        raise RuntimeError(f"Secret deletion failed: {exc}") from exc
