"""Per-run secrets and environment store (helpers.secrets).

Templates reference secrets as ${NAME} and environment variables as
${env:NAME}; unresolved references are left in place.

SECURITY: "encrypted" secrets are XOR-obfuscated and base64-encoded. This
keeps values out of casual dumps; it is not cryptographic protection.
"""

from __future__ import annotations

import base64
import logging
import os
import re
import time
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"\$\{([^}]+)\}")
_VALID_KEY = re.compile(r"^[A-Z][A-Z0-9_]*$")


@dataclass
class SecretValue:
    key: str
    value: str
    encrypted: bool = False
    created_at: float = 0.0
    updated_at: float = 0.0


class SecretsManager:
    """Secret and environment values visible to every node of one run."""

    def __init__(
        self,
        encryption_key: str | None = None,
        env: dict[str, str] | None = None,
        inherit_environment: bool = False,
    ):
        self._encryption_key = encryption_key
        self._secrets: dict[str, SecretValue] = {}
        self._env: dict[str, str] = dict(os.environ) if inherit_environment else {}
        self._env.update(env or {})

    # ========== Secrets ==========

    def set_secret(self, key: str, value: str, encrypt: bool = False) -> None:
        now = time.time()
        existing = self._secrets.get(key)
        self._secrets[key] = SecretValue(
            key=key,
            value=self._encrypt(value) if encrypt else value,
            encrypted=encrypt,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        logger.debug(f"Secret '{key}' set (encrypted: {encrypt})")

    def get_secret(self, key: str) -> str | None:
        secret = self._secrets.get(key)
        if secret is None:
            logger.warning(f"Secret '{key}' not found")
            return None
        return self._decrypt(secret.value) if secret.encrypted else secret.value

    def has_secret(self, key: str) -> bool:
        return key in self._secrets

    def delete_secret(self, key: str) -> bool:
        return self._secrets.pop(key, None) is not None

    def set_secrets(self, secrets: dict[str, str], encrypt: bool = False) -> None:
        for key, value in secrets.items():
            self.set_secret(key, value, encrypt)

    def list_secret_keys(self) -> list[str]:
        return list(self._secrets)

    def get_secret_metadata(self, key: str) -> dict[str, Any] | None:
        secret = self._secrets.get(key)
        if secret is None:
            return None
        metadata = asdict(secret)
        metadata.pop("value")
        return metadata

    def export_secrets(self) -> dict[str, dict[str, Any]]:
        return {key: asdict(secret) for key, secret in self._secrets.items()}

    def import_secrets(self, secrets: dict[str, dict[str, Any]]) -> None:
        for key, secret in secrets.items():
            self._secrets[key] = SecretValue(**{**secret, "key": key})
        logger.debug(f"Imported {len(secrets)} secrets")

    def clear_secrets(self) -> None:
        self._secrets.clear()

    # ========== Environment ==========

    def set_env(self, key: str, value: str) -> None:
        self._env[key] = value

    def set_envs(self, envs: dict[str, str]) -> None:
        self._env.update(envs)

    def get_env(self, key: str, default: str | None = None) -> str | None:
        return self._env.get(key) or default

    def has_env(self, key: str) -> bool:
        return key in self._env

    def get_all_env(self) -> dict[str, str]:
        return dict(self._env)

    def list_env_keys(self) -> list[str]:
        return list(self._env)

    def clear_env(self) -> None:
        self._env.clear()

    # ========== Templates ==========

    def resolve(self, template: Any) -> Any:
        """Substitute ${NAME} and ${env:NAME}; non-strings pass through."""
        if not isinstance(template, str):
            return template

        def substitute(match: re.Match) -> str:
            key = match.group(1)
            if key.startswith("env:"):
                value = self.get_env(key[4:])
                if value is None:
                    logger.warning(f"Environment variable '{key[4:]}' not found")
                    return match.group(0)
                return value
            value = self.get_secret(key)
            return match.group(0) if value is None else value

        return _REFERENCE.sub(substitute, template)

    def resolve_object(self, obj: Any) -> Any:
        if isinstance(obj, str):
            return self.resolve(obj)
        if isinstance(obj, dict):
            return {k: self.resolve_object(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [self.resolve_object(v) for v in obj]
        return obj

    get_resolved_config = resolve_object

    @staticmethod
    def has_secret_references(text: Any) -> bool:
        return isinstance(text, str) and _REFERENCE.search(text) is not None

    @staticmethod
    def extract_secret_references(text: Any) -> list[str]:
        if not isinstance(text, str):
            return []
        return _REFERENCE.findall(text)

    @staticmethod
    def mask_secret(value: str | None) -> str:
        """Keep the first and last two characters: "ab****yz"."""
        if not value or len(value) <= 4:
            return "***"
        return f"{value[:2]}{'*' * (len(value) - 4)}{value[-2:]}"

    @staticmethod
    def is_valid_key(key: str) -> bool:
        return bool(_VALID_KEY.match(key))

    # ========== Obfuscation ==========

    def _xor(self, text: str) -> str:
        key = self._encryption_key or ""
        if not key:
            return text
        return "".join(chr(ord(c) ^ ord(key[i % len(key)])) for i, c in enumerate(text))

    def _encrypt(self, text: str) -> str:
        return base64.b64encode(self._xor(text).encode("utf-8")).decode("ascii")

    def _decrypt(self, encoded: str) -> str:
        return self._xor(base64.b64decode(encoded).decode("utf-8"))
