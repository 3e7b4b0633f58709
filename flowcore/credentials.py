from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Protocol

import yaml

logger = logging.getLogger(__name__)


class CredentialNotFoundError(LookupError):
    pass


class CredentialProvider(Protocol):
    def resolve(self, credential_ref: str, as_user: str | None = None) -> dict[str, str]: ...


class MappingCredentialProvider:
    """Serves already-decrypted secrets from an in-memory mapping.

    Entries may be scoped per user under ``{"users": {user_id: {ref: {...}}}}``;
    user-scoped entries win over shared ones.
    """

    def __init__(self, credentials: Mapping[str, Any] | None = None) -> None:
        self._credentials = dict(credentials or {})

    def resolve(self, credential_ref: str, as_user: str | None = None) -> dict[str, str]:
        if as_user is not None:
            users = self._credentials.get("users", {})
            scoped = users.get(as_user, {}) if isinstance(users, dict) else {}
            if credential_ref in scoped:
                return _stringify(scoped[credential_ref])
        if credential_ref == "users" or credential_ref not in self._credentials:
            raise CredentialNotFoundError(f"Credential '{credential_ref}' not found")
        return _stringify(self._credentials[credential_ref])


class YamlCredentialProvider(MappingCredentialProvider):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(self._load(path))

    def reload(self) -> None:
        self._credentials = self._load(self.path)

    @staticmethod
    def _load(path: Path) -> dict[str, Any]:
        if not path.exists():
            logger.info("Credentials file %s not found, no credentials available", path)
            return {}
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"Credentials file {path} must contain a mapping")
        return raw


def _stringify(entry: Any) -> dict[str, str]:
    if not isinstance(entry, dict):
        raise CredentialNotFoundError("Credential entries must be mappings")
    return {str(key): "" if value is None else str(value) for key, value in entry.items()}
