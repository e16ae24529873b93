"""Credential store adapter — resolves credential names to SSH identities.

Resolved identities are cached and shared read-only between concurrent
executor calls.  Resolution checks that the private key actually exists so
a misconfigured credential fails as ``AuthenticationError`` before any
connection attempt.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from hookdeploy.errors import AuthenticationError

if TYPE_CHECKING:
    from hookdeploy.config import CredentialConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SshIdentity:
    """An authenticated transport handle for the OpenSSH client."""

    name: str
    user: str | None
    key_path: Path | None
    known_hosts: Path | None = None
    strict_host_key_checking: bool = True

    def ssh_options(self, connect_timeout: int) -> list[str]:
        """Common ``-o``/``-i`` options for ssh and scp."""
        opts = [
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={connect_timeout}",
            "-o", f"StrictHostKeyChecking={'yes' if self.strict_host_key_checking else 'no'}",
        ]
        if self.known_hosts:
            opts += ["-o", f"UserKnownHostsFile={self.known_hosts}"]
        if self.key_path:
            opts += ["-o", "IdentitiesOnly=yes", "-i", str(self.key_path)]
        return opts


class CredentialStore:
    """Resolves credential names from config into cached ``SshIdentity`` handles."""

    def __init__(self, credentials: dict[str, CredentialConfig]):
        self._credentials = dict(credentials)
        self._cache: dict[str, SshIdentity] = {}

    def names(self) -> list[str]:
        return sorted(self._credentials)

    def resolve(self, name: str) -> SshIdentity:
        """Return the identity for ``name``.

        Raises:
            AuthenticationError: Unknown credential, unset key env var, or
                missing/unreadable key file.
        """
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        cfg = self._credentials.get(name)
        if cfg is None:
            raise AuthenticationError(f"Unknown credential '{name}'")

        key_path: Path | None = None
        raw_path = cfg.key_path
        if cfg.key_path_env:
            raw_path = os.environ.get(cfg.key_path_env) or raw_path
            if not raw_path:
                raise AuthenticationError(
                    f"Credential '{name}': environment variable {cfg.key_path_env} is not set"
                )
        if raw_path:
            key_path = Path(raw_path).expanduser()
            if not key_path.is_file():
                raise AuthenticationError(f"Credential '{name}': key file {key_path} not found")
            if not os.access(key_path, os.R_OK):
                raise AuthenticationError(f"Credential '{name}': key file {key_path} not readable")

        identity = SshIdentity(
            name=name,
            user=cfg.user,
            key_path=key_path,
            known_hosts=Path(cfg.known_hosts).expanduser() if cfg.known_hosts else None,
            strict_host_key_checking=cfg.strict_host_key_checking,
        )
        self._cache[name] = identity
        logger.debug("Resolved credential '%s' (key=%s)", name, key_path)
        return identity

    def invalidate(self, name: str | None = None) -> None:
        """Drop cached identities (all, or one by name)."""
        if name is None:
            self._cache.clear()
        else:
            self._cache.pop(name, None)
