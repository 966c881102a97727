"""Credential stores: resolve opaque references to secret values at run time."""

from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from pathlib import Path

from stagerunner._log import get_logger
from stagerunner.errors import CredentialNotFound

logger = get_logger("credentials")

_NON_IDENT_RE = re.compile(r"[^A-Za-z0-9_]")


class CredentialStore(ABC):
    """Resolves credential ids to secrets. Implementations must not log values."""

    @abstractmethod
    def resolve(self, ref: str) -> str:
        """Return the secret for *ref* or raise :class:`CredentialNotFound`."""

    def __contains__(self, ref: str) -> bool:
        try:
            self.resolve(ref)
        except CredentialNotFound:
            return False
        return True

    def env_vars(self, refs: Iterable[str]) -> set[str]:
        """Names of process env vars that back *refs*; stages never inherit them."""
        return set()


class StaticCredentialStore(CredentialStore):
    """In-memory store for programmatic use."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def register(self, ref: str, secret: str) -> None:
        self._secrets[ref] = secret

    def resolve(self, ref: str) -> str:
        try:
            return self._secrets[ref]
        except KeyError:
            raise CredentialNotFound(ref) from None

    def __repr__(self) -> str:
        return f"StaticCredentialStore(refs={sorted(self._secrets)!r})"


def env_var_for(ref: str, prefix: str = "") -> str:
    """Map a credential id to an env var name: ``docker-hub.token`` -> ``DOCKER_HUB_TOKEN``."""
    return prefix + _NON_IDENT_RE.sub("_", ref).upper()


class EnvCredentialStore(CredentialStore):
    """Reads secrets from the process environment.

    Each reference maps to an env var through *mapping* or, failing that,
    :func:`env_var_for`. The environment is read at resolve time, so values
    loaded by :func:`load_dotenv_files` are visible.
    """

    def __init__(self, mapping: Mapping[str, str] | None = None, *, prefix: str = "") -> None:
        self._mapping = dict(mapping or {})
        self._prefix = prefix

    def var_name(self, ref: str) -> str:
        return self._mapping.get(ref) or env_var_for(ref, self._prefix)

    def resolve(self, ref: str) -> str:
        var = self.var_name(ref)
        value = os.environ.get(var)
        if value is None:
            logger.debug("Credential '%s' not found in env var %s", ref, var)
            raise CredentialNotFound(ref)
        return value

    def env_vars(self, refs: Iterable[str]) -> set[str]:
        return {self.var_name(ref) for ref in refs}


class ChainCredentialStore(CredentialStore):
    """Tries each store in order and returns the first hit."""

    def __init__(self, *stores: CredentialStore) -> None:
        self._stores = stores

    def resolve(self, ref: str) -> str:
        for store in self._stores:
            try:
                return store.resolve(ref)
            except CredentialNotFound:
                continue
        raise CredentialNotFound(ref)

    def env_vars(self, refs: Iterable[str]) -> set[str]:
        refs = list(refs)
        names: set[str] = set()
        for store in self._stores:
            names |= store.env_vars(refs)
        return names


def load_dotenv_files(pipeline_dir: Path) -> None:
    """Load .env files: local first, then global as fallback.

    Uses ``override=False`` so existing env vars always win.
    Local is loaded before global so project-local values take precedence.
    """
    from dotenv import load_dotenv

    local_env = pipeline_dir / ".env"
    if local_env.is_file():
        load_dotenv(local_env, override=False)
    from stagerunner.config import get_global_env_path

    global_env = get_global_env_path()
    if global_env.is_file():
        load_dotenv(global_env, override=False)
