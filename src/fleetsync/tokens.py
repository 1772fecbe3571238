from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import enum
import logging
import threading
import time
from typing import Final, Literal, Protocol

from fleetsync.models import RepoDescriptor
from fleetsync.observability import log_event
from fleetsync.shell import CommandError, run


LOGGER = logging.getLogger("fleetsync.tokens")
TOKEN_TTL_SECONDS: Final[float] = 55 * 60
NO_INSTALLATION_EXIT_CODE: Final[int] = 3


class NoInstallation(enum.Enum):
    TOKEN = "no-installation"


NO_INSTALLATION: Final = NoInstallation.TOKEN
TokenLookup = str | Literal[NoInstallation.TOKEN] | None


class TokenProvider(Protocol):
    def get_token_for_repo(self, repo: RepoDescriptor) -> TokenLookup: ...


@dataclass(frozen=True)
class _CacheEntry:
    token: str
    expires_at: float


class CachedInstallationTokenProvider:
    """Caches installation tokens per (host, owner) for a bounded lifetime.

    Installation tokens live one hour; entries expire after 55 minutes so a token is
    never handed out close to its expiry. Only real tokens are cached.
    """

    def __init__(
        self,
        source: TokenProvider,
        *,
        ttl_seconds: float = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._source = source
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], _CacheEntry] = {}
        self._lock = threading.Lock()

    def get_token_for_repo(self, repo: RepoDescriptor) -> TokenLookup:
        key = (repo.host, repo.owner)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                return entry.token

        token = self._source.get_token_for_repo(repo)
        if isinstance(token, str):
            with self._lock:
                self._entries[key] = _CacheEntry(token=token, expires_at=now + self._ttl_seconds)
            log_event(LOGGER, "installation_token_cached", host=repo.host, owner=repo.owner)
        return token

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CommandTokenProvider:
    """Obtains a token by running an operator-supplied command.

    The argv may reference ``{owner}``, ``{repo}``, and ``{host}``. Exit code 3 or
    empty output means the owner has no installation.
    """

    def __init__(self, argv: tuple[str, ...]) -> None:
        if not argv:
            raise ValueError("token command must not be empty")
        self._argv = argv

    def get_token_for_repo(self, repo: RepoDescriptor) -> TokenLookup:
        argv = [
            part.format(owner=repo.owner, repo=repo.repo, host=repo.host) for part in self._argv
        ]
        try:
            output = run(argv)
        except CommandError as exc:
            if exc.exit_code == NO_INSTALLATION_EXIT_CODE:
                log_event(LOGGER, "installation_missing", host=repo.host, owner=repo.owner)
                return NO_INSTALLATION
            raise
        token = output.strip()
        if not token:
            log_event(LOGGER, "installation_missing", host=repo.host, owner=repo.owner)
            return NO_INSTALLATION
        return token
