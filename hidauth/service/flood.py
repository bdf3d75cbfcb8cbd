from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional, Protocol

from hidauth.config import Settings
from hidauth.logging import get_logger
from hidauth.service.errors import TooManyAttempts
from hidauth.storage.models import FloodEntry, utcnow

LOGIN = "login"
TOTP = "totp"


class FloodStore(Protocol):
    def append_flood_entry(self, entry: FloodEntry) -> None: ...

    def count_flood_entries(self, kind: str, identity: str, since) -> int: ...


class FloodGuard:
    """Counts recent failures per identity and locks the identity out.

    The count is best-effort: two concurrent failures may both pass the
    check before either is recorded, which lets at most a handful of extra
    attempts through.
    """

    def __init__(
        self,
        store: FloodStore,
        settings: Settings,
        *,
        logger: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.max_attempts = settings.flood_max_attempts
        self.window = timedelta(seconds=settings.flood_window_seconds)
        self.logger = logger or get_logger(__name__)

    def record_failure(
        self, kind: str, identity: str, *, account_id: Optional[str] = None
    ) -> None:
        self.store.append_flood_entry(
            FloodEntry(kind=kind, identity=identity, account_id=account_id)
        )
        self.logger.info("flood_entry_recorded", kind=kind, account_id=account_id)

    def is_locked(self, kind: str, identity: str) -> bool:
        since = utcnow() - self.window
        return self.store.count_flood_entries(kind, identity, since) >= self.max_attempts

    def ensure_not_locked(self, kind: str, identity: str) -> None:
        if self.is_locked(kind, identity):
            self.logger.warning("flood_lockout", kind=kind)
            raise TooManyAttempts(
                detail={"kind": kind, "window_seconds": int(self.window.total_seconds())}
            )
