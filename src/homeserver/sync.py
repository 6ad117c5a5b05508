from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from state.store import SecretStore

from .client import MatrixSession


logger = logging.getLogger(__name__)

SyncCallback = Callable[[Dict[str, Any]], None]


class SyncHelper:
    """
    Remembers the /sync position between process restarts.

    The token lives in the secret store next to the session, so events that
    happened while the bot was offline can be told apart from new ones: the
    first `sync_once()` after a restart returns the offline backlog, and
    handlers installed after it only see live traffic.

    The store must stay locked for the helper's whole lifetime.
    """

    def __init__(self, session: MatrixSession, store: SecretStore, *, timeout_ms: int = 30000) -> None:
        self._session = session
        self._store = store
        self._timeout_ms = timeout_ms
        stored = store.load()
        self._token: Optional[str] = stored.sync_token if stored is not None else None

    @property
    def sync_token(self) -> Optional[str]:
        return self._token

    def sync_once(self, *, timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        """One /sync from the remembered position; persists `next_batch` on success."""
        response = self._session.sync(
            self._token,
            timeout_ms=self._timeout_ms if timeout_ms is None else timeout_ms,
        )
        next_batch = response["next_batch"]
        logger.debug("Sync token %s -> %s", self._token, next_batch)
        self._store.set_sync_token(next_batch)
        self._token = next_batch
        return response

    def sync_forever(self, on_response: Optional[SyncCallback] = None) -> None:
        """Sync until an error propagates. The token advances only after the callback returns."""
        while True:
            response = self._session.sync(self._token, timeout_ms=self._timeout_ms)
            if on_response is not None:
                on_response(response)
            next_batch = response["next_batch"]
            self._store.set_sync_token(next_batch)
            self._token = next_batch


__all__ = ["SyncHelper", "SyncCallback"]
