from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Iterable, List, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import Clock, utc_now
from warden.service.tokens import hash_token
from warden.storage.models import Session

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "session:"


class SessionBackend(Protocol):
    def create_session(
        self,
        user_id: str,
        session_token: str,
        expires_at: datetime,
        *,
        refresh_token_hash: Optional[str],
        device_info: Optional[dict],
        ip_address: Optional[str],
        user_agent: Optional[str],
        is_remembered: bool,
        now: Optional[datetime],
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_active_session_by_token(self, session_token: str, now: datetime) -> Optional[Session]: ...

    def find_active_session_by_refresh_hash(
        self, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime, ip_address: Optional[str] = None) -> None: ...

    def update_session_token(self, session_id: str, session_token: str) -> Optional[Session]: ...

    def deactivate_session(self, session_id: str) -> Optional[str]: ...

    def deactivate_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[str]: ...

    def force_logout_session(self, session_id: str) -> Optional[str]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> List[str]: ...


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def ttl(self, key: str) -> Optional[int]: ...


class SessionLedger:
    """Authoritative session records backed by the persistent store.

    Access tokens are never stored; a session is keyed by the SHA-256 digest
    of the access token it was issued with.
    """

    def __init__(self, store: SessionBackend, settings: Settings, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    def session_ttl(self, remembered: bool) -> timedelta:
        if remembered:
            return timedelta(days=self.settings.remembered_session_ttl_days)
        return timedelta(hours=self.settings.session_ttl_hours)

    async def create_session(
        self,
        user_id: str,
        access_token: str,
        refresh_token_hash: Optional[str],
        device_info: Optional[dict] = None,
        ip_address: Optional[str] = None,
        remembered: bool = False,
        user_agent: Optional[str] = None,
    ) -> Session:
        now = self.clock()
        session = self.store.create_session(
            user_id,
            hash_token(access_token),
            now + self.session_ttl(remembered),
            refresh_token_hash=refresh_token_hash,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
            is_remembered=remembered,
            now=now,
        )
        logger.info(
            "session_created",
            session_id=session.id,
            user_id=user_id,
            remembered=remembered,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    async def find_session_by_token(self, access_token: str) -> Optional[Session]:
        if not access_token:
            return None
        return self.store.find_active_session_by_token(hash_token(access_token), self.clock())

    async def verify_refresh_token(self, raw_refresh_token: str) -> Optional[Session]:
        if not raw_refresh_token:
            return None
        return self.store.find_active_session_by_refresh_hash(
            hash_token(raw_refresh_token), self.clock()
        )

    async def update_last_accessed(self, session_id: str, ip_address: Optional[str] = None) -> None:
        self.store.touch_session(session_id, self.clock(), ip_address)

    async def replace_access_token(self, session: Session, access_token: str) -> Session:
        """Point an existing session at a newly minted access token."""
        updated = self.store.update_session_token(session.id, hash_token(access_token))
        return updated or session

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions(user_id, self.clock())

    # Closing primitives return the affected session tokens so a cache layer
    # can purge its derived entries.
    async def close_session(self, session_id: str) -> Optional[str]:
        return self.store.deactivate_session(session_id)

    async def close_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        return self.store.deactivate_user_sessions(user_id, except_session_id)

    async def mark_force_logout(self, session_id: str) -> Optional[str]:
        return self.store.force_logout_session(session_id)

    async def sweep_expired(self) -> List[str]:
        return self.store.delete_expired_sessions(self.clock())

    async def close_oldest_sessions(
        self, user_id: str, limit: int, keep_session_id: Optional[str] = None
    ) -> List[str]:
        sessions = self.store.list_active_sessions(user_id, self.clock())
        candidates = sorted(
            (s for s in sessions if s.id != keep_session_id),
            key=lambda s: (s.created_at, s.last_accessed),
        )
        allowed = limit - 1 if keep_session_id else limit
        excess = len(candidates) - max(allowed, 0)
        closed: List[str] = []
        for sess in candidates[: max(excess, 0)]:
            token = self.store.deactivate_session(sess.id)
            if token:
                closed.append(token)
        return closed

    async def purge(self, session_tokens: Iterable[str]) -> None:
        """Drop derived copies of the given sessions; nothing to do without a cache."""
        return None

    async def invalidate_session(self, session_id: str) -> bool:
        token = await self.close_session(session_id)
        await self.purge([token] if token else [])
        return token is not None

    async def invalidate_all_user_sessions(self, user_id: str) -> int:
        tokens = await self.close_user_sessions(user_id)
        await self.purge(tokens)
        return len(tokens)

    async def invalidate_all_user_sessions_except(self, user_id: str, except_session_id: str) -> int:
        tokens = await self.close_user_sessions(user_id, except_session_id)
        await self.purge(tokens)
        return len(tokens)

    async def force_logout(self, session_id: str) -> bool:
        token = await self.mark_force_logout(session_id)
        await self.purge([token] if token else [])
        return token is not None

    async def enforce_session_limit(
        self, user_id: str, limit: int, keep_session_id: Optional[str] = None
    ) -> int:
        """Deactivate the oldest active sessions beyond ``limit`` (0 disables)."""
        if limit <= 0:
            return 0
        tokens = await self.close_oldest_sessions(user_id, limit, keep_session_id)
        await self.purge(tokens)
        if tokens:
            logger.info("session_limit_enforced", user_id=user_id, closed=len(tokens), limit=limit)
        return len(tokens)

    async def cleanup_expired_sessions(self) -> int:
        """Delete expired and force-logged-out sessions; safe to repeat."""
        tokens = await self.sweep_expired()
        await self.purge(tokens)
        if tokens:
            logger.info("expired_sessions_cleaned", deleted=len(tokens))
        return len(tokens)


class CachedSessionLedger(SessionLedger):
    """Session ledger that mirrors live sessions into a TTL cache.

    Every cache call is best effort: a failure is logged and the ledger
    answer stands. Cached copies are re-validated against the clock on read.
    """

    def __init__(self, ledger: SessionLedger, cache: CacheBackend, *, key_prefix: str = SESSION_KEY_PREFIX) -> None:
        super().__init__(ledger.store, ledger.settings, clock=ledger.clock)
        self.ledger = ledger
        self.cache = cache
        self.key_prefix = key_prefix

    def _key(self, session_token: str) -> str:
        return f"{self.key_prefix}{session_token}"

    async def _best_effort(self, event: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except Exception as exc:
            logger.warning(event, error=str(exc))
            return None

    @staticmethod
    def _encode(session: Session) -> str:
        data = asdict(session)
        data.pop("refresh_token_hash", None)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return json.dumps(data, separators=(",", ":"))

    @staticmethod
    def _decode(raw: str) -> Optional[Session]:
        try:
            data = json.loads(raw)
            for key in ("expires_at", "created_at", "last_accessed"):
                data[key] = datetime.fromisoformat(data[key])
            return Session(**data)
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("session_cache_decode_failed", error=str(exc))
            return None

    async def _mirror(self, session: Session) -> None:
        ttl_seconds = max(1, int((session.expires_at - self.clock()).total_seconds()))
        await self._best_effort(
            "session_cache_write_failed",
            self.cache.set(self._key(session.session_token), self._encode(session), ttl_seconds),
        )

    async def purge(self, session_tokens: Iterable[str]) -> None:
        keys = [self._key(t) for t in session_tokens if t]
        if keys:
            await self._best_effort("session_cache_delete_failed", self.cache.delete(*keys))

    async def create_session(
        self,
        user_id: str,
        access_token: str,
        refresh_token_hash: Optional[str],
        device_info: Optional[dict] = None,
        ip_address: Optional[str] = None,
        remembered: bool = False,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = await self.ledger.create_session(
            user_id,
            access_token,
            refresh_token_hash,
            device_info=device_info,
            ip_address=ip_address,
            remembered=remembered,
            user_agent=user_agent,
        )
        await self._mirror(session)
        return session

    async def find_session_by_token(self, access_token: str) -> Optional[Session]:
        if not access_token:
            return None
        digest = hash_token(access_token)
        raw = await self._best_effort("session_cache_read_failed", self.cache.get(self._key(digest)))
        if raw:
            cached = self._decode(raw)
            if cached is not None and cached.session_token == digest and cached.is_valid(self.clock()):
                return cached
            await self.purge([digest])
        session = await self.ledger.find_session_by_token(access_token)
        if session is not None:
            await self._mirror(session)
        return session

    async def replace_access_token(self, session: Session, access_token: str) -> Session:
        previous = session.session_token
        updated = await self.ledger.replace_access_token(session, access_token)
        await self.purge([previous])
        if updated.is_valid(self.clock()):
            await self._mirror(updated)
        return updated


def build_session_ledger(
    store: SessionBackend,
    cache: Optional[CacheBackend],
    settings: Settings,
    *,
    clock: Clock = utc_now,
) -> SessionLedger:
    """Plain ledger when no cache is configured, cache-mirrored otherwise."""
    ledger = SessionLedger(store, settings, clock=clock)
    if cache is None:
        return ledger
    return CachedSessionLedger(ledger, cache)


__all__ = [
    "CacheBackend",
    "CachedSessionLedger",
    "SESSION_KEY_PREFIX",
    "SessionBackend",
    "SessionLedger",
    "build_session_ledger",
]
