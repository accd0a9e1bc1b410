"""
loginguard/common/session.py

セッションコンテキスト

リクエスト処理層が所有する明示的なセッションオブジェクト。
隠れたグローバル状態は使わず、各操作に引数として渡す。

- InMemorySessionContext: プロセス内dict（開発・テスト用）
- RedisSessionContext: Redis KV（TTL付き、本番用）

どちらも take() はアトミックな読み取り＆削除を保証する。
"""

import threading
from typing import Any, Dict, Optional

from loginguard.common.redis_client import RedisClient


class SessionStorageError(Exception):
    """セッションストレージへの書き込み失敗"""
    pass


class SessionContext:
    """
    セッションコンテキストの基底クラス

    キー単位で get / set / clear / take を提供する
    """

    def __init__(self, session_id: str):
        self.session_id = session_id

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def clear(self, key: str) -> None:
        raise NotImplementedError

    async def take(self, key: str) -> Optional[Any]:
        """値を取得して削除（アトミック）"""
        raise NotImplementedError


class InMemorySessionBackend:
    """
    プロセス内セッションストレージ

    session_id -> {key: value}
    スレッドセーフ（threading.Lock使用）
    """

    def __init__(self):
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def session(self, session_id: str) -> "InMemorySessionContext":
        return InMemorySessionContext(self, session_id)

    def discard(self, session_id: str) -> None:
        """セッション全体を破棄"""
        with self._lock:
            self._sessions.pop(session_id, None)


class InMemorySessionContext(SessionContext):
    """InMemorySessionBackend上のセッション"""

    def __init__(self, backend: Optional[InMemorySessionBackend] = None, session_id: str = "default"):
        super().__init__(session_id)
        self._backend = backend or InMemorySessionBackend()

    async def get(self, key: str) -> Optional[Any]:
        with self._backend._lock:
            return self._backend._sessions.get(self.session_id, {}).get(key)

    async def set(self, key: str, value: Any) -> None:
        with self._backend._lock:
            self._backend._sessions.setdefault(self.session_id, {})[key] = value

    async def clear(self, key: str) -> None:
        with self._backend._lock:
            self._backend._sessions.get(self.session_id, {}).pop(key, None)

    async def take(self, key: str) -> Optional[Any]:
        with self._backend._lock:
            return self._backend._sessions.get(self.session_id, {}).pop(key, None)


class RedisSessionContext(SessionContext):
    """
    Redis上のセッション

    キー形式: {prefix}:{session_id}:{key}
    TTLはセッション寿命（challengeの暗黙の有効期限）
    """

    def __init__(
        self,
        redis_client: RedisClient,
        session_id: str,
        prefix: str = "loginguard:session",
        ttl_seconds: int = 3600
    ):
        super().__init__(session_id)
        self.redis_client = redis_client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{self.session_id}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        return await self.redis_client.get(self._make_key(key))

    async def set(self, key: str, value: Any) -> None:
        stored = await self.redis_client.set(self._make_key(key), value, ttl_seconds=self.ttl_seconds)
        if not stored:
            raise SessionStorageError(f"Failed to store session key: {key}")

    async def clear(self, key: str) -> None:
        await self.redis_client.delete(self._make_key(key))

    async def take(self, key: str) -> Optional[Any]:
        return await self.redis_client.get_and_delete(self._make_key(key))

