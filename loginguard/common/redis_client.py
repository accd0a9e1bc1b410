"""
loginguard/common/redis_client.py

Redis KVストアクライアント（共通モジュール）
- 一時データのTTL管理
- セッション単位のU2F challenge保存/取得/消費
"""

import json
import logging
from typing import Optional, Any
import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Redis KVストアクライアント

    用途:
    - セッションスロット（challenge.registration / challenge.authentication）
    - その他一時データ
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0"):
        """
        Args:
            redis_url: Redis接続URL（デフォルト: redis://localhost:6379/0）
        """
        self.redis_url = redis_url
        self.client: Optional[redis.Redis] = None

    async def connect(self):
        """Redis接続を確立"""
        if self.client is None:
            self.client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0
            )
            logger.info(f"[RedisClient] Connected to Redis: {self.redis_url}")

    async def disconnect(self):
        """Redis接続を切断"""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("[RedisClient] Disconnected from Redis")

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[int] = None
    ) -> bool:
        """
        キーと値をRedisに保存

        Args:
            key: Redis key
            value: 保存する値（dict, list, str, int, bool等）
            ttl_seconds: 有効期限（秒）、Noneの場合は無期限

        Returns:
            成功した場合True
        """
        try:
            await self.connect()

            if isinstance(value, (dict, list)):
                value_str = json.dumps(value, ensure_ascii=False)
            else:
                value_str = str(value)

            if ttl_seconds:
                await self.client.setex(key, ttl_seconds, value_str)
            else:
                await self.client.set(key, value_str)

            logger.debug(f"[RedisClient] SET key={key}, ttl={ttl_seconds}s")
            return True

        except Exception as e:
            logger.error(f"[RedisClient] Failed to SET key={key}: {e}", exc_info=True)
            return False

    async def get(self, key: str, as_json: bool = True) -> Optional[Any]:
        """
        キーの値を取得

        Args:
            key: Redis key
            as_json: True の場合、JSON文字列をパースして返す

        Returns:
            値（存在しない場合None）
        """
        try:
            await self.connect()

            value_str = await self.client.get(key)
            return self._decode(value_str, as_json)

        except Exception as e:
            logger.error(f"[RedisClient] Failed to GET key={key}: {e}", exc_info=True)
            return None

    async def get_and_delete(self, key: str, as_json: bool = True) -> Optional[Any]:
        """
        キーの値を取得して同時に削除（GETDEL、アトミック）

        同じキーに対する並行呼び出しのうち値を受け取れるのは1つだけ。

        Returns:
            値（存在しない場合None）
        """
        try:
            await self.connect()

            value_str = await self.client.getdel(key)
            logger.debug(f"[RedisClient] GETDEL key={key}, found={value_str is not None}")
            return self._decode(value_str, as_json)

        except Exception as e:
            logger.error(f"[RedisClient] Failed to GETDEL key={key}: {e}", exc_info=True)
            return None

    async def delete(self, key: str) -> bool:
        """
        キーを削除

        Returns:
            成功した場合True
        """
        try:
            await self.connect()

            deleted = await self.client.delete(key)
            logger.debug(f"[RedisClient] DELETE key={key}, deleted={deleted}")
            return deleted > 0

        except Exception as e:
            logger.error(f"[RedisClient] Failed to DELETE key={key}: {e}", exc_info=True)
            return False

    @staticmethod
    def _decode(value_str: Optional[str], as_json: bool) -> Optional[Any]:
        if value_str is None:
            return None
        if as_json:
            try:
                return json.loads(value_str)
            except json.JSONDecodeError:
                # JSONパースに失敗した場合は文字列として返す
                return value_str
        return value_str
