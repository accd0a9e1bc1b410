"""
loginguard/tfa/challenge_store.py

セッション単位のchallenge保存

- スロット: challenge.registration / challenge.authentication
- 同じ用途のchallengeは上書き（1セッション・1用途につき最大1つ）
- take_and_clear() で読み取りと無効化を同時に行う（一度だけ消費）
"""

from typing import Any, Dict, Optional

from pydantic import ValidationError

from loginguard.common.logger import get_logger
from loginguard.common.models import ChallengePurpose, ChallengeState
from loginguard.common.session import SessionContext

logger = get_logger(__name__, service_name='tfa')

SLOT_PREFIX = "challenge"


class ChallengeStore:
    """
    セッションに紐づくchallengeストア

    Args:
        session: 明示的なセッションコンテキスト
        ttl_seconds: challengeの有効期限（Noneの場合はセッション寿命のみ）
    """

    def __init__(self, session: SessionContext, ttl_seconds: Optional[int] = None):
        self.session = session
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def slot(purpose: ChallengePurpose) -> str:
        return f"{SLOT_PREFIX}.{ChallengePurpose(purpose).value}"

    async def put(self, purpose: ChallengePurpose, payload: Dict[str, Any]) -> ChallengeState:
        """challengeを保存（同じ用途の既存challengeを置き換える）"""
        state = ChallengeState(purpose=purpose, payload=payload)
        await self.session.set(self.slot(purpose), state.model_dump(mode="json"))
        logger.debug(f"[ChallengeStore] Stored {self.slot(purpose)} for session {self.session.session_id[:8]}")
        return state

    async def take_and_clear(self, purpose: ChallengePurpose) -> Optional[ChallengeState]:
        """
        challengeを取得して無効化

        Returns:
            ChallengeState（存在しない・期限切れ・破損の場合None）
        """
        raw = await self.session.take(self.slot(purpose))
        if raw is None:
            return None

        try:
            state = ChallengeState.model_validate(raw)
        except ValidationError:
            logger.warning(f"[ChallengeStore] Discarding corrupt {self.slot(purpose)}")
            return None

        if state.purpose != ChallengePurpose(purpose):
            logger.warning(f"[ChallengeStore] Purpose mismatch in {self.slot(purpose)}")
            return None

        if state.is_expired(self.ttl_seconds):
            logger.info(f"[ChallengeStore] Expired {self.slot(purpose)} discarded")
            return None

        return state
