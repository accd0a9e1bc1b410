"""
loginguard/tfa/base.py

TFAメソッドの共通インターフェースとレジストリ

ホスト側TFAフレームワークはレコードのmethod識別子でメソッドを選び、
ライフサイクル操作（describe / setup / captive / validate）を呼び出す。
対象外のメソッドは NOT_APPLICABLE を返し、次のメソッドに処理が移る。
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from loginguard.common.logger import get_logger
from loginguard.common.models import (
    MethodRecord,
    MethodDescription,
    SetupInstructions,
    CaptiveChallenge,
)
from loginguard.common.session import SessionContext

logger = get_logger(__name__, service_name='tfa')


class _NotApplicable:
    """「このメソッドの対象外」を表すシングルトン（偽として評価される）"""

    _instance: Optional["_NotApplicable"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_APPLICABLE"


NOT_APPLICABLE = _NotApplicable()


class TfaMethod(ABC):
    """
    TFAメソッドの抽象インターフェース

    各操作はレコードのmethodが自分の識別子と一致しない場合、
    ストレージに触れずに NOT_APPLICABLE を返すこと。
    """

    name: str = ""

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    def describe(self) -> Union[MethodDescription, _NotApplicable]:
        ...

    @abstractmethod
    async def begin_setup(
        self, record: MethodRecord, session: SessionContext
    ) -> Union[SetupInstructions, _NotApplicable]:
        ...

    @abstractmethod
    async def save_setup(
        self, record: MethodRecord, acting_user_id: str, code: Optional[str], session: SessionContext
    ) -> Union[Dict[str, Any], _NotApplicable]:
        ...

    @abstractmethod
    async def begin_captive_challenge(
        self, record: MethodRecord, session: SessionContext
    ) -> Union[CaptiveChallenge, _NotApplicable]:
        ...

    @abstractmethod
    async def validate(
        self, record: MethodRecord, acting_user_id: str, code: Optional[str], session: SessionContext
    ) -> Union[bool, _NotApplicable]:
        ...


class MethodRegistry:
    """
    method識別子 → TfaMethod 実装のレジストリ

    Usage:
        registry = MethodRegistry()
        registry.register(U2FMethod(...))
        instructions = await registry.begin_setup(record, session)
    """

    def __init__(self):
        self._methods: Dict[str, TfaMethod] = {}

    def register(self, method: TfaMethod) -> None:
        if not method.name:
            raise ValueError("TFA method must have a name")
        self._methods[method.name] = method
        logger.info(f"[MethodRegistry] Registered TFA method: {method.name} (enabled={method.enabled})")

    def get(self, name: str) -> Optional[TfaMethod]:
        return self._methods.get(name)

    def describe_all(self) -> List[MethodDescription]:
        """有効なメソッドの情報一覧（無効化されたメソッドは除外）"""
        descriptions = []
        for method in self._methods.values():
            if not method.enabled:
                continue
            description = method.describe()
            if description is NOT_APPLICABLE:
                continue
            descriptions.append(description)
        return descriptions

    async def begin_setup(self, record: MethodRecord, session: SessionContext):
        return await self._dispatch("begin_setup", record, session)

    async def save_setup(self, record: MethodRecord, acting_user_id: str, code: Optional[str], session: SessionContext):
        return await self._dispatch("save_setup", record, acting_user_id, code, session)

    async def begin_captive_challenge(self, record: MethodRecord, session: SessionContext):
        return await self._dispatch("begin_captive_challenge", record, session)

    async def validate(self, record: MethodRecord, acting_user_id: str, code: Optional[str], session: SessionContext) -> bool:
        result = await self._dispatch("validate", record, acting_user_id, code, session)
        if result is NOT_APPLICABLE:
            return False
        return bool(result)

    async def _dispatch(self, operation: str, *args):
        """NOT_APPLICABLE 以外を最初に返したメソッドの結果を返す"""
        for method in self._methods.values():
            result = await getattr(method, operation)(*args)
            if result is not NOT_APPLICABLE:
                return result
        return NOT_APPLICABLE
