"""
loginguard/common/database.py

TFAメソッドレコードのデータベーススキーマとCRUD操作

loginguard_tfaテーブル:
- 1ユーザー → 複数レコード（method='u2f' 等）
- options: メソッド固有の設定（JSON as text）。U2Fでは {"registrations": [...]}
"""

from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from contextlib import asynccontextmanager

from sqlalchemy import Column, String, Integer, DateTime, Text, update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.future import select

from loginguard.common.models import MethodRecord

Base = declarative_base()


# ========================================
# SQLAlchemy Models
# ========================================

class TfaRecord(Base):
    """
    loginguard_tfaテーブル

    - id (integer, autoincrement)
    - user_id (text)
    - method (text): TFAメソッド識別子
    - title (text): ユーザー向けタイトル
    - options (json as text)
    - created_on, last_used
    """
    __tablename__ = "loginguard_tfa"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    method = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="")
    options = Column(Text, nullable=True)  # JSON as text
    created_on = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    last_used = Column(DateTime, nullable=True)

    def to_method_record(self) -> MethodRecord:
        return MethodRecord(
            id=self.id,
            user_id=self.user_id,
            method=self.method,
            title=self.title or "",
            options=self.options,
        )


# ========================================
# Database Manager
# ========================================

class DatabaseManager:
    """SQLiteデータベース管理クラス"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./data/loginguard.db"):
        """
        Args:
            database_url: データベースURL（デフォルト: data/loginguard.db）
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        """データベース初期化（テーブル作成）"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def get_session(self):
        """セッション取得"""
        async with self.async_session() as session:
            yield session


# ========================================
# CRUD Operations
# ========================================

class TfaRecordCRUD:
    """TfaRecord CRUD操作"""

    @staticmethod
    async def create(session: AsyncSession, record_data: Dict[str, Any]) -> TfaRecord:
        """レコード作成"""
        options = record_data.get("options")
        record = TfaRecord(
            user_id=str(record_data["user_id"]),
            method=record_data["method"],
            title=record_data.get("title") or "",
            options=options,
        )
        session.add(record)
        await session.commit()
        await session.refresh(record)
        return record

    @staticmethod
    async def get_by_id(session: AsyncSession, record_id: int) -> Optional[TfaRecord]:
        """IDでレコード取得"""
        result = await session.execute(
            select(TfaRecord).where(TfaRecord.id == record_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_user_id(session: AsyncSession, user_id: str) -> List[TfaRecord]:
        """ユーザーの全レコード取得"""
        result = await session.execute(
            select(TfaRecord).where(TfaRecord.user_id == str(user_id)).order_by(TfaRecord.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_by_user_and_method(session: AsyncSession, user_id: str, method: str) -> List[TfaRecord]:
        """ユーザーの特定メソッドのレコード取得（ID順）"""
        result = await session.execute(
            select(TfaRecord)
            .where(TfaRecord.user_id == str(user_id))
            .where(TfaRecord.method == method)
            .order_by(TfaRecord.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def update_options(
        session: AsyncSession,
        record_id: int,
        options: Optional[str],
        title: Optional[str] = None
    ) -> Optional[TfaRecord]:
        """options（とタイトル）を更新"""
        record = await TfaRecordCRUD.get_by_id(session, record_id)
        if record:
            record.options = options
            if title is not None:
                record.title = title
            await session.commit()
            await session.refresh(record)
        return record

    @staticmethod
    async def compare_and_swap_options(
        session: AsyncSession,
        record_id: int,
        expected_options: Optional[str],
        new_options: str
    ) -> bool:
        """
        optionsのcompare-and-swap更新

        読み込み時点のoptionsと一致する場合のみ更新する（カウンター更新の原子性確保）

        Returns:
            更新できた場合True
        """
        condition = (
            TfaRecord.options.is_(None) if expected_options is None
            else TfaRecord.options == expected_options
        )
        result = await session.execute(
            update(TfaRecord)
            .where(TfaRecord.id == record_id)
            .where(condition)
            .values(options=new_options, last_used=datetime.now(timezone.utc))
        )
        await session.commit()
        return result.rowcount == 1

