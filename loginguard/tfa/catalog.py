"""
loginguard/tfa/catalog.py

RegistrationCatalog - TFAレコードに保存されたU2F登録情報の読み書き

- options blob の寛容なデコード
- ユーザーの登録済み鍵一覧（セットアップ時の除外リスト用）
- 認証成功時のカウンター更新（アトミックなread-modify-write）
"""

import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from loginguard.common.database import DatabaseManager, TfaRecordCRUD
from loginguard.common.logger import get_logger, log_database_operation, log_security_event
from loginguard.common.models import KeyRegistration, MethodRecord, RegistrationOptions

logger = get_logger(__name__, service_name='tfa')

TABLE_NAME = "loginguard_tfa"


class StorageError(Exception):
    """レコードストレージの読み書き失敗"""
    pass


class RecordLocks:
    """
    レコード単位の asyncio.Lock

    同一プロセス内で同じレコードへのカウンター更新を直列化する
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, record_id: int):
        lock = self._locks[record_id]
        async with lock:
            yield


class RegistrationCatalog:
    """
    U2F登録情報カタログ

    Args:
        db_manager: データベースマネージャー
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self._locks = RecordLocks()

    @staticmethod
    def decode(options: Union[None, str, bytes, Dict[str, Any], RegistrationOptions]) -> RegistrationOptions:
        """options blob をデコード（不正な場合は空の登録リスト）"""
        return RegistrationOptions.decode(options)

    async def list_records(self, user_id: str, method: str) -> List[MethodRecord]:
        """ユーザーの指定メソッドのレコード一覧（ID順）"""
        start = time.perf_counter()
        try:
            async with self.db_manager.get_session() as session:
                rows = await TfaRecordCRUD.get_by_user_and_method(session, user_id, method)
                records = [row.to_method_record() for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"[RegistrationCatalog] Failed to list records: user_id={user_id}, error={e}")
            raise StorageError(str(e)) from e

        log_database_operation(logger, "SELECT", TABLE_NAME, duration_ms=(time.perf_counter() - start) * 1000)
        return records

    async def list_for_user(self, user_id: str, method: str) -> Dict[int, KeyRegistration]:
        """
        ユーザーの各レコードの先頭の登録情報

        登録情報を持たないレコードはスキップする

        Returns:
            {record_id: KeyRegistration}
        """
        registrations: Dict[int, KeyRegistration] = {}
        for record in await self.list_records(user_id, method):
            options = self.decode(record.options)
            if not options.registrations:
                continue
            registrations[record.id] = options.registrations[0]
        return registrations

    async def get_record(self, record_id: int) -> Optional[MethodRecord]:
        try:
            async with self.db_manager.get_session() as session:
                row = await TfaRecordCRUD.get_by_id(session, record_id)
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

        log_database_operation(logger, "SELECT", TABLE_NAME, record_id=record_id)
        return row.to_method_record() if row else None

    async def list_user_records(self, user_id: str) -> List[MethodRecord]:
        """ユーザーの全メソッドのレコード一覧"""
        try:
            async with self.db_manager.get_session() as session:
                rows = await TfaRecordCRUD.get_by_user_id(session, user_id)
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

        return [row.to_method_record() for row in rows]

    async def create_record(self, user_id: str, method: str, title: str = "") -> MethodRecord:
        """セットアップ前の空レコードを作成"""
        try:
            async with self.db_manager.get_session() as session:
                row = await TfaRecordCRUD.create(session, {
                    "user_id": user_id,
                    "method": method,
                    "title": title,
                    "options": None,
                })
        except SQLAlchemyError as e:
            logger.error(f"[RegistrationCatalog] Failed to create record: user_id={user_id}, error={e}")
            raise StorageError(str(e)) from e

        log_database_operation(logger, "INSERT", TABLE_NAME, record_id=row.id)
        return row.to_method_record()

    async def save_options(
        self,
        record_id: int,
        options: Union[Dict[str, Any], RegistrationOptions],
        title: Optional[str] = None
    ) -> Optional[MethodRecord]:
        """セットアップ結果（options / タイトル）を保存"""
        options_json = self.decode(options).to_json()
        try:
            async with self.db_manager.get_session() as session:
                row = await TfaRecordCRUD.update_options(session, record_id, options_json, title=title)
        except SQLAlchemyError as e:
            logger.error(f"[RegistrationCatalog] Failed to save options: record_id={record_id}, error={e}")
            raise StorageError(str(e)) from e

        log_database_operation(logger, "UPDATE", TABLE_NAME, record_id=record_id)
        return row.to_method_record() if row else None

    async def persist_counter_update(self, record_id: int, updated: KeyRegistration) -> bool:
        """
        認証成功後のカウンター更新

        レコードの登録情報を更新後の1件で上書きする。
        保存済みカウンターが新しい値以上の場合（並行・リプレイ認証）は更新しない。

        Returns:
            更新できた場合True
        """
        key_handle = updated.keyHandle.rstrip("=")

        async with self._locks.hold(record_id):
            try:
                async with self.db_manager.get_session() as session:
                    row = await TfaRecordCRUD.get_by_id(session, record_id)
                    if row is None:
                        logger.warning(f"[RegistrationCatalog] Record disappeared: record_id={record_id}")
                        return False

                    current = self.decode(row.options)
                    stored = next(
                        (r for r in current.registrations if r.keyHandle.rstrip("=") == key_handle),
                        None
                    )
                    if stored is None:
                        logger.warning(f"[RegistrationCatalog] Key no longer in record: record_id={record_id}")
                        return False

                    if stored.counter >= updated.counter:
                        log_security_event(
                            logger,
                            "u2f_counter_replay",
                            user_id=row.user_id,
                            success=False,
                            details={"record_id": record_id, "stored": stored.counter, "received": updated.counter}
                        )
                        return False

                    new_options = current.model_copy(update={"registrations": [updated]}).to_json()
                    swapped = await TfaRecordCRUD.compare_and_swap_options(
                        session, record_id, row.options, new_options
                    )
            except SQLAlchemyError as e:
                logger.error(f"[RegistrationCatalog] Failed to update counter: record_id={record_id}, error={e}")
                raise StorageError(str(e)) from e

        log_database_operation(logger, "UPDATE", TABLE_NAME, record_id=record_id)
        if not swapped:
            logger.warning(f"[RegistrationCatalog] Concurrent update detected: record_id={record_id}")
        return swapped
