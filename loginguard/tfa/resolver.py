"""
loginguard/tfa/resolver.py

RegistrationResolver - 認証試行の候補鍵を決定

- バッチ無効: レコード自身の登録情報のみ
- バッチ有効: 同じユーザー・同じメソッドの全レコードの登録情報（レコードID順）
"""

from dataclasses import dataclass
from typing import List

from loginguard.common.logger import get_logger
from loginguard.common.models import KeyRegistration, MethodRecord
from loginguard.tfa.catalog import RegistrationCatalog, StorageError

logger = get_logger(__name__, service_name='tfa')


@dataclass(frozen=True)
class Candidate:
    """候補鍵と、その鍵が保存されているレコードID"""
    record_id: int
    registration: KeyRegistration


class RegistrationResolver:
    """候補鍵リゾルバ"""

    def __init__(self, catalog: RegistrationCatalog):
        self.catalog = catalog

    async def resolve(self, record: MethodRecord, allow_batching: bool) -> List[KeyRegistration]:
        return [candidate.registration for candidate in await self.resolve_candidates(record, allow_batching)]

    async def resolve_candidates(self, record: MethodRecord, allow_batching: bool) -> List[Candidate]:
        """
        候補鍵を解決

        バッチ時にストレージ読み込みが失敗した場合は空リストを返す（検証は必ず失敗する）
        """
        if not allow_batching:
            options = self.catalog.decode(record.options)
            return [Candidate(record.id, registration) for registration in options.registrations]

        try:
            records = await self.catalog.list_records(record.user_id, record.method)
        except StorageError as e:
            logger.warning(
                f"[RegistrationResolver] Batch resolution failed, no candidates: "
                f"user_id={record.user_id}, error={e}"
            )
            return []

        candidates: List[Candidate] = []
        for sibling in sorted(records, key=lambda r: r.id):
            for registration in self.catalog.decode(sibling.options).registrations:
                candidates.append(Candidate(sibling.id, registration))

        logger.debug(
            f"[RegistrationResolver] Resolved {len(candidates)} candidates "
            f"from {len(records)} records for user_id={record.user_id}"
        )
        return candidates
