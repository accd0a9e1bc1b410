"""
loginguard/services/tfa_api/service.py

TFA API サービス

- TFAメソッド一覧
- TFAレコードの作成・一覧
- セットアップ（登録challenge発行 / 登録レスポンス保存）
- captive認証（認証challenge発行 / 検証）

操作ユーザーは Authorization: Bearer <JWT>、セッションはcookieで識別する。
"""

import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Optional, Set

from fastapi import FastAPI, Depends, HTTPException, Request, Response, status
from sqlalchemy.engine import make_url

from loginguard.common.auth import current_user_dependency
from loginguard.common.config import ServiceSettings, U2FPluginConfig
from loginguard.common.database import DatabaseManager
from loginguard.common.logger import get_logger
from loginguard.common.models import (
    MethodRecord,
    CreateRecordRequest,
    SaveSetupRequest,
    ValidateRequest,
)
from loginguard.common.redis_client import RedisClient
from loginguard.common.session import (
    SessionContext,
    InMemorySessionBackend,
    RedisSessionContext,
    SessionStorageError,
)
from loginguard.common.u2f import ConfigurationUnavailableError, app_id_from_url
from loginguard.tfa.base import NOT_APPLICABLE, MethodRegistry
from loginguard.tfa.catalog import RegistrationCatalog, StorageError
from loginguard.tfa.u2f_method import U2FMethod, TfaSetupError

logger = get_logger(__name__, service_name='tfa_api')


class TfaApiService:
    """
    TFA API サービス

    Args:
        settings: サービス設定（Noneの場合は環境変数から）
        u2f_config: U2Fメソッド設定（Noneの場合は環境変数から）
    """

    def __init__(
        self,
        settings: Optional[ServiceSettings] = None,
        u2f_config: Optional[U2FPluginConfig] = None
    ):
        self.settings = settings or ServiceSettings.from_env()
        self.u2f_config = u2f_config or U2FPluginConfig.from_env()

        # データベース
        self.db_manager = DatabaseManager(database_url=self.settings.database_url)
        self.catalog = RegistrationCatalog(self.db_manager)

        # セッションバックエンド
        self.memory_sessions = InMemorySessionBackend()
        self.redis_client: Optional[RedisClient] = None
        if self.settings.session_backend == "redis":
            self.redis_client = RedisClient(redis_url=self.settings.redis_url)

        # AppIDごとのメソッドレジストリ（AppID未設定時はリクエストのoriginから導出、LRUで上限あり）
        self._registries: "OrderedDict[str, MethodRegistry]" = OrderedDict()
        self._allowed_app_ids = self._load_allowed_app_ids()

        self.get_current_user_id = current_user_dependency(self.settings)

        self.app = FastAPI(
            title="LoginGuard TFA API",
            description="U2F security key two-factor authentication service",
            version="0.1.0"
        )

        @self.app.on_event("startup")
        async def startup_event():
            logger.info("[TfaApiService] Running startup tasks...")
            self._ensure_sqlite_directory()
            await self.db_manager.init_db()
            logger.info("[TfaApiService] Database initialized")

        @self.app.on_event("shutdown")
        async def shutdown_event():
            if self.redis_client:
                await self.redis_client.disconnect()

        self.register_endpoints()

    # ========================================
    # 内部ヘルパー
    # ========================================

    def _ensure_sqlite_directory(self):
        url = make_url(self.settings.database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    def _load_allowed_app_ids(self) -> Set[str]:
        allowed = set()
        for origin in self.settings.allowed_origins:
            try:
                allowed.add(app_id_from_url(origin))
            except ConfigurationUnavailableError as e:
                logger.warning(f"[TfaApiService] Ignoring allowed origin: {e}")
        return allowed

    def _request_app_id(self, request: Request) -> Optional[str]:
        try:
            app_id = app_id_from_url(str(request.base_url))
        except ConfigurationUnavailableError as e:
            logger.warning(f"[TfaApiService] Cannot derive AppID from request: {e}")
            return None

        if self._allowed_app_ids and app_id not in self._allowed_app_ids:
            logger.warning(f"[TfaApiService] Origin not in allowed origins: {app_id}")
            return None
        return app_id

    def registry_for(self, request: Request) -> MethodRegistry:
        """
        リクエストのoriginに対応するメソッドレジストリ

        AppID未設定時はHostヘッダーから導出するため、
        保持するレジストリ数は registry_cache_size で打ち切る（古いものから破棄）。
        """
        app_id = self.u2f_config.app_id or self._request_app_id(request)

        cache_key = app_id or ""
        registry = self._registries.get(cache_key)
        if registry is not None:
            self._registries.move_to_end(cache_key)
            return registry

        registry = MethodRegistry()
        registry.register(U2FMethod(self.u2f_config, self.catalog, app_id=app_id))
        self._registries[cache_key] = registry
        while len(self._registries) > self.settings.registry_cache_size:
            evicted, _ = self._registries.popitem(last=False)
            logger.debug(f"[TfaApiService] Evicted method registry: {evicted or '(no AppID)'}")
        return registry

    async def get_session(self, request: Request, response: Response) -> SessionContext:
        """cookieからセッションを取得（なければ新規発行）"""
        cookie_name = self.settings.session_cookie_name
        session_id = request.cookies.get(cookie_name)
        if not session_id:
            session_id = uuid.uuid4().hex
            response.set_cookie(
                cookie_name,
                session_id,
                max_age=self.settings.session_ttl_seconds,
                httponly=True,
                samesite="lax",
            )

        if self.redis_client is not None:
            return RedisSessionContext(
                self.redis_client,
                session_id,
                ttl_seconds=self.settings.session_ttl_seconds
            )
        return self.memory_sessions.session(session_id)

    async def _load_record(self, record_id: int, user_id: str) -> MethodRecord:
        try:
            record = await self.catalog.get_record(record_id)
        except StorageError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

        # 他ユーザーのレコードは存在しないものとして扱う
        if record is None or record.user_id != str(user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
        return record

    @staticmethod
    def _not_applicable() -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No enabled TFA method handles this record"
        )

    # ========================================
    # エンドポイント
    # ========================================

    def register_endpoints(self):
        """エンドポイントを登録"""

        get_current_user_id = self.get_current_user_id

        @self.app.get("/health")
        async def health_check():
            """ヘルスチェック"""
            return {"status": "healthy"}

        @self.app.get("/tfa/methods")
        async def list_methods(request: Request):
            """有効なTFAメソッド一覧"""
            registry = self.registry_for(request)
            return {"methods": [d.model_dump() for d in registry.describe_all()]}

        @self.app.get("/tfa/records")
        async def list_records(user_id: str = Depends(get_current_user_id)):
            """ユーザーのTFAレコード一覧"""
            try:
                records = await self.catalog.list_user_records(user_id)
            except StorageError as e:
                raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

            return {
                "records": [
                    {
                        "id": record.id,
                        "method": record.method,
                        "title": record.title,
                        "keys": len(self.catalog.decode(record.options).registrations),
                    }
                    for record in records
                ]
            }

        @self.app.post("/tfa/records", status_code=status.HTTP_201_CREATED)
        async def create_record(
            body: CreateRecordRequest,
            request: Request,
            user_id: str = Depends(get_current_user_id)
        ):
            """セットアップ前の空レコードを作成"""
            method = self.registry_for(request).get(body.method)
            if method is None or not method.enabled:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"TFA method not available: {body.method}"
                )

            title = body.title or method.describe().display
            try:
                record = await self.catalog.create_record(user_id, body.method, title)
            except StorageError as e:
                raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

            logger.info(f"[TfaApiService] Created TFA record: id={record.id}, user_id={user_id}, method={record.method}")
            return {"id": record.id, "method": record.method, "title": record.title}

        @self.app.get("/tfa/records/{record_id}/setup")
        async def begin_setup(
            record_id: int,
            request: Request,
            user_id: str = Depends(get_current_user_id),
            session: SessionContext = Depends(self.get_session)
        ):
            """セットアップ情報（登録challenge）を取得"""
            record = await self._load_record(record_id, user_id)
            try:
                instructions = await self.registry_for(request).begin_setup(record, session)
            except (StorageError, SessionStorageError) as e:
                raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

            if instructions is NOT_APPLICABLE:
                raise self._not_applicable()
            return instructions.model_dump()

        @self.app.post("/tfa/records/{record_id}/setup")
        async def save_setup(
            record_id: int,
            body: SaveSetupRequest,
            request: Request,
            user_id: str = Depends(get_current_user_id),
            session: SessionContext = Depends(self.get_session)
        ):
            """登録レスポンスを検証して保存"""
            record = await self._load_record(record_id, user_id)
            try:
                options = await self.registry_for(request).save_setup(record, user_id, body.code, session)
            except TfaSetupError as e:
                raise HTTPException(status_code=e.status_code, detail=e.message)
            except StorageError as e:
                raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

            if options is NOT_APPLICABLE:
                raise self._not_applicable()

            try:
                saved = await self.catalog.save_options(record.id, options, title=body.title)
            except StorageError as e:
                raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

            return {
                "id": saved.id,
                "title": saved.title,
                "keys": len(self.catalog.decode(saved.options).registrations),
            }

        @self.app.get("/tfa/records/{record_id}/captive")
        async def begin_captive(
            record_id: int,
            request: Request,
            user_id: str = Depends(get_current_user_id),
            session: SessionContext = Depends(self.get_session)
        ):
            """captiveページ用の認証challengeを取得"""
            record = await self._load_record(record_id, user_id)
            try:
                challenge = await self.registry_for(request).begin_captive_challenge(record, session)
            except (StorageError, SessionStorageError) as e:
                raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

            if challenge is NOT_APPLICABLE:
                raise self._not_applicable()
            return challenge.model_dump()

        @self.app.post("/tfa/records/{record_id}/validate")
        async def validate(
            record_id: int,
            body: ValidateRequest,
            request: Request,
            user_id: str = Depends(get_current_user_id),
            session: SessionContext = Depends(self.get_session)
        ):
            """認証レスポンスを検証（結果はbooleanのみ）"""
            record = await self._load_record(record_id, user_id)
            validated = await self.registry_for(request).validate(record, user_id, body.code, session)
            return {"validated": validated}
