"""
loginguard/tfa/u2f_method.py

U2FMethod - U2FセキュリティキーによるTFAメソッド

ホスト側TFAフレームワークに4つのライフサイクル操作を提供:
1. begin_setup: 登録challengeを発行（既存鍵は除外）
2. save_setup: 登録レスポンスを検証し、新しい鍵をoptionsに追加
3. begin_captive_challenge: 認証challengeを発行（バッチ有効時は全レコードの鍵が候補）
4. validate: 認証レスポンスを検証し、カウンターを更新

対象外のレコード（method違い・メソッド無効）は NOT_APPLICABLE を返し、ストレージには触れない。
"""

from typing import Iterable, Optional

from cryptography import x509

from loginguard.common.config import U2FPluginConfig
from loginguard.common.logger import get_logger, log_security_event
from loginguard.common.models import (
    ChallengePurpose,
    MethodRecord,
    MethodDescription,
    SetupInstructions,
    CaptiveChallenge,
)
from loginguard.common.session import SessionContext
from loginguard.common.u2f import (
    U2FServer,
    U2FError,
    ClientError,
    ConfigurationUnavailableError,
    KeyAlreadyRegisteredError,
    UntrustedAttestationError,
    ReplayedCounterError,
    load_attestation_certificates,
)
from loginguard.tfa.base import NOT_APPLICABLE, TfaMethod
from loginguard.tfa.catalog import RegistrationCatalog, StorageError
from loginguard.tfa.challenge_store import ChallengeStore
from loginguard.tfa.resolver import RegistrationResolver

logger = get_logger(__name__, service_name='u2f')

METHOD_NAME = "u2f"
METHOD_IMAGE = "media/loginguard/images/u2f.svg"

# ユーザー向けメッセージ
MSG_DISPLAY = "U2F Security Key"
MSG_SHORT_INFO = "Use a FIDO U2F hardware security key as your second factor."
MSG_INSTRUCTIONS = "Insert your U2F security key and touch its button when it starts blinking."
MSG_CONFIGURED = "This security key is already set up. You can only change its title."
MSG_NOT_AUTHORISED = "You are not authorised to perform this action."
MSG_REGISTRATION_FAILED = "Your security key could not be registered. Please try again."
MSG_ALREADY_REGISTERED = "This security key is already registered to your account."
MSG_UNTRUSTED_DEVICE = "This security key is not from a trusted manufacturer."

# U2F JS APIのエラーコード別メッセージ（登録時）
CLIENT_ERROR_MESSAGES = {
    1: "An unknown error occurred while talking to your security key.",
    2: "Your browser could not process the registration request.",
    3: "Your browser or security key does not support this configuration.",
    4: "This security key is not eligible for registration, or it is already registered.",
    5: "The security key did not respond in time. Please try again.",
}


class TfaSetupError(Exception):
    """セットアップ保存の失敗（メッセージはそのままユーザーに表示される）"""

    def __init__(self, message: str, status_code: int = 403):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def setup_error_message(error: U2FError) -> str:
    """エンジンのエラーをユーザー向けメッセージに変換"""
    if isinstance(error, ClientError):
        return CLIENT_ERROR_MESSAGES.get(error.error_code, MSG_REGISTRATION_FAILED)
    if isinstance(error, KeyAlreadyRegisteredError):
        return MSG_ALREADY_REGISTERED
    if isinstance(error, UntrustedAttestationError):
        return MSG_UNTRUSTED_DEVICE
    return MSG_REGISTRATION_FAILED


class U2FMethod(TfaMethod):
    """
    U2F TFAメソッド

    Args:
        config: U2Fメソッド設定
        catalog: 登録情報カタログ
        app_id: AppID（config.app_idが優先。どちらもない場合はメソッド無効）
        attestation_certificates: 信頼するattestation CA（config.attestation_ca_dirより優先）
    """

    name = METHOD_NAME

    def __init__(
        self,
        config: U2FPluginConfig,
        catalog: RegistrationCatalog,
        app_id: Optional[str] = None,
        attestation_certificates: Optional[Iterable[x509.Certificate]] = None
    ):
        self.config = config
        self.catalog = catalog
        self.resolver = RegistrationResolver(catalog)
        self.server: Optional[U2FServer] = None

        try:
            effective_app_id = config.app_id or app_id
            if not effective_app_id:
                raise ConfigurationUnavailableError("No AppID configured")
            if attestation_certificates is None and config.attestation_ca_dir:
                attestation_certificates = load_attestation_certificates(config.attestation_ca_dir)
            self.server = U2FServer(effective_app_id, attestation_certificates)
        except ConfigurationUnavailableError as e:
            logger.warning(f"[U2FMethod] U2F method disabled: {e}")

    @property
    def enabled(self) -> bool:
        return self.server is not None

    def _applies(self, record: MethodRecord) -> bool:
        return self.enabled and record.method == self.name

    def _challenge_store(self, session: SessionContext) -> ChallengeStore:
        return ChallengeStore(session, ttl_seconds=self.config.challenge_ttl_seconds)

    # ========================================
    # Describe
    # ========================================

    def describe(self):
        if not self.enabled:
            return NOT_APPLICABLE

        return MethodDescription(
            name=self.name,
            display=MSG_DISPLAY,
            short_info=MSG_SHORT_INFO,
            image=METHOD_IMAGE,
            can_disable=True,
            allow_multiple=True,
            help_url=self.config.help_url,
            allow_entry_batching=self.config.allow_entry_batching,
        )

    # ========================================
    # Setup
    # ========================================

    async def begin_setup(self, record: MethodRecord, session: SessionContext):
        """
        セットアップ情報を返し、登録challengeをセッションに保存

        既にユーザーが登録済みの鍵は除外リストに入る
        """
        if not self._applies(record):
            return NOT_APPLICABLE

        existing = await self.catalog.list_for_user(record.user_id, self.name)
        challenge = self.server.begin_registration(list(existing.values()))
        await self._challenge_store(session).put(ChallengePurpose.REGISTRATION, challenge.model_dump())

        configured = bool(self.catalog.decode(record.options).registrations)

        return SetupInstructions(
            default_title=MSG_DISPLAY,
            pre_message=MSG_CONFIGURED if configured else MSG_INSTRUCTIONS,
            state="configured" if configured else "register",
            registration_request=challenge.client_payload(),
            help_url=self.config.help_url,
        )

    async def save_setup(
        self,
        record: MethodRecord,
        acting_user_id: str,
        code: Optional[str],
        session: SessionContext
    ):
        """
        登録レスポンスを検証し、保存すべきoptionsを返す

        - challengeもレスポンスもない: optionsをそのまま返す（タイトルのみの更新）
        - challengeなしでレスポンスあり: 改ざんとみなしTfaSetupError(403)
        - challengeありでレスポンスなし: optionsをそのまま返す

        Raises:
            TfaSetupError: 登録に失敗した場合（メッセージはユーザー向け）
        """
        if not self._applies(record) or record.user_id != str(acting_user_id):
            return NOT_APPLICABLE

        options = self.catalog.decode(record.options)
        state = await self._challenge_store(session).take_and_clear(ChallengePurpose.REGISTRATION)
        has_response = bool(code and code.strip())

        if state is None:
            if has_response:
                log_security_event(
                    logger, "u2f_registration_without_challenge",
                    user_id=record.user_id, success=False, details={"record_id": record.id}
                )
                raise TfaSetupError(MSG_NOT_AUTHORISED, status_code=403)
            return options.to_dict()

        if not has_response:
            return options.to_dict()

        try:
            registration = self.server.complete_registration(state.payload, code)
        except U2FError as e:
            logger.info(f"[U2FMethod] Registration rejected: record_id={record.id}, reason={type(e).__name__}: {e}")
            raise TfaSetupError(setup_error_message(e), status_code=403) from e

        options.registrations.append(registration)
        log_security_event(
            logger, "u2f_key_registered",
            user_id=record.user_id, success=True, details={"record_id": record.id}
        )
        return options.to_dict()

    # ========================================
    # Captive / Validate
    # ========================================

    async def begin_captive_challenge(self, record: MethodRecord, session: SessionContext):
        """認証challengeを発行してセッションに保存"""
        if not self._applies(record):
            return NOT_APPLICABLE

        candidates = await self.resolver.resolve(record, self.config.allow_entry_batching)
        challenge = self.server.begin_authentication(candidates)
        await self._challenge_store(session).put(ChallengePurpose.AUTHENTICATION, challenge.model_dump())

        return CaptiveChallenge(
            pre_message=MSG_INSTRUCTIONS,
            authentication_request=challenge.client_payload(),
            help_url=self.config.help_url,
            allow_entry_batching=self.config.allow_entry_batching,
        )

    async def validate(
        self,
        record: MethodRecord,
        acting_user_id: str,
        code: Optional[str],
        session: SessionContext
    ):
        """
        認証レスポンスを検証

        失敗理由に関わらずFalseを返す（例外は外に出さない）。
        成功時はカウンターを一致した鍵のレコードに保存する。
        """
        if not self._applies(record):
            return NOT_APPLICABLE

        if record.user_id != str(acting_user_id):
            return False

        state = await self._challenge_store(session).take_and_clear(ChallengePurpose.AUTHENTICATION)
        if state is None:
            logger.info(f"[U2FMethod] No pending authentication challenge: record_id={record.id}")
            return False

        if not code or not code.strip():
            return False

        try:
            candidates = await self.resolver.resolve_candidates(record, self.config.allow_entry_batching)
            updated = self.server.complete_authentication(
                state.payload, [c.registration for c in candidates], code
            )
            owner = next(
                c for c in candidates
                if c.registration.keyHandle.rstrip("=") == updated.keyHandle.rstrip("=")
            )
            persisted = await self.catalog.persist_counter_update(owner.record_id, updated)
        except ReplayedCounterError as e:
            log_security_event(
                logger, "u2f_counter_replay",
                user_id=record.user_id, success=False, details={"record_id": record.id, "reason": str(e)}
            )
            return False
        except U2FError as e:
            logger.info(f"[U2FMethod] Validation failed: record_id={record.id}, reason={type(e).__name__}: {e}")
            return False
        except StorageError as e:
            logger.error(f"[U2FMethod] Storage failure during validation: record_id={record.id}, error={e}")
            return False

        log_security_event(
            logger, "u2f_validate",
            user_id=record.user_id, success=persisted, details={"record_id": owner.record_id}
        )
        return persisted

