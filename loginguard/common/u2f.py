"""
loginguard/common/u2f.py

FIDO U2F サーバー側プロトコル実装（challenge/response検証）

U2F仕様（FIDO U2F Raw Message Formats）準拠：
- 登録: registrationData = 0x05 | 公開鍵(65) | L | keyHandle(L) | attestation証明書(DER) | 署名
  署名対象 = 0x00 | SHA256(appId) | SHA256(clientData) | keyHandle | 公開鍵
- 認証: signatureData = userPresence(1) | counter(4, big-endian) | 署名
  署名対象 = SHA256(appId) | userPresence | counter | SHA256(clientData)

バイナリメッセージのパースと署名検証は fido2 ライブラリ（fido2.ctap1）に、
attestation証明書の扱いは cryptography ライブラリに委譲する。
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, TypeVar, Union
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fido2.attestation import InvalidSignature as AttestationSignatureInvalid
from fido2.ctap1 import RegistrationData, SignatureData
from fido2.utils import sha256, websafe_decode, websafe_encode
from pydantic import BaseModel, ValidationError

from loginguard.common.encoding import b64_encode
from loginguard.common.logger import get_logger, log_crypto_operation
from loginguard.common.models import (
    U2F_VERSION,
    KeyRegistration,
    RegistrationChallenge,
    AuthenticationChallenge,
    SignRequest,
    RegisterResponse,
    SignResponse,
)

logger = get_logger(__name__, service_name='u2f')

# challengeの長さ（32バイト = 256ビット）
CHALLENGE_LENGTH_BYTES = 32

CLIENT_DATA_TYP_REGISTER = "navigator.id.finishEnrollment"
CLIENT_DATA_TYP_SIGN = "navigator.id.getAssertion"

# U2F JS APIのエラーコード
CLIENT_ERROR_CODES = {
    1: "OTHER_ERROR",
    2: "BAD_REQUEST",
    3: "CONFIGURATION_UNSUPPORTED",
    4: "DEVICE_INELIGIBLE",
    5: "TIMEOUT",
}


# ========================================
# エラー定義
# ========================================

class U2FError(Exception):
    """U2F処理に関するエラー（試行ごとに終端、自動リトライなし）"""
    pass


class ConfigurationUnavailableError(U2FError):
    """実行環境の前提条件（AppID、楕円曲線署名）が満たされない"""
    pass


class MalformedChallengeError(U2FError):
    """challengeが存在しない・期限切れ・形式不正"""
    pass


class MalformedResponseError(U2FError):
    """レスポンスがデコードできない"""
    pass


class ClientError(MalformedResponseError):
    """ブラウザ側U2F APIがエラーコードを返した"""

    def __init__(self, error_code: int, message: Optional[str] = None):
        self.error_code = error_code
        self.error_name = CLIENT_ERROR_CODES.get(error_code, "UNKNOWN_ERROR")
        super().__init__(message or f"U2F client error {error_code} ({self.error_name})")


class NoMatchingKeyError(U2FError):
    """レスポンスのkey handleが候補に存在しない"""
    pass


class SignatureInvalidError(U2FError):
    """署名が無効"""
    pass


class ReplayedCounterError(U2FError):
    """カウンターが増加していない（クローンまたはリプレイ）"""
    pass


class OriginMismatchError(U2FError):
    """originがAppIDと一致しない"""
    pass


class ChallengeMismatchError(U2FError):
    """clientDataのchallengeが発行したnonceと一致しない"""
    pass


class KeyAlreadyRegisteredError(U2FError):
    """除外対象（登録済み）のkey handleで登録しようとした"""
    pass


class UntrustedAttestationError(U2FError):
    """attestation証明書が信頼するCAに発行されていない"""
    pass


# ========================================
# ユーティリティ
# ========================================

def app_id_from_url(url: str) -> str:
    """
    URLからU2F AppID（scheme://host[:port]）を導出

    Raises:
        ConfigurationUnavailableError: http(s)のoriginとして解釈できない場合
    """
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except (AttributeError, ValueError) as e:
        raise ConfigurationUnavailableError(f"Invalid AppID URL: {url!r}") from e

    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigurationUnavailableError(f"AppID must be an http(s) origin: {url!r}")

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None else f"{host}:{port}"
    return f"{parts.scheme}://{netloc}"


def check_ec_support() -> None:
    """
    P-256 ECDSA（SHA-256）が利用可能か確認

    Raises:
        ConfigurationUnavailableError: 利用できない場合
    """
    try:
        private_key = ec.generate_private_key(ec.SECP256R1())
        signature = private_key.sign(b"loginguard-u2f-probe", ec.ECDSA(hashes.SHA256()))
        private_key.public_key().verify(signature, b"loginguard-u2f-probe", ec.ECDSA(hashes.SHA256()))
    except (UnsupportedAlgorithm, InvalidSignature) as e:
        raise ConfigurationUnavailableError(f"P-256 ECDSA is not available: {e}") from e


def load_attestation_certificates(directory: Union[str, Path]) -> List[x509.Certificate]:
    """
    信頼するattestation CA証明書をディレクトリから読み込み（PEM / DER）

    Raises:
        ConfigurationUnavailableError: ディレクトリが存在しない場合
    """
    path = Path(directory)
    if not path.is_dir():
        raise ConfigurationUnavailableError(f"Attestation CA directory not found: {directory}")

    certificates = []
    for cert_path in sorted(path.iterdir()):
        if cert_path.suffix.lower() not in (".pem", ".crt", ".der"):
            continue
        data = cert_path.read_bytes()
        try:
            if b"-----BEGIN CERTIFICATE-----" in data:
                certificates.extend(x509.load_pem_x509_certificates(data))
            else:
                certificates.append(x509.load_der_x509_certificate(data))
        except ValueError:
            logger.warning(f"[U2F] Skipping unreadable attestation certificate: {cert_path.name}")

    return certificates


def _normalize_handle(key_handle: str) -> str:
    return key_handle.strip().rstrip("=")


ModelT = TypeVar("ModelT", bound=BaseModel)


# ========================================
# U2F Server
# ========================================

class U2FServer:
    """
    U2Fプロトコルエンジン

    状態遷移:
    - Idle → ChallengeIssued(Registration): begin_registration
    - ChallengeIssued(Registration) → Verified | Rejected: complete_registration
    - Idle → ChallengeIssued(Authentication): begin_authentication
    - ChallengeIssued(Authentication) → Verified | Rejected: complete_authentication

    状態そのもの（発行済みchallenge）は呼び出し側がChallengeStoreで保持する。
    """

    def __init__(
        self,
        app_id: str,
        attestation_certificates: Optional[Iterable[x509.Certificate]] = None
    ):
        """
        Args:
            app_id: U2F AppID（origin）
            attestation_certificates: 信頼するattestation CA証明書。Noneの場合は検証しない

        Raises:
            ConfigurationUnavailableError: AppIDが不正、またはP-256 ECDSAが利用できない場合
        """
        self.app_id = app_id_from_url(app_id)
        check_ec_support()
        self.attestation_certificates = (
            list(attestation_certificates) if attestation_certificates is not None else None
        )
        self._app_param = sha256(self.app_id.encode("utf-8"))

    # ----------------------------------------
    # 登録
    # ----------------------------------------

    def begin_registration(self, existing_registrations: Sequence[KeyRegistration]) -> RegistrationChallenge:
        """
        登録challengeを生成

        既存の登録済みkey handleは除外リストに入れる（同じ鍵の再登録を防ぐ）
        """
        excluded: List[str] = []
        for registration in existing_registrations:
            if registration.keyHandle not in excluded:
                excluded.append(registration.keyHandle)

        challenge = RegistrationChallenge(
            version=U2F_VERSION,
            appId=self.app_id,
            challenge=self._generate_challenge(),
            excludedKeyHandles=excluded,
        )
        logger.debug(f"[U2F] Registration challenge issued: excluded={len(excluded)}")
        return challenge

    def complete_registration(
        self,
        challenge: Union[RegistrationChallenge, Dict[str, Any], None],
        response: Union[RegisterResponse, Dict[str, Any], str, bytes, None]
    ) -> KeyRegistration:
        """
        登録レスポンスを検証して新しいKeyRegistrationを返す

        Raises:
            U2FError: 検証失敗（呼び出し側は何も永続化してはならない）
        """
        challenge = self._coerce_challenge(challenge, RegistrationChallenge)
        if challenge.appId != self.app_id:
            raise OriginMismatchError("Registration challenge was issued for a different AppID")

        response = self._coerce_response(response, RegisterResponse)
        if not response.registrationData or not response.clientData:
            raise MalformedResponseError("registrationData and clientData are required")

        client_data = self._verify_client_data(
            response.clientData, CLIENT_DATA_TYP_REGISTER, challenge.challenge
        )

        try:
            registration_data = RegistrationData(websafe_decode(response.registrationData))
        except ValueError as e:
            raise MalformedResponseError(f"Invalid registrationData: {e}") from e

        if not registration_data.key_handle:
            raise MalformedResponseError("Invalid key handle length")
        if not registration_data.signature:
            raise MalformedResponseError("Missing attestation signature")

        try:
            certificate = x509.load_der_x509_certificate(registration_data.certificate)
        except ValueError as e:
            raise MalformedResponseError(f"Invalid attestation certificate: {e}") from e

        excluded = set()
        for key_handle in challenge.excludedKeyHandles:
            try:
                excluded.add(websafe_decode(key_handle))
            except ValueError:
                continue
        if registration_data.key_handle in excluded:
            raise KeyAlreadyRegisteredError("This security key is already registered")

        try:
            ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), registration_data.public_key)
        except ValueError as e:
            raise MalformedResponseError(f"Invalid P-256 public key: {e}") from e

        self._verify_attestation_trust(certificate)

        if not isinstance(certificate.public_key(), ec.EllipticCurvePublicKey):
            raise MalformedResponseError("Attestation certificate does not carry an EC key")

        key_id = websafe_encode(registration_data.key_handle)[:12]
        try:
            registration_data.verify(self._app_param, sha256(client_data))
        except (AttestationSignatureInvalid, InvalidSignature) as e:
            log_crypto_operation(logger, "register", "ES256", key_id=key_id, success=False)
            raise SignatureInvalidError("Attestation signature is invalid") from e

        log_crypto_operation(logger, "register", "ES256", key_id=key_id, success=True)

        return KeyRegistration(
            keyHandle=websafe_encode(registration_data.key_handle),
            publicKey=b64_encode(registration_data.public_key),
            attestationCertificate=b64_encode(registration_data.certificate),
            counter=0,
        )

    # ----------------------------------------
    # 認証
    # ----------------------------------------

    def begin_authentication(self, candidate_registrations: Sequence[KeyRegistration]) -> AuthenticationChallenge:
        """
        認証challengeを生成

        候補鍵ごとにsign requestを作る（nonceは全候補共通）
        """
        challenge = self._generate_challenge()
        sign_requests: List[SignRequest] = []
        seen = set()
        for registration in candidate_registrations:
            key_handle = _normalize_handle(registration.keyHandle)
            if key_handle in seen:
                continue
            seen.add(key_handle)
            sign_requests.append(SignRequest(
                version=U2F_VERSION,
                appId=self.app_id,
                challenge=challenge,
                keyHandle=registration.keyHandle,
            ))

        logger.debug(f"[U2F] Authentication challenge issued: candidates={len(sign_requests)}")
        return AuthenticationChallenge(appId=self.app_id, challenge=challenge, signRequests=sign_requests)

    def complete_authentication(
        self,
        challenge: Union[AuthenticationChallenge, Dict[str, Any], None],
        candidate_registrations: Sequence[KeyRegistration],
        response: Union[SignResponse, Dict[str, Any], str, bytes, None]
    ) -> KeyRegistration:
        """
        認証レスポンスを検証し、カウンターを更新したKeyRegistrationを返す

        呼び出し側は戻り値を鍵の属するレコードに永続化する。

        Raises:
            U2FError: 検証失敗
        """
        challenge = self._coerce_challenge(challenge, AuthenticationChallenge)
        if challenge.appId != self.app_id:
            raise OriginMismatchError("Authentication challenge was issued for a different AppID")

        response = self._coerce_response(response, SignResponse)
        if not response.keyHandle or not response.clientData or not response.signatureData:
            raise MalformedResponseError("keyHandle, clientData and signatureData are required")

        key_handle = _normalize_handle(response.keyHandle)

        sign_request = next(
            (r for r in challenge.signRequests if _normalize_handle(r.keyHandle) == key_handle),
            None
        )
        if sign_request is None:
            raise NoMatchingKeyError("No sign request matches the response key handle")

        client_data = self._verify_client_data(
            response.clientData, CLIENT_DATA_TYP_SIGN, sign_request.challenge
        )

        registration = next(
            (r for r in candidate_registrations if _normalize_handle(r.keyHandle) == key_handle),
            None
        )
        if registration is None:
            raise NoMatchingKeyError("No registered key matches the response key handle")

        try:
            signature_data = SignatureData(websafe_decode(response.signatureData))
        except ValueError as e:
            raise MalformedResponseError(f"Invalid signatureData: {e}") from e

        if not signature_data.signature:
            raise MalformedResponseError("Missing authentication signature")

        try:
            public_key = registration.public_key_bytes()
            ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), public_key)
        except ValueError as e:
            raise SignatureInvalidError(f"Stored public key is not a valid P-256 point: {e}") from e

        key_id = key_handle[:12]
        try:
            signature_data.verify(self._app_param, sha256(client_data), public_key)
        except InvalidSignature as e:
            log_crypto_operation(logger, "authenticate", "ES256", key_id=key_id, success=False)
            raise SignatureInvalidError("Authentication signature is invalid") from e

        # カウンター検証（クローン検知）: 署名が正しくても増加していなければ拒否
        if signature_data.counter <= registration.counter:
            log_crypto_operation(logger, "authenticate", "ES256", key_id=key_id, success=False)
            raise ReplayedCounterError(
                f"Counter did not increase: stored={registration.counter}, received={signature_data.counter}"
            )

        log_crypto_operation(logger, "authenticate", "ES256", key_id=key_id, success=True)
        return registration.model_copy(update={"counter": signature_data.counter})

    # ----------------------------------------
    # 内部処理
    # ----------------------------------------

    @staticmethod
    def _generate_challenge() -> str:
        return websafe_encode(os.urandom(CHALLENGE_LENGTH_BYTES))

    @staticmethod
    def _coerce_challenge(challenge: Any, model: Type[ModelT]) -> ModelT:
        if challenge is None:
            raise MalformedChallengeError("No pending challenge")
        if isinstance(challenge, model):
            return challenge
        try:
            return model.model_validate(challenge)
        except ValidationError as e:
            raise MalformedChallengeError(f"Invalid challenge: {e.error_count()} errors") from e

    @staticmethod
    def _coerce_response(response: Any, model: Type[ModelT]) -> ModelT:
        if response is None or response == "" or response == b"":
            raise MalformedResponseError("Empty response")

        if isinstance(response, (str, bytes)):
            try:
                response = json.loads(response)
            except ValueError as e:
                raise MalformedResponseError(f"Response is not valid JSON: {e}") from e

        if isinstance(response, model):
            parsed = response
        else:
            if not isinstance(response, dict):
                raise MalformedResponseError("Response must be a JSON object")
            try:
                parsed = model.model_validate(response)
            except ValidationError as e:
                raise MalformedResponseError(f"Invalid response: {e.error_count()} errors") from e

        if parsed.errorCode:
            raise ClientError(parsed.errorCode, parsed.errorMessage)

        return parsed

    def _verify_client_data(self, client_data_b64: str, expected_typ: str, expected_challenge: str) -> bytes:
        """
        clientDataを検証して生バイトを返す

        - typ
        - challenge（nonce一致）
        - origin（AppIDと一致）
        """
        try:
            raw = websafe_decode(client_data_b64)
            client_data = json.loads(raw)
        except ValueError as e:
            raise MalformedResponseError(f"Undecodable clientData: {e}") from e

        if not isinstance(client_data, dict):
            raise MalformedResponseError("clientData must be a JSON object")

        if client_data.get("typ") != expected_typ:
            raise MalformedResponseError(f"Unexpected clientData type: {client_data.get('typ')}")

        if client_data.get("challenge") != expected_challenge:
            raise ChallengeMismatchError("clientData challenge does not match the issued challenge")

        if client_data.get("origin") != self.app_id:
            raise OriginMismatchError(f"Origin {client_data.get('origin')!r} does not match AppID")

        return raw

    def _verify_attestation_trust(self, certificate: x509.Certificate) -> None:
        if self.attestation_certificates is None:
            return

        for trusted in self.attestation_certificates:
            if certificate == trusted:
                return
            try:
                certificate.verify_directly_issued_by(trusted)
                return
            except (ValueError, TypeError, InvalidSignature):
                continue

        raise UntrustedAttestationError("Attestation certificate is not issued by a trusted CA")
