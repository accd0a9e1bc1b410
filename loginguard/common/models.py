"""
loginguard/common/models.py

U2F TFAメソッド用のPydanticモデル

- 永続化データ: KeyRegistration, RegistrationOptions, MethodRecord
- セッション一時データ: ChallengeState
- クライアント向けchallenge: RegistrationChallenge, AuthenticationChallenge
- クライアントからのレスポンス: RegisterResponse, SignResponse
- TFAフレームワーク向け: MethodDescription, SetupInstructions, CaptiveChallenge
- HTTP API: CreateRecordRequest, SaveSetupRequest, ValidateRequest, TokenData
"""

import json
from enum import Enum
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Literal, Union

from fido2.utils import websafe_decode
from pydantic import BaseModel, Field, ValidationError

from loginguard.common.encoding import b64_decode

U2F_VERSION = "U2F_V2"


class ChallengePurpose(str, Enum):
    """challengeの用途"""
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


# ========================================
# 永続化データ
# ========================================

class KeyRegistration(BaseModel):
    """
    セキュリティキーの登録情報

    - keyHandle: デバイスが発行したkey handle（Base64URL）
    - publicKey: 非圧縮P-256公開鍵 65バイト（Base64）
    - attestationCertificate: 登録時のattestation証明書 DER（Base64）
    - counter: 最後に受理したカウンター値（クローン検知用、単調増加）
    """
    keyHandle: str = Field(..., min_length=1, description="key handle（Base64URL）")
    publicKey: str = Field(..., min_length=1, description="公開鍵（Base64）")
    attestationCertificate: Optional[str] = Field(None, description="attestation証明書（Base64 DER）")
    counter: int = Field(default=0, ge=0, description="署名カウンター")

    class Config:
        json_schema_extra = {
            "example": {
                "keyHandle": "vF0Kk2cYx0c9y2zZ0Jt3qQ",
                "publicKey": "BHc3Y2...",
                "attestationCertificate": "MIIBLTCB1KADAgECAg...",
                "counter": 4
            }
        }

    def key_handle_bytes(self) -> bytes:
        return websafe_decode(self.keyHandle)

    def public_key_bytes(self) -> bytes:
        return b64_decode(self.publicKey)


class RegistrationOptions(BaseModel):
    """
    MethodRecord.optionsのスキーマ

    decode()は寛容なデコードを行う:
    - options未設定 / JSONとして不正 / 形式不正 → registrationsは空（セットアップ未完了扱い）
    - 不正な個別エントリは除外し、正しいエントリのみ保持
    """
    registrations: List[KeyRegistration] = Field(default_factory=list)

    class Config:
        extra = "allow"

    @classmethod
    def decode(cls, blob: Union[None, str, bytes, Dict[str, Any], "RegistrationOptions"]) -> "RegistrationOptions":
        if isinstance(blob, RegistrationOptions):
            return blob.model_copy(deep=True)

        if isinstance(blob, bytes):
            try:
                blob = blob.decode('utf-8')
            except UnicodeDecodeError:
                return cls()

        if isinstance(blob, str):
            if not blob.strip():
                return cls()
            try:
                blob = json.loads(blob)
            except (ValueError, RecursionError):
                return cls()

        if not isinstance(blob, dict):
            return cls()

        raw_registrations = blob.get("registrations")
        registrations: List[KeyRegistration] = []
        if isinstance(raw_registrations, list):
            for item in raw_registrations:
                if isinstance(item, KeyRegistration):
                    registrations.append(item)
                    continue
                try:
                    registrations.append(KeyRegistration.model_validate(item))
                except ValidationError:
                    continue

        extra = {k: v for k, v in blob.items() if k != "registrations"}
        return cls(registrations=registrations, **extra)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class MethodRecord(BaseModel):
    """
    TFAメソッドレコード（#__loginguard_tfa相当）

    optionsはJSON文字列またはdictのどちらでも受け付ける
    """
    id: int = Field(..., description="レコードID")
    user_id: str = Field(..., description="所有ユーザーID")
    method: str = Field(..., description="メソッド識別子（例: u2f）")
    title: str = Field(default="", description="ユーザー向けタイトル")
    options: Optional[Union[str, Dict[str, Any]]] = Field(None, description="メソッド固有の設定")

    def decoded_options(self) -> RegistrationOptions:
        return RegistrationOptions.decode(self.options)


# ========================================
# セッション一時データ
# ========================================

class ChallengeState(BaseModel):
    """
    セッションに保存するchallenge状態

    1セッション・1用途につき最大1つ。検証時に一度だけ消費される。
    """
    purpose: ChallengePurpose
    payload: Dict[str, Any] = Field(..., description="シリアライズされたchallenge")
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, ttl_seconds: Optional[int], now: Optional[datetime] = None) -> bool:
        if ttl_seconds is None:
            return False
        now = now or datetime.now(timezone.utc)
        issued_at = self.issued_at
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        return now - issued_at > timedelta(seconds=ttl_seconds)


# ========================================
# クライアント向けchallenge
# ========================================

class RegisteredKey(BaseModel):
    """登録済み鍵（JS APIのregisteredKeys要素）"""
    version: str = U2F_VERSION
    keyHandle: str
    appId: str


class RegistrationChallenge(BaseModel):
    """
    登録challenge

    excludedKeyHandlesに含まれる鍵は再登録させない
    """
    version: str = U2F_VERSION
    appId: str
    challenge: str
    excludedKeyHandles: List[str] = Field(default_factory=list)

    def client_payload(self) -> Dict[str, Any]:
        """u2f.register()に渡す形式"""
        return {
            "appId": self.appId,
            "registerRequests": [
                {"version": self.version, "challenge": self.challenge, "appId": self.appId}
            ],
            "registeredKeys": [
                RegisteredKey(version=self.version, keyHandle=kh, appId=self.appId).model_dump()
                for kh in self.excludedKeyHandles
            ],
        }


class SignRequest(BaseModel):
    """候補鍵ごとの署名リクエスト"""
    version: str = U2F_VERSION
    appId: str
    challenge: str
    keyHandle: str


class AuthenticationChallenge(BaseModel):
    """
    認証challenge

    候補鍵の集合（バッチ有効時は複数）にバインドされる。nonceは全候補で共通。
    """
    appId: str
    challenge: str
    signRequests: List[SignRequest] = Field(default_factory=list)

    def key_handles(self) -> List[str]:
        return [request.keyHandle for request in self.signRequests]

    def client_payload(self) -> Dict[str, Any]:
        """u2f.sign()に渡す形式"""
        return {
            "appId": self.appId,
            "challenge": self.challenge,
            "registeredKeys": [
                RegisteredKey(version=r.version, keyHandle=r.keyHandle, appId=r.appId).model_dump()
                for r in self.signRequests
            ],
            "signRequests": [r.model_dump() for r in self.signRequests],
        }


# ========================================
# クライアントからのレスポンス
# ========================================

class RegisterResponse(BaseModel):
    """u2f.register()の結果"""
    registrationData: Optional[str] = None
    clientData: Optional[str] = None
    version: Optional[str] = None
    errorCode: Optional[int] = None
    errorMessage: Optional[str] = None


class SignResponse(BaseModel):
    """u2f.sign()の結果"""
    keyHandle: Optional[str] = None
    clientData: Optional[str] = None
    signatureData: Optional[str] = None
    errorCode: Optional[int] = None
    errorMessage: Optional[str] = None


# ========================================
# TFAフレームワーク向け
# ========================================

class MethodDescription(BaseModel):
    """TFAメソッドの識別・能力情報"""
    name: str
    display: str
    short_info: str = ""
    image: str = ""
    can_disable: bool = True
    allow_multiple: bool = True
    help_url: str = ""
    allow_entry_batching: bool = True


class SetupInstructions(BaseModel):
    """
    セットアップページ用の情報（表示形式に依存しない）

    state:
    - register: まだ鍵が登録されていない。registration_requestをクライアントに渡す
    - configured: 既に鍵が登録済み（タイトル変更のみ）
    """
    default_title: str
    pre_message: str
    state: Literal["register", "configured"]
    registration_request: Dict[str, Any]
    help_url: str = ""


class CaptiveChallenge(BaseModel):
    """captiveページ用の情報（表示形式に依存しない）"""
    pre_message: str
    authentication_request: Dict[str, Any]
    help_url: str = ""
    allow_entry_batching: bool = True


# ========================================
# HTTP API
# ========================================

class CreateRecordRequest(BaseModel):
    method: str = Field(default="u2f")
    title: Optional[str] = None


class SaveSetupRequest(BaseModel):
    title: Optional[str] = None
    code: Optional[str] = Field(None, description="u2f.register()の結果（JSON文字列）")


class ValidateRequest(BaseModel):
    code: Optional[str] = Field(None, description="u2f.sign()の結果（JSON文字列）")


class TokenData(BaseModel):
    """JWTペイロードデータ"""
    user_id: Optional[str] = Field(None, description="ユーザーID")
