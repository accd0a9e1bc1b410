"""
loginguard/common/logger.py

LoginGuard 共通ロギング設定モジュール

環境変数でログレベルを制御可能な統一ロガーを提供します。
U2F検証・DB操作・セキュリティイベントは専用ヘルパーで出力します。
"""

import logging
import os
import sys
import json
from typing import Any, Dict, Optional
from datetime import datetime, timezone


class SensitiveDataFilter(logging.Filter):
    """機密データをマスクするフィルター"""

    SENSITIVE_KEYS = {
        'password', 'secret', 'token', 'private_key', 'authorization',
        'cookie', 'session', 'session_id', 'jwt_secret_key'
    }

    def filter(self, record: logging.LogRecord) -> bool:
        """ログレコードから機密データをマスク"""
        if hasattr(record, 'msg') and isinstance(record.msg, str):
            # 既にマスク済みの場合はそのまま
            if '***MASKED***' in record.msg:
                return True

            # JSONペイロードの場合はパースして機密キーをマスク
            try:
                if record.msg.strip().startswith('{'):
                    data = json.loads(record.msg)
                    masked_data = self._mask_sensitive_data(data)
                    record.msg = json.dumps(masked_data, ensure_ascii=False)
            except (json.JSONDecodeError, AttributeError):
                pass

        return True

    def _mask_sensitive_data(self, data: Any) -> Any:
        """再帰的に機密データをマスク"""
        if isinstance(data, dict):
            return {
                key: '***MASKED***' if key.lower() in self.SENSITIVE_KEYS
                else self._mask_sensitive_data(value)
                for key, value in data.items()
            }
        elif isinstance(data, list):
            return [self._mask_sensitive_data(item) for item in data]
        else:
            return data


class StructuredFormatter(logging.Formatter):
    """構造化ログフォーマッター（JSON出力対応）"""

    def __init__(self, json_format: bool = False):
        super().__init__()
        self.json_format = json_format

    def format(self, record: logging.LogRecord) -> str:
        """ログレコードをフォーマット"""
        now = datetime.now(timezone.utc)

        if self.json_format:
            log_data = {
                'timestamp': now.strftime('%Y-%m-%dT%H:%M:%S.%fZ'),
                'level': record.levelname,
                'logger': record.name,
                'message': record.getMessage(),
                'module': record.module,
                'function': record.funcName,
                'line': record.lineno,
            }

            # 追加フィールドがあれば含める
            if hasattr(record, 'service_name'):
                log_data['service'] = record.service_name
            if hasattr(record, 'user_id'):
                log_data['user_id'] = record.user_id
            if hasattr(record, 'record_id'):
                log_data['record_id'] = record.record_id

            # 例外情報
            if record.exc_info:
                log_data['exception'] = self.formatException(record.exc_info)

            return json.dumps(log_data, ensure_ascii=False)
        else:
            # 人間が読みやすいフォーマット
            timestamp = now.strftime('%Y-%m-%d %H:%M:%S')
            line = (
                f"[{timestamp}] {record.levelname:8s} "
                f"{record.name:30s} | {record.getMessage()}"
            )
            if record.exc_info:
                line += "\n" + self.formatException(record.exc_info)
            return line


def setup_logger(
    name: str,
    level: Optional[str] = None,
    json_format: bool = False,
    service_name: Optional[str] = None
) -> logging.Logger:
    """
    統一ロガーをセットアップ

    Args:
        name: ロガー名（通常は __name__ を渡す）
        level: ログレベル（指定なしの場合は環境変数 LOG_LEVEL を使用）
        json_format: JSON形式で出力するか（デフォルト: False）
        service_name: サービス名（ログに含める）

    Returns:
        設定済みのロガー

    環境変数:
        LOG_LEVEL: ログレベル（DEBUG/INFO/WARNING/ERROR/CRITICAL、デフォルト: INFO）
        LOG_FORMAT: ログフォーマット（json/text、デフォルト: text）
    """
    logger = logging.getLogger(name)

    # 既にハンドラーが設定されている場合はそのまま返す
    if logger.handlers:
        return logger

    if level is None:
        level = os.getenv('LOG_LEVEL', 'INFO').upper()

    log_level = getattr(logging, str(level).upper(), None)
    if not isinstance(log_level, int):
        log_level = logging.INFO
        logger.warning(f"Invalid log level '{level}', using INFO")

    logger.setLevel(log_level)

    if json_format or os.getenv('LOG_FORMAT', 'text').lower() == 'json':
        formatter = StructuredFormatter(json_format=True)
    else:
        formatter = StructuredFormatter(json_format=False)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SensitiveDataFilter())

    logger.addHandler(console_handler)

    if service_name:
        logger.service_name = service_name

    # 親ロガーへの伝播を防止（重複を避ける）
    logger.propagate = False

    return logger


def log_crypto_operation(
    logger: logging.Logger,
    operation: str,
    algorithm: str,
    key_id: Optional[str] = None,
    success: bool = True
):
    """
    暗号操作をログ出力（INFOレベル）

    Args:
        logger: ロガーインスタンス
        operation: 操作名（"register", "authenticate", "verify"）
        algorithm: アルゴリズム名
        key_id: 鍵ID（U2Fではkey handleの先頭部分）
        success: 成功/失敗
    """
    status = "SUCCESS" if success else "FAILED"
    key_str = f" (key: {key_id})" if key_id else ""
    logger.info(f"Crypto {operation.upper()}: {algorithm}{key_str} - {status}")


def log_database_operation(
    logger: logging.Logger,
    operation: str,
    table: str,
    record_id: Optional[Any] = None,
    duration_ms: Optional[float] = None
):
    """
    データベース操作をログ出力（DEBUGレベル）

    Args:
        logger: ロガーインスタンス
        operation: 操作名（"SELECT", "INSERT", "UPDATE", "DELETE"）
        table: テーブル名
        record_id: レコードID
        duration_ms: 処理時間（ミリ秒）
    """
    duration_str = f" ({duration_ms:.2f}ms)" if duration_ms else ""
    record_str = f" [id: {record_id}]" if record_id is not None else ""
    logger.debug(f"DB {operation}: {table}{record_str}{duration_str}")


def log_security_event(
    logger: logging.Logger,
    event_type: str,
    user_id: Optional[Any] = None,
    success: bool = False,
    details: Optional[Dict[str, Any]] = None
):
    """
    セキュリティイベントをログ出力

    失敗イベントはWARNING、成功イベントはINFOで出力します。
    詳細はDEBUGレベルでJSONとして出力します（機密キーはフィルターでマスク）。

    Args:
        logger: ロガーインスタンス
        event_type: イベント種別（例: "u2f_counter_replay"）
        user_id: 対象ユーザーID
        success: 成功/失敗
        details: 追加情報
    """
    status = "SUCCESS" if success else "FAILED"
    user_str = f" user={user_id}" if user_id is not None else ""
    level = logging.INFO if success else logging.WARNING
    logger.log(level, f"SECURITY {event_type}{user_str} - {status}")

    if details and logger.isEnabledFor(logging.DEBUG):
        event_data = {
            "type": "SECURITY_EVENT",
            "event_type": event_type,
            "user_id": user_id,
            "success": success,
            "details": details,
        }
        logger.debug(json.dumps(event_data, ensure_ascii=False, default=str))


# デフォルトロガーを作成
default_logger = setup_logger('loginguard', service_name='loginguard')


def get_logger(name: str, service_name: Optional[str] = None) -> logging.Logger:
    """
    ロガーを取得するヘルパー関数

    Args:
        name: ロガー名（通常は __name__）
        service_name: サービス名

    Returns:
        設定済みロガー
    """
    return setup_logger(name, service_name=service_name)
