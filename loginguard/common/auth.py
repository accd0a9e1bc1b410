"""
loginguard/common/auth.py

JWT認証モジュール（TFA APIの操作ユーザー特定用）

- Authorization: Bearer <JWT> から操作ユーザー（acting user）を特定
- パスワード認証（第1要素）はホスト側の責務のため、ここではトークン発行/検証のみ
"""

from typing import Optional, Dict, Any, Callable, Awaitable
from datetime import datetime, timezone, timedelta

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from loginguard.common.config import ServiceSettings
from loginguard.common.logger import get_logger
from loginguard.common.models import TokenData

logger = get_logger(__name__, service_name='auth')

INSECURE_DEFAULT_KEY = "INSECURE_DEFAULT_KEY_CHANGE_IN_PRODUCTION"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

# FastAPI HTTPBearer設定
security = HTTPBearer()


# ========================================
# JWT トークン処理
# ========================================

def create_access_token(
    data: Dict[str, Any],
    settings: ServiceSettings,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    JWTアクセストークンを作成

    Args:
        data: トークンに含めるデータ（user_id）
        settings: サービス設定（秘密鍵・アルゴリズム）
        expires_delta: 有効期限（デフォルト: ACCESS_TOKEN_EXPIRE_MINUTES）

    Returns:
        str: JWTトークン
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})

    encoded_jwt = jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

    logger.info(f"[Auth] Created JWT token: user_id={data.get('user_id')}, expires={expire.isoformat()}")
    return encoded_jwt


def verify_access_token(token: str, settings: ServiceSettings) -> TokenData:
    """
    JWTアクセストークンを検証してペイロードを取得

    Raises:
        HTTPException: トークンが無効または期限切れの場合（401）
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.warning("[Auth] JWT token expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.error(f"[Auth] Invalid JWT token: {e}")
        raise credentials_exception

    user_id = payload.get("user_id")
    if user_id is None:
        raise credentials_exception

    return TokenData(user_id=str(user_id))


# ========================================
# FastAPI 依存性（Dependency Injection）
# ========================================

def current_user_dependency(settings: ServiceSettings) -> Callable[..., Awaitable[str]]:
    """
    操作ユーザーIDを返すFastAPI Dependencyを作成

    Usage:
        get_current_user_id = current_user_dependency(settings)

        @app.get("/tfa/records")
        async def list_records(user_id: str = Depends(get_current_user_id)):
            ...
    """
    if settings.jwt_secret_key == INSECURE_DEFAULT_KEY:
        logger.warning(
            "[Auth] Using default JWT secret key. "
            "SECURITY RISK: Set LOGINGUARD_JWT_SECRET_KEY environment variable in production!"
        )

    async def get_current_user_id(
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> str:
        token_data = verify_access_token(credentials.credentials, settings)
        return token_data.user_id

    return get_current_user_id
