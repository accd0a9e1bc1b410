"""
loginguard/common/encoding.py

U2Fの永続化フォーマットで使用する標準Base64ユーティリティ

- publicKey / attestationCertificate: 標準Base64
- key handle / clientData / registrationData / signatureData のBase64URLは fido2.utils を使用
"""

import base64
import binascii


def b64_encode(data: bytes) -> str:
    """標準Base64エンコード"""
    return base64.b64encode(data).decode('ascii')


def b64_decode(data: str) -> bytes:
    """
    標準Base64デコード

    Raises:
        ValueError: デコードできない場合
    """
    try:
        return base64.b64decode(data.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64 data: {e}") from e
