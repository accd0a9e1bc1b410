"""
loginguard/services/tfa_api/__init__.py

TFA API サービス
"""

from .service import TfaApiService

__all__ = [
    "TfaApiService",
]
