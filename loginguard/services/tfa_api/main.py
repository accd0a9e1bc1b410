"""
loginguard/services/tfa_api/main.py

TFA API - FastAPIエントリーポイント
"""

import os

import uvicorn

from loginguard.services.tfa_api.service import TfaApiService

# TFA APIインスタンス作成
tfa_api = TfaApiService()
app = tfa_api.app

if __name__ == "__main__":
    uvicorn.run(
        "loginguard.services.tfa_api.main:app",
        host=os.getenv("LOGINGUARD_HOST", "0.0.0.0"),
        port=int(os.getenv("LOGINGUARD_PORT", "8010")),
        reload=False,
        log_level=os.getenv("LOG_LEVEL", "info").lower()
    )
