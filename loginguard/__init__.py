"""
loginguard - U2Fセキュリティキーによる2要素認証メソッド

このパッケージには以下のモジュールが含まれます:
- common: ロガー、設定、データモデル、DB、セッション、U2Fプロトコルエンジン
- tfa: TFAメソッド（challenge保存、登録カタログ、候補鍵解決、U2Fメソッド）
- services: TFA HTTP API（FastAPI）
"""

__version__ = "0.1.0"
