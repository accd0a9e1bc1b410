"""
loginguard/services - HTTPサービス群

- tfa_api: TFAレコードのセットアップ・captive認証API
"""
