"""
loginguard/common/__init__.py

共通モジュール
"""
