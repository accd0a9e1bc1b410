"""
loginguard/tfa/__init__.py

TFAメソッド実装
"""

from .base import NOT_APPLICABLE, TfaMethod, MethodRegistry
from .challenge_store import ChallengeStore
from .catalog import RegistrationCatalog, StorageError
from .resolver import RegistrationResolver, Candidate
from .u2f_method import U2FMethod, TfaSetupError

__all__ = [
    "NOT_APPLICABLE",
    "TfaMethod",
    "MethodRegistry",
    "ChallengeStore",
    "RegistrationCatalog",
    "StorageError",
    "RegistrationResolver",
    "Candidate",
    "U2FMethod",
    "TfaSetupError",
]
