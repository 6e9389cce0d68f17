"""
Consent Engine - Consent Store

Persistence boundary for consent records (local or remote key-value
slots).
"""

from consent_engine.store.adapter import (
    ConsentStore,
    StoreResult,
    decode_envelope,
    encode_envelope,
)
from consent_engine.store.backends import (
    JsonFileBackend,
    KeyValueBackend,
    MemoryBackend,
    RemoteBackend,
)

__all__ = [
    "ConsentStore",
    "StoreResult",
    "decode_envelope",
    "encode_envelope",
    "JsonFileBackend",
    "KeyValueBackend",
    "MemoryBackend",
    "RemoteBackend",
]
