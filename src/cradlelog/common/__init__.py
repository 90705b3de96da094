"""
Common utilities for cradlelog.

Modules:
- crypto: field-level AES-CBC codec with per-value random IVs
- fields: explicit plaintext/encrypted field wrappers (plus legacy detection)
- secret_store: get-or-create secret stores (memory, file, AWS SSM)
- remote: hosted backend client (auth + tables) over httpx
"""

__all__ = [
    "crypto",
    "fields",
    "remote",
    "secret_store",
]
