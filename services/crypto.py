import json
from typing import Any, Dict

from cryptography.fernet import Fernet, InvalidToken

from core.config import settings


def _fernet() -> Fernet:
    if not settings.ARCHIVE_ENCRYPTION_KEY:
        raise RuntimeError("ARCHIVE_ENCRYPTION_KEY is not configured; refusing to store plaintext snapshots")
    return Fernet(settings.ARCHIVE_ENCRYPTION_KEY.encode())


def encrypt_snapshot(snapshot: Dict[str, Any]) -> bytes:
    payload = json.dumps(snapshot, default=str, sort_keys=True).encode("utf-8")
    return _fernet().encrypt(payload)


def decrypt_snapshot(token: bytes) -> Dict[str, Any]:
    try:
        payload = _fernet().decrypt(token)
    except InvalidToken:
        raise ValueError("Archived snapshot cannot be decrypted with the configured key")
    return json.loads(payload.decode("utf-8"))
