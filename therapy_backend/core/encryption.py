"""Encryption of medical form payloads stored in the token ledger."""

import base64
import hashlib
import json
import logging

from cryptography.fernet import Fernet, InvalidToken

from therapy_backend.core import config

logger = logging.getLogger(__name__)


class MedicalDataError(ValueError):
    """Raised when a stored medical payload cannot be read."""


def _get_cipher() -> Fernet:
    if config.ENCRYPTION_KEY:
        return Fernet(config.ENCRYPTION_KEY.encode())

    # Development fallback: derive a stable key from the JWT secret.
    digest = hashlib.sha256(config.JWT_SECRET_KEY.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_medical_data(medical_data: dict) -> str:
    payload = json.dumps(medical_data, ensure_ascii=False)
    return _get_cipher().encrypt(payload.encode()).decode()


def decrypt_medical_data(encrypted_data: str) -> dict:
    """Return the medical form dict for a stored value.

    Rows written before encryption was introduced hold plain JSON; those are
    returned as-is. Anything else that fails to decrypt raises MedicalDataError.
    """
    if not encrypted_data:
        return {}

    try:
        decrypted = _get_cipher().decrypt(encrypted_data.encode())
        return json.loads(decrypted)
    except InvalidToken:
        pass

    try:
        legacy = json.loads(encrypted_data)
    except json.JSONDecodeError as exc:
        raise MedicalDataError('Medical data could not be decrypted.') from exc

    if not isinstance(legacy, dict):
        raise MedicalDataError('Medical data has an unexpected shape.')

    logger.warning('Read unencrypted legacy medical data from token ledger')
    return legacy
