"""
Credential vault for two-factor material.

- TOTP secrets are encrypted at rest with AES-256-CBC. A random 16-byte IV
  is generated per secret and prefixed to the ciphertext; the pair is stored
  as one base64 string.
- Backup codes are never stored in plaintext: each code is hashed on its own
  with bcrypt and verified with bcrypt's constant-time check.
"""
import base64
import hashlib
import logging
import secrets
from typing import List, Optional

import bcrypt
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from flask import current_app

logger = logging.getLogger(__name__)

IV_SIZE = 16


def _key() -> bytes:
    raw = current_app.config.get("ENCRYPTION_KEY")
    if not raw:
        raise RuntimeError("ENCRYPTION_KEY is not configured")
    return hashlib.sha256(raw.encode("utf-8")).digest()


def encrypt_secret(plaintext: str) -> str:
    iv = secrets.token_bytes(IV_SIZE)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(_key()), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_secret(token: str) -> str:
    """
    Raises ValueError when the token is garbled or was encrypted
    with a different key.
    """
    try:
        blob = base64.b64decode(token.encode("ascii"), validate=True)
    except (ValueError, AttributeError) as exc:
        raise ValueError("Malformed secret ciphertext") from exc

    if len(blob) <= IV_SIZE or (len(blob) - IV_SIZE) % 16:
        raise ValueError("Malformed secret ciphertext")

    iv, ciphertext = blob[:IV_SIZE], blob[IV_SIZE:]
    decryptor = Cipher(algorithms.AES(_key()), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("Secret could not be decrypted") from exc


def normalize_backup_code(code: str) -> str:
    return (code or "").replace("-", "").replace(" ", "").strip().upper()


def generate_backup_codes(count: int) -> List[str]:
    codes = []
    for _ in range(count):
        code = secrets.token_hex(4).upper()
        # XXXX-XXXX for readability
        codes.append(f"{code[:4]}-{code[4:]}")
    return codes


def hash_backup_code(code: str) -> str:
    rounds = current_app.config.get("BACKUP_CODE_BCRYPT_ROUNDS", 10)
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(normalize_backup_code(code).encode("utf-8"), salt).decode("utf-8")


def hash_backup_codes(codes: List[str]) -> List[str]:
    return [hash_backup_code(code) for code in codes]


def find_backup_code(code: str, hashed_codes: List[str]) -> Optional[int]:
    """
    Index of the hash matching `code`, or None.
    Every hash is checked so timing does not reveal the position.
    """
    normalized = normalize_backup_code(code).encode("utf-8")
    if not normalized:
        return None

    match = None
    for index, hashed in enumerate(hashed_codes or []):
        try:
            ok = bcrypt.checkpw(normalized, hashed.encode("utf-8"))
        except ValueError:
            logger.warning("Skipping malformed backup code hash")
            continue
        if ok and match is None:
            match = index
    return match
