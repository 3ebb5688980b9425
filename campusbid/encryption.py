"""
CampusBid Escrow — Delivery Code Crypto Primitives
Random 6-digit codes, one-way bcrypt hashes for verification, and Fernet
ciphertexts for buyer-side retrieval. The Fernet key is loaded from the
FERNET_KEY environment variable — never hardcoded.
"""
import logging
import secrets
import time
from functools import lru_cache

import bcrypt
from cryptography.fernet import Fernet, InvalidToken

from campusbid.config import get_settings

logger = logging.getLogger("campusbid.encryption")

CODE_LENGTH = 6


@lru_cache()
def _get_fernet() -> Fernet:
    """
    Get a cached Fernet cipher instance.
    Key is loaded from the FERNET_KEY environment variable.

    Raises RuntimeError if the key is not configured.
    """
    settings = get_settings()
    key = settings.FERNET_KEY
    if not key:
        raise RuntimeError(
            "FERNET_KEY environment variable is not set. "
            "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        )
    return Fernet(key.encode("utf-8"))


# ═══════════════════════════════════════════════════════
#  Code generation
# ═══════════════════════════════════════════════════════


def generate_code() -> str:
    """Return a uniformly random decimal code in "000000"–"999999"."""
    return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"


def is_well_formed_code(code: str) -> bool:
    return isinstance(code, str) and len(code) == CODE_LENGTH and code.isdigit()


def generate_reference(prefix: str) -> str:
    """Opaque external id such as TXN-1718000000000-9f1c2a7b3d4e5f60."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(8)}"


# ═══════════════════════════════════════════════════════
#  One-way hash (bcrypt)
# ═══════════════════════════════════════════════════════


def hash_code(code: str) -> str:
    """Hash a plaintext code with bcrypt."""
    rounds = get_settings().BCRYPT_ROUNDS
    return bcrypt.hashpw(
        code.encode("utf-8"),
        bcrypt.gensalt(rounds=rounds),
    ).decode("utf-8")


def verify_code_hash(code: str, code_hash: str) -> bool:
    """Constant-time check of a plaintext code against its bcrypt hash."""
    if not code or not code_hash:
        return False
    try:
        return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))
    except ValueError:
        logger.error("Stored delivery code hash is malformed")
        return False


# ═══════════════════════════════════════════════════════
#  Reversible encryption (Fernet)
# ═══════════════════════════════════════════════════════


def encrypt_code(plaintext: str) -> str:
    """
    Encrypt a delivery code for later retrieval by the buyer.
    Returns a URL-safe base64 ciphertext string safe for DB storage.
    """
    cipher = _get_fernet()
    return cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_code(ciphertext: str) -> str:
    """
    Decrypt a Fernet-encrypted delivery code.

    Raises:
        ValueError: If decryption fails (tampered or wrong key)
    """
    try:
        cipher = _get_fernet()
        return cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.error("Failed to decrypt delivery code — possible key mismatch or data tampering")
        raise ValueError("Decryption failed — data may be corrupted or key has changed")


def generate_key() -> str:
    """Generate a new Fernet key. Utility for initial setup."""
    return Fernet.generate_key().decode("utf-8")
