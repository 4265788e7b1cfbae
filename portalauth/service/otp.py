from __future__ import annotations

import hashlib
import hmac
import secrets

OTP_DIGITS = 6


def generate_code(digits: int = OTP_DIGITS) -> str:
    """Uniform numeric code from the system CSPRNG."""
    return str(secrets.randbelow(10**digits)).zfill(digits)


def hash_code(email: str, code: str) -> str:
    """Digest bound to the email so one stored hash cannot match another address."""
    return hashlib.sha256(f"{email.strip().lower()}:{code.strip()}".encode()).hexdigest()


def code_matches(stored_hash: str, email: str, code: str) -> bool:
    return hmac.compare_digest(stored_hash, hash_code(email, code))
