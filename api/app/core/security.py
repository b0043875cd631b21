from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings


# ─── Fernet encryption (cabinet passwords at rest) ──────
def get_fernet() -> Fernet:
    return Fernet(settings.encryption_key.encode())


def encrypt_value(value: str) -> str:
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_value(encrypted: str) -> str:
    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken as exc:
        # Key rotated or row written with another key; surfaced as a cabinet-level failure
        raise ValueError("stored credential cannot be decrypted with the current ENCRYPTION_KEY") from exc
