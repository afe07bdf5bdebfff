# =====================================================
# FILE: credvault/core/security.py
# JWT tokens, one-time code hashing and wallet signature login
# =====================================================

from datetime import datetime, timedelta
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from credvault.core.config import Settings, settings as default_settings
from credvault.core.exceptions import Unauthenticated
from credvault.models.party import WalletNonce
from credvault.services.crypto_service import normalize_address, secure_token

# One-time deletion codes are short-lived; pbkdf2 keeps them unreadable at rest
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

LOGIN_MESSAGE = "Sign in to {app}\nNonce: {nonce}"


def hash_secret(secret: str) -> str:
    return pwd_context.hash(secret)


def verify_secret(plain: str, hashed: str) -> bool:
    if not plain or not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None,
                        settings: Settings = None) -> str:
    """
    Create JWT access token

    Args:
        data: claims; `sub` is the wallet address, `role` the role name
        expires_delta: Optional custom expiration time
    """
    settings = settings or default_settings
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": datetime.utcnow()
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str, settings: Settings = None) -> Optional[dict]:
    """Decoded payload, or None if the token is invalid or expired"""
    settings = settings or default_settings
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def login_message(nonce: str, settings: Settings = None) -> str:
    return LOGIN_MESSAGE.format(app=(settings or default_settings).APP_NAME, nonce=nonce)


def issue_login_nonce(db: Session, address: str, now: datetime) -> str:
    """Create or rotate the one-time nonce for a wallet"""
    address = normalize_address(address)
    entry = db.query(WalletNonce).filter(WalletNonce.address == address).first()
    nonce = secure_token(16)
    if entry:
        entry.nonce = nonce
        entry.created_at = now
    else:
        db.add(WalletNonce(address=address, nonce=nonce, created_at=now))
    db.commit()
    return nonce


def consume_login_nonce(db: Session, address: str, signature: str, now: datetime,
                        settings: Settings = None) -> str:
    """
    Check a signed login message and burn the nonce.

    Returns the recovered (lowercase) address.
    """
    settings = settings or default_settings
    address = normalize_address(address)
    entry = db.query(WalletNonce).filter(WalletNonce.address == address).first()
    if not entry:
        raise Unauthenticated("Nonce not found for address. Start over.")

    if entry.created_at < now - timedelta(minutes=settings.LOGIN_NONCE_TTL_MINUTES):
        db.delete(entry)
        db.commit()
        raise Unauthenticated("Nonce expired. Please try again.")

    try:
        message = encode_defunct(text=login_message(entry.nonce, settings))
        recovered = Account.recover_message(message, signature=signature).lower()
    except Exception as e:
        raise Unauthenticated(f"Invalid signature: {e}")

    if recovered != address:
        raise Unauthenticated("Signature does not match address")

    # one-time use
    db.delete(entry)
    db.commit()
    return recovered
