from typing import Dict, Any
from jose import JWTError, jwt
from fastapi import HTTPException, status
from app.core.config import settings


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate JWT token"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def mask_phone(phone: str) -> str:
    """Mask phone number showing only last 4 digits"""
    if not phone or len(phone) < 4:
        return "****"
    return f"******{phone[-4:]}"


def mask_secret(secret: str) -> str:
    """Mask a credential for log output"""
    if not secret:
        return "missing"
    return f"****{secret[-4:]}"
