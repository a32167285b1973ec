"""
Security utilities for photo upload validation and password rules
"""
import re
from typing import Optional

from fastapi import HTTPException, UploadFile


# Security constants
ALLOWED_IMAGE_TYPES = {
    "image/jpeg": "jpeg",
    "image/png": "png",
    "image/webp": "webp",
}

# 10MB in bytes
MAX_IMAGE_SIZE = 10 * 1024 * 1024

MIN_PASSWORD_LENGTH = 8


def detect_image_type(content: bytes) -> Optional[str]:
    """
    Detect the image format from its leading magic bytes.

    Returns:
        MIME type string, or None if not a supported image
    """
    if content[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if content[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    return None


async def read_uploaded_image(file: UploadFile) -> bytes:
    """
    Read an uploaded photo, enforcing size and format limits.

    The declared content type is ignored; only the bytes are trusted.

    Raises:
        HTTPException: 413 when too large, 400 when empty or not an image
    """
    content = await file.read(MAX_IMAGE_SIZE + 1)
    if len(content) > MAX_IMAGE_SIZE:
        raise HTTPException(
            status_code=413,
            detail=f"Image too large. Maximum size is {MAX_IMAGE_SIZE // (1024 * 1024)}MB",
        )
    if not content:
        raise HTTPException(status_code=400, detail="Empty upload")
    if detect_image_type(content) not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported image format. Allowed: {', '.join(sorted(ALLOWED_IMAGE_TYPES.values()))}",
        )
    return content


def validate_password_strength(password: str) -> None:
    """
    Validate password strength.

    Requirements:
    - Minimum length: 8 characters
    - At least one letter
    - At least one digit

    Raises:
        ValueError: with a message naming the first failed rule
    """
    if not password:
        raise ValueError("Password cannot be empty")

    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    if not re.search(r"[A-Za-z]", password):
        raise ValueError("Password must contain at least one letter")

    if not re.search(r"\d", password):
        raise ValueError("Password must contain at least one digit (0-9)")
