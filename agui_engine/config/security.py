"""
Security utilities.

- Reserved JSON Pointer segments that must never be patched
- HMAC-signed bearer tokens for run requests
"""

import secrets
import hmac
import hashlib
import time
from typing import Iterable, Optional

import structlog

logger = structlog.get_logger()

# Segments that would let a consumer-side patch reach an object's prototype chain
RESERVED_PATH_SEGMENTS = frozenset({"__proto__", "constructor", "prototype"})


class SecurityViolationError(Exception):
    """Raised when a patch operation targets a reserved path"""

    def __init__(self, pointer: str, segment: str, index: Optional[int] = None):
        self.pointer = pointer
        self.segment = segment
        self.index = index
        location = f" (operation {index})" if index is not None else ""
        super().__init__(f"Path '{pointer}' targets reserved segment '{segment}'{location}")


def find_reserved_segment(pointer: str) -> Optional[str]:
    """
    Return the first reserved segment in a JSON Pointer, or None.

    Segments are compared after ~1/~0 unescaping, so '/a/__proto__' and an
    escaped spelling of the same key are both caught.
    """
    if not pointer:
        return None
    for raw in pointer.split("/")[1:]:
        segment = raw.replace("~1", "/").replace("~0", "~")
        if segment in RESERVED_PATH_SEGMENTS:
            return segment
    return None


def assert_safe_operations(operations: Iterable) -> None:
    """
    Check every operation's path and from against the denylist.

    Accepts PatchOperation models or plain dicts.

    Raises:
        SecurityViolationError: On the first operation touching a reserved segment
    """
    for index, operation in enumerate(operations):
        if isinstance(operation, dict):
            pointers = (operation.get("path"), operation.get("from"))
        else:
            pointers = (operation.path, operation.from_)

        for pointer in pointers:
            if not isinstance(pointer, str):
                continue
            segment = find_reserved_segment(pointer)
            if segment is not None:
                logger.warning(
                    "reserved_path_rejected",
                    path=pointer,
                    segment=segment,
                    operation_index=index,
                )
                raise SecurityViolationError(pointer, segment, index)


def generate_run_token(subject: str, secret_key: str, ttl_seconds: int = 3600) -> str:
    """
    Generate HMAC-signed bearer token for run requests.

    Format: {subject}:{expires_at}:{random_part}:{signature}

    Args:
        subject: Caller identity carried in the token
        secret_key: Shared signing secret
        ttl_seconds: Token lifetime

    Returns:
        Secure bearer token
    """
    expires_at = int(time.time()) + ttl_seconds
    random_part = secrets.token_urlsafe(16)

    message = f"{subject}:{expires_at}:{random_part}".encode()
    signature = hmac.new(secret_key.encode(), message, hashlib.sha256).hexdigest()[:32]

    return f"{subject}:{expires_at}:{random_part}:{signature}"


def verify_run_token(token: str, secret_key: str) -> Optional[str]:
    """
    Verify run bearer token and extract the subject.

    Accepts an optional 'Bearer ' prefix.

    Returns:
        subject if valid and not expired, None otherwise
    """
    if not secret_key:
        # Fail closed
        logger.error("run_token_secret_not_configured")
        return None

    try:
        if token.startswith("Bearer "):
            token = token[len("Bearer "):]

        # Subject may contain ':' so split from the right
        parts = token.rsplit(":", 3)
        if len(parts) != 4:
            logger.warning("run_token_invalid_format", expected_parts=4, actual_parts=len(parts))
            return None

        subject, expires_at, random_part, signature = parts

        message = f"{subject}:{expires_at}:{random_part}".encode()
        expected_signature = hmac.new(secret_key.encode(), message, hashlib.sha256).hexdigest()[:32]

        # Constant-time comparison to prevent timing attacks
        if not hmac.compare_digest(signature, expected_signature):
            logger.warning("run_token_signature_mismatch")
            return None

        if int(expires_at) < int(time.time()):
            logger.warning("run_token_expired", subject=subject)
            return None

        return subject

    except (ValueError, AttributeError) as e:
        logger.error("run_token_verification_exception", error=str(e))
        return None
