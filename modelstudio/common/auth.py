"""
Shared-secret check for calls that change models: training, fine-tuning,
activation, updates, deletes, imports and prediction.

Peers send the key in `X-Internal-Key`. With INTERNAL_API_KEY empty or
left at 'dev_key' the check is off, which is how local development runs.
"""

import secrets
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from modelstudio.config import settings

INTERNAL_KEY_HEADER = "X-Internal-Key"
_DEV_KEY = "dev_key"

_internal_key_header = APIKeyHeader(name=INTERNAL_KEY_HEADER, auto_error=False)


def internal_key_enforced() -> bool:
    return bool(settings.INTERNAL_API_KEY) and settings.INTERNAL_API_KEY != _DEV_KEY


async def verify_internal_key(supplied: Optional[str] = Security(_internal_key_header)) -> Optional[str]:
    if not internal_key_enforced():
        return supplied
    if supplied is None or not secrets.compare_digest(supplied.encode(), settings.INTERNAL_API_KEY.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing or wrong {INTERNAL_KEY_HEADER} header",
        )
    return supplied
