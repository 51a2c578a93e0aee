from __future__ import annotations

import hmac
from hashlib import sha256
from typing import Mapping, Optional

SIGNATURE_HEADER = "x-pipeline-signature"
_SIGNATURE_PREFIX = "sha256="


def sign_callback(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, sha256).hexdigest()


def verify_callback_signature(
    *,
    headers: Mapping[str, str],
    body: bytes,
    secret: Optional[str],
    header_name: str = SIGNATURE_HEADER,
) -> bool:
    """Check the pipeline's HMAC-SHA256 hex signature over the raw body.

    Without a configured secret every callback is accepted.
    """

    if not secret:
        return True

    provided = headers.get(header_name)
    if not provided:
        return False
    provided = provided.strip()
    if provided.lower().startswith(_SIGNATURE_PREFIX):
        provided = provided[len(_SIGNATURE_PREFIX):]

    return hmac.compare_digest(provided.lower(), sign_callback(body, secret))


__all__ = ["SIGNATURE_HEADER", "sign_callback", "verify_callback_signature"]
