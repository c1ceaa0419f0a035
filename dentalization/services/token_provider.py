"""
Token Provider.

Answers "which access token should this outbound call use, right now".
It never performs a refresh; the Request Pipeline is the single place
where refresh is triggered.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from typing import Optional

from dentalization.logger import StructuredLogger
from dentalization.services.base_service import BaseService
from dentalization.services.credential_store import CredentialStore


def decode_jwt_claims(token: str) -> Optional[dict[str, object]]:
    """Decode the unverified claim set of a JWT, or ``None`` for non-JWTs."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return claims if isinstance(claims, dict) else None


class TokenProvider(BaseService):
    """Read-only view of the stored access token.

    Parameters
    ----------
    store:
        The credential store holding the token pair.
    logger:
        Structured JSON logger.
    expiry_leeway_s:
        Seconds before ``exp`` at which a token already counts as expired.
    """

    def __init__(
        self,
        store: CredentialStore,
        logger: StructuredLogger,
        expiry_leeway_s: float = 30.0,
    ) -> None:
        super().__init__(logger)
        self._store: CredentialStore = store
        self._expiry_leeway_s: float = expiry_leeway_s

    async def get_access_token(self) -> Optional[str]:
        """Return the stored access token; no network call."""
        return await self._store.get_access_token()

    async def is_token_likely_expired(self) -> bool:
        """Best-effort local expiry check on the JWT ``exp`` claim.

        An absent token counts as expired.  Opaque (non-JWT) tokens and
        tokens without ``exp`` count as valid; the backend decides.
        """
        token = await self.get_access_token()
        if not token:
            return True
        claims = decode_jwt_claims(token)
        if claims is None:
            return False
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            return False
        return time.time() >= float(exp) - self._expiry_leeway_s
