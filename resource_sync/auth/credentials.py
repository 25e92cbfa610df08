"""Bearer credentials stored by the external OAuth component."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from resource_sync.database import Database
from resource_sync.encryption import CredentialCipher, DecryptionError
from resource_sync.sync.interfaces import CredentialProvider
from resource_sync.sync.models import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# Tokens this close to expiry are treated as already expired
EXPIRY_MARGIN = timedelta(minutes=5)


def _context(user_id: str, family: str) -> str:
    return f"{user_id}:{family}"


class StoredCredentialProvider(CredentialProvider):
    """Reads access tokens from the ``credentials`` table.

    Refreshing is not done here: the OAuth component writes fresh tokens with
    :meth:`store_access_token`, and an expired or missing token reads as
    ``None``.
    """

    def __init__(self, db: Database, cipher: CredentialCipher, *, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.cipher = cipher
        self._clock = clock

    async def store_access_token(
        self,
        user_id: str,
        family: str,
        access_token: str,
        expires_in: Optional[int] = None,
    ) -> None:
        """Store (or replace) the access token for an account."""
        now = self._clock()
        expiry = now + timedelta(seconds=expires_in) if expires_in else None
        encrypted = self.cipher.encrypt(access_token, _context(user_id, family))
        async with self.db.transaction() as db:
            await db.execute(
                """INSERT INTO credentials (user_id, family, access_token_encrypted, expires_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(user_id, family) DO UPDATE SET
                   access_token_encrypted = excluded.access_token_encrypted,
                   expires_at = excluded.expires_at,
                   updated_at = excluded.updated_at""",
                (user_id, family, encrypted, format_timestamp(expiry), format_timestamp(now)),
            )

    async def delete(self, user_id: str, family: str) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                "DELETE FROM credentials WHERE user_id = ? AND family = ?", (user_id, family)
            )

    async def get_valid_access_token(self, user_id: str, family: str) -> Optional[str]:
        row = await self.db.fetchone(
            "SELECT * FROM credentials WHERE user_id = ? AND family = ?", (user_id, family)
        )
        if not row:
            logger.warning(f"No credential stored for {family} user {user_id}")
            return None

        expiry = parse_timestamp(row["expires_at"])
        if expiry and self._clock() >= expiry - EXPIRY_MARGIN:
            logger.warning(f"Credential for {family} user {user_id} expired at {expiry.isoformat()}")
            return None

        try:
            return self.cipher.decrypt(row["access_token_encrypted"], _context(user_id, family))
        except DecryptionError as e:
            logger.error(f"Could not decrypt credential for {family} user {user_id}: {e}")
            return None
