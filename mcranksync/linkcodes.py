"""Single-use, time-boxed codes that bind a pending link to a Discord user."""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Optional

from peewee import IntegrityError

from .errors import StorageError
from .models import StoreModels, storage_guard, utcnow_naive

LOGGER = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
CODE_TTL = timedelta(minutes=10)
MAX_ISSUE_ATTEMPTS = 5


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class LinkCodeAuthority:
    def __init__(
        self,
        models: StoreModels,
        clock: Callable[[], datetime] = utcnow_naive,
        ttl: timedelta = CODE_TTL,
    ):
        self.models = models
        self.clock = clock
        self.ttl = ttl

    def issue(self, discord_id: str) -> str:
        """Replace any code held by ``discord_id`` with a fresh one."""
        LinkCode = self.models.LinkCode
        discord_id = str(discord_id)
        with storage_guard("issue_link_code"):
            for _attempt in range(MAX_ISSUE_ATTEMPTS):
                code = generate_code()
                now = self.clock()
                try:
                    with self.models.db.atomic():
                        LinkCode.delete().where(
                            LinkCode.discord_id == discord_id
                        ).execute()
                        LinkCode.create(
                            code=code,
                            discord_id=discord_id,
                            created_at=now,
                            expires_at=now + self.ttl,
                        )
                except IntegrityError:
                    # Collided with another live code; draw again.
                    continue
                LOGGER.debug("Issued link code for discord user %s", discord_id)
                return code
        raise StorageError("Could not allocate a unique link code")

    def redeem(self, code: str) -> Optional[str]:
        """Consume ``code`` and return its Discord id, or None if unknown/expired."""
        LinkCode = self.models.LinkCode
        code = (code or "").strip().upper()
        if not code:
            return None
        now = self.clock()
        # Concurrent redeemers queue on the write lock.
        with storage_guard("redeem_link_code"), self.models.db.atomic(
            "IMMEDIATE"
        ):
            row = LinkCode.get_or_none(
                (LinkCode.code == code) & (LinkCode.expires_at > now)
            )
            if row is None:
                return None
            # Only the caller whose delete removes the row wins the code.
            deleted = (
                LinkCode.delete()
                .where((LinkCode.id == row.id) & (LinkCode.expires_at > now))
                .execute()
            )
        if not deleted:
            return None
        return row.discord_id

    def sweep_expired(self) -> int:
        LinkCode = self.models.LinkCode
        with storage_guard("sweep_expired_codes"):
            removed = LinkCode.delete().where(LinkCode.expires_at <= self.clock()).execute()
        if removed:
            LOGGER.debug("Cleaned up %s expired link codes.", removed)
        return removed
