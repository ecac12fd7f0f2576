"""Connection code registry.

Codes are 4 ASCII digits drawn from 1000-9999 (no leading zeros, so a code
reads the same when spoken or typed as a number). A code is taken while a
PendingCode reserves it or a Family still holds it.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from lifesign.config import settings
from lifesign.errors import CodeNotFound, CodeSpaceExhausted
from lifesign.models.family import ApprovalState, Family
from lifesign.models.pending_code import PendingCode
from lifesign.services.family_store import FamilyStore
from lifesign.utils.clock import as_utc, utcnow
from lifesign.utils.security import format_code, pick_code

logger = logging.getLogger(__name__)


class CodeRegistry:
    def __init__(
        self,
        store: FamilyStore,
        code_min: int | None = None,
        code_max: int | None = None,
        max_attempts: int | None = None,
        ttl_seconds: float | None = None,
    ):
        self.store = store
        self.code_min = settings.code_min if code_min is None else code_min
        self.code_max = settings.code_max if code_max is None else code_max
        self.max_attempts = max_attempts or settings.code_max_attempts
        self.ttl = timedelta(seconds=ttl_seconds or settings.handshake_timeout_seconds)

    def taken_codes(self, now: Optional[datetime] = None) -> set[str]:
        """Codes reserved by live pending entries or held by a family."""
        now = now or utcnow()
        with self.store.session() as session:
            pending = session.exec(select(PendingCode)).all()
            held = session.exec(select(Family.connection_code)).all()
        taken = {p.code for p in pending if as_utc(p.expires_at) > now}
        taken.update(held)
        return taken

    def generate_code(self, family_id: str, now: Optional[datetime] = None) -> PendingCode:
        """Reserve a free code for ``family_id``.

        Raises CodeSpaceExhausted when no free code is left or every attempt
        collided with a concurrent reservation.
        """
        now = now or utcnow()
        for attempt in range(1, self.max_attempts + 1):
            taken = self.taken_codes(now)
            free = [
                code for code in (format_code(n) for n in range(self.code_min, self.code_max + 1))
                if code not in taken
            ]
            if not free:
                raise CodeSpaceExhausted(
                    f"No free connection code in {self.code_min}-{self.code_max}"
                )

            code = pick_code(free)
            if self._reserve(code, family_id, now):
                logger.info("Reserved code %s for family %s (attempt %d)", code, family_id, attempt)
                return PendingCode(
                    code=code,
                    family_id=family_id,
                    created_at=now,
                    expires_at=now + self.ttl,
                )
            logger.debug("Code %s collided, retrying", code)

        raise CodeSpaceExhausted(
            f"Failed to reserve a connection code after {self.max_attempts} attempts"
        )

    def _reserve(self, code: str, family_id: str, now: datetime) -> bool:
        with self.store.session() as session:
            stale = session.get(PendingCode, code)
            if stale is not None:
                if as_utc(stale.expires_at) > now:
                    return False
                # An expired entry frees its code for reuse
                session.delete(stale)
                session.flush()

            session.add(PendingCode(
                code=code,
                family_id=family_id,
                created_at=now,
                expires_at=now + self.ttl,
            ))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def lookup(self, code: str, now: Optional[datetime] = None) -> Family:
        """Resolve a code to its family. Raises CodeNotFound."""
        now = now or utcnow()
        with self.store.session() as session:
            pending = session.get(PendingCode, code)
            if pending is not None and as_utc(pending.expires_at) > now:
                family = session.get(Family, pending.family_id)
                if family is not None:
                    return family

            paired = session.exec(
                select(Family).where(
                    Family.connection_code == code,
                    Family.approval_state == ApprovalState.APPROVED.value,
                )
            ).first()
        if paired is None:
            raise CodeNotFound(code)
        return paired

    def expire(self, code: str) -> None:
        """Drop the pending entry for ``code``. Expiring a missing code is fine."""
        with self.store.session() as session:
            session.exec(delete(PendingCode).where(PendingCode.code == code))
            session.commit()
        logger.debug("Expired code %s", code)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Remove expired entries and the never-paired families behind them."""
        now = now or utcnow()
        with self.store.session() as session:
            pending = session.exec(select(PendingCode)).all()
        expired = [p for p in pending if as_utc(p.expires_at) <= now]

        for entry in expired:
            self.expire(entry.code)
            self.store.delete_unpaired(entry.family_id)
        if expired:
            logger.info("Purged %d expired connection code(s)", len(expired))
        return len(expired)
