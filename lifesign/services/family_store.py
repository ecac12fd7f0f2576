"""Family document store.

Wraps SQLModel sessions with the primitives the pairing and monitoring
services rely on: partial updates, compare-and-set on ``Family.version``
and an in-process change subscription used by the approval push path.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from lifesign.errors import FamilyNotFound, PersistenceUnavailable
from lifesign.models.device import CompanionDevice, DeviceRegistration
from lifesign.models.family import ApprovalState, Family
from lifesign.models.pending_code import PendingCode

logger = logging.getLogger(__name__)

FamilyListener = Callable[[Family], None]


class FamilyStore:
    """Persistence for Family records and their recipient rows."""

    def __init__(self, engine):
        self.engine = engine
        self._listeners: dict[str, list[FamilyListener]] = {}
        self._lock = threading.Lock()

    @contextmanager
    def session(self):
        """Session whose objects stay readable after commit."""
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except OperationalError as e:
            raise PersistenceUnavailable(str(e)) from e

    # --- Reads ---

    def get(self, family_id: str) -> Optional[Family]:
        with self.session() as session:
            return session.get(Family, family_id)

    def require(self, family_id: str) -> Family:
        family = self.get(family_id)
        if family is None:
            raise FamilyNotFound(family_id)
        return family

    def find_by_code(self, code: str) -> list[Family]:
        with self.session() as session:
            return list(session.exec(
                select(Family).where(Family.connection_code == code)
            ).all())

    def list_monitored(self) -> list[Family]:
        """All families that opted in to survival monitoring."""
        with self.session() as session:
            return list(session.exec(
                select(Family).where(Family.monitoring_enabled == True)  # noqa: E712
            ).all())

    def registered_tokens(self, code: str) -> list[str]:
        """Push tokens of active device registrations for a connection code."""
        with self.session() as session:
            return list(session.exec(
                select(DeviceRegistration.push_token).where(
                    DeviceRegistration.connection_code == code,
                    DeviceRegistration.status == "active",
                )
            ).all())

    def companion_tokens(self, family_id: str) -> list[str]:
        with self.session() as session:
            return list(session.exec(
                select(CompanionDevice.push_token).where(
                    CompanionDevice.family_id == family_id,
                    CompanionDevice.is_active == True,  # noqa: E712
                )
            ).all())

    # --- Writes ---

    def create(self, family: Family) -> Family:
        with self.session() as session:
            session.add(family)
            session.commit()
            session.refresh(family)
        return family

    def update(self, family_id: str, **fields) -> Family:
        """Atomically merge ``fields`` into the record."""
        family = self._write(family_id, fields)
        if family is None:
            raise FamilyNotFound(family_id)
        return family

    def compare_and_set(self, family_id: str, expected_version: int, **fields) -> Optional[Family]:
        """Merge ``fields`` only if nobody wrote since ``expected_version``.

        Returns the updated family, or None when the version moved on.
        """
        return self._write(family_id, fields, expected_version)

    def _write(self, family_id: str, fields: dict, expected_version: Optional[int] = None) -> Optional[Family]:
        with self.session() as session:
            stmt = update(Family).where(Family.id == family_id)
            if expected_version is not None:
                stmt = stmt.where(Family.version == expected_version)
            stmt = stmt.values(**fields, version=Family.version + 1)
            result = session.exec(stmt)
            session.commit()
            if result.rowcount == 0:
                return None
            family = session.get(Family, family_id)

        self._publish(family)
        return family

    def add_companion(self, family_id: str, push_token: str, device_name: Optional[str] = None) -> CompanionDevice:
        with self.session() as session:
            existing = session.exec(
                select(CompanionDevice).where(
                    CompanionDevice.family_id == family_id,
                    CompanionDevice.push_token == push_token,
                )
            ).first()
            if existing:
                existing.is_active = True
                session.add(existing)
                session.commit()
                return existing

            companion = CompanionDevice(
                family_id=family_id,
                push_token=push_token,
                device_name=device_name,
            )
            session.add(companion)
            session.commit()
            session.refresh(companion)
            return companion

    def delete(self, family_id: str) -> bool:
        """Delete a family with its pending code, companions and registrations."""
        with self.session() as session:
            family = session.get(Family, family_id)
            if family is None:
                return False
            session.exec(delete(PendingCode).where(PendingCode.family_id == family_id))
            session.exec(delete(CompanionDevice).where(CompanionDevice.family_id == family_id))
            session.exec(
                delete(DeviceRegistration).where(
                    DeviceRegistration.connection_code == family.connection_code
                )
            )
            session.delete(family)
            session.commit()
        logger.info("Deleted family %s (code %s)", family_id, family.connection_code)
        return True

    def delete_unpaired(self, family_id: str) -> bool:
        """Delete a family unless it is approved.

        The approval check and the delete share one transaction, so an
        approval either lands first and keeps the family or finds it gone.
        """
        with self.session() as session:
            family = session.get(Family, family_id)
            if family is None:
                return False
            session.exec(delete(PendingCode).where(PendingCode.family_id == family_id))
            session.exec(delete(CompanionDevice).where(CompanionDevice.family_id == family_id))
            session.exec(
                delete(DeviceRegistration).where(
                    DeviceRegistration.connection_code == family.connection_code
                )
            )
            result = session.exec(
                delete(Family).where(
                    Family.id == family_id,
                    Family.approval_state != ApprovalState.APPROVED.value,
                )
            )
            if result.rowcount == 0:
                session.rollback()
                return False
            session.commit()
        logger.info("Deleted unpaired family %s (code %s)", family_id, family.connection_code)
        return True

    # --- Change subscription ---

    def subscribe(self, family_id: str, listener: FamilyListener) -> Callable[[], None]:
        """Call ``listener`` with the fresh record after every write.

        Listeners run on the writing thread. Returns an unsubscribe function.
        """
        with self._lock:
            self._listeners.setdefault(family_id, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(family_id, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(family_id, None)

        return unsubscribe

    def _publish(self, family: Family) -> None:
        with self._lock:
            listeners = list(self._listeners.get(family.id, []))
        for listener in listeners:
            try:
                listener(family)
            except Exception:
                logger.exception("Family listener failed for %s", family.id)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._listeners.values())
