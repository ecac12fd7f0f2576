"""Pairing business logic (server side).

The primary device sets up a family and receives a connection code; a
watcher resolves the code and records a single approve/reject decision.
The primary learns the decision through polling or the long-poll wait.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from lifesign.config import settings
from lifesign.errors import ApprovalAlreadyDecided, CodeNotFound, FamilyNotFound
from lifesign.models.family import ApprovalState, Family, new_family_id
from lifesign.models.pending_code import PendingCode
from lifesign.schemas.family import SleepWindow
from lifesign.services.code_registry import CodeRegistry
from lifesign.services.family_store import FamilyStore
from lifesign.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ApprovalResult:
    family: Family
    changed: bool

    @property
    def state(self) -> ApprovalState:
        return ApprovalState(self.family.approval_state)


class PairingService:
    def __init__(self, store: FamilyStore, registry: CodeRegistry):
        self.store = store
        self.registry = registry

    # --- Primary device ---

    def setup_family(
        self,
        subject_name: str,
        monitoring_enabled: bool = True,
        alert_threshold_hours: Optional[int] = None,
        sleep_window: Optional[SleepWindow] = None,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Family, PendingCode]:
        """Create an unpaired family and reserve its connection code."""
        now = now or utcnow()
        family_id = new_family_id()
        pending = self.registry.generate_code(family_id, now)

        family = Family(
            id=family_id,
            connection_code=pending.code,
            subject_name=subject_name,
            monitoring_enabled=monitoring_enabled,
            alert_threshold_hours=alert_threshold_hours or settings.default_alert_threshold_hours,
            food_alert_hours=settings.default_food_alert_hours,
            sleep_window=sleep_window.model_dump() if sleep_window else None,
            timezone=timezone or settings.default_timezone,
            created_at=now,
        )
        try:
            family = self.store.create(family)
        except Exception:
            self.registry.expire(pending.code)
            raise

        logger.info("Family setup: %s (%s) code=%s", family.id, subject_name, pending.code)
        return family, pending

    def approval_state(self, family_id: str) -> ApprovalState:
        return ApprovalState(self.store.require(family_id).approval_state)

    def wait_for_change(self, family_id: str, since: ApprovalState, timeout: float) -> ApprovalState:
        """Block until the approval state differs from ``since`` or timeout."""
        changed = threading.Event()
        unsubscribe = self.store.subscribe(
            family_id,
            lambda fam: changed.set() if fam.approval_state != since.value else None,
        )
        try:
            current = self.approval_state(family_id)
            if current != since:
                return current
            changed.wait(min(timeout, settings.longpoll_max_seconds))
            return self.approval_state(family_id)
        finally:
            unsubscribe()

    def complete_pairing(self, family_id: str) -> Family:
        """Primary observed approval: retire the pending code."""
        family = self.store.require(family_id)
        if not family.is_paired:
            raise ValueError(f"Family {family_id} is not approved")
        self.registry.expire(family.connection_code)
        logger.info("Pairing complete for family %s", family_id)
        return family

    def cancel_pairing(self, family_id: str) -> bool:
        """Timeout or manual cancel: expire the code, drop the unpaired family.

        Returns False when the family is gone or was approved before the
        code was retired; an approved family is kept.
        """
        family = self.store.get(family_id)
        if family is None:
            return False
        self.registry.expire(family.connection_code)
        if not self.store.delete_unpaired(family_id):
            logger.info("Family %s was approved before cancel, keeping it", family_id)
            return False
        logger.info("Pairing cancelled for family %s", family_id)
        return True

    # --- Watcher device ---

    def lookup(self, code: str) -> Family:
        return self.registry.lookup(code)

    def set_approval(
        self,
        code: str,
        decision: ApprovalState,
        push_token: Optional[str] = None,
        device_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalResult:
        """Record the watcher's decision exactly once.

        Raises CodeNotFound for expired or unknown codes. A repeated call
        returns the stored decision with ``changed=False``.
        """
        if decision == ApprovalState.UNSET:
            raise ValueError("decision must be approved or rejected")
        now = now or utcnow()
        family = self.registry.lookup(code, now)

        try:
            family = self._decide(family, decision, now)
        except ApprovalAlreadyDecided:
            logger.info(
                "Approval for code %s already decided (%s), ignoring %s",
                code, family.approval_state, decision.value,
            )
            return ApprovalResult(family=self.store.require(family.id), changed=False)
        except FamilyNotFound:
            raise CodeNotFound(code)

        if decision == ApprovalState.APPROVED and push_token:
            self.store.add_companion(family.id, push_token, device_name)

        logger.info("Code %s %s for family %s", code, decision.value, family.id)
        return ApprovalResult(family=family, changed=True)

    def _decide(self, family: Family, decision: ApprovalState, now: datetime) -> Family:
        while family.approval_state == ApprovalState.UNSET.value:
            fields = {"approval_state": decision.value}
            if decision == ApprovalState.APPROVED:
                fields["approved_at"] = now
            updated = self.store.compare_and_set(family.id, family.version, **fields)
            if updated is not None:
                return updated
            # Another write landed first; re-read and check again
            family = self.store.require(family.id)
        raise ApprovalAlreadyDecided(family.approval_state)
