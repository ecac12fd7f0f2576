"""Notification fan-out.

Resolves a family's recipients through an ordered list of strategies (the
first one returning tokens wins) and sends one message per recipient on a
thread pool. A failing or slow recipient never blocks the others.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from lifesign.config import settings
from lifesign.errors import LifeSignError
from lifesign.models.family import Family
from lifesign.services.family_store import FamilyStore
from lifesign.services.push import PushTransport
from lifesign.utils.clock import as_utc, utcnow
from lifesign.utils.security import truncate_token

logger = logging.getLogger(__name__)

SURVIVAL_ALERT = "survival_alert"
FOOD_ALERT = "food_alert"
MEAL_RECORDED = "meal_recorded"
TEST_MESSAGE = "test"

RecipientStrategy = Callable[[FamilyStore, Family], list[str]]


# --- Recipient resolution strategies ---

def tokens_by_connection_code(store: FamilyStore, family: Family) -> list[str]:
    """Device registrations keyed by the family's connection code."""
    return store.registered_tokens(family.connection_code)


def tokens_from_companions(store: FamilyStore, family: Family) -> list[str]:
    """Companion devices approved while pairing."""
    return store.companion_tokens(family.id)


def tokens_embedded_on_family(store: FamilyStore, family: Family) -> list[str]:
    """Legacy token list stored on the family record itself."""
    return list(family.recipient_tokens or [])


DEFAULT_STRATEGIES: list[RecipientStrategy] = [
    tokens_by_connection_code,
    tokens_from_companions,
    tokens_embedded_on_family,
]


# --- Messages ---

def render_message(kind: str, family: Family, payload: dict) -> tuple[str, str, dict[str, str]]:
    """Title, body and string-valued data for a message kind."""
    name = family.subject_name
    data = {
        "type": kind,
        "familyId": family.id,
        "elderlyName": name,
        "timestamp": utcnow().isoformat(),
    }

    if kind == SURVIVAL_ALERT:
        hours = payload.get("hours_inactive", family.alert_threshold_hours)
        data["hoursInactive"] = str(hours)
        location = payload.get("location")
        if location:
            data["lat"] = str(location["lat"])
            data["lon"] = str(location["lon"])
            if location.get("at"):
                data["locationAt"] = str(location["at"])
        return (
            f"⚠️ {name} 안전 알림",
            f"{hours}시간 이상 휴대폰 사용이 없습니다. 안부를 확인해주세요.",
            data,
        )

    if kind == FOOD_ALERT:
        hours = payload.get("hours_without_food", family.food_alert_hours)
        data["hoursWithoutFood"] = str(hours)
        return (
            f"🍽️ {name} 식사 알림",
            f"{hours}시간 이상 식사하지 않았습니다. 확인해주세요.",
            data,
        )

    if kind == MEAL_RECORDED:
        at = as_utc(payload.get("at")) or utcnow()
        local = at.astimezone(ZoneInfo(family.timezone))
        data["timestamp"] = at.isoformat()
        if payload.get("meal_number"):
            data["mealNumber"] = str(payload["meal_number"])
        return (
            f"{name}님이 식사하셨어요",
            f"오늘 {local:%H:%M}에 식사했습니다",
            data,
        )

    if kind == TEST_MESSAGE:
        return f"{name} 알림 테스트", "알림이 정상적으로 수신되었습니다.", data

    raise ValueError(f"Unknown message kind: {kind}")


# --- Fan-out ---

@dataclass
class RecipientResult:
    token: str  # truncated for logs
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class FanoutResult:
    sent: int = 0
    total: int = 0
    per_recipient: list[RecipientResult] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.total - self.sent


class Notifier:
    def __init__(
        self,
        store: FamilyStore,
        transport: PushTransport,
        strategies: Optional[list[RecipientStrategy]] = None,
        fanout_timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
    ):
        self.store = store
        self.transport = transport
        self.strategies = list(strategies or DEFAULT_STRATEGIES)
        self.fanout_timeout = fanout_timeout or settings.fanout_timeout_seconds
        self.max_workers = max_workers or settings.fanout_max_workers

    def resolve_recipients(self, family: Family) -> list[str]:
        for strategy in self.strategies:
            try:
                tokens = strategy(self.store, family)
            except LifeSignError as e:
                logger.warning("Recipient strategy %s failed for %s: %s", strategy.__name__, family.id, e)
                continue
            # Drop blanks and duplicates, keep order
            tokens = list(dict.fromkeys(t for t in tokens if t))
            if tokens:
                logger.debug("Resolved %d recipient(s) for %s via %s", len(tokens), family.id, strategy.__name__)
                return tokens
        return []

    def notify(self, family_id: str, kind: str, payload: Optional[dict] = None) -> FanoutResult:
        family = self.store.require(family_id)
        return self.notify_family(family, kind, payload or {})

    def notify_family(self, family: Family, kind: str, payload: dict) -> FanoutResult:
        title, body, data = render_message(kind, family, payload)
        tokens = self.resolve_recipients(family)
        if not tokens:
            logger.warning("No recipients for family %s (%s)", family.id, kind)
            return FanoutResult()

        logger.info("Sending %s to %d recipient(s) of %s", kind, len(tokens), family.id)
        result = self._dispatch(tokens, title, body, data)
        logger.info("Notifications sent for %s: %d/%d", family.id, result.sent, result.total)
        return result

    def _dispatch(self, tokens: list[str], title: str, body: str, data: dict[str, str]) -> FanoutResult:
        pool = ThreadPoolExecutor(
            max_workers=min(len(tokens), self.max_workers),
            thread_name_prefix="fanout",
        )
        futures = {pool.submit(self.transport.send, token, title, body, data): token for token in tokens}
        done, _ = wait(futures, timeout=self.fanout_timeout)
        # Stragglers keep running on their own send timeout; nobody waits for them
        pool.shutdown(wait=False, cancel_futures=True)

        result = FanoutResult(total=len(tokens))
        for future, token in futures.items():
            short = truncate_token(token, settings.token_log_chars)
            if future not in done:
                logger.warning("Push to %s timed out", short)
                result.per_recipient.append(RecipientResult(token=short, success=False, error="timeout"))
                continue
            try:
                message_id = future.result()
            except Exception as e:
                logger.warning("Push to %s failed: %s", short, e)
                result.per_recipient.append(RecipientResult(token=short, success=False, error=str(e)))
                continue
            result.sent += 1
            result.per_recipient.append(RecipientResult(token=short, success=True, message_id=message_id))
        return result
