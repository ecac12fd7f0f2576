"""Notification fan-out tests."""

import time

import pytest

from conftest import RecordingTransport
from lifesign.errors import PersistenceUnavailable
from lifesign.models.device import DeviceRegistration
from lifesign.services.notifier import (
    FOOD_ALERT,
    MEAL_RECORDED,
    SURVIVAL_ALERT,
    TEST_MESSAGE,
    Notifier,
    render_message,
    tokens_by_connection_code,
    tokens_embedded_on_family,
    tokens_from_companions,
)


def register(store, code, token, status="active"):
    with store.session() as session:
        session.add(DeviceRegistration(connection_code=code, push_token=token, status=status))
        session.commit()


def test_one_failing_recipient(store, paired_family):
    store.update(paired_family.id, recipient_tokens=["A", "B", "C"])
    transport = RecordingTransport(failing={"B"})
    notifier = Notifier(store, transport, strategies=[tokens_embedded_on_family])

    result = notifier.notify(paired_family.id, SURVIVAL_ALERT, {"hours_inactive": 13})

    assert result.sent == 2
    assert result.total == 3
    assert result.failed == 1
    failures = [r for r in result.per_recipient if not r.success]
    assert len(failures) == 1
    assert failures[0].token == "B"
    assert "unregistered" in failures[0].error
    assert sorted(t for t, *_ in transport.sent) == ["A", "C"]


def test_first_non_empty_strategy_wins(store, paired_family, transport):
    store.update(paired_family.id, recipient_tokens=["legacy-token"])
    notifier = Notifier(store, transport)
    family = store.require(paired_family.id)

    # Companion from pairing is the first non-empty source
    assert notifier.resolve_recipients(family) == ["watcher-token-1"]

    register(store, family.connection_code, "registered-token")
    register(store, family.connection_code, "registered-token")
    register(store, family.connection_code, "revoked-token", status="revoked")
    assert notifier.resolve_recipients(family) == ["registered-token"]


def test_fallback_to_embedded_tokens(store, pairing, transport, now):
    family, _ = pairing.setup_family("어머니", now=now)
    family = store.update(family.id, recipient_tokens=["", "legacy-token"])
    notifier = Notifier(store, transport)
    assert notifier.resolve_recipients(family) == ["legacy-token"]


def test_failing_strategy_is_skipped(store, paired_family, transport):
    def offline(store, family):
        raise PersistenceUnavailable("store offline")

    notifier = Notifier(store, transport, strategies=[offline, tokens_from_companions])
    assert notifier.resolve_recipients(paired_family) == ["watcher-token-1"]


def test_no_recipients(store, pairing, transport, now):
    family, _ = pairing.setup_family("어머니", now=now)
    notifier = Notifier(store, transport, strategies=[tokens_by_connection_code])
    result = notifier.notify_family(family, TEST_MESSAGE, {})
    assert result.sent == 0 and result.total == 0
    assert transport.sent == []


def test_slow_recipient_is_reported_as_timeout(store, paired_family):
    store.update(paired_family.id, recipient_tokens=["fast", "slow"])
    transport = RecordingTransport(delays={"slow": 1.0})
    notifier = Notifier(store, transport, strategies=[tokens_embedded_on_family], fanout_timeout=0.2)

    started = time.monotonic()
    result = notifier.notify(paired_family.id, TEST_MESSAGE)
    assert time.monotonic() - started < 0.9

    assert result.sent == 1 and result.total == 2
    slow = next(r for r in result.per_recipient if r.token == "slow")
    assert slow.error == "timeout"


def test_tokens_are_truncated_in_results(store, paired_family):
    long_token = "x" * 64
    store.update(paired_family.id, recipient_tokens=[long_token])
    notifier = Notifier(store, RecordingTransport(), strategies=[tokens_embedded_on_family])
    result = notifier.notify(paired_family.id, TEST_MESSAGE)
    assert result.per_recipient[0].token == "x" * 20 + "..."


def test_render_messages(paired_family):
    title, body, data = render_message(SURVIVAL_ALERT, paired_family, {"hours_inactive": 13})
    assert title == "⚠️ 어머니 안전 알림"
    assert body == "13시간 이상 휴대폰 사용이 없습니다. 안부를 확인해주세요."
    assert data["familyId"] == paired_family.id
    assert data["elderlyName"] == "어머니"
    assert "lat" not in data
    assert all(isinstance(v, str) for v in data.values())

    with pytest.raises(ValueError):
        render_message("birthday", paired_family, {})


def test_meal_and_food_messages(paired_family, now):
    title, body, data = render_message(MEAL_RECORDED, paired_family, {"at": now, "meal_number": 2})
    assert title == "어머니님이 식사하셨어요"
    assert body == "오늘 12:00에 식사했습니다"  # local time in Seoul
    assert data["type"] == "meal_recorded"
    assert data["mealNumber"] == "2"
    assert data["timestamp"] == now.isoformat()

    title, body, data = render_message(FOOD_ALERT, paired_family, {"hours_without_food": 9})
    assert title == "🍽️ 어머니 식사 알림"
    assert body == "9시간 이상 식사하지 않았습니다. 확인해주세요."
    assert data["hoursWithoutFood"] == "9"
