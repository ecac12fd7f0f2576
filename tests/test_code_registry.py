"""Connection code registry tests."""

from datetime import timedelta

import pytest

from lifesign.errors import CodeNotFound, CodeSpaceExhausted
from lifesign.services.code_registry import CodeRegistry


def test_thousand_codes_are_distinct(registry, now):
    codes = [registry.generate_code(f"fam_{i}", now).code for i in range(1000)]
    assert len(set(codes)) == 1000
    for code in codes:
        assert len(code) == 4 and code.isascii() and code.isdigit()
        assert 1000 <= int(code) <= 9999


def test_last_free_code_is_found(store, now):
    registry = CodeRegistry(store, code_min=1000, code_max=1009, max_attempts=3)
    for i in range(9):
        registry.generate_code(f"fam_{i}", now)
    free = {f"{n}" for n in range(1000, 1010)} - registry.taken_codes(now)
    assert len(free) == 1

    pending = registry.generate_code("fam_last", now)
    assert pending.code == free.pop()


def test_exhausted_code_space(store, now):
    registry = CodeRegistry(store, code_min=1000, code_max=1001)
    registry.generate_code("fam_a", now)
    registry.generate_code("fam_b", now)
    with pytest.raises(CodeSpaceExhausted):
        registry.generate_code("fam_c", now)


def test_collisions_are_bounded(store, now, monkeypatch):
    registry = CodeRegistry(store, code_min=1000, code_max=1000, max_attempts=5)
    registry.generate_code("fam_a", now)

    # Pretend the snapshot missed the concurrent reservation
    monkeypatch.setattr(registry, "taken_codes", lambda now=None: set())
    calls = []
    original = registry._reserve
    monkeypatch.setattr(registry, "_reserve", lambda *a: calls.append(a) or original(*a))

    with pytest.raises(CodeSpaceExhausted):
        registry.generate_code("fam_b", now)
    assert len(calls) == 5


def test_expired_code_is_reusable(store, now):
    registry = CodeRegistry(store, code_min=1000, code_max=1000, ttl_seconds=60)
    registry.generate_code("fam_a", now)
    later = now + timedelta(seconds=61)
    assert registry.generate_code("fam_b", later).code == "1000"


def test_lookup_and_expire(pairing, registry, now):
    family, pending = pairing.setup_family("아버지", now=now)
    assert registry.lookup(pending.code, now).id == family.id

    registry.expire(pending.code)
    registry.expire(pending.code)  # idempotent
    with pytest.raises(CodeNotFound):
        registry.lookup(pending.code, now)


def test_lookup_after_ttl(pairing, registry, now):
    _, pending = pairing.setup_family("아버지", now=now)
    with pytest.raises(CodeNotFound):
        registry.lookup(pending.code, now + timedelta(seconds=121))
    with pytest.raises(CodeNotFound):
        registry.lookup("0000", now)


def test_purge_removes_unpaired_families(pairing, registry, store, now):
    family, _ = pairing.setup_family("할머니", now=now)
    assert registry.purge_expired(now) == 0
    assert registry.purge_expired(now + timedelta(minutes=5)) == 1
    assert store.get(family.id) is None
