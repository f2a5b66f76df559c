from datetime import datetime

from utils.auth import load_profile, sign_token, verify_token
from utils.cache import ProfileCache
from utils.roles import Capability, Role, has_capability, is_platform_role


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_cache_entries_expire_after_ttl():
    clock = FakeClock()
    cache = ProfileCache(ttl_seconds=60, clock=clock)
    cache.set("p1", "value")
    clock.now += 59
    assert cache.get("p1") == "value"
    clock.now += 1
    assert cache.get("p1") is None
    assert len(cache) == 0


def test_cache_does_not_store_missing_values():
    cache = ProfileCache(ttl_seconds=60, clock=FakeClock())
    calls = []

    def loader():
        calls.append(1)
        return None

    assert cache.get_or_load("ghost", loader) is None
    assert cache.get_or_load("ghost", loader) is None
    assert len(calls) == 2


def test_zero_ttl_disables_caching():
    cache = ProfileCache(ttl_seconds=0)
    cache.set("p1", "value")
    assert cache.get("p1") is None


def test_capabilities_by_role():
    assert has_capability(Role.PARENT, Capability.PAY_FEES)
    assert not has_capability(Role.SCHOOL_ADMIN, Capability.PAY_FEES)
    assert has_capability(Role.SCHOOL_STAFF, Capability.DECIDE_SCHOOL_FEE_RATE)
    assert not has_capability(Role.SCHOOL_STAFF, Capability.PROPOSE_SCHOOL_FEE_RATE)
    assert not has_capability(None, Capability.PAY_FEES)
    assert Role.parse(" Platform_Admin ") is Role.PLATFORM_ADMIN
    assert Role.parse("janitor") is None
    assert is_platform_role(Role.SUPER_ADMIN)


def test_token_round_trip_and_tampering(app):
    token = sign_token("profile-1")
    assert verify_token(token) == "profile-1"
    assert verify_token(token[:-1] + ("0" if token[-1] != "0" else "1")) is None
    assert verify_token("garbage") is None


def test_old_tokens_are_rejected(app):
    app.config["AUTH_TOKEN_MAX_AGE"] = 60
    stale = sign_token("profile-1", issued_at=int(datetime.now().timestamp()) - 120)
    assert verify_token(stale) is None


def test_profile_lookup_is_cached(app, world):
    first = load_profile(world.parent_profile.id)
    assert first.role_enum is Role.PARENT
    assert app.extensions["profile_cache"].get(world.parent_profile.id) is first
    assert load_profile("missing") is None


def test_bad_token_is_unauthorized(client, world):
    r = client.get(f"/parent/active-fee-rate?student_id={world.student.id}", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
