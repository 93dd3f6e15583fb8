from datetime import datetime, timedelta, timezone

from app.credentials.rotation import CredentialPair, CredentialRotationPolicy

MODELS = ["flash", "flash-lite"]
POOL = ["pool-key-aaaaaaaa1", "pool-key-bbbbbbbb2"]


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def _policy(mode: str, clock: Clock) -> CredentialRotationPolicy:
    return CredentialRotationPolicy(
        mode=mode,
        models=list(MODELS),
        pool=list(POOL),
        default_credential="dev-key-12345678",
        clock=clock,
    )


def test_reviewer_mode_prefers_index_pairs_then_cross_pairs():
    clock = Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    policy = _policy("REVIEWER", clock)

    assert policy.next() == CredentialPair(POOL[0], "flash")

    policy.flag_exhausted(POOL[0], "flash", is_daily=False)
    assert policy.next() == CredentialPair(POOL[1], "flash-lite")

    policy.flag_exhausted(POOL[1], "flash-lite", is_daily=False)
    assert policy.next() == CredentialPair(POOL[0], "flash-lite")

    policy.flag_exhausted(POOL[0], "flash-lite", is_daily=False)
    policy.flag_inaccessible(POOL[1], "flash")
    assert policy.next() is None


def test_prod_mode_rotates_models_for_caller_credential():
    clock = Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    policy = _policy("PROD", clock)

    assert policy.next() is None
    assert policy.next("user-key-99999999") == CredentialPair("user-key-99999999", "flash")

    policy.flag_exhausted("user-key-99999999", "flash", is_daily=False)
    assert policy.next("user-key-99999999") == CredentialPair("user-key-99999999", "flash-lite")
    assert policy.credential_for("live", "user-key-99999999") == "user-key-99999999"
    assert policy.credential_for("live", None) is None


def test_dev_mode_uses_single_backend_pair():
    clock = Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    policy = _policy("DEV", clock)

    assert policy.next("ignored") == CredentialPair("dev-key-12345678", "flash")
    assert policy.credential_for("live") == "dev-key-12345678"


def test_minute_cooldown_heals_after_expiry():
    clock = Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    policy = _policy("REVIEWER", clock)

    expiry = policy.flag_exhausted(POOL[0], "flash", is_daily=False)
    assert expiry == clock.now + timedelta(seconds=65)

    clock.advance(seconds=64)
    assert policy.is_exhausted(POOL[0], "flash") is True
    assert policy.next() != CredentialPair(POOL[0], "flash")

    clock.advance(seconds=1)
    assert policy.is_exhausted(POOL[0], "flash") is False
    assert policy.next() == CredentialPair(POOL[0], "flash")


def test_daily_quota_expires_at_pacific_midnight():
    # 2026-03-01 20:00 UTC is 12:00 in Los Angeles (PST, UTC-8).
    clock = Clock(datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc))
    policy = _policy("REVIEWER", clock)

    expiry = policy.flag_exhausted(POOL[0], "flash", is_daily=True)
    assert expiry == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    clock.now = expiry - timedelta(seconds=1)
    assert policy.is_exhausted(POOL[0], "flash") is True
    clock.now = expiry
    assert policy.is_exhausted(POOL[0], "flash") is False


def test_inaccessible_pair_cools_down_for_an_hour():
    clock = Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    policy = _policy("REVIEWER", clock)

    policy.flag_inaccessible(POOL[0], "flash")
    clock.advance(minutes=59)
    assert policy.is_exhausted(POOL[0], "flash") is True
    clock.advance(minutes=1)
    assert policy.is_exhausted(POOL[0], "flash") is False


def test_next_never_returns_an_exhausted_pair():
    clock = Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    policy = _policy("REVIEWER", clock)

    seen = []
    while True:
        pair = policy.next()
        if pair is None:
            break
        assert not policy.is_exhausted(pair.credential, pair.model)
        seen.append(pair)
        policy.flag_exhausted(pair.credential, pair.model, is_daily=False)

    assert len(seen) == len(POOL) * len(MODELS)
