import asyncio

import pytest
from pydantic import ValidationError

from qobuz_queue.admission.limiter import AdmissionLimiter, LimiterConfig


def _limiter(clock, **overrides):
    settings = {"max_requests": 5, "window": 1.0, "block_duration": 1.0}
    settings.update(overrides)
    return AdmissionLimiter(LimiterConfig(**settings), clock=clock)


class TestAdmissionLimiter:
    def test_quota_then_deny_then_new_window(self, clock):
        """5 requests pass, the 6th is denied, a new window admits again."""
        limiter = _limiter(clock)

        assert all(limiter.is_allowed("u") for _ in range(5))
        assert not limiter.is_allowed("u")

        clock.advance(1.1)
        assert limiter.is_allowed("u")

    def test_identities_are_independent(self, clock):
        limiter = _limiter(clock)
        for _ in range(6):
            limiter.is_allowed("a")

        assert limiter.is_allowed("b")
        assert limiter.get_remaining("b") == 4

    def test_block_outlasts_window(self, clock):
        """A block longer than the window keeps denying after the window ends."""
        limiter = _limiter(clock, block_duration=10.0)
        for _ in range(6):
            limiter.is_allowed("u")

        clock.advance(1.5)
        assert not limiter.is_allowed("u")
        clock.advance(9.0)
        assert limiter.is_allowed("u")

    def test_block_duration_escalates(self, clock):
        limiter = _limiter(clock, block_duration=2.0)

        for _ in range(6):
            limiter.is_allowed("u")
        first_block = limiter.get_entry("u").blocked_until - clock()
        assert first_block == pytest.approx(2.0)

        clock.advance(first_block + 0.1)
        for _ in range(6):
            limiter.is_allowed("u")
        entry = limiter.get_entry("u")
        second_block = entry.blocked_until - clock()

        assert entry.warnings == 2
        assert second_block > first_block
        assert second_block == pytest.approx(4.0)

    def test_block_multiplier_is_capped(self, clock):
        limiter = _limiter(clock, block_duration=1.0)
        for _ in range(7):
            for _ in range(6):
                limiter.is_allowed("u")
            clock.advance(limiter.get_reset_time("u") + 0.01)

        for _ in range(6):
            limiter.is_allowed("u")
        entry = limiter.get_entry("u")
        assert entry.warnings == 8
        assert entry.blocked_until - clock() == pytest.approx(5.0)

    def test_remaining_and_reset_time(self, clock):
        limiter = _limiter(clock, window=10.0)

        assert limiter.get_remaining("u") == 5
        assert limiter.get_reset_time("u") == 0.0
        limiter.is_allowed("u")
        limiter.is_allowed("u")
        clock.advance(4.0)

        assert limiter.get_remaining("u") == 3
        assert limiter.get_reset_time("u") == pytest.approx(6.0)

        clock.advance(7.0)
        assert limiter.get_remaining("u") == 5

    def test_remaining_is_zero_while_blocked(self, clock):
        limiter = _limiter(clock, block_duration=30.0)
        for _ in range(6):
            limiter.is_allowed("u")

        assert limiter.get_remaining("u") == 0
        assert limiter.get_reset_time("u") == pytest.approx(30.0)

    def test_manual_block_and_unblock(self, clock):
        limiter = _limiter(clock)
        for _ in range(6):
            limiter.is_allowed("u")
        assert limiter.get_entry("u").warnings == 1

        limiter.unblock_user("u")
        entry = limiter.get_entry("u")
        assert not entry.blocked
        assert entry.warnings == 0

        limiter.block_user("v", 60.0)
        assert not limiter.is_allowed("v")
        clock.advance(61.0)
        assert limiter.is_allowed("v")

    def test_unblock_unknown_identity_is_a_no_op(self, clock):
        limiter = _limiter(clock)
        limiter.unblock_user("nobody")
        assert limiter.get_entry("nobody") is None

    def test_reset_drops_history(self, clock):
        limiter = _limiter(clock, block_duration=100.0)
        for _ in range(6):
            limiter.is_allowed("u")

        limiter.reset("u")
        assert limiter.get_entry("u") is None
        assert limiter.is_allowed("u")

    def test_stats(self, clock):
        limiter = _limiter(clock)
        limiter.is_allowed("a")
        limiter.block_user("b", 10.0)

        assert limiter.get_stats() == {"total_users": 2, "blocked_users": 1}
        limiter.clear()
        assert limiter.get_stats() == {"total_users": 0, "blocked_users": 0}

    def test_get_entry_returns_a_copy(self, clock):
        limiter = _limiter(clock)
        limiter.is_allowed("u")
        entry = limiter.get_entry("u")
        entry.count = 99

        assert limiter.get_entry("u").count == 1


class TestSweep:
    def test_sweep_evicts_idle_identities(self, clock):
        limiter = _limiter(clock)
        limiter.is_allowed("idle")
        clock.advance(1.5)
        limiter.is_allowed("recent")
        clock.advance(0.6)

        assert limiter.sweep() == 1
        assert limiter.get_entry("idle") is None
        assert limiter.get_entry("recent") is not None

    def test_sweep_keeps_blocked_identities(self, clock):
        limiter = _limiter(clock, block_duration=100.0)
        for _ in range(6):
            limiter.is_allowed("u")
        clock.advance(50.0)

        assert limiter.sweep() == 0
        assert limiter.get_entry("u").blocked

    def test_sweep_clears_expired_blocks(self, clock):
        limiter = _limiter(clock)
        limiter.block_user("u", 5.0)
        clock.advance(6.0)

        limiter.sweep()
        assert not limiter.get_entry("u").blocked

    def test_opportunistic_sweep_on_admission(self, clock):
        limiter = _limiter(clock, sweep_interval=10.0)
        limiter.is_allowed("idle")
        clock.advance(11.0)

        limiter.is_allowed("other")
        assert limiter.get_entry("idle") is None

    @pytest.mark.asyncio
    async def test_background_sweep_task(self):
        limiter = AdmissionLimiter(
            LimiterConfig(window=0.01, sweep_interval=0.02, enable_logging=False)
        )
        limiter.is_allowed("u")

        await limiter.start_background_sweep()
        await asyncio.sleep(0.1)
        await limiter.stop_background_sweep()

        assert limiter.get_entry("u") is None


def test_config_rejects_non_positive_values():
    with pytest.raises(ValidationError):
        LimiterConfig(max_requests=0)
    with pytest.raises(ValidationError):
        LimiterConfig(window=0)
