"""Tests for services/healing_service.py."""

import errno

import pytest

from taskweave.enums import CircuitState
from taskweave.resilience.circuit_breaker import CircuitBreakerConfig
from taskweave.resilience.retry import RetryConfig
from taskweave.services.healing_service import HealingService


@pytest.fixture
def healing(store, clock, recorded_sleep) -> HealingService:
    return HealingService(
        store,
        circuit_config=CircuitBreakerConfig(failure_threshold=2, timeout=30, success_threshold=1),
        retry_config=RetryConfig(max_attempts=3, initial_delay=0.1),
        clock=clock,
        sleep=recorded_sleep,
    )


async def succeed() -> bool:
    return True


async def explode() -> bool:
    raise RuntimeError("patch did not apply")


class TestAttemptHealing:
    """Tests for attempt_healing."""

    @pytest.mark.asyncio
    async def test_success(self, healing):
        result = await healing.attempt_healing("auth.login", succeed)

        assert result.success
        assert result.attempt_number == 1
        assert result.circuit_state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, healing):
        result = await healing.attempt_healing("auth.login", explode)

        assert not result.success
        assert result.error == "patch did not apply"
        assert result.to_dict()["circuit_state"] == "CLOSED"

    @pytest.mark.asyncio
    async def test_false_counts_as_failed_attempt(self, healing):
        async def declined() -> bool:
            return False

        result = await healing.attempt_healing("auth.login", declined)

        assert not result.success
        assert healing.stats().failed_attempts == 1

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried_inside_one_attempt(self, healing, recorded_sleep):
        calls = []

        async def flaky() -> bool:
            calls.append(1)
            if len(calls) < 3:
                raise OSError(errno.EAGAIN, "try again")
            return True

        result = await healing.attempt_healing("auth.login", flaky)

        assert result.success
        assert len(calls) == 3
        assert recorded_sleep.delays == pytest.approx([0.1, 0.2])
        assert healing.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_open_circuit_stops_attempts(self, healing, store):
        await healing.attempt_healing("auth.login", explode)
        await healing.attempt_healing("auth.login", explode)
        calls = []

        async def tracked() -> bool:
            calls.append(1)
            return True

        result = await healing.attempt_healing("auth.login", tracked)

        assert not result.success
        assert result.error_code == "CIRCUIT_OPEN"
        assert result.circuit_state == CircuitState.OPEN
        assert result.attempt_number == 3
        assert calls == []
        assert "Circuit state: OPEN" in await store.read("circuit-breaker.log")

    @pytest.mark.asyncio
    async def test_circuit_recovers_after_timeout(self, healing, clock, store):
        await healing.attempt_healing("auth.login", explode)
        await healing.attempt_healing("auth.login", explode)
        clock.advance(30)

        result = await healing.attempt_healing("auth.login", succeed)

        assert result.success
        assert healing.circuit_state == CircuitState.CLOSED
        log_lines = (await store.read("circuit-breaker.log")).splitlines()
        assert [line.split("Circuit state: ")[1] for line in log_lines] == ["OPEN", "HALF_OPEN", "CLOSED"]


class TestHealingStats:
    """Tests for stats and reset."""

    @pytest.mark.asyncio
    async def test_stats_track_attempts_per_task(self, healing):
        await healing.attempt_healing("auth.login", succeed)
        await healing.attempt_healing("auth.login", explode)
        await healing.attempt_healing("auth.logout", succeed)

        stats = healing.stats()

        assert stats.total_attempts == 3
        assert stats.successful_attempts == 2
        assert stats.failed_attempts == 1
        assert stats.attempts_by_task == {"auth.login": 2, "auth.logout": 1}

    @pytest.mark.asyncio
    async def test_reset_circuit_keeps_stats(self, healing):
        await healing.attempt_healing("auth.login", explode)
        await healing.attempt_healing("auth.login", explode)

        await healing.reset_circuit()

        stats = healing.stats()
        assert stats.current_circuit_state == CircuitState.CLOSED
        assert stats.circuit_open_count == 1
        assert stats.total_attempts == 2
