# backend/tests/unit/test_support.py

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from chatflow.models.session import FlowSession
from chatflow.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from chatflow.utils.locks import SessionLockManager
from chatflow.utils.scheduler import DelayScheduler, job_id_for


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=2, timeout=60)
        failing = AsyncMock(side_effect=RuntimeError("boom"))

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(failing)
        assert failing.await_count == 2

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("test", failure_threshold=2)
        with pytest.raises(RuntimeError):
            await breaker.call(AsyncMock(side_effect=RuntimeError("boom")))

        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED


class TestSessionLockManager:

    @pytest.mark.asyncio
    async def test_idle_locks_are_released(self):
        locks = SessionLockManager()

        async with locks.hold("org_1", "cust_1"):
            assert SessionLockManager.key_for("org_1", "cust_1") in locks._locks

        assert locks._locks == {}


class TestDelayScheduler:

    def test_schedule_and_cancel(self):
        scheduler = DelayScheduler(AsyncMock())
        run_at = datetime.now(timezone.utc) + timedelta(minutes=5)

        scheduler.schedule("sess_1", run_at)

        job = scheduler.scheduler.get_job(job_id_for("sess_1"))
        assert job is not None
        assert list(job.args) == ["sess_1"]

        scheduler.cancel("sess_1")
        assert scheduler.scheduler.get_job(job_id_for("sess_1")) is None

    @pytest.mark.asyncio
    async def test_restore_pending_reschedules_parked_sessions(self, session_store, mocker):
        resume_at = datetime.now(timezone.utc) + timedelta(seconds=30)
        parked = await session_store.create(
            FlowSession(flow_id="f", customer_id="c", current_node="wait", resume_at=resume_at)
        )
        await session_store.create(FlowSession(flow_id="f", customer_id="d"))
        scheduler = DelayScheduler(AsyncMock())
        schedule = mocker.patch.object(scheduler, "schedule")

        restored = await scheduler.restore_pending(session_store)

        assert restored == 1
        schedule.assert_called_once_with(parked.id, resume_at)
