"""
Atomic transaction helper tests
Bounded retries for lost conditional-update races
"""

import pytest

from services.errors import ConflictError
from utils.atomic_transactions import ConditionalUpdateMissed, retry_on_conflict


class TestRetryOnConflict:

    @pytest.mark.asyncio
    async def test_succeeds_after_lost_races(self):
        calls = []

        @retry_on_conflict(attempts=3, backoff_seconds=0)
        async def advance():
            calls.append(1)
            if len(calls) < 3:
                raise ConditionalUpdateMissed("stage changed underneath")
            return "applied"

        assert await advance() == "applied"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_with_conflict(self):
        @retry_on_conflict(attempts=2, operation="request_stage_change", backoff_seconds=0)
        async def always_stale():
            raise ConditionalUpdateMissed("stage changed underneath")

        with pytest.raises(ConflictError) as exc_info:
            await always_stale()
        assert exc_info.value.details == {"operation": "request_stage_change", "attempts": 2}

    @pytest.mark.asyncio
    async def test_other_errors_propagate_immediately(self):
        calls = []

        @retry_on_conflict(attempts=3, backoff_seconds=0)
        async def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await broken()
        assert len(calls) == 1
