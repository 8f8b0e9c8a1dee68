# tests/test_bolo_sweeper.py
"""Tests for BoloExpirySweeper."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from cadcore.infra.bolo_sweeper import BoloExpirySweeper
from cadcore.infra.metrics import get_metrics_collector


class TestBoloExpirySweeper:
    """Sweep loop lifecycle."""

    @pytest.mark.asyncio
    async def test_sweep_once_announces_expired(self, core, clock):
        await core.bolos.create("PERSON", "HIGH", "Missing juvenile", "d", clock.now + timedelta(minutes=1))
        clock.advance(minutes=5)
        sweeper = BoloExpirySweeper(core.bolos, interval=60)

        assert await sweeper.sweep_once() == 1
        assert await sweeper.sweep_once() == 0
        assert get_metrics_collector().get_counter("bolo_sweeps_total") == 2

    @pytest.mark.asyncio
    async def test_sweep_uses_system_actor(self):
        registry = MagicMock()
        registry.sweep_expired = AsyncMock(return_value=0)
        sweeper = BoloExpirySweeper(registry, interval=60, actor="system:test")

        await sweeper.sweep_once()

        registry.sweep_expired.assert_awaited_once_with(actor="system:test")

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        registry = MagicMock()
        registry.sweep_expired = AsyncMock(return_value=0)
        sweeper = BoloExpirySweeper(registry, interval=0.01)

        await sweeper.start()
        await asyncio.sleep(0.05)
        assert sweeper.running
        await sweeper.stop()

        assert not sweeper.running
        assert registry.sweep_expired.await_count >= 1

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self):
        calls = {"n": 0}

        async def flaky_sweep(actor):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("db hiccup")
            return 0

        registry = MagicMock()
        registry.sweep_expired = AsyncMock(side_effect=flaky_sweep)
        sweeper = BoloExpirySweeper(registry, interval=0.001)

        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert get_metrics_collector().get_counter("bolo_sweeper_loop_errors") == 1
        assert registry.sweep_expired.await_count >= 2
