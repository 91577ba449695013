"""
Tests for self-report inrush stabilisation and heartbeats.
"""

import asyncio

import pytest

from plugmesh.balancer.reporter import MeterReading, SelfReporter

DELAY = 0.05


class Recorder:
    def __init__(self):
        self.published = []

    async def __call__(self, reading):
        self.published.append(reading)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def reporter(recorder):
    return SelfReporter(recorder, inrush_delay=DELAY, heartbeat_interval=60.0)


class TestInrush:
    """Tests for holding back upward readings."""

    @pytest.mark.asyncio
    async def test_first_reading_applied_immediately(self, reporter, recorder):
        await reporter.on_reading(True, 800.0)
        assert recorder.published == [MeterReading(True, 800.0)]

    @pytest.mark.asyncio
    async def test_upward_reading_held_until_expiry(self, reporter, recorder):
        await reporter.on_reading(True, 100.0)
        await reporter.on_reading(True, 1500.0)

        assert reporter.is_pending
        assert len(recorder.published) == 1

        await asyncio.sleep(DELAY * 4)

        assert recorder.published[-1] == MeterReading(True, 1500.0)
        assert not reporter.is_pending

    @pytest.mark.asyncio
    async def test_further_upward_readings_replace_pending(self, reporter, recorder):
        await reporter.on_reading(True, 100.0)
        await reporter.on_reading(True, 1500.0)
        await reporter.on_reading(True, 1600.0)

        await asyncio.sleep(DELAY * 4)

        assert recorder.published == [MeterReading(True, 100.0), MeterReading(True, 1600.0)]

    @pytest.mark.asyncio
    async def test_downward_reading_applies_immediately(self, reporter, recorder):
        await reporter.on_reading(True, 100.0)
        await reporter.on_reading(True, 1500.0)
        await reporter.on_reading(True, 900.0)

        assert not reporter.is_pending
        assert recorder.published[-1] == MeterReading(True, 900.0)

        await asyncio.sleep(DELAY * 4)
        assert len(recorder.published) == 2

    @pytest.mark.asyncio
    async def test_circuit_change_applies_immediately(self, reporter, recorder):
        await reporter.on_reading(True, 100.0)
        await reporter.on_reading(True, 1500.0)
        await reporter.on_reading(False, 1600.0)

        assert recorder.published[-1] == MeterReading(False, 1600.0)
        assert not reporter.is_pending

    @pytest.mark.asyncio
    async def test_downward_without_pending_is_immediate(self, reporter, recorder):
        await reporter.on_reading(True, 900.0)
        await reporter.on_reading(True, 100.0)
        assert recorder.published[-1] == MeterReading(True, 100.0)

    @pytest.mark.asyncio
    async def test_unchanged_reading_skipped(self, reporter, recorder):
        await reporter.on_reading(True, 100.0)
        await reporter.on_reading(True, 100.0)
        assert len(recorder.published) == 1

    @pytest.mark.asyncio
    async def test_flush(self, reporter, recorder):
        await reporter.on_reading(True, 100.0)
        await reporter.on_reading(True, 1500.0)

        await reporter.flush()

        assert recorder.published[-1] == MeterReading(True, 1500.0)
        assert not reporter.is_pending


class TestHeartbeat:
    """Tests for periodic republishing."""

    @pytest.mark.asyncio
    async def test_republishes_last_reading(self, recorder):
        reporter = SelfReporter(recorder, inrush_delay=DELAY, heartbeat_interval=0.02)
        await reporter.on_reading(True, 100.0)

        await reporter.start()
        await asyncio.sleep(0.1)
        await reporter.stop()

        assert len(recorder.published) >= 3
        assert all(r == MeterReading(True, 100.0) for r in recorder.published)

    @pytest.mark.asyncio
    async def test_custom_heartbeat(self, recorder):
        beats = []

        async def beat():
            beats.append(True)

        reporter = SelfReporter(recorder, heartbeat_interval=0.02, on_heartbeat=beat)
        await reporter.start()
        await asyncio.sleep(0.1)
        await reporter.stop()

        assert beats
        assert recorder.published == []
