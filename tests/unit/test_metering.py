"""Unit tests for credit metering and the call duration limit."""
import pytest

from app.services.call_session.events import SessionEventType
from app.services.call_session.metering import duration_credits, generation_credits
from app.services.call_session.models import SessionState
from app.services.speech.models import TranscriptEvent

QUIET_FRAME = bytes([128]) * 160


class TestCreditRules:
    """Test the credit formulas."""

    @pytest.mark.parametrize(
        "elapsed, expected",
        [(0, 0), (-3, 0), (0.5, 5), (59.9, 5), (60, 5), (60.1, 10), (600, 50)],
    )
    def test_duration_credits(self, elapsed, expected):
        """Test started minutes are billed in full."""
        assert duration_credits(elapsed, 5) == expected

    @pytest.mark.parametrize(
        "units, expected",
        [(0, 0), (-1, 0), (1, 1), (100, 1), (101, 2), (250, 3)],
    )
    def test_generation_credits(self, units, expected):
        """Test resource units round up to whole credits."""
        assert generation_credits(units, 100) == expected


class TestSessionMetering:
    """Test metering during a live call."""

    @pytest.mark.asyncio
    async def test_duration_metered_on_inbound_audio(
        self, start_session, orchestrator, clock, events_of
    ):
        """Test each newly started minute is charged once."""
        session, _ = await start_session()

        clock.advance(0.5)
        await orchestrator.submit_inbound_audio("call-1", QUIET_FRAME)
        clock.advance(10)
        await orchestrator.submit_inbound_audio("call-1", QUIET_FRAME)
        clock.advance(60)
        await orchestrator.submit_inbound_audio("call-1", QUIET_FRAME)

        metering = events_of(SessionEventType.METERING)
        assert [e.data["credits"] for e in metering] == [5, 5]
        assert [e.data["total_credits"] for e in metering] == [5, 10]
        assert all(e.data["source"] == "duration" for e in metering)
        assert session.credits_used == 10

    @pytest.mark.asyncio
    async def test_generation_credits_added_per_turn(
        self, start_session, orchestrator, turn_generator, events_of
    ):
        """Test generated turns are charged by resource units."""
        turn_generator.resource_units = 250
        session, adapter = await start_session()

        await adapter.push(TranscriptEvent(text="hi", is_final=True, speech_final=True))
        await orchestrator.drain_turns("call-1")

        metering = events_of(SessionEventType.METERING)
        assert metering[-1].data["source"] == "generation"
        assert metering[-1].data["credits"] == 3
        assert session.generation_credits == 3

    @pytest.mark.asyncio
    async def test_generation_credits_not_absorbed_by_duration(
        self, start_session, orchestrator, turn_generator, clock
    ):
        """Test later duration metering does not swallow generation credits."""
        turn_generator.resource_units = 120
        session, adapter = await start_session()

        await adapter.push(TranscriptEvent(text="hi", is_final=True, speech_final=True))
        await orchestrator.drain_turns("call-1")
        clock.advance(30)
        await orchestrator.submit_inbound_audio("call-1", QUIET_FRAME)

        assert session.generation_credits == 2
        assert session.duration_credits == 5
        assert session.credits_used == 7

    @pytest.mark.asyncio
    async def test_credits_never_decrease(self, start_session, orchestrator, clock, events_of):
        """Test the running total only grows."""
        await start_session()

        for _ in range(10):
            clock.advance(17)
            await orchestrator.submit_inbound_audio("call-1", QUIET_FRAME)

        totals = [e.data["total_credits"] for e in events_of(SessionEventType.METERING)]
        assert totals == sorted(totals)

    @pytest.mark.asyncio
    async def test_stats_report_duration_and_credits(self, start_session, orchestrator, clock):
        """Test final stats floor the duration and bill the last partial minute."""
        await start_session()
        clock.advance(30)
        await orchestrator.submit_inbound_audio("call-1", QUIET_FRAME)
        clock.advance(95.7)

        stats = await orchestrator.end_session("call-1")

        assert stats.duration_sec == 125
        assert stats.credits_used == 15

    @pytest.mark.asyncio
    async def test_transcript_summary_in_stats(self, start_session, orchestrator, turn_generator):
        """Test stats carry the joined transcript summary."""
        turn_generator.reply = "Happy to help."
        _, adapter = await start_session()

        await adapter.push(TranscriptEvent(text="hello there", is_final=True, speech_final=True))
        await orchestrator.drain_turns("call-1")
        stats = await orchestrator.end_session("call-1")

        assert stats.transcript_summary == "User: hello there\nAI: Happy to help."


class TestMaxDuration:
    """Test the call duration limit."""

    @pytest.mark.asyncio
    async def test_call_ends_at_max_duration(
        self, start_session, orchestrator, clock, telephony, events_of
    ):
        """Test a call reaching the limit is ended with reason max_duration."""
        session, adapter = await start_session()

        clock.advance(599)
        await orchestrator.submit_inbound_audio("call-1", QUIET_FRAME)
        assert session.state == SessionState.ACTIVE

        clock.advance(1)
        await orchestrator.submit_inbound_audio("call-1", QUIET_FRAME)

        assert session.state == SessionState.ENDED
        assert session.stats.reason == "max_duration"
        assert session.stats.duration_sec == 600
        assert session.stats.credits_used == 50
        assert adapter.close_count == 1
        assert telephony.ended == ["call-1"]
        assert events_of(SessionEventType.SESSION_ENDED)[0].data["reason"] == "max_duration"

    @pytest.mark.asyncio
    async def test_custom_max_duration(
        self, start_session, orchestrator, clock, orchestrator_config
    ):
        """Test the limit is configurable."""
        orchestrator_config.max_call_duration_sec = 60
        session, _ = await start_session()

        clock.advance(61)
        await orchestrator.submit_inbound_audio("call-1", QUIET_FRAME)

        assert session.state == SessionState.ENDED
        assert session.stats.reason == "max_duration"
