"""Call session orchestrator.

Mediates between the transcription stream, the turn generator and the speech
synthesizer for every live call: turn-taking, barge-in, silence handling,
credit metering and termination.
"""
import asyncio
import logging
import time
from collections import OrderedDict
from contextlib import aclosing
from functools import partial
from typing import Any, Callable, Coroutine, Dict, List, Optional

from app.core.exceptions import AdapterUnavailable, AlreadyActive, NotConnected
from app.services.agent.agent import TurnGenerator
from app.services.agent.models import AgentConfig, GeneratedTurn, LatencyMode, Role
from app.services.agent.prompt import build_system_prompt
from app.services.call_session.events import (
    EventPublisher,
    SessionEvent,
    SessionEventListener,
    SessionEventType,
)
from app.services.call_session.metering import duration_credits, generation_credits
from app.services.call_session.models import (
    CallSession,
    OrchestratorConfig,
    SessionState,
    SessionStats,
)
from app.services.speech.models import (
    SpeechStarted,
    StreamError,
    TranscriptEvent,
    TranscriptionOptions,
    TranscriptionSignal,
    UtteranceEnded,
)
from app.services.speech.stt import TranscriptionAdapter
from app.services.speech.tts import DEFAULT_VOICE_ID, SpeechSynthesisAdapter
from app.services.speech.vad import detect_voice_activity
from app.services.telephony.base import AudioSink, TelephonyClient

logger = logging.getLogger(__name__)

TranscriptionFactory = Callable[[], TranscriptionAdapter]
SilenceHandler = Callable[[CallSession], Optional[str]]


def transcription_options_for(agent: AgentConfig) -> TranscriptionOptions:
    """Recognizer options derived from the agent's latency preference."""
    fast = agent.latency_mode == LatencyMode.FAST
    return TranscriptionOptions(
        language=agent.language or "en-US",
        model="nova-2" if fast else "nova-2-general",
        endpointing_ms=200 if fast else 300,
    )


def latency_optimization_for(agent: AgentConfig) -> int:
    """Synthesis latency optimization level for the agent."""
    return 4 if agent.latency_mode == LatencyMode.FAST else 3


class CallSessionOrchestrator:
    """Owns the live call sessions and runs their conversations."""

    def __init__(
        self,
        turn_generator: TurnGenerator,
        synthesizer: SpeechSynthesisAdapter,
        transcription_factory: TranscriptionFactory,
        telephony: Optional[TelephonyClient] = None,
        config: Optional[OrchestratorConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        silence_handler: Optional[SilenceHandler] = None,
    ):
        self.turn_generator = turn_generator
        self.synthesizer = synthesizer
        self.transcription_factory = transcription_factory
        self.telephony = telephony
        self.config = config or OrchestratorConfig()
        self.clock = clock
        self.silence_handler = silence_handler or self._default_silence_handler
        self.events = EventPublisher()

        self._sessions: Dict[str, CallSession] = {}
        self._ended: "OrderedDict[str, SessionStats]" = OrderedDict()
        self._registry_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Registry and telemetry
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionEventListener) -> Callable[[], None]:
        """Subscribe to telemetry events; returns an unsubscribe function."""
        return self.events.subscribe(listener)

    def get_session(self, call_id: str) -> Optional[CallSession]:
        """Get a live session."""
        return self._sessions.get(call_id)

    def get_tenant_sessions(self, tenant_id: str) -> List[CallSession]:
        """Get all live sessions for a tenant."""
        return [s for s in self._sessions.values() if s.tenant_id == tenant_id]

    def active_call_count(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)

    def _emit(self, session: CallSession, event_type: SessionEventType, **data: Any) -> None:
        self.events.publish(
            SessionEvent(
                type=event_type,
                call_id=session.call_id,
                tenant_id=session.tenant_id,
                data=data,
            )
        )

    def _spawn(self, session: CallSession, coro: Coroutine) -> asyncio.Task:
        """Run turn work in the background, tracked by the session."""
        task = asyncio.create_task(coro)
        session.turn_tasks.add(task)
        task.add_done_callback(session.turn_tasks.discard)
        return task

    async def drain_turns(self, call_id: str) -> None:
        """Wait until the session has no outstanding turn work."""
        session = self._sessions.get(call_id)
        if session is None:
            return
        while True:
            pending = [t for t in session.turn_tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Session start
    # ------------------------------------------------------------------

    async def begin_session(
        self,
        call_id: str,
        tenant_id: str,
        agent_id: str,
        agent: AgentConfig,
        campaign_id: Optional[str] = None,
        audio_sink: Optional[AudioSink] = None,
    ) -> CallSession:
        """
        Create a session for an answered or accepted call.

        Args:
            call_id: Provider-assigned or local call identifier
            tenant_id: Owning tenant
            agent_id: Agent handling the call
            agent: Agent configuration snapshot
            campaign_id: Campaign the call belongs to, if any
            audio_sink: Destination for synthesized audio

        Returns:
            The ACTIVE session

        Raises:
            AdapterUnavailable: The turn generator is not configured
            AlreadyActive: The call already has a live session
        """
        if not self.turn_generator.is_configured():
            raise AdapterUnavailable("Turn generator is not configured")

        async with self._registry_lock:
            if call_id in self._sessions:
                raise AlreadyActive(call_id)
            session = CallSession(
                call_id=call_id,
                tenant_id=tenant_id,
                agent_id=agent_id,
                agent=agent,
                started_at=self.clock(),
                campaign_id=campaign_id,
                audio_sink=audio_sink,
            )
            session.add_turn(Role.SYSTEM, build_system_prompt(agent))
            self._sessions[call_id] = session
            self._ended.pop(call_id, None)

        await self._open_transcription(session)

        if session.state is SessionState.INITIALIZING:
            session.state = SessionState.ACTIVE
            logger.info(
                f"[ORCHESTRATOR] Session active - CallId: {call_id}, Tenant: {tenant_id}, "
                f"Agent: {agent_id}, Degraded: {session.degraded}"
            )
            self._emit(
                session,
                SessionEventType.SESSION_STARTED,
                agent_id=agent_id,
                campaign_id=campaign_id,
                degraded=session.degraded,
            )
        return session

    async def _open_transcription(self, session: CallSession) -> None:
        """Open the session's transcription stream, degrading on failure."""
        try:
            adapter = self.transcription_factory()
        except Exception as e:
            logger.error(
                f"[ORCHESTRATOR] Could not create transcription adapter - "
                f"CallId: {session.call_id}, Error: {str(e)}",
                exc_info=True,
            )
            self._emit(
                session, SessionEventType.ADAPTER_ERROR,
                adapter="transcription", error=str(e), degraded=True,
            )
            return

        if not adapter.is_configured():
            logger.warning(
                f"[ORCHESTRATOR] Transcription not configured, continuing without "
                f"speech recognition - CallId: {session.call_id}"
            )
            self._emit(
                session, SessionEventType.ADAPTER_ERROR,
                adapter="transcription", error="not configured", degraded=True,
            )
            return

        try:
            await adapter.open(
                transcription_options_for(session.agent),
                partial(self._on_transcription_signal, session),
            )
        except Exception as e:
            logger.warning(
                f"[ORCHESTRATOR] Transcription unavailable, continuing without speech "
                f"recognition - CallId: {session.call_id}, Error: {type(e).__name__}: {str(e)}"
            )
            self._emit(
                session, SessionEventType.ADAPTER_ERROR,
                adapter="transcription", error=str(e), degraded=True,
            )
            await self._close_adapter(session.call_id, adapter)
            return

        if session.state is not SessionState.INITIALIZING:
            # Ended while the stream was opening
            await self._close_adapter(session.call_id, adapter)
            return
        session.transcription = adapter

    async def _close_adapter(self, call_id: str, adapter: TranscriptionAdapter) -> None:
        try:
            await adapter.close()
        except Exception as e:
            logger.warning(
                f"[ORCHESTRATOR] Error closing transcription adapter - "
                f"CallId: {call_id}, Error: {str(e)}"
            )

    # ------------------------------------------------------------------
    # Inbound audio: barge-in, silence, metering, max duration
    # ------------------------------------------------------------------

    async def submit_inbound_audio(self, call_id: str, frame: bytes) -> None:
        """Process one inbound audio frame. No-op unless the session is ACTIVE."""
        session = self._sessions.get(call_id)
        if session is None or session.state is not SessionState.ACTIVE:
            return

        try:
            now = self.clock()

            if session.is_speaking and detect_voice_activity(
                frame,
                threshold=self.config.vad_energy_threshold,
                zero_reference=self.config.vad_zero_reference,
            ):
                self._handle_barge_in(session)

            if session.transcription is not None and not session.transcription_released:
                try:
                    session.transcription.submit_audio(frame)
                except NotConnected:
                    logger.debug(
                        f"[ORCHESTRATOR] Transcription not connected, frame not forwarded - "
                        f"CallId: {call_id}"
                    )

            if session.silence_start is not None and not session.is_speaking:
                silence_ms = (now - session.silence_start) * 1000
                if silence_ms > self.config.silence_threshold_ms:
                    self._handle_silence(session, silence_ms)

            self._meter_duration(session, now)

            if session.elapsed(now) >= self.config.max_call_duration_sec:
                logger.info(
                    f"[ORCHESTRATOR] Max call duration reached - CallId: {call_id}, "
                    f"Limit: {self.config.max_call_duration_sec}s"
                )
                await self.end_session(call_id, reason="max_duration")
        except Exception as e:
            logger.error(
                f"[ORCHESTRATOR] Error processing inbound audio - CallId: {call_id}, "
                f"Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )

    def _handle_barge_in(self, session: CallSession) -> None:
        """Stop agent playback because the caller started talking."""
        session.is_speaking = False
        try:
            session.audio_sink.clear()
        except Exception as e:
            logger.warning(
                f"[ORCHESTRATOR] Failed to clear queued audio - CallId: {session.call_id}, "
                f"Error: {str(e)}"
            )
        logger.info(f"[ORCHESTRATOR] Barge-in detected - CallId: {session.call_id}")
        self._emit(session, SessionEventType.BARGE_IN)

    def _handle_silence(self, session: CallSession, silence_ms: float) -> None:
        """Run the re-engagement hook after prolonged silence."""
        session.silence_start = None
        self._emit(session, SessionEventType.SILENCE_TIMEOUT, silence_ms=int(silence_ms))
        try:
            prompt = self.silence_handler(session)
        except Exception as e:
            logger.error(
                f"[ORCHESTRATOR] Silence handler failed - CallId: {session.call_id}, "
                f"Error: {str(e)}",
                exc_info=True,
            )
            return
        if prompt and prompt.strip():
            self._spawn(session, self._speak_assistant(session, prompt.strip()))

    def _default_silence_handler(self, session: CallSession) -> Optional[str]:
        return self.config.reengagement_prompt

    def _meter_duration(self, session: CallSession, now: float) -> None:
        due = duration_credits(session.elapsed(now), self.config.credits_per_minute)
        if due > session.duration_credits:
            delta = due - session.duration_credits
            session.duration_credits = due
            self._emit(
                session, SessionEventType.METERING,
                source="duration", credits=delta, total_credits=session.credits_used,
            )

    def _meter_generation(self, session: CallSession, resource_units: int) -> None:
        credits = generation_credits(resource_units, self.config.credit_unit_size)
        if credits > 0:
            session.generation_credits += credits
            self._emit(
                session, SessionEventType.METERING,
                source="generation", credits=credits, total_credits=session.credits_used,
            )

    # ------------------------------------------------------------------
    # Transcription signals and turn-taking
    # ------------------------------------------------------------------

    async def _on_transcription_signal(
        self, session: CallSession, signal: TranscriptionSignal
    ) -> None:
        """Handle one signal from the session's transcription stream, in order."""
        if session.state is not SessionState.ACTIVE:
            logger.debug(
                f"[ORCHESTRATOR] Dropping {type(signal).__name__} for "
                f"{session.state.value} session - CallId: {session.call_id}"
            )
            return

        try:
            if isinstance(signal, TranscriptEvent):
                self._on_transcript(session, signal)
            elif isinstance(signal, UtteranceEnded):
                self._on_utterance_ended(session)
            elif isinstance(signal, SpeechStarted):
                logger.debug(f"[ORCHESTRATOR] Speech started - CallId: {session.call_id}")
            elif isinstance(signal, StreamError):
                await self._on_stream_error(session, signal)
        except Exception as e:
            logger.error(
                f"[ORCHESTRATOR] Error handling {type(signal).__name__} - "
                f"CallId: {session.call_id}, Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )

    def _on_transcript(self, session: CallSession, event: TranscriptEvent) -> None:
        text = event.text.strip()
        if text:
            session.last_user_speech = self.clock()
            session.silence_start = None
            session.is_listening = True
            self._emit(
                session, SessionEventType.USER_SPEAKING,
                text=event.text, is_final=event.is_final, confidence=event.confidence,
            )
            if event.is_final or event.speech_final:
                session.pending_utterance.append(text)

        if event.speech_final:
            self._flush_utterance(session)

    def _on_utterance_ended(self, session: CallSession) -> None:
        session.is_listening = False
        session.silence_start = self.clock()
        if session.pending_utterance:
            self._flush_utterance(session)

    def _flush_utterance(self, session: CallSession) -> None:
        """Turn the buffered final text into a user turn and answer it."""
        text = " ".join(session.pending_utterance).strip()
        session.pending_utterance = []
        if not text:
            return

        session.add_turn(Role.USER, text)
        session.add_summary_line("User", text)
        logger.info(f"[ORCHESTRATOR] User utterance - CallId: {session.call_id}, Text: '{text}'")
        self._emit(session, SessionEventType.USER_TRANSCRIPT, text=text)
        self._spawn(session, self._process_turn(session, text))

    async def _on_stream_error(self, session: CallSession, error: StreamError) -> None:
        self._emit(
            session, SessionEventType.ADAPTER_ERROR,
            adapter="transcription", error=error.message, terminal=error.terminal,
        )
        if error.terminal:
            logger.error(
                f"[ORCHESTRATOR] Transcription stream failed - CallId: {session.call_id}, "
                f"Error: {error.message}"
            )
            await self.end_session(session.call_id, reason="transcription_failed")

    async def _process_turn(self, session: CallSession, user_text: str) -> None:
        """Generate and speak the reply to one user utterance."""
        window = session.history_window(self.config.history_window)
        try:
            turn = await asyncio.wait_for(
                self.turn_generator.generate(window, user_text, session.agent),
                timeout=self.config.generation_timeout_sec,
            )
        except Exception as e:
            logger.warning(
                f"[ORCHESTRATOR] Turn generation failed, using fallback - "
                f"CallId: {session.call_id}, Error: {type(e).__name__}: {str(e)}"
            )
            self._emit(
                session, SessionEventType.ADAPTER_ERROR,
                adapter="turn_generator", error=str(e) or type(e).__name__,
            )
            turn = GeneratedTurn(text=session.agent.fallback_message, resource_units=0)

        if session.state is not SessionState.ACTIVE:
            return

        self._meter_generation(session, turn.resource_units)
        text = turn.text.strip() or session.agent.fallback_message
        await self._speak_assistant(session, text)

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    async def request_greeting(self, call_id: str) -> bool:
        """
        Speak the agent's greeting without calling the turn generator.

        Only valid once, before any other turn has been taken.

        Returns:
            True if the greeting was spoken (or attempted)
        """
        session = self._sessions.get(call_id)
        if session is None or session.state is not SessionState.ACTIVE:
            logger.warning(f"[ORCHESTRATOR] Greeting for inactive call - CallId: {call_id}")
            return False
        if session.greeting_requested or len(session.history) > 1:
            logger.warning(f"[ORCHESTRATOR] Greeting already requested - CallId: {call_id}")
            return False
        if not session.agent.greeting.strip():
            return False

        session.greeting_requested = True
        try:
            await self._speak_assistant(session, session.agent.greeting.strip())
        except Exception as e:
            logger.error(
                f"[ORCHESTRATOR] Greeting failed - CallId: {call_id}, Error: {str(e)}",
                exc_info=True,
            )
        return True

    async def _speak_assistant(self, session: CallSession, text: str) -> None:
        session.add_turn(Role.ASSISTANT, text)
        session.add_summary_line("AI", text)
        await self._speak(session, text)

    async def _speak(self, session: CallSession, text: str) -> None:
        """Stream one utterance to the caller, stopping early on barge-in."""
        async with session.speech_lock:
            if session.state is not SessionState.ACTIVE:
                return

            session.is_speaking = True
            self._emit(session, SessionEventType.AGENT_SPEAKING_START, text=text)
            frames_sent = 0
            interrupted = False
            try:
                if not self.synthesizer.is_configured():
                    logger.info(
                        f"[ORCHESTRATOR] TTS not configured, text-only reply - "
                        f"CallId: {session.call_id}"
                    )
                    self._emit(session, SessionEventType.TTS_NOT_CONFIGURED, text=text)
                    return

                frames = self.synthesizer.synthesize(
                    session.agent.voice_id or DEFAULT_VOICE_ID,
                    text,
                    self.config.output_format,
                    latency_optimization_for(session.agent),
                )
                async with aclosing(frames):
                    async for frame in frames:
                        if not session.is_speaking:
                            interrupted = True
                            break
                        await session.audio_sink.send(frame)
                        frames_sent += 1
            except Exception as e:
                logger.warning(
                    f"[ORCHESTRATOR] Speech synthesis failed - CallId: {session.call_id}, "
                    f"Error: {type(e).__name__}: {str(e)}"
                )
                self._emit(
                    session, SessionEventType.ADAPTER_ERROR,
                    adapter="synthesis", error=str(e) or type(e).__name__,
                )
            finally:
                session.is_speaking = False
                self._emit(
                    session, SessionEventType.AGENT_SPEAKING_END,
                    frames_sent=frames_sent, interrupted=interrupted,
                )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def end_session(self, call_id: str, reason: str = "completed") -> SessionStats:
        """
        End a call session. Idempotent.

        Concurrent callers share the same termination; later callers get the
        stats computed the first time. Unknown calls return empty stats.

        Args:
            call_id: Call identifier
            reason: Termination reason (completed, max_duration, admin, ...)

        Returns:
            Duration, credits and joined transcript summary
        """
        session: Optional[CallSession] = None
        try:
            async with self._registry_lock:
                session = self._sessions.get(call_id)
                if session is None:
                    return self._ended.get(call_id) or SessionStats()
                if session.termination is None:
                    session.state = SessionState.ENDING
                    session.outcome = reason
                    session.termination = asyncio.ensure_future(
                        self._terminate(session, reason, asyncio.current_task())
                    )
                termination = session.termination
            return await asyncio.shield(termination)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"[ORCHESTRATOR] Error ending session - CallId: {call_id}, "
                f"Error: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
            if session is not None and session.stats is not None:
                return session.stats
            return SessionStats(reason=reason)

    async def _terminate(
        self, session: CallSession, reason: str, caller: Optional[asyncio.Task] = None
    ) -> SessionStats:
        call_id = session.call_id
        logger.info(f"[ORCHESTRATOR] Ending session - CallId: {call_id}, Reason: {reason}")

        session.is_speaking = False
        pending = [t for t in session.turn_tasks if t is not caller and not t.done()]
        for task in pending:
            task.cancel()

        try:
            await self._release_transcription(session)
        except Exception as e:
            logger.error(
                f"[ORCHESTRATOR] Error releasing transcription - CallId: {call_id}, "
                f"Error: {str(e)}",
                exc_info=True,
            )

        now = self.clock()
        self._meter_duration(session, now)
        stats = SessionStats(
            duration_sec=int(session.elapsed(now)),
            credits_used=session.credits_used,
            transcript_summary="\n".join(session.transcript_summary),
            reason=reason,
        )
        session.stats = stats

        await self._end_provider_call(session)

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        async with self._registry_lock:
            if self._sessions.get(call_id) is session:
                del self._sessions[call_id]
            self._ended[call_id] = stats
            while len(self._ended) > self.config.ended_stats_cache_size:
                self._ended.popitem(last=False)

        session.state = SessionState.ENDED
        logger.info(
            f"[ORCHESTRATOR] Session ended - CallId: {call_id}, Reason: {reason}, "
            f"Duration: {stats.duration_sec}s, Credits: {stats.credits_used}"
        )
        self._emit(
            session,
            SessionEventType.SESSION_ENDED,
            reason=reason,
            duration_sec=stats.duration_sec,
            credits_used=stats.credits_used,
            transcript_summary=stats.transcript_summary,
            campaign_id=session.campaign_id,
        )
        return stats

    async def _release_transcription(self, session: CallSession) -> None:
        adapter = session.transcription
        if adapter is None or session.transcription_released:
            return
        session.transcription_released = True
        await adapter.close()

    async def _end_provider_call(self, session: CallSession) -> None:
        """Ask telephony to hang up; an already-ended call is not an error."""
        if self.telephony is None or not self.telephony.is_configured():
            return
        try:
            await self.telephony.end_call(session.call_id)
        except Exception as e:
            logger.info(
                f"[ORCHESTRATOR] Provider hang-up skipped, call may already be ended - "
                f"CallId: {session.call_id}, Error: {type(e).__name__}: {str(e)}"
            )

    async def end_all_sessions(self, reason: str = "shutdown") -> List[SessionStats]:
        """End every live session."""
        call_ids = list(self._sessions)
        return [await self.end_session(call_id, reason=reason) for call_id in call_ids]
