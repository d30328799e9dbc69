"""Real-time support coaching engine.

Turns a bursty stream of transcript and speaking events into well-timed
suggestion ticks, one session at a time.

Per session:
    IDLE → LOADING_CONTEXT → ACTIVE → STOPPED

    push_transcript ─┐                      ┌─ model tick (interim race, one retry)
                     ├─ finalize utterance ─┤
    signal_speaking ─┘   (debounce/silence) └─ deterministic fallback tick

Concurrency model: everything runs on one asyncio loop. Engine operations are
plain methods called on the loop thread; suspension happens only inside
ticks (retrieval, model call) and background persistence. At most one model
tick is in flight per session; triggers arriving meanwhile coalesce into a
single pending slot (last writer wins).

Usage:
    engine = SupportEngine(sink=broker, gateway=OpenAIGateway.from_settings(),
                           context_loader=load_context_async)
    engine.start(session_id)
    engine.emit_session_start(session_id)
    engine.push_transcript(session_id, "CUSTOMER", "I was charged twice")
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from coach_engine.core.config import Settings
from coach_engine.core.conversation_signals import extract_entities, update_stats
from coach_engine.core.event_sink import EventSink
from coach_engine.core.fallback_suggestions import (
    build_deterministic_fallback,
    build_fallback_nudges,
    build_greeting,
)
from coach_engine.core.knowledge_retrieval import chunks_to_snippets
from coach_engine.core.lexical_retrieval import retrieve_snippets
from coach_engine.core.llm import LanguageModelGateway, parse_coach_response
from coach_engine.core.logging import get_logger, log_with_context
from coach_engine.core.schemas_support import (
    ChecklistItem,
    CoachResponse,
    KnowledgeChunk,
    KnowledgeSnippet,
    ProposedAction,
    SessionContext,
    SessionStats,
    SessionStatus,
    Speaker,
    StageDefinition,
    SuggestionPayload,
    TickReason,
    TurnLine,
)
from coach_engine.core.session_timers import (
    FINALIZE_DEBOUNCE,
    LIVENESS,
    LIVENESS_DEADLINE,
    SILENCE,
    SessionTimers,
)
from coach_engine.core.support_playbook import advance_stage, checklist_for, compute_moment
from coach_engine.core.support_prompts import (
    build_retry_user_prompt,
    build_system_prompt,
    build_user_prompt,
    format_recent_turns,
)

logger = get_logger(__name__)

TRANSCRIPT_BUFFER_SIZE = 30
RECENT_SUGGESTIONS = 5
MAX_NUDGES = 3
MIN_MODEL_NUDGES = 2
MAX_KNOWLEDGE_CARDS = 4
SNIPPET_CARDS = 3
CARD_SNIPPET_CHARS = 200
# Liveness deadlines fire this much early (at most a tenth of the interval)
LIVENESS_DEADLINE_LEAD_MS = 250
LEDGER_TYPE = "USAGE_LLM_SUPPORT_ENGINE_TICK"

INTERIM_REASONS = frozenset({TickReason.CUSTOMER_FINAL, TickReason.CUSTOMER_SILENCE})

GREETING_NUDGES = ["Ask how you can help", "Identify the customer"]
GREETING_MOMENT = "Greeting"

_WHITESPACE = re.compile(r"\s+")

ContextLoader = Callable[[str], Awaitable[SessionContext | None]]
SemanticRetriever = Callable[[str, str], Awaitable[list[KnowledgeChunk]]]
SuggestionWriter = Callable[..., Any]
ActionProposer = Callable[[str, str, dict[str, Any]], Awaitable[Any]]


# =============================================================================
# State
# =============================================================================


@dataclass
class EngineTimings:
    """Per-session timer settings in milliseconds."""

    finalize_debounce_ms: int = 280
    silence_timeout_ms: int = 1000
    interim_race_ms: int = 900
    liveness_interval_ms: int = 15_000

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineTimings:
        return cls(
            finalize_debounce_ms=settings.FINALIZE_DEBOUNCE_MS,
            silence_timeout_ms=settings.SILENCE_TIMEOUT_MS,
            interim_race_ms=settings.INTERIM_RACE_MS,
            liveness_interval_ms=settings.LIVENESS_INTERVAL_MS,
        )


@dataclass
class TickRequest:
    """A tick queued while another one was in flight."""

    reason: TickReason
    utterance_seq: int


@dataclass
class CoachMemory:
    action_results: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class SessionState:
    """Mutable per-session state. Only the engine mutates it, on the loop thread."""

    session_id: str
    timers: SessionTimers
    status: SessionStatus = SessionStatus.IDLE
    context: SessionContext | None = None
    transcript_buffer: deque[TurnLine] = field(
        default_factory=lambda: deque(maxlen=TRANSCRIPT_BUFFER_SIZE)
    )
    stats: SessionStats = field(default_factory=SessionStats)
    current_stage_idx: int = 0
    checklist_state: list[ChecklistItem] = field(default_factory=list)

    # Utterance assembly
    pending_final_segments: list[str] = field(default_factory=list)
    first_pending_segment_at: float | None = None
    last_partial_text: str = ""
    customer_speaking: bool = False
    last_customer_text: str = ""
    utterance_seq: int = 0
    last_processed_seq: int = 0
    # When the oldest input not yet answered by a suggestion arrived
    signal_since: float | None = None

    # Tick gate
    in_flight: bool = False
    in_flight_since: float | None = None
    pending_tick_request: TickRequest | None = None
    last_tick_at: float | None = None
    tick_count: int = 0
    last_reason: TickReason | None = None

    # Short-term memory
    recent_suggestions: list[str] = field(default_factory=list)
    memory: CoachMemory = field(default_factory=CoachMemory)
    last_moment_tag: str = "Identification"
    avg_latency_ms: int = 0
    session_started: bool = False

    @property
    def has_unconsumed_signal(self) -> bool:
        return self.utterance_seq > self.last_processed_seq or self.pending_tick_request is not None

    def current_stage(self) -> StageDefinition | None:
        if self.context is None or not self.context.stages:
            return None
        if self.current_stage_idx < len(self.context.stages):
            return self.context.stages[self.current_stage_idx]
        return self.context.stages[0]


class SessionStore:
    """Registry of live sessions: exactly one state per session id."""

    def __init__(self):
        self._sessions: dict[str, SessionState] = {}

    def get(self, session_id: str) -> SessionState | None:
        return self._sessions.get(session_id)

    def create(self, session_id: str, timers: SessionTimers) -> SessionState:
        if session_id in self._sessions:
            raise ValueError(f"Session already live: {session_id}")
        state = SessionState(session_id=session_id, timers=timers)
        self._sessions[session_id] = state
        return state

    def remove(self, session_id: str) -> SessionState | None:
        return self._sessions.pop(session_id, None)

    def ids(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def _now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Engine
# =============================================================================


class SupportEngine:
    """Per-session coaching state machines behind one set of operations."""

    def __init__(
        self,
        sink: EventSink,
        gateway: LanguageModelGateway,
        context_loader: ContextLoader,
        *,
        suggestion_writer: SuggestionWriter | None = None,
        action_proposer: ActionProposer | None = None,
        semantic_retriever: SemanticRetriever | None = None,
        timings: EngineTimings | None = None,
        tick_temperature: float = 0.5,
        retry_temperature: float = 0.45,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sink = sink
        self._gateway = gateway
        self._context_loader = context_loader
        self._suggestion_writer = suggestion_writer
        self._action_proposer = action_proposer
        self._semantic_retriever = semantic_retriever
        self._timings = timings or EngineTimings()
        self._tick_temperature = tick_temperature
        self._retry_temperature = retry_temperature
        self._clock = clock
        self._store = SessionStore()
        self._tasks: set[asyncio.Task] = set()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def timings(self) -> EngineTimings:
        return self._timings

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def start(self, session_id: str) -> None:
        """Create the session and begin loading its context. Idempotent."""
        if session_id in self._store:
            return

        state = self._store.create(session_id, SessionTimers())
        state.status = SessionStatus.LOADING_CONTEXT
        state.timers.arm_periodic(
            LIVENESS, self._timings.liveness_interval_ms, lambda: self._liveness_check(state)
        )
        self._track(self._load_context(state))

        log_with_context(logger, logging.INFO, "Support engine started", session_id=session_id)

    def emit_session_start(self, session_id: str) -> None:
        """Mark the session started (once) and emit the initial suggestion when possible."""
        state = self._live(session_id)
        if state is None or state.session_started:
            return
        state.session_started = True
        self._emit(state, "session_start", {"ts_ms": _now_ms()})
        if state.context is not None:
            self._emit_initial_suggestion(state)

    def push_transcript(self, session_id: str, speaker: str | Speaker, text: str) -> None:
        """Ingest one finalized transcript turn."""
        state = self._live(session_id)
        if state is None:
            return

        speaker_value = speaker.value if isinstance(speaker, Speaker) else str(speaker).upper()
        ts_ms = _now_ms()
        state.transcript_buffer.append(TurnLine(speaker=speaker_value, text=text, ts_ms=ts_ms))
        update_stats(state.stats, speaker_value, text)

        if speaker_value == Speaker.AGENT.value:
            self._emit(state, "engine.primary_consumed", {"ts_ms": ts_ms})

        self._emit(state, "engine.stats", {"stats": state.stats.model_dump(mode="json")})

        if speaker_value == Speaker.CUSTOMER.value:
            state.last_customer_text = text
            if not state.pending_final_segments:
                state.first_pending_segment_at = self._clock()
                self._note_signal(state, state.first_pending_segment_at)
            state.pending_final_segments.append(text)
            state.timers.cancel(SILENCE)
            state.timers.arm(
                FINALIZE_DEBOUNCE,
                self._timings.finalize_debounce_ms,
                lambda: self._finalize_utterance(state, TickReason.CUSTOMER_FINAL),
            )

    def signal_speaking(self, session_id: str, speaker: str | Speaker, text: str | None = None) -> None:
        """Record in-progress customer speech and (re)arm the silence timer."""
        state = self._live(session_id)
        speaker_value = speaker.value if isinstance(speaker, Speaker) else str(speaker).upper()
        if state is None or speaker_value != Speaker.CUSTOMER.value:
            return

        if text and text.strip():
            state.last_partial_text = text.strip()

        if not state.customer_speaking:
            state.customer_speaking = True
            self._emit(state, "engine.customer_speaking", {"speaking": True})

        state.timers.arm(
            SILENCE,
            self._timings.silence_timeout_ms,
            lambda: self._finalize_utterance(state, TickReason.CUSTOMER_SILENCE),
        )

    def feed_action_result(self, session_id: str, action_name: str, output: Any) -> None:
        """Remember an action result; tick right away if nothing is in flight."""
        state = self._live(session_id)
        if state is None:
            return
        state.memory.action_results.append({"name": action_name, "output": output})
        if not state.in_flight and state.context is not None:
            self._start_tick(state, TickReason.CUSTOMER_FINAL)

    def stop(self, session_id: str) -> None:
        """Cancel every timer and drop the session. Idempotent."""
        state = self._store.remove(session_id)
        if state is None:
            return
        state.status = SessionStatus.STOPPED
        state.timers.cancel_all()
        state.pending_tick_request = None
        log_with_context(
            logger,
            logging.INFO,
            "Support engine stopped",
            session_id=session_id,
            ticks=state.tick_count,
            avg_latency_ms=state.avg_latency_ms,
        )

    def shutdown(self) -> None:
        for session_id in self._store.ids():
            self.stop(session_id)

    def snapshot(self, session_id: str) -> dict[str, Any] | None:
        """Read-only diagnostic view of a live session."""
        state = self._store.get(session_id)
        if state is None:
            return None
        stage = state.current_stage()
        return {
            "session_id": state.session_id,
            "status": state.status.value,
            "context_loaded": state.context is not None,
            "session_started": state.session_started,
            "stage_idx": state.current_stage_idx,
            "stage_name": stage.name if stage else None,
            "checklist": [item.model_dump() for item in state.checklist_state],
            "stats": state.stats.model_dump(mode="json"),
            "transcript_turns": len(state.transcript_buffer),
            "customer_speaking": state.customer_speaking,
            "utterance_seq": state.utterance_seq,
            "last_processed_seq": state.last_processed_seq,
            "in_flight": state.in_flight,
            "pending_tick": state.pending_tick_request.reason.value if state.pending_tick_request else None,
            "tick_count": state.tick_count,
            "last_reason": state.last_reason.value if state.last_reason else None,
            "recent_suggestions": list(state.recent_suggestions),
            "action_results": len(state.memory.action_results),
            "avg_latency_ms": state.avg_latency_ms,
            "armed_timers": state.timers.armed_kinds,
        }

    # -------------------------------------------------------------------------
    # Context loading
    # -------------------------------------------------------------------------

    async def _load_context(self, state: SessionState) -> None:
        session_id = state.session_id
        try:
            context = await self._context_loader(session_id)
        except Exception as e:
            logger.error(f"Support engine context load failed ({session_id}): {e}")
            return

        if not self._is_live(state):
            logger.debug(f"Discarding context for stopped session {session_id}")
            return
        if context is None:
            logger.warning(f"No support context for session {session_id}")
            return

        state.context = context
        state.status = SessionStatus.ACTIVE

        first_stage = state.current_stage()
        state.checklist_state = checklist_for(first_stage)
        if state.checklist_state:
            self._emit_checklist(state)
        self._emit(
            state,
            "engine.stage",
            {"stage_idx": 0, "stage_name": first_stage.name if first_stage else "Identification"},
        )

        if state.session_started:
            self._emit_initial_suggestion(state)

        log_with_context(
            logger,
            logging.INFO,
            "Support engine context loaded",
            session_id=session_id,
            actions=len(context.available_actions),
            documents=len(context.knowledge_documents),
        )

    def _emit_initial_suggestion(self, state: SessionState) -> None:
        if state.context is None:
            return

        if state.transcript_buffer:
            if not state.in_flight:
                self._start_tick(state, TickReason.SESSION_START)
            return

        self._emit_suggestions(
            state,
            SuggestionPayload(
                suggestions=[build_greeting(state.context.agent_context.company_name)],
                nudges=list(GREETING_NUDGES),
                moment_tag=GREETING_MOMENT,
            ),
        )

    # -------------------------------------------------------------------------
    # Utterance finalization
    # -------------------------------------------------------------------------

    def _finalize_utterance(self, state: SessionState, reason: TickReason) -> None:
        if not self._is_live(state):
            return

        state.timers.cancel(FINALIZE_DEBOUNCE)
        state.timers.cancel(SILENCE)

        final_text = _normalize(" ".join(state.pending_final_segments))
        partial_text = _normalize(state.last_partial_text)
        state.pending_final_segments = []
        state.first_pending_segment_at = None
        state.last_partial_text = ""

        text = final_text
        if not text and reason is TickReason.CUSTOMER_SILENCE:
            text = partial_text

        if state.customer_speaking:
            state.customer_speaking = False
            self._emit(state, "engine.customer_speaking", {"speaking": False})

        if not text:
            return

        state.last_customer_text = text
        state.utterance_seq += 1
        self._note_signal(state, self._clock())
        self._request_tick(state, reason)

    def _flush_pending_segments(self, state: SessionState) -> None:
        """Consume customer segments whose debounce is still being re-armed."""
        if not state.pending_final_segments:
            return

        state.timers.cancel(FINALIZE_DEBOUNCE)
        text = _normalize(" ".join(state.pending_final_segments))
        state.pending_final_segments = []
        state.first_pending_segment_at = None
        if text:
            state.last_customer_text = text
            state.utterance_seq += 1
            logger.debug(f"Flushed debounced customer segments for session {state.session_id}")

    # -------------------------------------------------------------------------
    # Tick gate
    # -------------------------------------------------------------------------

    def _request_tick(self, state: SessionState, reason: TickReason) -> None:
        if state.in_flight:
            state.pending_tick_request = TickRequest(reason=reason, utterance_seq=state.utterance_seq)
            return
        self._start_tick(state, reason)

    def _start_tick(self, state: SessionState, reason: TickReason, require_transcript: bool = False) -> bool:
        """Claim the in-flight slot and schedule a tick. Returns False when refused."""
        if not self._is_live(state) or state.context is None or state.in_flight:
            return False
        if require_transcript and not state.transcript_buffer:
            return False

        now = self._clock()
        state.in_flight = True
        state.in_flight_since = now
        state.last_tick_at = now
        state.tick_count += 1
        state.last_reason = reason
        # A fresh tick sees the newest state, so any queued request is covered
        state.pending_tick_request = None

        self._track(self._run_tick(state, reason))
        return True

    async def _run_tick(self, state: SessionState, reason: TickReason) -> None:
        try:
            if self._gateway.available:
                await self._run_model_tick(state, reason)
            elif not state.customer_speaking:
                self._emit_fallback(state)
        except Exception as e:
            logger.error(f"Support engine tick ({reason.value}) error ({state.session_id}): {e}")
        finally:
            state.in_flight = False
            state.in_flight_since = None
            self._drain_pending(state)

    def _drain_pending(self, state: SessionState) -> None:
        if not self._is_live(state) or state.customer_speaking:
            return
        pending = state.pending_tick_request
        if pending is None:
            return
        state.pending_tick_request = None
        self._start_tick(state, pending.reason)

    # -------------------------------------------------------------------------
    # Liveness
    # -------------------------------------------------------------------------

    def _note_signal(self, state: SessionState, since: float) -> None:
        """Start the liveness deadline for the oldest unanswered input."""
        if state.signal_since is not None:
            return
        state.signal_since = since

        interval_ms = self._timings.liveness_interval_ms
        deadline_ms = interval_ms - min(LIVENESS_DEADLINE_LEAD_MS, interval_ms // 10)
        elapsed_ms = int((self._clock() - since) * 1000)
        state.timers.arm(
            LIVENESS_DEADLINE,
            max(0, deadline_ms - elapsed_ms),
            lambda: self._liveness_check(state, deadline=True),
        )

    def _consume_signal(self, state: SessionState) -> None:
        state.signal_since = None
        state.timers.cancel(LIVENESS_DEADLINE)
        # Segments still waiting on the debounce keep their own deadline
        if state.pending_final_segments and state.first_pending_segment_at is not None:
            self._note_signal(state, state.first_pending_segment_at)

    def _liveness_check(self, state: SessionState, deadline: bool = False) -> None:
        """Guard so a session can never go permanently silent.

        Runs on the periodic liveness timer and once more when the deadline
        armed for the oldest unanswered input is reached. Past that deadline
        the deterministic fallback is emitted straight away, whether the model
        call is stalled or never got started because the debounce kept being
        re-armed; a model tick then refines it when one can run.
        """
        if not self._is_live(state) or state.context is None:
            return

        interval_s = self._timings.liveness_interval_ms / 1000
        now = self._clock()
        overdue = state.signal_since is not None and (deadline or now - state.signal_since >= interval_s)

        if overdue:
            self._flush_pending_segments(state)
        if not state.has_unconsumed_signal:
            return

        if state.in_flight:
            if overdue and not state.customer_speaking:
                logger.warning(
                    f"Model tick stalled for session {state.session_id}, emitting fallback suggestion"
                )
                self._emit_fallback(state)
            return

        if overdue:
            if self._gateway.available and not state.customer_speaking:
                self._emit_fallback(state)
            self._start_tick(state, TickReason.FALLBACK, require_transcript=True)
            return

        if state.last_tick_at is not None and now - state.last_tick_at < interval_s:
            return
        self._start_tick(state, TickReason.FALLBACK, require_transcript=True)

    # -------------------------------------------------------------------------
    # Model-backed tick
    # -------------------------------------------------------------------------

    async def _run_model_tick(self, state: SessionState, reason: TickReason) -> None:
        context = state.context
        stage = state.current_stage()
        if context is None or stage is None:
            return

        recent_turns = format_recent_turns(list(state.transcript_buffer))
        snippets = await self._retrieve_knowledge(state, context, recent_turns)
        if not self._is_live(state):
            return

        last_customer = state.last_customer_text or next(
            (t.text for t in reversed(state.transcript_buffer) if t.speaker == Speaker.CUSTOMER.value),
            "",
        )

        system_prompt = build_system_prompt(
            context,
            stage,
            state.checklist_state,
            snippets,
            state.recent_suggestions,
            state.memory.action_results,
        )
        user_prompt = build_user_prompt(
            recent_turns=recent_turns,
            customer_last_utterance=last_customer,
            issue_type=state.stats.issue_type,
            entities=extract_entities(last_customer),
            sentiment=state.stats.sentiment.value,
            available_actions=context.available_actions,
            action_results=state.memory.action_results,
            reason=reason.value,
        )

        started = self._clock()
        try:
            result = await self._call_with_interim(state, context, reason, system_prompt, user_prompt, last_customer)
        except Exception as e:
            logger.error(f"Support LLM tick error ({state.session_id}): {e}")
            if self._is_live(state):
                self._emit_fallback(state)
            return

        latency_ms = int((self._clock() - started) * 1000)
        state.avg_latency_ms = (
            latency_ms
            if state.avg_latency_ms == 0
            else round(state.avg_latency_ms * 0.7 + latency_ms * 0.3)
        )

        if self._is_stale(state, reason):
            return

        parsed = parse_coach_response(result.text)
        if not parsed.is_complete:
            logger.info(f"Incomplete model response for session {state.session_id}, retrying strictly")
            try:
                retry = await self._gateway.call(
                    system_prompt,
                    build_retry_user_prompt(user_prompt),
                    model=context.llm_model,
                    json_mode=True,
                    temperature=self._retry_temperature,
                    billing=self._billing(context, retry=True),
                )
                parsed = parse_coach_response(retry.text, fallback=parsed)
            except Exception as e:
                logger.warning(f"Strict retry failed for session {state.session_id}: {e}")
            if self._is_stale(state, reason):
                return

        payload = self._payload_from_response(state, context, stage, parsed, snippets, last_customer)
        self._advance_stage(state, parsed.resolution_status)
        self._emit_suggestions(state, payload)

    async def _call_with_interim(
        self,
        state: SessionState,
        context: SessionContext,
        reason: TickReason,
        system_prompt: str,
        user_prompt: str,
        last_customer: str,
    ):
        """Issue the primary call; emit an interim suggestion if it is slow to resolve."""
        call = asyncio.ensure_future(
            self._gateway.call(
                system_prompt,
                user_prompt,
                model=context.llm_model,
                json_mode=True,
                temperature=self._tick_temperature,
                billing=self._billing(context),
            )
        )

        if reason in INTERIM_REASONS:
            done, _ = await asyncio.wait({call}, timeout=self._timings.interim_race_ms / 1000)
            if not done and self._is_live(state) and not state.customer_speaking:
                interim = build_deterministic_fallback(last_customer, state.stats.issue_type)
                self._emit(
                    state,
                    "engine.primary_suggestion",
                    {"text": interim, "moment_tag": state.last_moment_tag, "interim": True},
                )

        return await call

    def _is_stale(self, state: SessionState, reason: TickReason) -> bool:
        """A result that arrives after stop, or while the customer talks again, is dropped."""
        if not self._is_live(state):
            logger.debug(f"Discarding model result for stopped session {state.session_id}")
            return True
        if reason in INTERIM_REASONS and state.customer_speaking:
            logger.info(f"Discarding model result, customer resumed speaking ({state.session_id})")
            return True
        return False

    async def _retrieve_knowledge(
        self, state: SessionState, context: SessionContext, query_text: str
    ) -> list[KnowledgeSnippet]:
        if self._semantic_retriever is not None:
            try:
                chunks = await self._semantic_retriever(context.org_id, query_text)
            except Exception as e:
                logger.warning(f"Semantic retrieval error ({state.session_id}): {e}")
                chunks = []
            if chunks:
                return chunks_to_snippets(chunks)

        return retrieve_snippets(context.knowledge_documents, query_text, state.stats.issue_type)

    def _billing(self, context: SessionContext, retry: bool = False) -> dict[str, Any]:
        metadata: dict[str, Any] = {"session_id": context.session_id}
        if retry:
            metadata["retry"] = True
        return {"org_id": context.org_id, "ledger_type": LEDGER_TYPE, "metadata": metadata}

    def _payload_from_response(
        self,
        state: SessionState,
        context: SessionContext,
        stage: StageDefinition,
        parsed: CoachResponse,
        snippets: list[KnowledgeSnippet],
        last_customer: str,
    ) -> SuggestionPayload:
        primary = (parsed.primary or "").strip() or build_deterministic_fallback(
            last_customer, state.stats.issue_type
        )

        nudges = [n.strip() for n in parsed.nudges if n.strip()][:MAX_NUDGES]
        if len(nudges) < MIN_MODEL_NUDGES:
            nudges = (nudges + build_fallback_nudges(state.stats, state.current_stage_idx))[:MAX_NUDGES]

        cards: list[str] = []
        if parsed.knowledge_cite and parsed.knowledge_cite.text:
            cards.append(f"[{parsed.knowledge_cite.source or 'KB'}] {parsed.knowledge_cite.text}")
        for snippet in snippets[:SNIPPET_CARDS]:
            cards.append(f"[{snippet.field}] {snippet.text[:CARD_SNIPPET_CHARS]}")

        moment = (parsed.moment or "").strip() or compute_moment(stage.name, state.stats)

        issue_type = parsed.issue_type or state.stats.issue_type
        if issue_type:
            state.stats.issue_type = issue_type

        known_ids = context.action_ids()
        actions = [
            ProposedAction(
                definition_id=a.definition_id,
                name=a.name or "Action",
                input=a.input,
                reason=a.reason,
            )
            for a in parsed.proposed_actions
            if a.definition_id and a.definition_id in known_ids
        ]
        dropped = len(parsed.proposed_actions) - len(actions)
        if dropped:
            logger.debug(f"Dropped {dropped} proposed action(s) with unknown ids ({state.session_id})")

        return SuggestionPayload(
            suggestions=[primary],
            nudges=nudges,
            knowledge_cards=cards[:MAX_KNOWLEDGE_CARDS],
            moment_tag=moment,
            issue_type=issue_type,
            resolution_status=parsed.resolution_status or "diagnosing",
            proposed_actions=actions,
            empathy_note=parsed.empathy_note,
        )

    def _advance_stage(self, state: SessionState, resolution_status: str | None) -> None:
        if state.context is None:
            return
        stages = state.context.stages
        target = advance_stage(state.current_stage_idx, resolution_status, len(stages))
        if target == state.current_stage_idx:
            return

        state.current_stage_idx = target
        new_stage = stages[target]
        state.checklist_state = checklist_for(new_stage)
        self._emit(state, "engine.stage", {"stage_idx": target, "stage_name": new_stage.name})
        self._emit_checklist(state)
        log_with_context(
            logger, logging.INFO, f"Stage advanced to {new_stage.name}", session_id=state.session_id
        )

    # -------------------------------------------------------------------------
    # Fallback and emission
    # -------------------------------------------------------------------------

    def _emit_fallback(self, state: SessionState) -> None:
        stage = state.current_stage()
        self._emit_suggestions(
            state,
            SuggestionPayload(
                suggestions=[build_deterministic_fallback(state.last_customer_text, state.stats.issue_type)],
                nudges=build_fallback_nudges(state.stats, state.current_stage_idx),
                moment_tag=stage.name if stage else "Support",
                issue_type=state.stats.issue_type,
            ),
        )

    def _emit_suggestions(self, state: SessionState, payload: SuggestionPayload) -> None:
        primary = payload.primary
        if primary:
            state.recent_suggestions.insert(0, primary)
            del state.recent_suggestions[RECENT_SUGGESTIONS:]
        state.last_moment_tag = payload.moment_tag
        state.last_processed_seq = state.utterance_seq
        self._consume_signal(state)

        self._emit(
            state,
            "engine.suggestions",
            {
                "suggestions": payload.suggestions,
                "nudges": payload.nudges,
                "knowledge_cards": payload.knowledge_cards,
                "moment_tag": payload.moment_tag,
                "issue_type": payload.issue_type,
                "resolution_status": payload.resolution_status,
                "empathy_note": payload.empathy_note,
            },
        )
        self._emit(state, "engine.primary_suggestion", {"text": primary, "moment_tag": payload.moment_tag})
        if payload.nudges:
            self._emit(state, "engine.nudges", {"nudges": payload.nudges})
        if payload.knowledge_cards:
            self._emit(state, "engine.knowledge_cards", {"cards": payload.knowledge_cards})
        self._emit(state, "engine.moment", {"moment": payload.moment_tag})

        if primary and self._suggestion_writer is not None:
            self._track(self._persist_suggestion(state.session_id, primary, payload))

        for action in payload.proposed_actions:
            self._emit(state, "engine.action_proposed", action.model_dump(mode="json"))
            if self._action_proposer is not None:
                self._track(self._propose_action(state.session_id, action))

    def _emit_checklist(self, state: SessionState) -> None:
        self._emit(
            state, "engine.checklist", {"items": [item.model_dump() for item in state.checklist_state]}
        )

    def _emit(self, state: SessionState, event: str, payload: dict[str, Any]) -> None:
        if not self._is_live(state):
            return
        try:
            self._sink.emit(state.session_id, event, payload)
        except Exception as e:
            logger.error(f"Event sink failed for {event} ({state.session_id}): {e}")

    # -------------------------------------------------------------------------
    # Background work
    # -------------------------------------------------------------------------

    async def _persist_suggestion(self, session_id: str, primary: str, payload: SuggestionPayload) -> None:
        try:
            await asyncio.to_thread(
                self._suggestion_writer,
                session_id=session_id,
                text=primary,
                intent=payload.moment_tag,
                meta={"issue_type": payload.issue_type, "resolution_status": payload.resolution_status},
                kind="PRIMARY",
                rank=0,
                ts_ms=_now_ms(),
            )
        except Exception as e:
            logger.error(f"Failed to persist support suggestion ({session_id}): {e}")

    async def _propose_action(self, session_id: str, action: ProposedAction) -> None:
        try:
            await self._action_proposer(session_id, action.definition_id, action.input)
        except Exception as e:
            logger.error(f"Failed to propose action ({session_id}): {e}")

    def _track(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background tasks (tests and graceful shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _live(self, session_id: str) -> SessionState | None:
        state = self._store.get(session_id)
        if state is None or state.status is SessionStatus.STOPPED:
            return None
        return state

    def _is_live(self, state: SessionState) -> bool:
        return state.status is not SessionStatus.STOPPED and self._store.get(state.session_id) is state
