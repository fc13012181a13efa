import asyncio
import logging
import time
from dataclasses import dataclass, field

from partcall.classification import CALLBACK_KEYWORDS, classify_rules, is_actionable
from partcall.extraction import extract_quotes
from partcall.policy import apply_policy, finalize_abandoned, select_node
from partcall.prompts import build_context
from partcall.session import DEFAULT_MAX_NEGOTIATION_ATTEMPTS, CallState, initialize_call_state
from partcall.state_machine import StateMachine, Turn
from partcall.states import Intent, Node
from partcall.validation import match_any_keyword

logger = logging.getLogger(__name__)

# Intents that are about the conversation itself, never about a part
NO_EXTRACTION_INTENTS = {
    Intent.VOICEMAIL, Intent.HUMAN_REQUEST, Intent.REPEAT, Intent.SCREENING,
}


class UnknownCallError(Exception):
    """A turn arrived for a call with no stored state and no initial payload."""


@dataclass
class TurnResult:
    speak: list = field(default_factory=list)
    end_call: bool = False
    duplicate: bool = False
    state: CallState | None = None

    @property
    def text(self) -> str:
        return " ".join(self.speak)

    def to_response(self) -> dict:
        body = {"say": self.text, "endCall": self.end_call}
        if self.duplicate:
            body["duplicate"] = True
        return body


class TurnProcessor:
    """Stateless per-webhook orchestrator.

    Each call to ``handle_turn`` is one load -> classify -> route -> persist
    cycle against the state store. Nothing about a call is kept on the
    instance between invocations, so any worker can serve any turn.

    The language model is optional and always bounded by ``llm_timeout``;
    when it is missing, slow or broken the keyword classifier and the
    heuristic extractor take over.
    """

    def __init__(
        self,
        store,
        llm=None,
        machine: StateMachine | None = None,
        llm_timeout: float = 1.5,
        max_negotiation_attempts: int = DEFAULT_MAX_NEGOTIATION_ATTEMPTS,
        callback_number: str = "",
    ):
        self.store = store
        self.llm = llm
        self.machine = machine or StateMachine()
        self.llm_timeout = llm_timeout
        self.max_negotiation_attempts = max_negotiation_attempts
        self.callback_number = callback_number

    # ── Lifecycle events ──

    async def start_call(self, call_id: str, payload: dict) -> TurnResult:
        """Create and persist the initial state, returning the opener."""
        existing = await self.store.get(call_id)
        if existing is not None:
            logger.info("[%s] call_started replayed, state already exists", call_id)
            return self._replay(existing)

        state = await self._create(call_id, payload)
        return TurnResult(
            speak=state.ai_lines_since(0),
            end_call=False,
            state=state,
        )

    async def _create(self, call_id: str, payload: dict) -> CallState:
        state = initialize_call_state(
            payload,
            call_id=call_id,
            max_negotiation_attempts=self.max_negotiation_attempts,
            callback_number=self.callback_number,
        )
        state = self.machine.open_call(state)
        if not await self.store.put(call_id, state, expected_version=0):
            # another worker initialised it first
            current = await self.store.get(call_id)
            if current is None:
                raise UnknownCallError(call_id)
            return current
        return state

    async def handle_turn(self, call_id: str, text: str, metadata: dict | None = None) -> TurnResult:
        """Process one supplier utterance and return the next line(s) to speak."""
        state = await self.store.get(call_id)
        if state is None:
            if not metadata:
                raise UnknownCallError(call_id)
            logger.info("[%s] No state on first turn, initialising from metadata", call_id)
            state = await self._create(call_id, metadata)

        if state.is_terminal:
            logger.info("[%s] Turn after %s, ignoring", call_id, state.status.value)
            return self._replay(state)

        text = (text or "").strip()
        working = state.copy()
        history_start = len(working.conversation_history)
        working.append_message("supplier", text)
        working.turn_count += 1
        logger.info(f"[{working.current_node.value}] Supplier: {text}")

        turn = await self._build_turn(working, text)
        return await self._route_and_persist(state, working, turn, history_start)

    async def handle_voicemail(self, call_id: str) -> TurnResult:
        """Transport reported an answering machine."""
        state = await self.store.get(call_id)
        if state is None:
            raise UnknownCallError(call_id)
        if state.is_terminal:
            return self._replay(state)
        working = state.copy()
        history_start = len(working.conversation_history)
        turn = Turn(text="", intent=Intent.VOICEMAIL, voicemail_detected=True)
        return await self._route_and_persist(state, working, turn, history_start)

    async def end_call(self, call_id: str) -> CallState | None:
        """Transport hung up. Finalise an in-progress call; return the final state."""
        state = await self.store.get(call_id)
        if state is None:
            logger.warning("[%s] call_ended for unknown or expired call", call_id)
            return None
        if state.is_terminal:
            return state
        final = finalize_abandoned(state.copy())
        if not await self.store.put(call_id, final, expected_version=state.version):
            # a racing turn got there first; finalise whatever it wrote
            latest = await self.store.get(call_id)
            if latest is None or latest.is_terminal:
                return latest
            final = finalize_abandoned(latest.copy())
            await self.store.put(call_id, final, expected_version=latest.version)
        return final

    # ── Internals ──

    async def _build_turn(self, state: CallState, text: str) -> Turn:
        intent = await self._classify(state, text)

        quotes = []
        if state.current_node.is_quoting and intent not in NO_EXTRACTION_INTENTS:
            quotes = await extract_quotes(
                text,
                state.parts,
                llm=self.llm,
                current=self._part_in_focus(state),
                timeout=self.llm_timeout,
            )
            if (
                quotes
                and intent not in (Intent.PRICE, Intent.UNAVAILABLE)
                and not self._asked_for_callback(intent, text)
            ):
                intent = Intent.PRICE
        return Turn(text=text, intent=intent, quotes=quotes)

    @staticmethod
    def _asked_for_callback(intent: Intent, text: str) -> bool:
        # "we can send it over tomorrow" is delivery talk, "email me the rest" is a callback
        return intent is Intent.CALLBACK and match_any_keyword(text, CALLBACK_KEYWORDS)

    async def _classify(self, state: CallState, text: str) -> Intent:
        if self.llm is not None:
            t_start = time.time()
            try:
                intent = await asyncio.wait_for(
                    self.llm.classify(
                        text,
                        state.current_node.value,
                        build_context(state),
                        timeout=self.llm_timeout,
                    ),
                    timeout=self.llm_timeout,
                )
                logger.info(
                    f"[{state.current_node.value}] LLM intent={intent.value} "
                    f"({(time.time() - t_start)*1000:.0f}ms)"
                )
                if intent is not Intent.UNKNOWN:
                    return intent
            except Exception as e:
                logger.warning("LLM classification failed, using rules: %s", str(e) or type(e).__name__)
        return classify_rules(text)

    @staticmethod
    def _part_in_focus(state: CallState):
        if state.current_node is Node.NEGOTIATE:
            over_budget = state.over_budget_parts()
            if over_budget:
                return over_budget[0]
        return state.current_part()

    async def _route_and_persist(
        self,
        base: CallState,
        working: CallState,
        turn: Turn,
        history_start: int,
    ) -> TurnResult:
        # the clarification limit applies from the turn after it is reached
        node = select_node(working, turn)
        if not is_actionable(turn.intent):
            working.clarification_attempts += 1
            logger.info(
                "[%s] Unclassifiable turn (%d so far)",
                working.call_id, working.clarification_attempts,
            )
        new_state = self.machine.process(working, turn, node=node)
        new_state = apply_policy(new_state)

        if not await self.store.put(new_state.call_id, new_state, expected_version=base.version):
            logger.warning("[%s] Concurrent turn won, dropping this one", new_state.call_id)
            latest = await self.store.get(new_state.call_id)
            return self._replay(latest or base)

        if new_state.is_terminal:
            logger.info(
                "[%s] Call finished: status=%s outcome=%s next_action=%s",
                new_state.call_id, new_state.status.value,
                new_state.outcome or "-", new_state.next_action.value,
            )
        return TurnResult(
            speak=new_state.ai_lines_since(history_start),
            end_call=new_state.is_terminal,
            state=new_state,
        )

    @staticmethod
    def _replay(state: CallState) -> TurnResult:
        last = state.last_ai_text()
        return TurnResult(
            speak=[last] if last else [],
            end_call=state.is_terminal,
            duplicate=True,
            state=state,
        )
