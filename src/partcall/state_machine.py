import logging
from dataclasses import dataclass, field

from partcall import dialogue
from partcall.classification import detect_bot_screening
from partcall.extraction import merge_quotes
from partcall.session import CallState, Quote
from partcall.states import Availability, CallStatus, Intent, NextAction, Node
from partcall.validation import is_firm_price, parse_price, solve_captcha

logger = logging.getLogger(__name__)

BOT_SCREENING_MAX_ATTEMPTS = 3

# Quotes that mean the part has to be shipped in rather than picked up
SHIPPED_AVAILABILITY = {Availability.BACKORDER, Availability.OUT_OF_STOCK, Availability.UNAVAILABLE}


@dataclass
class Turn:
    """One inbound supplier event after classification and extraction."""

    text: str = ""
    intent: Intent = Intent.UNKNOWN
    quotes: list = field(default_factory=list)
    voicemail_detected: bool = False


TRANSITIONS = {
    Node.GREETING: {
        Node.GREETING, Node.BOT_SCREENING, Node.QUOTE_REQUEST, Node.VOICEMAIL,
        Node.HUMAN_ESCALATION, Node.CALLBACK, Node.POLITE_END,
    },
    Node.BOT_SCREENING: {
        Node.BOT_SCREENING, Node.GREETING, Node.QUOTE_REQUEST, Node.VOICEMAIL,
        Node.HUMAN_ESCALATION, Node.CALLBACK, Node.POLITE_END,
    },
    Node.QUOTE_REQUEST: {
        Node.QUOTE_REQUEST, Node.NEGOTIATE, Node.MISC_COSTS_INQUIRY, Node.CONFIRMATION,
        Node.VOICEMAIL, Node.HUMAN_ESCALATION, Node.CALLBACK,
    },
    Node.NEGOTIATE: {
        Node.NEGOTIATE, Node.QUOTE_REQUEST, Node.MISC_COSTS_INQUIRY, Node.CONFIRMATION,
        Node.VOICEMAIL, Node.HUMAN_ESCALATION, Node.CALLBACK,
    },
    Node.MISC_COSTS_INQUIRY: {
        Node.MISC_COSTS_INQUIRY, Node.CONFIRMATION, Node.VOICEMAIL,
        Node.HUMAN_ESCALATION, Node.CALLBACK,
    },
    Node.CONFIRMATION: set(),
    Node.HUMAN_ESCALATION: set(),
    Node.VOICEMAIL: set(),
    Node.CALLBACK: set(),
    Node.POLITE_END: set(),
}

# status, outcome, nextAction set on entering each terminal node
TERMINAL_EFFECTS = {
    Node.HUMAN_ESCALATION: (CallStatus.ESCALATED, "", NextAction.HUMAN_FOLLOWUP),
    Node.VOICEMAIL: (CallStatus.COMPLETED, "VOICEMAIL_LEFT", NextAction.EMAIL_FALLBACK),
    Node.CALLBACK: (CallStatus.COMPLETED, "CALLBACK_REQUESTED", NextAction.EMAIL_FALLBACK),
    Node.POLITE_END: (CallStatus.COMPLETED, "DECLINED", NextAction.EMAIL_FALLBACK),
}

TERMINAL_LINES = {
    Node.CONFIRMATION: dialogue.confirmation_line,
    Node.HUMAN_ESCALATION: dialogue.escalation_line,
    Node.VOICEMAIL: dialogue.voicemail_line,
    Node.CALLBACK: dialogue.callback_line,
    Node.POLITE_END: dialogue.polite_end_line,
}


def _transition(state: CallState, node: Node):
    if node is not state.current_node:
        if node not in TRANSITIONS.get(state.current_node, set()):
            logger.warning("Unexpected transition %s -> %s", state.current_node.value, node.value)
        logger.info("[%s] %s -> %s", state.call_id, state.current_node.value, node.value)
    state.current_node = node


def _say(state: CallState, text: str):
    state.append_message("ai", text, node=state.current_node.value)


def _finish(state: CallState, node: Node, line: str | None = None, outcome: str | None = None):
    """Enter a terminal node: speak its closing line and settle the outcome."""
    _transition(state, node)
    _say(state, line or TERMINAL_LINES[node](state))
    if node is Node.CONFIRMATION:
        state.status = CallStatus.COMPLETED
        if not any(q.price is not None for q in state.quotes):
            state.next_action = NextAction.EMAIL_FALLBACK
        return
    status, default_outcome, next_action = TERMINAL_EFFECTS[node]
    state.status = status
    if outcome or default_outcome:
        state.outcome = outcome or default_outcome
    state.next_action = next_action
    if node is Node.HUMAN_ESCALATION:
        state.needs_human_escalation = True


def should_ask_misc_costs(state: CallState) -> bool:
    """Ask about shipping once, when requested and some part must be shipped in."""
    if not state.has_misc_costs or state.misc_costs_asked:
        return False
    return any(q.availability in SHIPPED_AVAILABILITY for q in state.quotes)


def _advance(state: CallState, first: bool = False):
    """After new information: negotiate, ask for the next part, or confirm."""
    over_budget = state.over_budget_parts()
    if over_budget:
        if state.negotiation_attempts < state.max_negotiation_attempts:
            _transition(state, Node.NEGOTIATE)
            _say(state, dialogue.negotiation_line(over_budget[0]))
        else:
            _finish(state, Node.HUMAN_ESCALATION)
        return

    next_part = state.current_part()
    if next_part is not None:
        _transition(state, Node.QUOTE_REQUEST)
        _say(state, dialogue.part_request_line(state, next_part, first=first))
        return

    if should_ask_misc_costs(state):
        state.misc_costs_asked = True
        _transition(state, Node.MISC_COSTS_INQUIRY)
        _say(state, dialogue.misc_costs_line())
        return

    _finish(state, Node.CONFIRMATION)


def _exit_requested(state: CallState, turn: Turn) -> bool:
    """Requests that end the call from any live node.

    Quotes given in the same breath ("$450, but email me the rest") are
    kept before the call ends.
    """
    if turn.voicemail_detected or turn.intent is Intent.VOICEMAIL:
        _finish(state, Node.VOICEMAIL)
        return True
    if turn.intent not in (Intent.HUMAN_REQUEST, Intent.CALLBACK):
        return False
    if turn.quotes:
        merge_quotes(state, turn.quotes)
    if turn.intent is Intent.HUMAN_REQUEST:
        _finish(state, Node.HUMAN_ESCALATION)
    else:
        _finish(state, Node.CALLBACK)
    return True


def _screening_kind(turn: Turn) -> str | None:
    kind = detect_bot_screening(turn.text)
    if kind is None and turn.intent is Intent.SCREENING:
        kind = "call_screen"
    return kind


def _screen(state: CallState, kind: str, text: str):
    """Answer an automated screener, or hang up if it rejected the call."""
    state.bot_screening_attempts += 1
    logger.info("[%s] Call screener detected (%s), attempt %d", state.call_id, kind, state.bot_screening_attempts)
    if kind == "spam_rejection":
        _finish(
            state, Node.POLITE_END,
            line=dialogue.screening_line(state, kind),
            outcome="BOT_REJECTED",
        )
        return
    answer = solve_captcha(text) if kind == "captcha" else None
    _transition(state, Node.BOT_SCREENING)
    _say(state, dialogue.screening_line(state, kind, captcha_answer=answer))


class StateMachine:
    """One handler per conversation node, dispatched from a single table.

    Each handler deals with the supplier's reply to the line its node spoke
    and appends the agent's next line(s). ``process`` never mutates the
    state it is given.
    """

    def __init__(self):
        self._handlers = {
            Node.GREETING: self._handle_greeting,
            Node.BOT_SCREENING: self._handle_bot_screening,
            Node.QUOTE_REQUEST: self._handle_quote_request,
            Node.NEGOTIATE: self._handle_negotiate,
            Node.MISC_COSTS_INQUIRY: self._handle_misc_costs,
            Node.CONFIRMATION: self._handle_terminal,
            Node.HUMAN_ESCALATION: self._handle_terminal,
            Node.VOICEMAIL: self._handle_terminal,
            Node.CALLBACK: self._handle_terminal,
            Node.POLITE_END: self._handle_terminal,
        }
        missing = set(Node) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for nodes: {sorted(n.value for n in missing)}")

    def valid_transitions(self, node: Node) -> set[Node]:
        return TRANSITIONS.get(node, set())

    def open_call(self, state: CallState) -> CallState:
        """Speak the opener for a freshly initialised call."""
        new = state.copy()
        _transition(new, Node.GREETING)
        _say(new, dialogue.greeting_line(new))
        return new

    def process(self, state: CallState, turn: Turn, node: Node | None = None) -> CallState:
        """Run exactly one node handler and return the resulting state.

        ``node`` overrides ``state.current_node`` when the escalation policy
        has rerouted the turn.
        """
        new = state.copy()
        target = node or new.current_node
        if target is not new.current_node:
            _transition(new, target)
        self._handlers[target](new, turn)
        return new

    # ── Node handlers ──

    def _handle_greeting(self, state: CallState, turn: Turn):
        kind = _screening_kind(turn)
        if kind is not None and not turn.voicemail_detected:
            _screen(state, kind, turn.text)
            return
        if _exit_requested(state, turn):
            return
        intent = turn.intent
        if intent is Intent.UNAVAILABLE:
            _finish(state, Node.CALLBACK)
        elif intent is Intent.NEGATIVE:
            _finish(state, Node.POLITE_END)
        elif intent in (Intent.HOLD, Intent.TRANSFER):
            state.needs_transfer = True
            _say(state, dialogue.hold_line())
        elif intent is Intent.REPEAT:
            _say(state, dialogue.greeting_line(state))
        elif intent in (Intent.AFFIRMATIVE, Intent.PRICE):
            if state.needs_transfer:
                state.needs_transfer = False
                _say(state, dialogue.reintro_line(state))
            _advance(state, first=True)
        else:
            _say(state, dialogue.greeting_retry_line(state))

    def _handle_bot_screening(self, state: CallState, turn: Turn):
        if turn.voicemail_detected or turn.intent is Intent.VOICEMAIL:
            _finish(state, Node.VOICEMAIL)
            return
        kind = _screening_kind(turn)
        if kind is None:
            # a person picked up after the screener
            _transition(state, Node.GREETING)
            self._handle_greeting(state, turn)
        elif kind != "spam_rejection" and state.bot_screening_attempts >= BOT_SCREENING_MAX_ATTEMPTS:
            logger.info("[%s] Call screener still active after %d replies", state.call_id, state.bot_screening_attempts)
            _finish(state, Node.POLITE_END)
        else:
            _screen(state, kind, turn.text)

    def _handle_quote_request(self, state: CallState, turn: Turn):
        if _exit_requested(state, turn):
            return
        if turn.quotes:
            merge_quotes(state, turn.quotes)
            _advance(state)
            return

        part = state.current_part()
        if part is None:
            _advance(state)
            return

        intent = turn.intent
        if intent is Intent.REPEAT:
            _say(state, dialogue.repeat_part_line(part))
        elif intent in (Intent.HOLD, Intent.TRANSFER):
            _say(state, dialogue.take_your_time_line())
        elif intent in (Intent.NEGATIVE, Intent.UNAVAILABLE):
            # "No" to "do you have X?" is a negative answer for that part
            merge_quotes(state, [Quote(
                part_number=part.part_number,
                availability=Availability.UNAVAILABLE,
                notes=turn.text[:200],
            )])
            _advance(state)
        else:
            _say(state, dialogue.clarify_part_line(part))

    def _handle_negotiate(self, state: CallState, turn: Turn):
        if _exit_requested(state, turn):
            return
        over_budget = state.over_budget_parts()
        part = over_budget[0] if over_budget else None
        if turn.intent in (Intent.HOLD, Intent.TRANSFER):
            _say(state, dialogue.take_your_time_line())
            return

        if turn.quotes:
            merge_quotes(state, turn.quotes)
        if part is None or part not in state.over_budget_parts():
            # the supplier came down to budget (or withdrew the part)
            _advance(state)
            return

        rejected = (
            bool(turn.quotes)
            or turn.intent in (Intent.NEGATIVE, Intent.PRICE, Intent.UNAVAILABLE)
            or is_firm_price(turn.text)
        )
        if rejected:
            state.negotiation_attempts += 1
            if state.negotiation_attempts < state.max_negotiation_attempts:
                _say(state, dialogue.negotiation_line(part, retry=True))
            else:
                logger.info(
                    "[%s] Negotiation exhausted on %s after %d attempts",
                    state.call_id, part.part_number, state.negotiation_attempts,
                )
                _finish(state, Node.HUMAN_ESCALATION)
        elif turn.intent is Intent.AFFIRMATIVE:
            _say(state, dialogue.ask_for_number_line(part))
        elif turn.intent is Intent.REPEAT:
            _say(state, dialogue.negotiation_line(part))
        else:
            _say(state, dialogue.negotiation_line(part, retry=True))

    def _handle_misc_costs(self, state: CallState, turn: Turn):
        if _exit_requested(state, turn):
            return
        if turn.intent in (Intent.HOLD, Intent.TRANSFER):
            _say(state, dialogue.take_your_time_line())
            return
        if turn.intent is Intent.REPEAT:
            _say(state, dialogue.misc_costs_line())
            return
        state.shipping_cost = parse_price(turn.text)
        state.shipping_notes = turn.text[:200]
        _finish(state, Node.CONFIRMATION)

    def _handle_terminal(self, state: CallState, turn: Turn):
        # Reached only when the policy parked the call on a terminal node.
        if state.status is CallStatus.IN_PROGRESS:
            _finish(state, state.current_node)
