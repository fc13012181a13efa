from partcall.policy import (
    CLARIFICATION_LIMIT,
    MAX_TURNS_PER_CALL,
    apply_policy,
    escalation_reason,
    finalize_abandoned,
    select_node,
)
from partcall.session import Quote
from partcall.state_machine import Turn
from partcall.states import CallStatus, Intent, NextAction, Node


class TestSelectNode:
    def test_defaults_to_current(self, state):
        state.current_node = Node.QUOTE_REQUEST
        assert select_node(state, Turn(text="$40", intent=Intent.PRICE)) == Node.QUOTE_REQUEST

    def test_voicemail_overrides(self, state):
        state.current_node = Node.NEGOTIATE
        assert select_node(state, Turn(voicemail_detected=True)) == Node.VOICEMAIL
        assert select_node(state, Turn(intent=Intent.VOICEMAIL)) == Node.VOICEMAIL

    def test_clarification_limit(self, state):
        state.clarification_attempts = CLARIFICATION_LIMIT
        assert select_node(state, Turn(text="huh", intent=Intent.AFFIRMATIVE)) == Node.HUMAN_ESCALATION


class TestApplyPolicy:
    def test_no_reason_no_change(self, state):
        assert escalation_reason(state) == ""
        assert apply_policy(state).current_node == Node.GREETING

    def test_clarification_forces_escalation(self, state):
        state.current_node = Node.QUOTE_REQUEST
        state.clarification_attempts = CLARIFICATION_LIMIT
        assert apply_policy(state).current_node == Node.HUMAN_ESCALATION
        # only the node moves; the escalation handler settles the outcome
        assert state.status == CallStatus.IN_PROGRESS

    def test_negotiation_exhausted_over_budget(self, budget_state):
        budget_state.current_node = Node.NEGOTIATE
        budget_state.quotes.append(Quote(part_number="1R-0750", price=500.0))
        budget_state.negotiation_attempts = 2
        assert "negotiation" in escalation_reason(budget_state)
        assert apply_policy(budget_state).current_node == Node.HUMAN_ESCALATION

    def test_turn_limit(self, state):
        state.turn_count = MAX_TURNS_PER_CALL + 1
        assert "turn limit" in escalation_reason(state)

    def test_terminal_calls_untouched(self, state):
        state.current_node = Node.CONFIRMATION
        state.status = CallStatus.COMPLETED
        state.clarification_attempts = 5
        assert apply_policy(state).current_node == Node.CONFIRMATION


class TestFinalizeAbandoned:
    def test_hung_up(self, state):
        state.current_node = Node.QUOTE_REQUEST
        final = finalize_abandoned(state)
        assert final.status == CallStatus.FAILED
        assert final.outcome == "HUNG_UP"
        assert final.next_action == NextAction.EMAIL_FALLBACK

    def test_pending_escalation(self, state):
        state.current_node = Node.HUMAN_ESCALATION
        final = finalize_abandoned(state)
        assert final.status == CallStatus.ESCALATED
        assert final.needs_human_escalation
        assert final.next_action == NextAction.HUMAN_FOLLOWUP

    def test_terminal_kept(self, state):
        state.status = CallStatus.COMPLETED
        state.outcome = "DECLINED"
        assert finalize_abandoned(state).outcome == "DECLINED"
