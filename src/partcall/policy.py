"""Escalation and fallback rules applied around every node handler.

The rules are node-agnostic so that no combination of supplier replies can
keep a call looping: they only ever move ``current_node`` and leave the
dialogue to the node that is routed to.
"""

import logging

from partcall.session import CallState
from partcall.states import CallStatus, Intent, NextAction, Node

logger = logging.getLogger(__name__)

CLARIFICATION_LIMIT = 3
MAX_TURNS_PER_CALL = 30


def select_node(state: CallState, turn) -> Node:
    """Pick the node that handles this turn.

    Voicemail detection wins over everything; a call that has run out of
    clarification attempts goes to a human whatever the model says now.
    """
    if turn.voicemail_detected or turn.intent is Intent.VOICEMAIL:
        if state.current_node is not Node.VOICEMAIL:
            logger.info("[%s] Voicemail detected in %s", state.call_id, state.current_node.value)
        return Node.VOICEMAIL
    if state.clarification_attempts >= CLARIFICATION_LIMIT:
        return Node.HUMAN_ESCALATION
    return state.current_node


def escalation_reason(state: CallState) -> str:
    """Why the call must go to a human now, or "" if it need not."""
    if state.clarification_attempts >= CLARIFICATION_LIMIT:
        return f"clarification attempts reached {state.clarification_attempts}"
    if state.negotiation_attempts >= state.max_negotiation_attempts and state.over_budget_parts():
        return "negotiation attempts exhausted with quote over budget"
    if state.turn_count > MAX_TURNS_PER_CALL:
        return f"turn limit exceeded ({state.turn_count})"
    return ""


def apply_policy(state: CallState) -> CallState:
    """Post-node check; runs before the state is persisted."""
    if state.is_terminal or state.current_node.is_terminal:
        return state
    reason = escalation_reason(state)
    if reason:
        logger.warning("[%s] Forcing human_escalation: %s", state.call_id, reason)
        state.current_node = Node.HUMAN_ESCALATION
    return state


def finalize_abandoned(state: CallState) -> CallState:
    """Settle a call that ended (hangup, transport timeout) while still in progress."""
    if state.is_terminal:
        return state
    if state.current_node is Node.HUMAN_ESCALATION or state.needs_human_escalation:
        state.status = CallStatus.ESCALATED
        state.needs_human_escalation = True
        state.next_action = NextAction.HUMAN_FOLLOWUP
    else:
        state.status = CallStatus.FAILED
        state.outcome = state.outcome or "HUNG_UP"
        state.next_action = NextAction.EMAIL_FALLBACK
    logger.info(
        "[%s] Call ended in %s, finalised as %s",
        state.call_id, state.current_node.value, state.status.value,
    )
    return state
