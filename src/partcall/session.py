import copy
import logging
import re
import time
from dataclasses import dataclass, field

from partcall.states import Availability, CallStatus, NextAction, Node

logger = logging.getLogger(__name__)

DEFAULT_MAX_NEGOTIATION_ATTEMPTS = 2
DEFAULT_ORGANIZATION_NAME = "our company"
DEFAULT_QUOTE_REFERENCE = "QR-UNKNOWN"

# Marker line item meaning "also ask about shipping/freight"; never quoted
MISC_COSTS_PART = "MISC-COSTS"


class InvalidCallPayload(ValueError):
    """The call_started payload cannot produce a usable CallState."""


@dataclass
class Part:
    part_number: str
    description: str = ""
    quantity: int = 1
    budget_max: float | None = None

    def to_dict(self) -> dict:
        data = {
            "partNumber": self.part_number,
            "description": self.description,
            "quantity": self.quantity,
        }
        if self.budget_max is not None:
            data["budgetMax"] = self.budget_max
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Part":
        budget = data.get("budgetMax")
        return cls(
            part_number=str(data["partNumber"]),
            description=data.get("description", "") or "",
            quantity=int(data.get("quantity", 1) or 1),
            budget_max=float(budget) if budget is not None else None,
        )


@dataclass
class Quote:
    part_number: str
    availability: Availability = Availability.IN_STOCK
    price: float | None = None
    lead_time_days: int | None = None
    notes: str = ""

    def to_dict(self) -> dict:
        data = {
            "partNumber": self.part_number,
            "availability": self.availability.value,
        }
        if self.price is not None:
            data["price"] = self.price
        if self.lead_time_days is not None:
            data["leadTimeDays"] = self.lead_time_days
        if self.notes:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Quote":
        price = data.get("price")
        lead = data.get("leadTimeDays")
        return cls(
            part_number=str(data["partNumber"]),
            availability=Availability(data.get("availability", "in_stock")),
            price=float(price) if price is not None else None,
            lead_time_days=int(lead) if lead is not None else None,
            notes=data.get("notes", "") or "",
        )


@dataclass
class Message:
    speaker: str  # "ai" | "supplier"
    text: str
    timestamp: float
    node: str = ""

    def to_dict(self) -> dict:
        return {
            "speaker": self.speaker,
            "text": self.text,
            "timestamp": self.timestamp,
            "node": self.node,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            speaker=data["speaker"],
            text=data.get("text", ""),
            timestamp=float(data.get("timestamp", 0.0)),
            node=data.get("node", ""),
        )


@dataclass
class CallState:
    call_id: str

    # Identity
    quote_request_id: str = ""
    supplier_id: str = ""
    supplier_name: str = ""
    supplier_phone: str = ""
    organization_id: str = ""
    caller_id: str = ""
    organization_name: str = DEFAULT_ORGANIZATION_NAME
    quote_reference: str = DEFAULT_QUOTE_REFERENCE
    callback_number: str = ""

    # Request payload
    parts: list = field(default_factory=list)
    custom_context: str = ""
    custom_instructions: str = ""

    # Progress
    current_node: Node = Node.GREETING
    conversation_history: list = field(default_factory=list)

    # Negotiation / clarification
    negotiation_attempts: int = 0
    max_negotiation_attempts: int = DEFAULT_MAX_NEGOTIATION_ATTEMPTS
    clarification_attempts: int = 0

    # Control flags
    needs_transfer: bool = False
    needs_human_escalation: bool = False
    bot_screening_attempts: int = 0
    has_misc_costs: bool = False
    misc_costs_asked: bool = False

    # Results
    quotes: list = field(default_factory=list)
    shipping_cost: float | None = None
    shipping_notes: str = ""

    # Outcome
    status: CallStatus = CallStatus.IN_PROGRESS
    outcome: str = ""
    next_action: NextAction = NextAction.NONE

    # Metadata
    turn_count: int = 0
    started_at: float = 0.0
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def copy(self) -> "CallState":
        return copy.deepcopy(self)

    # ── Parts and quotes ──

    def part(self, part_number: str) -> Part | None:
        for p in self.parts:
            if p.part_number == part_number:
                return p
        return None

    def quote_for(self, part_number: str) -> Quote | None:
        for q in self.quotes:
            if q.part_number == part_number:
                return q
        return None

    def pending_parts(self) -> list[Part]:
        """Parts in request order that have no recorded quote yet."""
        quoted = {q.part_number for q in self.quotes}
        return [p for p in self.parts if p.part_number not in quoted]

    def current_part(self) -> Part | None:
        pending = self.pending_parts()
        return pending[0] if pending else None

    def over_budget_parts(self) -> list[Part]:
        """Parts whose latest quoted price exceeds their budget ceiling."""
        result = []
        for p in self.parts:
            q = self.quote_for(p.part_number)
            if p.budget_max is None or q is None or q.price is None:
                continue
            if q.price > p.budget_max:
                result.append(p)
        return result

    # ── Conversation history ──

    def append_message(self, speaker: str, text: str, node: str = "") -> Message:
        now = time.time()
        if self.conversation_history:
            now = max(now, self.conversation_history[-1].timestamp)
        msg = Message(speaker=speaker, text=text, timestamp=now, node=node or self.current_node.value)
        self.conversation_history.append(msg)
        return msg

    def last_text(self, speaker: str) -> str:
        for msg in reversed(self.conversation_history):
            if msg.speaker == speaker:
                return msg.text
        return ""

    def last_ai_text(self) -> str:
        return self.last_text("ai")

    def ai_lines_since(self, index: int) -> list[str]:
        return [m.text for m in self.conversation_history[index:] if m.speaker == "ai"]

    # ── Serialisation ──

    def to_dict(self) -> dict:
        return {
            "callId": self.call_id,
            "quoteRequestId": self.quote_request_id,
            "supplierId": self.supplier_id,
            "supplierName": self.supplier_name,
            "supplierPhone": self.supplier_phone,
            "organizationId": self.organization_id,
            "callerId": self.caller_id,
            "organizationName": self.organization_name,
            "quoteReference": self.quote_reference,
            "callbackNumber": self.callback_number,
            "parts": [p.to_dict() for p in self.parts],
            "customContext": self.custom_context,
            "customInstructions": self.custom_instructions,
            "currentNode": self.current_node.value,
            "conversationHistory": [m.to_dict() for m in self.conversation_history],
            "negotiationAttempts": self.negotiation_attempts,
            "maxNegotiationAttempts": self.max_negotiation_attempts,
            "clarificationAttempts": self.clarification_attempts,
            "needsTransfer": self.needs_transfer,
            "needsHumanEscalation": self.needs_human_escalation,
            "botScreeningAttempts": self.bot_screening_attempts,
            "hasMiscCosts": self.has_misc_costs,
            "miscCostsAsked": self.misc_costs_asked,
            "quotes": [q.to_dict() for q in self.quotes],
            "shippingCost": self.shipping_cost,
            "shippingNotes": self.shipping_notes,
            "status": self.status.value,
            "outcome": self.outcome,
            "nextAction": self.next_action.value,
            "turnCount": self.turn_count,
            "startedAt": self.started_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CallState":
        shipping = data.get("shippingCost")
        return cls(
            call_id=data["callId"],
            quote_request_id=data.get("quoteRequestId", ""),
            supplier_id=data.get("supplierId", ""),
            supplier_name=data.get("supplierName", ""),
            supplier_phone=data.get("supplierPhone", ""),
            organization_id=data.get("organizationId", ""),
            caller_id=data.get("callerId", ""),
            organization_name=data.get("organizationName", DEFAULT_ORGANIZATION_NAME),
            quote_reference=data.get("quoteReference", DEFAULT_QUOTE_REFERENCE),
            callback_number=data.get("callbackNumber", ""),
            parts=[Part.from_dict(p) for p in data.get("parts", [])],
            custom_context=data.get("customContext", ""),
            custom_instructions=data.get("customInstructions", ""),
            current_node=Node(data.get("currentNode", Node.GREETING.value)),
            conversation_history=[Message.from_dict(m) for m in data.get("conversationHistory", [])],
            negotiation_attempts=int(data.get("negotiationAttempts", 0)),
            max_negotiation_attempts=int(data.get("maxNegotiationAttempts", DEFAULT_MAX_NEGOTIATION_ATTEMPTS)),
            clarification_attempts=int(data.get("clarificationAttempts", 0)),
            needs_transfer=bool(data.get("needsTransfer", False)),
            needs_human_escalation=bool(data.get("needsHumanEscalation", False)),
            bot_screening_attempts=int(data.get("botScreeningAttempts", 0)),
            has_misc_costs=bool(data.get("hasMiscCosts", False)),
            misc_costs_asked=bool(data.get("miscCostsAsked", False)),
            quotes=[Quote.from_dict(q) for q in data.get("quotes", [])],
            shipping_cost=float(shipping) if shipping is not None else None,
            shipping_notes=data.get("shippingNotes", "") or "",
            status=CallStatus(data.get("status", CallStatus.IN_PROGRESS.value)),
            outcome=data.get("outcome", "") or "",
            next_action=NextAction(data.get("nextAction", NextAction.NONE.value)),
            turn_count=int(data.get("turnCount", 0)),
            started_at=float(data.get("startedAt", 0.0)),
            version=int(data.get("version", 0)),
        )


def parse_context_values(custom_context: str | None) -> tuple[str, str]:
    """Pull the organisation name and quote reference out of the background text.

    The job payload carries lines like "Company: Acme Rentals" and
    "Quote Request: QR-02-2026-0009".
    """
    if not custom_context:
        return DEFAULT_ORGANIZATION_NAME, DEFAULT_QUOTE_REFERENCE

    company = re.search(r"Company:\s*(.+?)(?:\n|$)", custom_context, re.IGNORECASE)
    reference = re.search(r"Quote Request:\s*(#?[A-Z0-9-]+)(?:\n|$)", custom_context, re.IGNORECASE)
    organization_name = company.group(1).strip() if company else DEFAULT_ORGANIZATION_NAME
    quote_reference = reference.group(1).strip() if reference else DEFAULT_QUOTE_REFERENCE
    return organization_name or DEFAULT_ORGANIZATION_NAME, quote_reference or DEFAULT_QUOTE_REFERENCE


def _parse_parts(raw_parts) -> list[Part]:
    if not isinstance(raw_parts, list) or not raw_parts:
        raise InvalidCallPayload("parts must be a non-empty list")

    parts = []
    seen = set()
    for raw in raw_parts:
        if not isinstance(raw, dict) or not str(raw.get("partNumber", "")).strip():
            raise InvalidCallPayload(f"part is missing partNumber: {raw!r}")
        try:
            part = Part.from_dict({**raw, "partNumber": str(raw["partNumber"]).strip()})
        except (TypeError, ValueError) as e:
            raise InvalidCallPayload(f"invalid part {raw.get('partNumber')}: {e}") from e
        if part.quantity < 1:
            raise InvalidCallPayload(f"quantity must be positive for {part.part_number}")
        if part.budget_max is not None and part.budget_max <= 0:
            raise InvalidCallPayload(f"budgetMax must be positive for {part.part_number}")
        if part.part_number in seen:
            raise InvalidCallPayload(f"duplicate part number {part.part_number}")
        seen.add(part.part_number)
        parts.append(part)
    return parts


def initialize_call_state(
    payload: dict,
    call_id: str = "",
    max_negotiation_attempts: int = DEFAULT_MAX_NEGOTIATION_ATTEMPTS,
    callback_number: str = "",
) -> CallState:
    """Build the initial CallState from the originating job's payload."""
    if not isinstance(payload, dict):
        raise InvalidCallPayload("payload must be an object")

    call_id = call_id or str(payload.get("callId", "")).strip()
    if not call_id:
        raise InvalidCallPayload("callId is required")

    raw_parts = payload.get("parts")
    has_misc_costs = bool(payload.get("hasMiscCosts", False))
    if isinstance(raw_parts, list):
        line_items = [
            p for p in raw_parts
            if not (isinstance(p, dict) and str(p.get("partNumber", "")).strip().upper() == MISC_COSTS_PART)
        ]
        has_misc_costs = has_misc_costs or len(line_items) != len(raw_parts)
        raw_parts = line_items
    parts = _parse_parts(raw_parts)
    custom_context = payload.get("customContext") or ""
    organization_name, quote_reference = parse_context_values(custom_context)

    max_attempts = payload.get("maxNegotiationAttempts", max_negotiation_attempts)
    try:
        max_attempts = int(max_attempts)
    except (TypeError, ValueError) as e:
        raise InvalidCallPayload(f"invalid maxNegotiationAttempts: {max_attempts!r}") from e
    if max_attempts < 0:
        raise InvalidCallPayload("maxNegotiationAttempts must not be negative")

    state = CallState(
        call_id=call_id,
        quote_request_id=str(payload.get("quoteRequestId", "")),
        supplier_id=str(payload.get("supplierId", "")),
        supplier_name=payload.get("supplierName", "") or "",
        supplier_phone=payload.get("supplierPhone", "") or "",
        organization_id=str(payload.get("organizationId", "")),
        caller_id=str(payload.get("callerId", "")),
        organization_name=payload.get("organizationName") or organization_name,
        quote_reference=payload.get("quoteReference") or quote_reference,
        callback_number=payload.get("callbackNumber") or callback_number,
        parts=parts,
        custom_context=custom_context,
        custom_instructions=payload.get("customInstructions") or "",
        max_negotiation_attempts=max_attempts,
        has_misc_costs=has_misc_costs,
        started_at=time.time(),
    )
    logger.info(
        "Initialized call %s: supplier=%s parts=%d",
        call_id, state.supplier_name, len(parts),
    )
    return state
