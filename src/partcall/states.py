from enum import Enum

QUOTING_NODES = {"quote_request", "negotiate"}
TERMINAL_NODES = {
    "confirmation", "human_escalation", "voicemail",
    "callback", "polite_end",
}


class Node(Enum):
    GREETING = "greeting"
    BOT_SCREENING = "bot_screening"
    QUOTE_REQUEST = "quote_request"
    NEGOTIATE = "negotiate"
    MISC_COSTS_INQUIRY = "misc_costs_inquiry"
    CONFIRMATION = "confirmation"
    HUMAN_ESCALATION = "human_escalation"
    VOICEMAIL = "voicemail"
    CALLBACK = "callback"
    POLITE_END = "polite_end"

    @property
    def is_quoting(self) -> bool:
        return self.value in QUOTING_NODES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_NODES


class CallStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"

    @property
    def is_terminal(self) -> bool:
        return self is not CallStatus.IN_PROGRESS


class Availability(Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    BACKORDER = "backorder"
    UNAVAILABLE = "unavailable"


class NextAction(Enum):
    NONE = "none"
    HUMAN_FOLLOWUP = "human_followup"
    EMAIL_FALLBACK = "email_fallback"


class Intent(Enum):
    """What a supplier utterance means for the conversation."""

    AFFIRMATIVE = "affirmative"
    NEGATIVE = "negative"
    PRICE = "price"
    UNAVAILABLE = "unavailable"
    HOLD = "hold"
    TRANSFER = "transfer"
    VOICEMAIL = "voicemail"
    HUMAN_REQUEST = "human_request"
    CALLBACK = "callback"
    REPEAT = "repeat"
    SCREENING = "screening"
    UNKNOWN = "unknown"
