import logging
import re

from partcall.states import Intent
from partcall.validation import (
    match_any_keyword,
    normalize_spoken_numbers,
    parse_price,
    FIRM_PRICE_KEYWORDS,
    OUT_OF_STOCK_KEYWORDS,
    UNAVAILABLE_KEYWORDS,
)

logger = logging.getLogger(__name__)


# --- Keyword maps for rule-based intent detection ---

VOICEMAIL_KEYWORDS = {
    "leave a message", "leave your message", "after the tone", "after the beep",
    "voicemail", "voice mail", "mailbox", "record your message",
    "not available to take your call", "can't come to the phone",
    "unable to take your call", "please leave your name",
}

HUMAN_REQUEST_KEYWORDS = {
    "real person", "a human", "speak to a person", "talk to a person",
    "speak to someone", "talk to someone real", "your manager", "a manager",
    "supervisor", "are you a robot", "is this a robot", "is this automated",
    "are you a computer", "are you ai", "are you an ai",
}

CALLBACK_KEYWORDS = {
    "call back", "call you back", "call me back", "callback", "call later",
    "try again later", "try back", "busy right now", "send an email",
    "send me an email", "email me", "email it", "email us", "email that",
    "send me the list", "put it in writing",
}

TRANSFER_KEYWORDS = {
    "transfer you", "let me transfer", "connect you", "put you through",
    "get someone", "let me grab someone", "parts guy", "parts counter",
}

HOLD_KEYWORDS = {
    "hold on", "hold please", "please hold", "one moment", "one second",
    "just a moment", "just a second", "just a sec", "give me a minute",
    "give me a second", "give me a sec", "let me check", "let me look",
    "let me see", "let me pull", "bear with me", "hang on", "hang tight",
    "checking", "looking it up", "pulling it up",
}

REPEAT_KEYWORDS = {
    "repeat", "say that again", "come again", "didn't catch", "did not catch",
    "what was that", "pardon", "one more time", "spell", "say again",
    "what part", "which part", "what number",
}

NEGATIVE_KEYWORDS = {
    "no", "nope", "nah", "not interested", "no thanks", "no thank you",
    "wrong number", "can't help", "cannot help", "we don't", "not really",
    "not today", "won't",
}

# Phrases that contain "no" without declining anything
_BENIGN_NEGATIVE_PHRASES = re.compile(
    r"\b(?:no problem|no worries|not a problem|no trouble)\b", re.IGNORECASE
)

AFFIRMATIVE_KEYWORDS = {
    "yes", "yeah", "yep", "yup", "sure", "speaking", "this is", "go ahead",
    "okay", "ok", "absolutely", "of course", "how can i help", "what can i do",
    "what do you need", "what are you looking for", "correct", "that's right",
    "sounds good", "deal", "that works", "alright", "all right",
    "you got it", "i can help", "can help", "parts department", "you've got",
    "go for it", "shoot", "fire away", "what've you got", "no problem",
    "no worries", "we can do that", "agreed", "i can do that",
}

# Words that mean a live person picked up, used to overrule a voicemail verdict
ENGAGEMENT_KEYWORDS = {
    "yes", "yeah", "speaking", "this is", "how can i help", "can i help",
    "go ahead", "what do you need",
}

# Automated call screeners, checked in this order (a rejection also
# mentions "the person you are calling").
SCREENING_PATTERNS = [
    ("spam_rejection", re.compile(
        r"remove (?:this|my|our) number|\bdo not call\b|\bdon't call\b|stop calling|"
        r"call has been rejected|does not wish to (?:speak|talk)|not accepting calls",
        re.IGNORECASE,
    )),
    ("captcha", re.compile(
        r"\bwhat is \d+\s*(?:plus|\+|minus|-|times|x|multiplied by|divided by|added to)\s*\d+|"
        r"solve (?:this|the|a) puzzle|verify (?:that )?you(?:'re| are) (?:a )?human|"
        r"prove (?:that )?you(?:'re| are) not a robot",
        re.IGNORECASE,
    )),
    ("call_screen", re.compile(
        r"screening (?:service|calls|your call)|person you(?:'re| are) calling is|"
        r"google assistant|say your name|state your name|reason for (?:your )?call",
        re.IGNORECASE,
    )),
    ("urgency_check", re.compile(
        r"\bis (?:this|it)(?: call)? urgent\b|\burgently\b|\bis (?:this|it) an emergency\b|\bcan (?:this|it) wait\b",
        re.IGNORECASE,
    )),
]


def detect_bot_screening(text: str) -> str | None:
    """Kind of automated screener that answered, or None for a person."""
    if not text:
        return None
    normalized = normalize_spoken_numbers(text)
    for kind, pattern in SCREENING_PATTERNS:
        if pattern.search(normalized):
            return kind
    return None


def classify_rules(text: str) -> Intent:
    """Conservative keyword classifier used when the language model is unavailable.

    Checks run from the signals that must never be missed (voicemail, a
    call screener, a request for a person, a stated price) down to plain
    yes/no.
    """
    if not text or not text.strip():
        return Intent.UNKNOWN

    if match_any_keyword(text, VOICEMAIL_KEYWORDS):
        return Intent.VOICEMAIL
    if detect_bot_screening(text) is not None:
        return Intent.SCREENING
    if match_any_keyword(text, HUMAN_REQUEST_KEYWORDS):
        return Intent.HUMAN_REQUEST
    if parse_price(text) is not None:
        return Intent.PRICE
    if match_any_keyword(text, CALLBACK_KEYWORDS):
        return Intent.CALLBACK
    if match_any_keyword(text, TRANSFER_KEYWORDS):
        return Intent.TRANSFER
    if match_any_keyword(text, HOLD_KEYWORDS):
        return Intent.HOLD
    if match_any_keyword(text, REPEAT_KEYWORDS) or text.strip().lower() in {"sorry?", "what?", "huh?"}:
        return Intent.REPEAT
    if match_any_keyword(text, UNAVAILABLE_KEYWORDS | OUT_OF_STOCK_KEYWORDS):
        return Intent.UNAVAILABLE

    stripped = _BENIGN_NEGATIVE_PHRASES.sub(" ", text)
    if match_any_keyword(stripped, NEGATIVE_KEYWORDS | FIRM_PRICE_KEYWORDS):
        return Intent.NEGATIVE
    if match_any_keyword(text, AFFIRMATIVE_KEYWORDS):
        return Intent.AFFIRMATIVE
    return Intent.UNKNOWN


def guard_voicemail(intent: Intent, text: str) -> Intent:
    """Downgrade a voicemail verdict when the utterance shows a live person."""
    if intent is Intent.VOICEMAIL and not match_any_keyword(text, VOICEMAIL_KEYWORDS):
        if match_any_keyword(text, ENGAGEMENT_KEYWORDS):
            logger.warning("Voicemail verdict overruled by engagement words: %s", text[:80])
            return Intent.AFFIRMATIVE
    return intent


def is_actionable(intent: Intent) -> bool:
    return intent is not Intent.UNKNOWN
