"""Every line the agent speaks.

Node functions never build sentences inline; they call into this module so
that all wording lives in one place and nothing internal (errors, enum
names, IDs other than the quote reference) can reach the supplier.
"""

from partcall.session import CallState, Part, Quote
from partcall.states import Availability

PHONETIC = {
    "A": "Alpha", "B": "Bravo", "C": "Charlie", "D": "Delta", "E": "Echo",
    "F": "Foxtrot", "G": "Golf", "H": "Hotel", "I": "India", "J": "Juliet",
    "K": "Kilo", "L": "Lima", "M": "Mike", "N": "November", "O": "Oscar",
    "P": "Papa", "Q": "Quebec", "R": "Romeo", "S": "Sierra", "T": "Tango",
    "U": "Uniform", "V": "Victor", "W": "Whiskey", "X": "X-ray",
    "Y": "Yankee", "Z": "Zulu",
}

AVAILABILITY_SPOKEN = {
    Availability.IN_STOCK: "in stock",
    Availability.OUT_OF_STOCK: "out of stock",
    Availability.BACKORDER: "on backorder",
    Availability.UNAVAILABLE: "not available",
}


def format_part_number_for_speech(part_number: str) -> str:
    """Space out characters so TTS reads "1R-0750" as "1 R dash 0 7 5 0"."""
    spoken = []
    for ch in part_number.strip():
        if ch == "-":
            spoken.append("dash")
        elif ch == "/":
            spoken.append("slash")
        elif ch.isalnum():
            spoken.append(ch.upper())
    return " ".join(spoken)


def format_part_number_phonetic(part_number: str) -> str:
    spoken = []
    for ch in part_number.strip().upper():
        if ch in PHONETIC:
            spoken.append(f"{ch} as in {PHONETIC[ch]}")
        elif ch == "-":
            spoken.append("dash")
        elif ch.isdigit():
            spoken.append(ch)
    return ", ".join(spoken)


def describe_part_naturally(part: Part) -> str:
    description = part.description or "part"
    if part.quantity == 1:
        return f"a {description}"
    if part.quantity == 2:
        return f"a couple of {description}s"
    return f"{part.quantity} {description}s"


def _org_intro(state: CallState) -> str:
    return f" I'm calling from {state.organization_name}." if state.organization_name else ""


# --- greeting ---

def greeting_line(state: CallState) -> str:
    return f"Hi, good morning!{_org_intro(state)} Could I speak to someone in your parts department?"


def greeting_retry_line(state: CallState) -> str:
    return "Sorry, I'm looking for the parts department. Is this the right place for parts pricing?"


def hold_line() -> str:
    return "Sure, I'll hold. Thank you."


def reintro_line(state: CallState) -> str:
    return f"Hi there! Thanks for taking my call.{_org_intro(state)} I'm looking to get pricing on some parts."


# --- bot_screening ---

def screening_line(state: CallState, kind: str, captcha_answer: str | None = None) -> str:
    """Reply to an automated call screener."""
    if kind == "captcha" and captcha_answer is not None:
        return captcha_answer
    if kind == "urgency_check":
        return f"It's not urgent. This is {state.organization_name} calling the parts department for a quote."
    if kind == "spam_rejection":
        return "Understood, sorry to bother you. Goodbye."
    return f"Hi, this is {state.organization_name} calling with a parts inquiry for the parts department."


# --- quote_request ---

def part_request_line(state: CallState, part: Part, first: bool = False) -> str:
    part_num = format_part_number_for_speech(part.part_number)
    described = describe_part_naturally(part)
    if first:
        line = f"Great, thanks! The part number is... {part_num}. That's for {described}."
        remaining = len(state.pending_parts()) - 1
        if remaining > 0:
            line += f" I have {remaining} more after this one."
    else:
        line = f"Next one is... {part_num}. That's for {described}."
    return line + " Could you check the price and availability on that?"


def repeat_part_line(part: Part) -> str:
    phonetic = format_part_number_phonetic(part.part_number)
    return f"Sure, let me spell that out for you. {phonetic}. That's for the {part.description or 'part'}."


def clarify_part_line(part: Part) -> str:
    part_num = format_part_number_for_speech(part.part_number)
    return f"Sorry, I didn't quite catch that. Do you have a price and availability on {part_num}?"


def take_your_time_line() -> str:
    return "Sure, no problem! Take your time."


# --- negotiate ---

def negotiation_line(part: Part, retry: bool = False) -> str:
    part_num = format_part_number_for_speech(part.part_number)
    if retry:
        return f"I understand. What about on {part_num}, any room to come down on that one?"
    target = f" We were hoping to be closer to ${part.budget_max:.2f}." if part.budget_max else ""
    return f"The price on {part_num} is a bit higher than what we've been seeing.{target} Any flexibility there?"


def ask_for_number_line(part: Part) -> str:
    part_num = format_part_number_for_speech(part.part_number)
    return f"That's great, thank you. What price could you do on {part_num}?"


# --- misc_costs_inquiry ---

def misc_costs_line() -> str:
    return (
        "One more thing. Would the parts need to be shipped out, and if so, "
        "are there any freight or shipping costs we should know about?"
    )


# --- terminal nodes ---

def _quote_summary(quote: Quote) -> str:
    part_num = format_part_number_for_speech(quote.part_number)
    availability = AVAILABILITY_SPOKEN[quote.availability]
    if quote.price is None:
        return f"{part_num}, {availability}"
    summary = f"{part_num} at ${quote.price:.2f}, {availability}"
    if quote.lead_time_days:
        unit = "day" if quote.lead_time_days == 1 else "days"
        summary += f", {quote.lead_time_days} {unit} lead time"
    return summary


def confirmation_line(state: CallState) -> str:
    if not state.quotes:
        return "No problem. We'll send the details over by email. Thank you for your time!"
    summary = "; ".join(_quote_summary(q) for q in state.quotes)
    if state.shipping_cost:
        summary += f"; plus ${state.shipping_cost:.2f} for shipping"
    return f"Perfect. Just to confirm: {summary}. Thank you so much for your help, we'll follow up with a formal order."


def escalation_line(state: CallState) -> str:
    team = f"the team at {state.organization_name}" if state.organization_name else "our team"
    return (
        "I appreciate your patience. This one needs a few more details than I have in front of me. "
        f"I'll have someone from {team} call you back within the hour. Thank you!"
    )


def voicemail_line(state: CallState) -> str:
    supplier = state.supplier_name or "your company"
    callback = f" You can reach us at {state.callback_number}." if state.callback_number else ""
    return (
        f"Hi, this is a message for the parts team at {supplier}. "
        f"We're calling on behalf of {state.organization_name} to request pricing on some parts. "
        f"The quote reference is {state.quote_reference}.{callback} "
        "Please call us back, or we'll follow up by email with the full details. Thank you."
    )


def callback_line(state: CallState) -> str:
    return (
        f"Of course. The quote reference is {state.quote_reference}. "
        "We'll send you an email with the part details. Thank you!"
    )


def polite_end_line(state: CallState) -> str:
    if any(q.price is not None for q in state.quotes):
        return "Great! We'll send a formal quote request by email to finalize. Thanks so much for your help, have a great day!"
    return "I understand. Thank you for your time. Have a great day!"
