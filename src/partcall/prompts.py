from partcall.session import CallState, Part
from partcall.states import Intent, Node

CLASSIFY_PROMPT = """You classify what a parts supplier just said on a phone call.
We are the caller, buying parts. The supplier is the person (or machine) who answered.

Return ONLY valid JSON: {"intent": "<one of the labels below>"}

LABELS
- affirmative: yes / speaking / go ahead / agrees to what we asked
- negative: no / not interested / declines / refuses to lower a price
- price: states a price, cost or quote for a part
- unavailable: says a part is out of stock, discontinued or not carried
- hold: asks us to wait while they check something
- transfer: is passing us to someone else (parts desk, colleague)
- voicemail: an answering machine or voicemail greeting, NOT a live person
- human_request: asks to speak to a real person or a manager, or asks if we are a robot
- callback: asks us to call back later or to send the request by email
- repeat: asks us to repeat or spell something
- screening: an automated call-screening assistant (asks our name and reason for calling,
  sets a math puzzle, asks whether it is urgent, or rejects the call)
- unknown: none of the above, or you cannot tell

RULES
- A live person saying "yes", "speaking" or "this is <name>" is never voicemail.
- If the utterance contains a price, prefer "price" over "affirmative" or "negative".
- Use "unknown" rather than guessing."""

NODE_HINTS = {
    Node.GREETING: "We just asked to be put through to the parts department.",
    Node.BOT_SCREENING: "An automated call screener answered and we just identified ourselves.",
    Node.QUOTE_REQUEST: "We just asked for price and availability on a part.",
    Node.NEGOTIATE: "We just asked whether there is any flexibility on a price.",
    Node.MISC_COSTS_INQUIRY: "We just asked whether shipping or freight costs apply.",
    Node.CONFIRMATION: "We just read the quotes back for confirmation.",
    Node.HUMAN_ESCALATION: "We just said a colleague will call back.",
    Node.VOICEMAIL: "We are leaving a voicemail.",
    Node.CALLBACK: "We just agreed to follow up by email.",
    Node.POLITE_END: "We are ending the call.",
}

EXTRACTION_PROMPT = """Extract parts quotes from what a supplier said on the phone.
Return ONLY valid JSON: {"quotes": [ ... ]}

Each quote:
- partNumber: MUST be one of the part numbers listed below, exactly as written.
- price: unit price in dollars as a number, or null if not stated.
- availability: one of "in_stock", "out_of_stock", "backorder", "unavailable".
- leadTimeDays: delivery or lead time in whole days as a number, or null.
- notes: anything else the supplier said about this part (short), or "".

If the supplier refers to "the first one", "the second one" or "the last one", map it to
the part at that position in the list. If the supplier does not name a part, the quote is
for the CURRENT PART. If nothing quotable was said, return {"quotes": []}.
Do not guess or fabricate values."""

VALID_INTENTS = {i.value for i in Intent}


def build_context(state: CallState) -> str:
    lines = []
    if state.supplier_name:
        lines.append(f"Supplier: {state.supplier_name}")
    lines.append(f"Conversation step: {NODE_HINTS.get(state.current_node, state.current_node.value)}")
    current = state.current_part()
    if current and state.current_node.is_quoting:
        lines.append(f"Current part: {current.part_number} ({current.description})")
    recent = state.conversation_history[-4:]
    if recent:
        lines.append("Recent conversation:")
        for msg in recent:
            who = "Us" if msg.speaker == "ai" else "Supplier"
            lines.append(f"  {who}: {msg.text}")
    return "\n".join(lines)


def format_parts_list(parts: list[Part], current: Part | None = None) -> str:
    lines = []
    for i, part in enumerate(parts, start=1):
        line = f"{i}. {part.part_number}: {part.description} (qty {part.quantity})"
        if current is not None and part.part_number == current.part_number:
            line += "  <- CURRENT PART"
        lines.append(line)
    return "PARTS:\n" + "\n".join(lines)
