from partcall.session import Message

SPEAKER_LABELS = {"ai": "Agent", "supplier": "Supplier"}


def to_plain_text(history: list[Message]) -> str:
    """Render conversation history as "Agent: ..." / "Supplier: ..." lines.

    Empty supplier turns (silence delivered as a turn) are skipped.
    """
    if not history:
        return ""

    lines = []
    for msg in history:
        if not msg.text:
            continue
        label = SPEAKER_LABELS.get(msg.speaker, msg.speaker)
        lines.append(f"{label}: {msg.text}")
    return "\n".join(lines)


def to_json_array(history: list[Message]) -> list[dict]:
    """Structured transcript for the durable call record."""
    if not history:
        return []
    return [
        {"speaker": msg.speaker, "text": msg.text, "node": msg.node}
        for msg in history
        if msg.text
    ]


def to_timestamped_dump(
    history: list[Message],
    start_time: float,
    call_id: str,
    supplier: str,
    final_node: str,
) -> dict:
    """Build a timestamped transcript dump dict for structured logging.

    Timestamps are converted to relative seconds from call start.
    If start_time is 0, uses the first message's timestamp as base.
    """
    base_time = start_time
    if base_time <= 0 and history:
        base_time = history[0].timestamp

    entries = [
        {
            "t": round(msg.timestamp - base_time, 1),
            "speaker": msg.speaker,
            "node": msg.node,
            "text": msg.text,
        }
        for msg in history
    ]

    return {
        "call_id": call_id,
        "supplier": supplier,
        "final_node": final_node,
        "entries": entries,
    }
