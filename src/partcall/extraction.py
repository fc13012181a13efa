import asyncio
import logging
import re

from partcall.session import CallState, Part, Quote
from partcall.states import Availability
from partcall.validation import (
    ORDINAL_RE,
    ORDINALS,
    normalize_part_number,
    parse_availability,
    parse_lead_time_days,
    parse_price,
    part_number_pattern,
)

logger = logging.getLogger(__name__)

# Clause boundaries: commas (not thousands separators), semicolons, sentence
# stops (not decimal points), "and", "then".
_CLAUSE_SPLIT_RE = re.compile(r",(?!\d{3}\b)|;|\.(?!\d)|\band\b|\bthen\b|\bplus\b", re.IGNORECASE)


async def extract_quotes(
    utterance: str,
    parts: list[Part],
    llm=None,
    current: Part | None = None,
    timeout: float = 1.5,
) -> list[Quote]:
    """Turn supplier speech into per-part quotes.

    Uses the language model when one is configured and falls back to the
    heuristic extractor on any model failure or timeout. Returns an empty
    list when nothing quotable was said; callers re-prompt in that case.
    """
    if not utterance or not utterance.strip() or not parts:
        return []

    if llm is not None:
        try:
            raw = await asyncio.wait_for(
                llm.extract_quotes(utterance, parts, current, timeout=timeout),
                timeout=timeout,
            )
            return validate_llm_quotes(raw, parts, current)
        except Exception as e:
            logger.warning("LLM quote extraction failed, using heuristic: %s", str(e) or type(e).__name__)

    return extract_quotes_heuristic(utterance, parts, current)


def _resolve_part(value, parts: list[Part], current: Part | None) -> Part | None:
    wanted = normalize_part_number(str(value or ""))
    if not wanted:
        return current if current is not None else (parts[0] if len(parts) == 1 else None)
    for part in parts:
        if normalize_part_number(part.part_number) == wanted:
            return part
    return None


def validate_llm_quotes(raw: list[dict], parts: list[Part], current: Part | None = None) -> list[Quote]:
    """Keep only well-formed quotes for known parts."""
    quotes = []
    for item in raw:
        part = _resolve_part(item.get("partNumber"), parts, current)
        if part is None:
            logger.warning("LLM quoted unknown part %r, dropping", item.get("partNumber"))
            continue

        price = item.get("price")
        try:
            price = float(price) if price is not None else None
        except (TypeError, ValueError):
            price = None
        if price is not None and price <= 0:
            price = None

        try:
            availability = Availability(str(item.get("availability", "")).strip().lower())
        except ValueError:
            if price is None:
                continue
            availability = Availability.IN_STOCK

        lead = item.get("leadTimeDays")
        try:
            lead = int(lead) if lead is not None else None
        except (TypeError, ValueError):
            lead = None
        if lead is not None and lead < 0:
            lead = None

        quotes.append(Quote(
            part_number=part.part_number,
            availability=availability,
            price=price,
            lead_time_days=lead,
            notes=str(item.get("notes") or "")[:200],
        ))
    return quotes


def _find_mentions(text: str, parts: list[Part]) -> list[tuple[int, int, Part]]:
    mentions = []
    for part in parts:
        for m in part_number_pattern(part.part_number).finditer(text):
            mentions.append((m.start(), m.end(), part))
    for m in ORDINAL_RE.finditer(text):
        index = ORDINALS[m.group(1).lower()]
        if -len(parts) <= index < len(parts):
            mentions.append((m.start(), m.end(), parts[index]))
    mentions.sort(key=lambda x: x[0])
    return mentions


def _mask(text: str, mentions: list[tuple[int, int, Part]], offset: int = 0) -> str:
    """Blank out part-number mentions so their digits are never read as prices."""
    chars = list(text)
    for start, end, _ in mentions:
        for i in range(max(start - offset, 0), min(end - offset, len(chars))):
            chars[i] = " "
    return "".join(chars)


def _quote_from_text(part: Part, text: str) -> Quote | None:
    price = parse_price(text)
    availability = parse_availability(text)
    if price is None and availability is None:
        return None
    if availability is None:
        availability = Availability.IN_STOCK
    lead = None
    if availability in (Availability.IN_STOCK, Availability.BACKORDER):
        lead = parse_lead_time_days(text)
    return Quote(
        part_number=part.part_number,
        availability=availability,
        price=price,
        lead_time_days=lead,
        notes="",
    )


def extract_quotes_heuristic(utterance: str, parts: list[Part], current: Part | None = None) -> list[Quote]:
    """Dependency-free quote extraction.

    With no part named, everything said is about the current part (or the
    only part). When parts are named by number or by position ("the second
    one"), each clause is attributed to the part named in it, or to the
    part named most recently before it.
    """
    if not utterance or not parts:
        return []

    mentions = _find_mentions(utterance, parts)
    if not mentions:
        target = current if current is not None else (parts[0] if len(parts) == 1 else None)
        if target is None:
            return []
        quote = _quote_from_text(target, utterance)
        return [quote] if quote else []

    # Split into clauses, keeping offsets so mentions can be located.
    clauses = []
    pos = 0
    for m in _CLAUSE_SPLIT_RE.finditer(utterance):
        clauses.append((pos, utterance[pos:m.start()]))
        pos = m.end()
    clauses.append((pos, utterance[pos:]))

    text_by_part: dict[str, list[str]] = {}
    order: list[Part] = []
    pending_orphans: list[str] = []
    last_part = None
    for start, clause in clauses:
        end = start + len(clause)
        inside = [mm for mm in mentions if start <= mm[0] < end]
        masked = _mask(clause, inside, offset=start)
        if inside:
            last_part = inside[-1][2]
            if last_part.part_number not in text_by_part:
                text_by_part[last_part.part_number] = []
                order.append(last_part)
            # orphan clauses before the first mention belong to it
            text_by_part[last_part.part_number].extend(pending_orphans + [masked])
            pending_orphans = []
        elif last_part is not None:
            text_by_part[last_part.part_number].append(masked)
        else:
            pending_orphans.append(masked)

    quotes = []
    for part in order:
        quote = _quote_from_text(part, " , ".join(text_by_part[part.part_number]))
        if quote:
            quotes.append(quote)
    return quotes


def merge_quotes(state: CallState, quotes: list[Quote]) -> list[str]:
    """Record quotes on the state, newest statement wins per part.

    Returns the part numbers that were updated. Quotes for parts that are not
    on the request are dropped.
    """
    updated = []
    for quote in quotes:
        if state.part(quote.part_number) is None:
            logger.warning("Dropping quote for unknown part %s", quote.part_number)
            continue
        for i, existing in enumerate(state.quotes):
            if existing.part_number == quote.part_number:
                state.quotes[i] = quote
                break
        else:
            state.quotes.append(quote)
        updated.append(quote.part_number)
    return updated
