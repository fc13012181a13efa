import re

from partcall.states import Availability


def match_any_keyword(text: str, keywords: set[str]) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf'\b{re.escape(kw)}\b', lower) for kw in keywords)


UNAVAILABLE_KEYWORDS = {
    "discontinued", "no longer", "not available", "unavailable",
    "don't carry", "do not carry", "don't sell", "can't get", "cannot get",
    "obsolete", "not made anymore", "don't stock",
}

OUT_OF_STOCK_KEYWORDS = {
    "out of stock", "sold out", "don't have any", "none in stock",
    "not in stock", "don't have it", "don't have that", "don't have those",
    "all out", "ran out", "zero in stock",
}

BACKORDER_KEYWORDS = {
    "backorder", "backordered", "back order", "back ordered", "back-order",
    "back-ordered", "on order", "have to order", "special order", "ship from",
    "order it in",
}

IN_STOCK_KEYWORDS = {
    "in stock", "on hand", "on the shelf", "got it", "got them", "got one",
    "have it", "have them", "have those", "have one", "we have",
    "available", "ready to go", "in the warehouse",
}

FIRM_PRICE_KEYWORDS = {
    "best i can do", "best we can do", "price is firm", "firm on that",
    "firm price", "can't go lower", "cannot go lower", "can't go any lower",
    "can't do better", "can't come down", "no flexibility", "not negotiable",
    "that's the price", "that's our price", "that's the lowest",
    "lowest i can go", "can't budge", "no room",
}

# --- Spoken numbers ---

_UNITS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14,
    "fifteen": 15, "sixteen": 16, "seventeen": 17, "eighteen": 18,
    "nineteen": 19,
}
_TENS = {
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}
_SCALES = {"hundred": 100, "thousand": 1000}

_NUMBER_WORD = "|".join(sorted([*_UNITS, *_TENS, *_SCALES], key=len, reverse=True))
_NUMBER_PHRASE_RE = re.compile(
    rf"\b(?:{_NUMBER_WORD})(?:(?:[\s-]+and)?[\s-]+(?:{_NUMBER_WORD}))*\b",
    re.IGNORECASE,
)


def _words_value(words: list[str]) -> int:
    # "four fifty" / "one twenty five" are how prices are spoken
    if (
        len(words) >= 2
        and not any(w in _SCALES for w in words)
        and 1 <= _UNITS.get(words[0], 0) <= 9
        and words[1] in _TENS
    ):
        return _UNITS[words[0]] * 100 + _words_value(words[1:])

    total = 0
    current = 0
    for word in words:
        if word in _UNITS:
            current += _UNITS[word]
        elif word in _TENS:
            current += _TENS[word]
        elif word == "hundred":
            current = max(current, 1) * 100
        elif word == "thousand":
            total += max(current, 1) * 1000
            current = 0
    return total + current


def normalize_spoken_numbers(text: str) -> str:
    """Rewrite spelled-out numbers as digits.

    Example: "four hundred fifty dollars, three days" → "450 dollars, 3 days"

    A lone "one" is left alone ("that one", "one of those").
    """
    def _replace(match: re.Match) -> str:
        words = [w for w in re.split(r"[\s-]+", match.group(0).lower()) if w and w != "and"]
        if words == ["one"]:
            return match.group(0)
        return str(_words_value(words))

    normalized = _NUMBER_PHRASE_RE.sub(_replace, text)
    # "450 dollars and 25 cents" → "450.25 dollars"
    return re.sub(
        r"(\d+)\s*dollars?\s+and\s+(\d{1,2})\s*cents?",
        lambda m: f"{m.group(1)}.{int(m.group(2)):02d} dollars",
        normalized,
        flags=re.IGNORECASE,
    )


# --- Part numbers ---

def normalize_part_number(value: str | None) -> str:
    """Uppercase alphanumerics only: "cat 1r-0750" → "CAT1R0750"."""
    if not value:
        return ""
    return re.sub(r"[^A-Za-z0-9]", "", value).upper()


def part_number_pattern(part_number: str) -> re.Pattern:
    """Match a part number as spoken or written, with any spacing or dashes."""
    chars = normalize_part_number(part_number)
    if not chars:
        return re.compile(r"(?!x)x")
    body = r"[\s.\-]*".join(re.escape(c) for c in chars)
    return re.compile(rf"(?<![A-Za-z0-9]){body}(?![A-Za-z0-9])", re.IGNORECASE)


ORDINALS = {
    "first": 0, "1st": 0,
    "second": 1, "2nd": 1,
    "third": 2, "3rd": 2,
    "fourth": 3, "4th": 3,
    "fifth": 4, "5th": 4,
    "last": -1,
}

ORDINAL_RE = re.compile(
    r"\b(first|1st|second|2nd|third|3rd|fourth|4th|fifth|5th|last)\s+(?:one|part|item|filter|piece)\b",
    re.IGNORECASE,
)


# --- Prices, lead times and availability ---

_AMOUNT = r"(\d[\d,]*(?:\.\d{1,2})?)"
_NOT_TIME = (
    r"(?!\s*(?:-\s*\d+\s*)?(?:business\s+)?(?:days?|weeks?|hours?|minutes?|seconds?|secs?|"
    r"%|percent|of\b|in stock|units?|pieces?|left|on hand|o'?clock|[ap]\.?m\b))"
)

# Times of day: "call me back at 3", "by 4:30", "after 2 pm"
_CLOCK_RE = re.compile(
    r"\b(?:at|by|after|before|until|till)\s+(?:1[0-2]|0?[1-9])(?::[0-5]\d)?"
    r"(?:\s*(?:[ap]\.?m\b\.?|o'?clock))?"
    r"(?=\s*(?:[!?;]|[.,](?!\d)|$|\b(?:today|tomorrow|tonight|this|on|or|and)\b))"
    r"|\b\d{1,2}:[0-5]\d\b"
    r"|\b\d{1,2}\s*(?:[ap]\.?m\b\.?|o'?clock)",
    re.IGNORECASE,
)

_CLAUSE_START = r"(?:^|[,;:!?]|\.(?!\d))\s*"
_CLAUSE_END = r"\s*(?=[,;:!?]|\.(?!\d)|$)"

_PRICE_PATTERNS = [
    re.compile(rf"\$\s*{_AMOUNT}"),
    re.compile(
        rf"\b{_AMOUNT}\s*(?:dollars?|bucks|usd|each|apiece|a piece|per unit|per piece)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:price is|price's|that's|thats|it's|its|it is|that'll be|that would be|"
        r"runs|comes to|cost is|costs|we're at|we can do|i can do|can do it for|"
        r"do it for|best i can do is|how about|still|at)\s+(?:about\s+|around\s+|like\s+)?"
        rf"\$?{_AMOUNT}\b{_NOT_TIME}",
        re.IGNORECASE,
    ),
    re.compile(r"\b(\d+\.\d{2})\b"),
    # "450, in stock, 3 days": a bare amount making up its own clause
    re.compile(
        rf"{_CLAUSE_START}(?:about\s+|around\s+|like\s+)?\$?{_AMOUNT}\b{_NOT_TIME}{_CLAUSE_END}",
        re.IGNORECASE,
    ),
    re.compile(rf"^\D*?\b(\d[\d,]*(?:\.\d{{1,2}})?)\b{_NOT_TIME}[^\d]*$", re.IGNORECASE),
]

_LEAD_TIME_RE = re.compile(
    r"\b(\d+)\s*(?:-\s*(\d+)\s*|to\s+(\d+)\s*)?(?:business\s+)?(days?|weeks?)\b",
    re.IGNORECASE,
)


def _to_amount(raw: str) -> float | None:
    try:
        value = float(raw.replace(",", ""))
    except ValueError:
        return None
    return value if value > 0 else None


def parse_price(text: str) -> float | None:
    """Find the first currency-like amount in an utterance.

    Patterns are tried from most to least explicit: "$450", "450 dollars",
    "that's 450", "130.58", a bare amount standing as its own clause
    ("four fifty, in stock"), then a lone number ("500.") with nothing else
    numeric in the sentence. Times of day are never prices.
    """
    if not text:
        return None
    normalized = _CLOCK_RE.sub(" ", normalize_spoken_numbers(text))
    for pattern in _PRICE_PATTERNS:
        match = pattern.search(normalized)
        if match:
            amount = _to_amount(match.group(1))
            if amount is not None:
                return amount
    return None


def parse_lead_time_days(text: str) -> int | None:
    """Lead time in days: "3 days" → 3, "two weeks" → 14, "tomorrow" → 1.

    Ranges take the upper bound ("3 to 5 days" → 5).
    """
    if not text:
        return None
    normalized = normalize_spoken_numbers(text)
    match = _LEAD_TIME_RE.search(normalized)
    if match:
        days = int(match.group(3) or match.group(2) or match.group(1))
        if match.group(4).lower().startswith("week"):
            days *= 7
        return days
    if match_any_keyword(normalized, {"tomorrow", "next day", "overnight"}):
        return 1
    if match_any_keyword(normalized, {"today", "same day"}):
        return 0
    return None


def parse_availability(text: str) -> Availability | None:
    """Map availability phrases to the fixed enum, most negative first."""
    if not text:
        return None
    if match_any_keyword(text, UNAVAILABLE_KEYWORDS):
        return Availability.UNAVAILABLE
    if match_any_keyword(text, OUT_OF_STOCK_KEYWORDS):
        return Availability.OUT_OF_STOCK
    if match_any_keyword(text, BACKORDER_KEYWORDS):
        return Availability.BACKORDER
    if match_any_keyword(text, IN_STOCK_KEYWORDS):
        return Availability.IN_STOCK
    return None


def is_firm_price(text: str) -> bool:
    return match_any_keyword(text, FIRM_PRICE_KEYWORDS)


# --- Call screener puzzles ---

_CAPTCHA_RE = re.compile(
    r"\bwhat is (\d+)\s*(plus|\+|added to|minus|-|times|x|multiplied by|divided by)\s*(\d+)",
    re.IGNORECASE,
)

_CAPTCHA_OPS = {
    "plus": lambda a, b: a + b,
    "+": lambda a, b: a + b,
    "added to": lambda a, b: a + b,
    "minus": lambda a, b: a - b,
    "-": lambda a, b: a - b,
    "times": lambda a, b: a * b,
    "x": lambda a, b: a * b,
    "multiplied by": lambda a, b: a * b,
    "divided by": lambda a, b: a / b if b else None,
}


def solve_captcha(text: str) -> str | None:
    """Answer a screener's arithmetic check: "What is 5 plus 2?" → "7"."""
    if not text:
        return None
    match = _CAPTCHA_RE.search(normalize_spoken_numbers(text))
    if not match:
        return None
    result = _CAPTCHA_OPS[match.group(2).lower()](int(match.group(1)), int(match.group(3)))
    if result is None:
        return None
    return f"{result:g}"
