"""Text normalization shared by the parsers, fingerprinting and match scoring."""

import re

# Words that carry no identity in bank descriptions
NOISE_WORDS = frozenset({"debit", "credit", "card", "purchase", "payment", "pos", "ach", "web"})

MERCHANT_SKIP_WORDS = frozenset(
    {
        "ref",
        "txn",
        "trn",
        "pos",
        "atm",
        "eft",
        "ach",
        "corporate",
        "payment",
        "purchase",
        "transfer",
        "debit",
        "credit",
        "card",
        "visa",
        "mastercard",
        "deduction",
        "recurring",
    }
)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_STORE_NUMBER = re.compile(r"^(?:#?\d+|\*\w*|#\w+)$")


def normalize_text(value: str) -> str:
    """Normalize text for similarity comparison."""
    cleaned = _NON_ALNUM.sub(" ", value.lower()).strip()
    return re.sub(r"\s+", " ", cleaned)


def normalize_description(value: str | None) -> str:
    """Lower-case, strip punctuation and drop noise words."""
    if not value:
        return ""
    words = [word for word in normalize_text(value).split() if word not in NOISE_WORDS]
    return " ".join(words)


def derive_merchant(description: str | None) -> str | None:
    """Best-effort merchant name: up to three significant words of the description.

    Card prefixes ("7526 Debit Card Purchase"), store numbers and reference
    fragments are skipped, original casing is kept.
    """
    if not description:
        return None
    words: list[str] = []
    for raw in description.split():
        token = raw.strip(",;:")
        lowered = token.lower()
        if not token or lowered in MERCHANT_SKIP_WORDS:
            continue
        if _STORE_NUMBER.match(token) or token.replace(".", "").isdigit():
            if words:
                break
            continue
        if len(token) < 2:
            continue
        words.append(token)
        if len(words) >= 3:
            break
    return " ".join(words) or None
