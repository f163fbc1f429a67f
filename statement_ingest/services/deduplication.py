"""Fingerprints used to bucket staged transactions before pairwise scoring."""

import hashlib
from datetime import date
from decimal import Decimal
from typing import Protocol

from statement_ingest.services.candidates import quantize_amount
from statement_ingest.utils.text import normalize_description

DEFAULT_PREFIX_LENGTH = 30


class Fingerprintable(Protocol):
    txn_date: date
    amount: Decimal
    description: str


class DedupKeyGenerator:
    """Compute the coarse, collision-tolerant dedup hash of a transaction.

    Hash = SHA256(date|amount|normalized-description-prefix)

    The prefix truncation makes trailing reference codes irrelevant, which also
    means unrelated transactions can collide. The key is a bucket, never a verdict.
    """

    def __init__(self, prefix_length: int = DEFAULT_PREFIX_LENGTH) -> None:
        if prefix_length < 1:
            raise ValueError("prefix_length must be positive")
        self.prefix_length = prefix_length

    def description_prefix(self, description: str | None) -> str:
        return normalize_description(description)[: self.prefix_length].strip()

    def components(self, txn_date: date, amount: Decimal, description: str | None) -> list[str]:
        return [
            txn_date.isoformat(),
            f"{quantize_amount(abs(amount)):.2f}",
            self.description_prefix(description),
        ]

    def generate(self, txn: Fingerprintable) -> str:
        return self.generate_for(txn.txn_date, txn.amount, txn.description)

    def generate_for(self, txn_date: date, amount: Decimal, description: str | None) -> str:
        hash_input = "|".join(self.components(txn_date, amount, description)).encode("utf-8")
        return hashlib.sha256(hash_input).hexdigest()


default_key_generator = DedupKeyGenerator()
