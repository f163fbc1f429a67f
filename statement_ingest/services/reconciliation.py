"""Reconciliation of staged transactions across sources.

Statement (PDF) rows are paired with manual/CSV rows describing the same
money movement:

1. bucket candidates by dedup hash, plus a date-window bucket;
2. score every cross-source pair inside a bucket;
3. pick pairs greedily over one global ordering (highest score first);
4. persist MATCHED / needs-review links, everything else becomes UNIQUE.
"""

from __future__ import annotations

import hashlib
import os
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from difflib import SequenceMatcher
from pathlib import Path
from typing import Protocol
from uuid import UUID

import yaml
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from statement_ingest.config import settings
from statement_ingest.logger import get_logger
from statement_ingest.models import (
    TERMINAL_STATUSES,
    StagedTransaction,
    StagedTransactionStatus,
    TransactionDirection,
    TransactionSource,
)
from statement_ingest.services.candidates import quantize_amount
from statement_ingest.services.deduplication import DedupKeyGenerator, default_key_generator
from statement_ingest.services.staging import StagingScope, StagingStore, default_staging_store
from statement_ingest.utils.text import normalize_description

logger = get_logger(__name__)

SCORE_PRECISION = Decimal("0.0001")
PDF_SIDE_SOURCES = frozenset({TransactionSource.PDF})
MANUAL_SIDE_SOURCES = frozenset({TransactionSource.MANUAL, TransactionSource.CSV})


@dataclass(frozen=True)
class ReconciliationConfig:
    """Runtime configuration for match scoring."""

    weight_amount: Decimal
    weight_date: Decimal
    weight_description: Decimal
    auto_merge: Decimal
    review: Decimal
    date_window_days: int
    date_adjacent_factor: Decimal
    min_substring_length: int


DEFAULT_CONFIG = ReconciliationConfig(
    weight_amount=Decimal("0.45"),
    weight_date=Decimal("0.35"),
    weight_description=Decimal("0.20"),
    auto_merge=Decimal("0.85"),
    review=Decimal("0.50"),
    date_window_days=3,
    date_adjacent_factor=Decimal("0.8"),
    min_substring_length=4,
)

_config_cache: ReconciliationConfig | None = None


def default_config_path() -> Path:
    if settings.reconciliation_config_path:
        return Path(settings.reconciliation_config_path)
    return Path(__file__).resolve().parents[2] / "config" / "reconciliation.yaml"


def _validate_config(config: ReconciliationConfig) -> None:
    weights = config.weight_amount + config.weight_date + config.weight_description
    if weights != Decimal("1"):
        raise ValueError(f"Scoring weights must sum to 1, got {weights}")
    if not Decimal("0") < config.review <= config.auto_merge <= Decimal("1"):
        raise ValueError("Thresholds must satisfy 0 < review <= auto_merge <= 1")
    if config.date_window_days < 0:
        raise ValueError("date_window_days must not be negative")


def load_reconciliation_config(
    force_reload: bool = False,
    config_path: Path | None = None,
) -> ReconciliationConfig:
    """Load scoring configuration from YAML, then apply environment overrides.

    Caches the result to avoid repeated disk I/O. A malformed file is logged and
    the defaults are used instead.
    """
    global _config_cache
    if _config_cache is not None and not force_reload and config_path is None:
        return _config_cache

    config = DEFAULT_CONFIG
    path = config_path or default_config_path()

    if path.exists():
        try:
            raw = yaml.safe_load(path.read_text()) or {}
            scoring = raw.get("scoring", {})
            weights = scoring.get("weights", {})
            thresholds = scoring.get("thresholds", {})
            tolerances = scoring.get("tolerances", {})

            loaded = ReconciliationConfig(
                weight_amount=Decimal(str(weights.get("amount", config.weight_amount))),
                weight_date=Decimal(str(weights.get("date", config.weight_date))),
                weight_description=Decimal(str(weights.get("description", config.weight_description))),
                auto_merge=Decimal(str(thresholds.get("auto_merge", config.auto_merge))),
                review=Decimal(str(thresholds.get("review", config.review))),
                date_window_days=int(tolerances.get("date_window_days", config.date_window_days)),
                date_adjacent_factor=Decimal(
                    str(tolerances.get("date_adjacent_factor", config.date_adjacent_factor))
                ),
                min_substring_length=int(
                    tolerances.get("min_substring_length", config.min_substring_length)
                ),
            )
            _validate_config(loaded)
            config = loaded
        except (yaml.YAMLError, AttributeError, TypeError, ValueError, InvalidOperation) as e:
            logger.warning(
                "Failed to load reconciliation config - using defaults",
                config_path=str(path),
                error=str(e),
                error_type=type(e).__name__,
            )

    for env_name, field_name in (
        ("RECONCILIATION_AUTO_MERGE_THRESHOLD", "auto_merge"),
        ("RECONCILIATION_REVIEW_THRESHOLD", "review"),
    ):
        env_value = os.getenv(env_name)
        if not env_value:
            continue
        try:
            overridden = replace(config, **{field_name: Decimal(env_value)})
            _validate_config(overridden)
        except (InvalidOperation, ValueError) as e:
            logger.warning("Ignoring invalid threshold override", env_var=env_name, error=str(e))
            continue
        config = overridden

    _config_cache = config
    return config


class Scorable(Protocol):
    txn_date: date
    amount: Decimal
    direction: TransactionDirection
    description: str


@dataclass(frozen=True)
class MatchScore:
    """Pair score in [0, 1] with the parts it was built from."""

    score: Decimal
    breakdown: dict[str, float] = field(default_factory=dict)
    reasons: tuple[str, ...] = ()
    date_delta: int = 0
    description_score: Decimal = Decimal("0")


def directions_compatible(a: TransactionDirection, b: TransactionDirection) -> bool:
    """Same flow, or one side is a TRANSFER (which can be either flow)."""
    return a == b or TransactionDirection.TRANSFER in (a, b)


def description_similarity(a: str | None, b: str | None, min_substring_length: int = 4) -> Decimal:
    """Best of token overlap, compact containment and difflib ratio (0-1)."""
    norm_a = normalize_description(a)
    norm_b = normalize_description(b)
    if not norm_a or not norm_b:
        return Decimal("0")

    tokens_a = set(norm_a.split())
    tokens_b = set(norm_b.split())
    overlap = len(tokens_a & tokens_b) / min(len(tokens_a), len(tokens_b))

    shorter, longer = sorted((norm_a.replace(" ", ""), norm_b.replace(" ", "")), key=len)
    containment = 1.0 if len(shorter) >= min_substring_length and shorter in longer else 0.0

    ratio = SequenceMatcher(None, norm_a, norm_b).ratio()
    return Decimal(str(max(overlap, containment, ratio))).quantize(SCORE_PRECISION)


class MatchScorer:
    """Score how likely two transactions describe the same money movement."""

    def __init__(self, config: ReconciliationConfig | None = None) -> None:
        self.config = config or load_reconciliation_config()

    def is_auto_merge(self, score: Decimal) -> bool:
        return score >= self.config.auto_merge

    def is_review(self, score: Decimal) -> bool:
        return self.config.review <= score < self.config.auto_merge

    def score(self, a: Scorable, b: Scorable) -> MatchScore:
        config = self.config
        date_delta = abs((a.txn_date - b.txn_date).days)

        if not directions_compatible(a.direction, b.direction):
            return MatchScore(Decimal("0"), reasons=("Direction mismatch",), date_delta=date_delta)
        if quantize_amount(a.amount) != quantize_amount(b.amount):
            return MatchScore(Decimal("0"), reasons=("Amount mismatch",), date_delta=date_delta)
        if date_delta > config.date_window_days:
            return MatchScore(Decimal("0"), reasons=("Dates outside match window",), date_delta=date_delta)

        reasons = ["Exact amount match"]
        if date_delta == 0:
            date_factor = Decimal("1")
            reasons.append("Exact date match")
        elif date_delta == 1:
            date_factor = config.date_adjacent_factor
            reasons.append("Date within 1 day")
        else:
            date_factor = Decimal("0")
            reasons.append(f"Dates {date_delta} days apart")

        desc_score = description_similarity(a.description, b.description, config.min_substring_length)
        if desc_score >= Decimal("0.8"):
            reasons.append("Description match")
        elif desc_score >= Decimal("0.5"):
            reasons.append("Similar description")
        else:
            reasons.append("Weak description match")

        amount_part = config.weight_amount
        date_part = config.weight_date * date_factor
        description_part = config.weight_description * desc_score
        total = min(Decimal("1"), amount_part + date_part + description_part).quantize(SCORE_PRECISION)

        return MatchScore(
            score=total,
            breakdown={
                "amount": float(amount_part.quantize(SCORE_PRECISION)),
                "date": float(date_part.quantize(SCORE_PRECISION)),
                "description": float(description_part.quantize(SCORE_PRECISION)),
            },
            reasons=tuple(reasons),
            date_delta=date_delta,
            description_score=desc_score,
        )


@dataclass(frozen=True)
class MatchPair:
    pdf_index: int
    manual_index: int
    match: MatchScore
    auto_merge: bool

    @property
    def score(self) -> Decimal:
        return self.match.score

    def sort_key(self) -> tuple:
        return (
            -self.match.score,
            self.match.date_delta,
            -self.match.description_score,
            self.pdf_index,
            self.manual_index,
        )


@dataclass
class MatchOutcome:
    auto_merged: list[MatchPair] = field(default_factory=list)
    needs_review: list[MatchPair] = field(default_factory=list)
    pdf_only: list[int] = field(default_factory=list)
    manual_only: list[int] = field(default_factory=list)


def _bucket_key(txn: Scorable, key_generator: DedupKeyGenerator) -> str:
    return getattr(txn, "dedup_hash", None) or key_generator.generate(txn)


def match_transactions(
    pdf_side: Sequence[Scorable],
    manual_side: Sequence[Scorable],
    scorer: MatchScorer | None = None,
    key_generator: DedupKeyGenerator = default_key_generator,
) -> MatchOutcome:
    """Pair statement rows with manual rows. Pure: same input, same outcome."""
    scorer = scorer or MatchScorer()
    window = scorer.config.date_window_days

    by_hash: dict[str, list[int]] = defaultdict(list)
    by_day: dict[int, list[int]] = defaultdict(list)
    for index, txn in enumerate(manual_side):
        by_hash[_bucket_key(txn, key_generator)].append(index)
        by_day[txn.txn_date.toordinal()].append(index)

    pairs: list[MatchPair] = []
    for pdf_index, txn in enumerate(pdf_side):
        bucket = set(by_hash.get(_bucket_key(txn, key_generator), ()))
        day = txn.txn_date.toordinal()
        for offset in range(-window, window + 1):
            bucket.update(by_day.get(day + offset, ()))

        for manual_index in sorted(bucket):
            match = scorer.score(txn, manual_side[manual_index])
            if match.score >= scorer.config.review:
                pairs.append(
                    MatchPair(
                        pdf_index=pdf_index,
                        manual_index=manual_index,
                        match=match,
                        auto_merge=scorer.is_auto_merge(match.score),
                    )
                )

    outcome = MatchOutcome()
    used_pdf: set[int] = set()
    used_manual: set[int] = set()
    for pair in sorted(pairs, key=MatchPair.sort_key):
        if pair.pdf_index in used_pdf or pair.manual_index in used_manual:
            continue
        used_pdf.add(pair.pdf_index)
        used_manual.add(pair.manual_index)
        if pair.auto_merge:
            outcome.auto_merged.append(pair)
        else:
            outcome.needs_review.append(pair)

    outcome.pdf_only = [index for index in range(len(pdf_side)) if index not in used_pdf]
    outcome.manual_only = [index for index in range(len(manual_side)) if index not in used_manual]
    return outcome


def match_group_id(pdf_id: UUID, manual_id: UUID) -> str:
    """Deterministic group id for a statement/manual pair."""
    digest = hashlib.sha256(f"{pdf_id}|{manual_id}".encode()).hexdigest()
    return f"mg_{digest[:16]}"


@dataclass(frozen=True)
class ReconciledPair:
    pdf: StagedTransaction
    manual: StagedTransaction
    match_group_id: str
    score: float
    breakdown: dict[str, float]
    reasons: tuple[str, ...]


@dataclass
class ReconciliationResult:
    auto_merged: list[ReconciledPair] = field(default_factory=list)
    needs_review: list[ReconciledPair] = field(default_factory=list)
    pdf_only: list[StagedTransaction] = field(default_factory=list)
    manual_only: list[StagedTransaction] = field(default_factory=list)
    # Needs-review rows whose partner was already decided on; they wait for their own decision
    awaiting_decision: list[StagedTransaction] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        return {
            "auto_merged": len(self.auto_merged),
            "needs_review": len(self.needs_review),
            "pdf_only": len(self.pdf_only),
            "manual_only": len(self.manual_only),
        }


class Reconciler:
    """Run matching over the PENDING staged rows of one scope and persist the links."""

    def __init__(
        self,
        scorer: MatchScorer | None = None,
        *,
        store: StagingStore = default_staging_store,
        key_generator: DedupKeyGenerator = default_key_generator,
    ) -> None:
        self.scorer = scorer
        self.store = store
        self.key_generator = key_generator

    async def reconcile(self, db: AsyncSession, scope: StagingScope) -> ReconciliationResult:
        scorer = self.scorer or MatchScorer()
        records = await self.store.list_transactions(
            db, scope, statuses=[StagedTransactionStatus.PENDING]
        )
        settled = await self._settled_partners(db, records)
        held = [record for record in records if record.matched_with_id in settled]
        records = [record for record in records if record.matched_with_id not in settled]

        # Needs-review links from an earlier run are re-scored from scratch
        for record in records:
            if record.match_group_id is not None:
                record.clear_link()

        pdf_side = [record for record in records if record.source in PDF_SIDE_SOURCES]
        manual_side = [record for record in records if record.source in MANUAL_SIDE_SOURCES]
        outcome = match_transactions(pdf_side, manual_side, scorer, self.key_generator)

        result = ReconciliationResult()
        for pair in (*outcome.auto_merged, *outcome.needs_review):
            pdf, manual = pdf_side[pair.pdf_index], manual_side[pair.manual_index]
            group_id = match_group_id(pdf.id, manual.id)
            status = StagedTransactionStatus.MATCHED if pair.auto_merge else StagedTransactionStatus.PENDING
            score = float(pair.score)
            for record, partner in ((pdf, manual), (manual, pdf)):
                record.transition_to(status)
                record.link_partner(partner.id, group_id=group_id, score=score)

            reconciled = ReconciledPair(
                pdf=pdf,
                manual=manual,
                match_group_id=group_id,
                score=score,
                breakdown=pair.match.breakdown,
                reasons=pair.match.reasons,
            )
            (result.auto_merged if pair.auto_merge else result.needs_review).append(reconciled)

        for index in outcome.pdf_only:
            pdf_side[index].transition_to(StagedTransactionStatus.UNIQUE)
            result.pdf_only.append(pdf_side[index])
        for index in outcome.manual_only:
            manual_side[index].transition_to(StagedTransactionStatus.UNIQUE)
            result.manual_only.append(manual_side[index])

        result.awaiting_decision = held

        await db.flush()
        logger.info(
            "Reconciliation complete",
            **scope.as_log_fields(),
            **result.counts,
            awaiting_decision=len(held),
        )
        return result

    async def _settled_partners(self, db: AsyncSession, records: Sequence[StagedTransaction]) -> set[UUID]:
        """Ids of review partners already committed or discarded."""
        pending_ids = {record.id for record in records}
        partner_ids = {
            record.matched_with_id
            for record in records
            if record.matched_with_id is not None and record.matched_with_id not in pending_ids
        }
        if not partner_ids:
            return set()
        rows = await db.execute(
            select(StagedTransaction.id).where(
                StagedTransaction.id.in_(partner_ids),
                StagedTransaction.status.in_(TERMINAL_STATUSES),
            )
        )
        return set(rows.scalars().all())


default_reconciler = Reconciler()
