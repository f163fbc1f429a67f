"""Deterministic parser for text extracted from bank statements.

A ``StatementLayout`` bundles the regexes and column hints of one statement
format. Supporting another bank means adding a layout, not code:

    line -> classify (blank | balance | column header | summary | transaction |
            section header | boilerplate | continuation)
         -> row drafts
         -> column split (date, amount, description, reference, direction)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum

from statement_ingest.config import settings
from statement_ingest.logger import get_logger
from statement_ingest.models import TransactionDirection, TransactionSource
from statement_ingest.services.candidates import CandidateTransaction, quantize_amount
from statement_ingest.utils.text import derive_merchant

logger = get_logger(__name__)

BALANCE_TOLERANCE = Decimal("0.01")
MAX_DESCRIPTION_LENGTH = 500
MAX_CONTINUATION_LENGTH = 100
DEFAULT_HINT = "Statement layout not recognised; paste the rows through manual input instead."

DEBIT_COLUMN = "debit"
CREDIT_COLUMN = "credit"
BALANCE_COLUMN = "balance"

_FLAGS = re.IGNORECASE | re.MULTILINE
_DATE = r"\d{1,2}/\d{1,2}(?:/\d{4}|/\d{2})?"

DATE_TOKEN = re.compile(r"(?P<month>\d{1,2})/(?P<day>\d{1,2})(?:/(?P<year>\d{4}|\d{2}))?")
LEADING_DATES = re.compile(rf"^\s*(?P<dates>{_DATE}(?:\s+{_DATE})*)(?=\s)")
MONEY_TOKEN = re.compile(
    r"(?<![\w.,/$-])(?P<open>\()?(?P<sign>[-+])?\$?(?P<whole>\d{1,3}(?:,\d{3})+|\d+)"
    r"\.(?P<cents>\d{2})(?P<close>\))?(?P<trail>-)?(?![\w.,])"
)
CHECK_ROW = re.compile(r"^(?P<number>\d{3,})\s*\*\s*(?P<amount>[\d,]+\.\d{2})(?:\s+(?P<reference>\d+))?$")
PERIOD_PATTERN = re.compile(
    r"period\s*:?\s*(?:from\s+)?(\d{1,2}/\d{1,2}/\d{4})\s*(?:to|through|-)\s*(\d{1,2}/\d{1,2}/\d{4})",
    re.IGNORECASE,
)
REFERENCE_PATTERN = re.compile(r"\s(\d{10,})$")
YEAR_PATTERN = re.compile(r"\b(20\d{2})\b")

OPENING_LABEL = re.compile(
    rf"^(?:{_DATE}\s+)?(?:(?:beginning|opening|previous|starting)\s+balance|balance\s+forward)\b",
    re.IGNORECASE,
)
CLOSING_LABEL = re.compile(rf"^(?:{_DATE}\s+)?(?:ending|closing|new)\s+balance\b", re.IGNORECASE)
CLOSING_ANYWHERE = re.compile(r"\b(?:ending|closing)\s+balance\b", re.IGNORECASE)
AMOUNTS_ONLY = re.compile(r"^\$?-?[\d,]+\.\d{2}(?:\s+\$?-?[\d,]+\.\d{2})+$")

INCOME_KEYWORDS = re.compile(r"\b(?:deposit|credit|payroll)\b", re.IGNORECASE)
TRANSFER_KEYWORD = re.compile(r"\btransfer\b", re.IGNORECASE)


def _rx(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, _FLAGS) for pattern in patterns)


COMMON_BOILERPLATE = _rx(
    r"^page\s+\d+\s+of\s+\d+",
    r"continued on next page",
    r"^member fdic",
    r"^(?:primary\s+)?account\s+(?:number|type)\b",
    r"^for the period\b",
    r"^statement period\b",
    r"^date\s+(?:posted|amount|check|ledger|description)\b",
    r"^posted\b",
    r"^daily balance",
    r"^balance summary",
    r"^average\s+(?:ledger|collected)\s+balance",
    r"^activity detail",
    r"^number of enclosures",
    r"^description\s+items\s+amount",
)
COMMON_SUMMARIES = _rx(
    # Daily balance tables: date/amount pairs and nothing else
    rf"^(?:{_DATE}\s+-?\$?[\d,]+\.\d{{2}}\s*)+$",
    # Category or total summary: "<label> <items> <amount>"
    r"^[a-z][a-z /&'-]*\s+\d+\s+\$?[\d,]+\.\d{2}$",
    r"^total\b.*\d\.\d{2}$",
)


class ParseError(Exception):
    """Raised when text does not fit a known statement layout."""

    def __init__(
        self,
        message: str,
        *,
        layout: str | None = None,
        parsed_rows: int = 0,
        hint: str = DEFAULT_HINT,
    ) -> None:
        super().__init__(message)
        self.layout = layout
        self.parsed_rows = parsed_rows
        self.hint = hint


class SectionKind(str, Enum):
    """Direction a statement section implies for its rows."""

    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


@dataclass(frozen=True)
class StatementLayout:
    """Parsing rules of one statement format."""

    name: str
    institution: str | None = None
    # Any signature match means the text is this layout
    signatures: tuple[re.Pattern[str], ...] = ()
    boilerplate: tuple[re.Pattern[str], ...] = ()
    summaries: tuple[re.Pattern[str], ...] = ()
    sections: tuple[tuple[re.Pattern[str], SectionKind], ...] = ()
    # Section names glued to the end of a description by text extraction
    trailing_noise: tuple[re.Pattern[str], ...] = ()
    column_header: re.Pattern[str] | None = None
    column_labels: tuple[tuple[str, re.Pattern[str]], ...] = ()
    period: re.Pattern[str] = PERIOD_PATTERN
    reference: re.Pattern[str] = REFERENCE_PATTERN
    # None: fall back to settings.statement_min_rows
    min_rows: int | None = None

    def recognizes(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.signatures)

    def section_of(self, line: str) -> SectionKind | None:
        for pattern, kind in self.sections:
            if pattern.search(line):
                return kind
        return None

    def is_boilerplate(self, line: str) -> bool:
        return any(pattern.search(line) for pattern in (*COMMON_BOILERPLATE, *self.boilerplate))

    def is_summary(self, line: str) -> bool:
        return any(pattern.search(line) for pattern in (*COMMON_SUMMARIES, *self.summaries))

    def strip_trailing_noise(self, description: str) -> str:
        for pattern in self.trailing_noise:
            description = pattern.sub("", description)
        return description

    def row_threshold(self, recognized: bool) -> int:
        if recognized:
            return 1
        return self.min_rows or settings.statement_min_rows


_PNC_CREDIT_SECTIONS = r"^(?:deposits|atm deposits|ach additions)\b"
_PNC_DEBIT_SECTIONS = (
    r"^(?:checks|debit card purchases|pos purchases|atm/misc|ach deductions|"
    r"service charges|other deductions)\b"
)

PNC_LAYOUT = StatementLayout(
    name="pnc",
    institution="PNC Bank",
    signatures=_rx(
        r"^pnc bank\b",
        r"^deposits and other additions\b",
        r"^checks and other deductions\b",
    ),
    boilerplate=_rx(
        r"^business checking",
        r"^pnc bank\b",
        r"pnc\.com",
        r"^for customer service",
        r"^visit us at",
        r"^po box",
        r"^important information",
        r"^overdraft protection",
        r"^detail of services",
        r"^note:",
        r"^\*\*",
        r"^transaction\s*$",
        r"^description\s+reference",
    ),
    sections=(
        (re.compile(_PNC_CREDIT_SECTIONS, _FLAGS), SectionKind.CREDIT),
        (re.compile(_PNC_DEBIT_SECTIONS, _FLAGS), SectionKind.DEBIT),
    ),
    trailing_noise=_rx(
        r"\s+(?:deposits and other additions|checks and other deductions|ach additions|"
        r"ach deductions|debit card purchases|pos purchases|service charges and fees|"
        r"other deductions|daily balance detail)\s*$",
    ),
)

COLUMNAR_LAYOUT = StatementLayout(
    name="columnar",
    signatures=_rx(r"^\s*date\s+description\s+.*\b(?:withdrawals?|debits?)\b.*\b(?:deposits?|credits?)\b"),
    column_header=re.compile(
        r"^date\s+description\s+.*\b(?:withdrawals?|debits?)\b.*\b(?:deposits?|credits?)\b",
        re.IGNORECASE,
    ),
    column_labels=(
        (DEBIT_COLUMN, re.compile(r"\b(?:withdrawals?|debits?)\b", re.IGNORECASE)),
        (CREDIT_COLUMN, re.compile(r"\b(?:deposits?|credits?)\b", re.IGNORECASE)),
        (BALANCE_COLUMN, re.compile(r"\bbalance\b", re.IGNORECASE)),
    ),
)

# Used only when no layout signature matches; holds unrecognised text to the row threshold
GENERIC_LAYOUT = StatementLayout(name="generic")

DEFAULT_LAYOUTS: tuple[StatementLayout, ...] = (PNC_LAYOUT, COLUMNAR_LAYOUT)


@dataclass(frozen=True)
class StatementPeriod:
    start: date
    end: date

    def resolve_year(self, month: int) -> int:
        """Year of an ``MM/DD`` date; a period spanning New Year puts late months in the start year."""
        if self.start.year != self.end.year and month >= self.start.month:
            return self.start.year
        return self.end.year


@dataclass(frozen=True)
class BalanceCheck:
    opening: Decimal
    closing: Decimal
    expected_closing: Decimal
    difference: Decimal

    @property
    def valid(self) -> bool:
        return self.difference <= BALANCE_TOLERANCE


@dataclass
class ParsedStatement:
    """Transactions plus the statement-level facts found around them."""

    transactions: list[CandidateTransaction]
    layout: str
    institution: str | None = None
    period: StatementPeriod | None = None
    opening_balance: Decimal | None = None
    closing_balance: Decimal | None = None
    total_credits: Decimal = Decimal("0.00")
    total_debits: Decimal = Decimal("0.00")
    skipped_rows: int = 0

    @property
    def balance_check(self) -> BalanceCheck | None:
        if self.opening_balance is None or self.closing_balance is None:
            return None
        return check_balance(self.opening_balance, self.closing_balance, self.total_credits, self.total_debits)

    @property
    def balance_valid(self) -> bool | None:
        check = self.balance_check
        return None if check is None else check.valid


def check_balance(opening: Decimal, closing: Decimal, credits: Decimal, debits: Decimal) -> BalanceCheck:
    """opening + credits - debits must equal closing within a cent."""
    expected_closing = opening + credits - debits
    return BalanceCheck(
        opening=opening,
        closing=closing,
        expected_closing=expected_closing,
        difference=abs(closing - expected_closing),
    )


def detect_period(text: str, pattern: re.Pattern[str] = PERIOD_PATTERN) -> StatementPeriod | None:
    match = pattern.search(text)
    if not match:
        return None
    start, end = _full_date(match.group(1)), _full_date(match.group(2))
    if start is None or end is None or end < start:
        return None
    return StatementPeriod(start=start, end=end)


def _full_date(token: str) -> date | None:
    month, day, year = (int(part) for part in token.split("/"))
    try:
        return date(year, month, day)
    except ValueError:
        return None


@dataclass(frozen=True)
class _Money:
    start: int
    end: int
    value: Decimal
    negative: bool

    @property
    def signed(self) -> Decimal:
        return -self.value if self.negative else self.value


def _money_tokens(line: str, pos: int = 0) -> list[_Money]:
    tokens = []
    for match in MONEY_TOKEN.finditer(line, pos):
        value = Decimal(f"{match.group('whole').replace(',', '')}.{match.group('cents')}")
        negative = (
            match.group("sign") == "-"
            or match.group("trail") is not None
            or (match.group("open") is not None and match.group("close") is not None)
        )
        tokens.append(_Money(match.start(), match.end(), value, negative))
    return tokens


def _column_spans(header: str, labels: tuple[tuple[str, re.Pattern[str]], ...]) -> dict[str, tuple[int, int]]:
    spans = {}
    for role, pattern in labels:
        match = pattern.search(header)
        if match:
            spans[role] = match.span()
    return spans


def _column_role(token: _Money, spans: dict[str, tuple[int, int]]) -> str | None:
    """Closest column label by left or right alignment."""
    best_role, best_distance = None, None
    for role, (start, end) in spans.items():
        distance = min(abs(token.start - start), abs(token.end - end))
        if best_distance is None or distance < best_distance:
            best_role, best_distance = role, distance
    return best_role


def _without_spans(line: str, start: int, tokens: list[_Money]) -> str:
    parts = []
    cursor = start
    for token in tokens:
        parts.append(line[cursor : token.start])
        cursor = token.end
    parts.append(line[cursor:])
    return " ".join(parts)


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip(" -")


class _DateResolver:
    def __init__(self, period: StatementPeriod | None, fallback_year: int) -> None:
        self.period = period
        self.fallback_year = fallback_year

    def resolve(self, token: str) -> date | None:
        match = DATE_TOKEN.fullmatch(token)
        if not match:
            return None
        month, day = int(match.group("month")), int(match.group("day"))
        year_text = match.group("year")
        if year_text:
            year = int(year_text) + (2000 if len(year_text) == 2 else 0)
        elif self.period is not None:
            year = self.period.resolve_year(month)
        else:
            year = self.fallback_year
        try:
            return date(year, month, day)
        except ValueError:
            return None


@dataclass
class _RowDraft:
    line: str
    section: SectionKind | None
    columns: dict[str, tuple[int, int]] | None
    continuation: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _ParsedRow:
    candidate: CandidateTransaction
    credit: bool


def infer_flow(
    description: str,
    *,
    column_role: str | None = None,
    negative: bool = False,
    section: SectionKind | None = None,
) -> tuple[bool, float]:
    """Return (is_credit, confidence). Layout evidence beats keywords."""
    if column_role in (CREDIT_COLUMN, DEBIT_COLUMN):
        return column_role == CREDIT_COLUMN, 1.0
    if negative:
        return False, 1.0
    if section is not None:
        return section is SectionKind.CREDIT, 1.0
    if INCOME_KEYWORDS.search(description):
        return True, 0.9
    return False, 0.8


class StatementTextParser:
    """Turn statement text into candidate transactions, in statement order."""

    def __init__(
        self,
        layouts: tuple[StatementLayout, ...] = DEFAULT_LAYOUTS,
        *,
        fallback: StatementLayout | None = GENERIC_LAYOUT,
    ) -> None:
        self.layouts = layouts
        self.fallback = fallback

    def detect_layouts(self, text: str) -> list[StatementLayout]:
        return [layout for layout in self.layouts if layout.recognizes(text)]

    def parse(
        self,
        text: str,
        *,
        source: TransactionSource = TransactionSource.PDF,
        strict: bool = False,
        today: date | None = None,
    ) -> ParsedStatement:
        """Parse ``text`` with the first layout that fits.

        ``strict`` only accepts text whose layout signature is recognised; the
        manual input path uses it so loose pasted rows keep their own rules.
        """
        if not text or not text.strip():
            raise ParseError("No statement text provided")

        candidates = self.detect_layouts(text)
        if not candidates:
            if strict or self.fallback is None:
                raise ParseError("Statement layout not recognised")
            candidates = [self.fallback]

        error = ParseError("Statement layout not recognised")
        for layout in candidates:
            try:
                return self._parse_with(layout, text, source=source, today=today or date.today())
            except ParseError as exc:
                logger.debug("Layout rejected statement text", layout=layout.name, error=str(exc))
                error = exc
        raise error

    def _parse_with(
        self,
        layout: StatementLayout,
        text: str,
        *,
        source: TransactionSource,
        today: date,
    ) -> ParsedStatement:
        period = detect_period(text, layout.period)
        year_match = YEAR_PATTERN.search(text)
        resolver = _DateResolver(period, int(year_match.group(1)) if year_match else today.year)

        drafts: list[_RowDraft] = []
        open_draft: _RowDraft | None = None
        section: SectionKind | None = None
        columns: dict[str, tuple[int, int]] | None = None
        opening: Decimal | None = None
        closing: Decimal | None = None
        awaiting_balances = False

        for raw_line in text.splitlines():
            line = raw_line.rstrip()
            stripped = line.strip()
            if not stripped:
                open_draft = None
                continue

            if awaiting_balances:
                awaiting_balances = False
                if AMOUNTS_ONLY.match(stripped):
                    values = _money_tokens(stripped)
                    opening, closing = values[0].signed, values[-1].signed
                    continue

            if OPENING_LABEL.match(stripped):
                values = _money_tokens(stripped)
                if values:
                    opening = values[0].signed
                    if len(values) > 1 and CLOSING_ANYWHERE.search(stripped):
                        closing = values[-1].signed
                elif CLOSING_ANYWHERE.search(stripped):
                    # Summary table: labels on this line, amounts on the next
                    awaiting_balances = True
                open_draft = None
                continue
            if CLOSING_LABEL.match(stripped):
                values = _money_tokens(stripped)
                if values:
                    closing = values[-1].signed
                open_draft = None
                continue

            if layout.column_header is not None and layout.column_header.search(stripped):
                columns = _column_spans(line, layout.column_labels)
                open_draft = None
                continue
            if layout.is_summary(stripped):
                open_draft = None
                continue
            if LEADING_DATES.match(line):
                open_draft = _RowDraft(line=line, section=section, columns=columns)
                drafts.append(open_draft)
                continue
            kind = layout.section_of(stripped)
            if kind is not None:
                section = kind
                open_draft = None
                continue
            if layout.is_boilerplate(stripped):
                open_draft = None
                continue
            if open_draft is not None and len(stripped) <= MAX_CONTINUATION_LENGTH:
                open_draft.continuation.append(stripped)
            else:
                open_draft = None

        rows: list[_ParsedRow] = []
        skipped = 0
        for draft in drafts:
            parsed = self._parse_row(draft, layout, resolver, source)
            if parsed:
                rows.extend(parsed)
            else:
                skipped += 1

        recognized = layout.recognizes(text)
        if not rows and not (recognized and not drafts):
            raise ParseError(
                f"No transaction rows parsed with layout '{layout.name}'",
                layout=layout.name,
            )
        if rows and len(rows) < layout.row_threshold(recognized):
            raise ParseError(
                f"Only {len(rows)} transaction rows parsed with layout '{layout.name}'",
                layout=layout.name,
                parsed_rows=len(rows),
            )
        if not recognized and skipped > len(rows):
            raise ParseError(
                f"Most date lines did not parse with layout '{layout.name}'",
                layout=layout.name,
                parsed_rows=len(rows),
            )

        result = ParsedStatement(
            transactions=[row.candidate for row in rows],
            layout=layout.name,
            institution=layout.institution if recognized else None,
            period=period,
            opening_balance=opening,
            closing_balance=closing,
            total_credits=sum((row.candidate.amount for row in rows if row.credit), Decimal("0.00")),
            total_debits=sum((row.candidate.amount for row in rows if not row.credit), Decimal("0.00")),
            skipped_rows=skipped,
        )
        if result.balance_valid is False:
            check = result.balance_check
            logger.warning(
                "Statement balance does not reconcile",
                layout=layout.name,
                expected_closing=str(check.expected_closing),
                actual_closing=str(check.closing),
            )
        logger.info(
            "Statement parsed",
            layout=layout.name,
            rows=len(rows),
            skipped_rows=skipped,
            balance_valid=result.balance_valid,
        )
        return result

    def _parse_row(
        self,
        draft: _RowDraft,
        layout: StatementLayout,
        resolver: _DateResolver,
        source: TransactionSource,
    ) -> list[_ParsedRow]:
        line = draft.line
        lead = LEADING_DATES.match(line)
        dates = [resolver.resolve(token) for token in lead.group("dates").split()]
        if dates[0] is None:
            return []
        body_start = lead.end()
        body = line[body_start:].strip()

        check = CHECK_ROW.match(body)
        if check:
            amount = quantize_amount(Decimal(check.group("amount").replace(",", "")))
            row = self._build_row(
                layout,
                source,
                txn_date=dates[0],
                description=f"Check #{check.group('number')}",
                amount=amount,
                credit=False,
                confidence=1.0,
                reference=check.group("reference"),
                raw_text=line.strip(),
            )
            return [row] if row else []

        tokens = _money_tokens(line, body_start)
        if not tokens:
            return []

        if (
            draft.columns is None
            and len(dates) > 1
            and len(tokens) > 1
            and not line[body_start : tokens[0].start].strip()
        ):
            return self._split_merged(draft, layout, source, dates, tokens)

        role = None
        amount_token = tokens[0]
        if draft.columns:
            amount_token = None
            for token in tokens:
                token_role = _column_role(token, draft.columns)
                if token_role in (DEBIT_COLUMN, CREDIT_COLUMN):
                    amount_token, role = token, token_role
                    break
            if amount_token is None:
                return []

        description, reference = self._description(
            _without_spans(line, body_start, tokens), draft.continuation, layout
        )
        credit, confidence = infer_flow(
            description,
            column_role=role,
            negative=amount_token.negative,
            section=draft.section,
        )
        row = self._build_row(
            layout,
            source,
            txn_date=dates[0],
            description=description,
            amount=quantize_amount(amount_token.value),
            credit=credit,
            confidence=confidence,
            reference=reference,
            raw_text=" ".join([line.strip(), *draft.continuation]),
        )
        return [row] if row else []

    def _split_merged(
        self,
        draft: _RowDraft,
        layout: StatementLayout,
        source: TransactionSource,
        dates: list[date | None],
        tokens: list[_Money],
    ) -> list[_ParsedRow]:
        """Split ``DATE DATE AMT DESC AMT DESC`` produced by copy/paste into one row per amount."""
        line = draft.line
        rows = []
        for index, token in enumerate(tokens):
            last = index == len(tokens) - 1
            end = len(line) if last else tokens[index + 1].start
            description, reference = self._description(
                line[token.end : end], draft.continuation if last else [], layout
            )
            credit, confidence = infer_flow(description, negative=token.negative, section=draft.section)
            row = self._build_row(
                layout,
                source,
                txn_date=dates[min(index, len(dates) - 1)] or dates[0],
                description=description,
                amount=quantize_amount(token.value),
                credit=credit,
                confidence=confidence,
                reference=reference,
                raw_text=line.strip(),
            )
            if row:
                rows.append(row)
        return rows

    def _description(
        self, first_line: str, continuation: list[str], layout: StatementLayout
    ) -> tuple[str, str | None]:
        text = _clean(first_line)
        reference = None
        match = layout.reference.search(text)
        if match:
            reference = match.group(1)
            text = text[: match.start()]
        text = layout.strip_trailing_noise(_clean(" ".join([text, *continuation])))
        return _clean(text)[:MAX_DESCRIPTION_LENGTH], reference

    def _build_row(
        self,
        layout: StatementLayout,
        source: TransactionSource,
        *,
        txn_date: date,
        description: str,
        amount: Decimal,
        credit: bool,
        confidence: float,
        reference: str | None,
        raw_text: str,
    ) -> _ParsedRow | None:
        if amount == 0:
            return None
        if TRANSFER_KEYWORD.search(description):
            direction = TransactionDirection.TRANSFER
        else:
            direction = TransactionDirection.INCOME if credit else TransactionDirection.EXPENSE
        candidate = CandidateTransaction(
            txn_date=txn_date,
            amount=amount,
            direction=direction,
            description=description,
            source=source,
            merchant=derive_merchant(description),
            reference=reference,
            confidence=confidence,
            raw_text=raw_text,
        )
        return _ParsedRow(candidate=candidate, credit=credit)


default_statement_parser = StatementTextParser()
