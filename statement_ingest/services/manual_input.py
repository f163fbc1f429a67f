"""Line parser for transactions typed or pasted by hand."""

from __future__ import annotations

import csv
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from statement_ingest.logger import get_logger
from statement_ingest.models import TransactionSource
from statement_ingest.services.candidates import CandidateTransaction, split_signed_amount
from statement_ingest.services.statement_parser import (
    ParseError,
    StatementTextParser,
    default_statement_parser,
)
from statement_ingest.utils.text import derive_merchant

logger = get_logger(__name__)

CLEAN_CONFIDENCE = 0.9
UNSTRUCTURED_CONFIDENCE = 0.75
MISSING_DESCRIPTION_CONFIDENCE = 0.6

MULTI_SPACE = re.compile(r"\s{2,}")
SLASH_DATE = re.compile(r"^(?P<month>\d{1,2})/(?P<day>\d{1,2})(?:/(?P<year>\d{4}|\d{2}))?$")
DASH_DATE = re.compile(r"^(?P<month>\d{1,2})-(?P<day>\d{1,2})-(?P<year>\d{4})$")
ISO_DATE = re.compile(r"^(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})$")
AMOUNT = re.compile(
    r"^(?P<open>\()?(?P<sign>[-+])?\$?(?P<inner_sign>-)?(?P<number>\d{1,3}(?:,\d{3})+|\d+)"
    r"(?:\.(?P<cents>\d{1,2}))?(?P<close>\))?(?P<trail>-)?$"
)
HEADER_CELL = re.compile(r"^(?:trans(?:action)?\.?\s+|post(?:ed|ing)?\s+)?date$", re.IGNORECASE)
THOUSANDS_TAIL = re.compile(r"^\d{3}(?:\.\d{1,2})?\)?-?$")
THOUSANDS_HEAD = re.compile(r"^\(?[-+]?\$?-?\d{1,3}$")


@dataclass
class ManualParseResult:
    """Parsed rows plus counts of what could not be used."""

    transactions: list[CandidateTransaction]
    skipped_lines: int = 0
    total_lines: int = 0
    header_lines: int = 0
    skipped_line_numbers: list[int] = field(default_factory=list)


def parse_date(value: str, today: date | None = None) -> date | None:
    """Parse a manual date; invalid calendar dates return None, never raise.

    Accepts ``MM/DD`` (current year), ``MM/DD/YY`` (20YY), ``MM/DD/YYYY``,
    ``MM-DD-YYYY`` and ISO ``YYYY-MM-DD``.
    """
    value = value.strip()
    match = SLASH_DATE.match(value) or DASH_DATE.match(value) or ISO_DATE.match(value)
    if not match:
        return None
    year_text = match.group("year")
    if year_text is None:
        year = (today or date.today()).year
    else:
        year = int(year_text) + (2000 if len(year_text) == 2 else 0)
    try:
        return date(year, int(match.group("month")), int(match.group("day")))
    except ValueError:
        return None


def looks_like_date(value: str) -> bool:
    value = value.strip()
    return bool(SLASH_DATE.match(value) or DASH_DATE.match(value) or ISO_DATE.match(value))


def parse_amount(value: str) -> Decimal | None:
    """Parse a signed amount: ``$``, thousands separators, leading/trailing minus, parentheses."""
    match = AMOUNT.match(value.strip().replace(" ", ""))
    if not match:
        return None
    if bool(match.group("open")) != bool(match.group("close")):
        return None
    amount = Decimal(f"{match.group('number').replace(',', '')}.{match.group('cents') or '0'}")
    negative = (
        match.group("sign") == "-"
        or match.group("inner_sign") is not None
        or match.group("trail") is not None
        or match.group("open") is not None
    )
    return -amount if negative else amount


def _amount_index(cells: list[str], date_index: int) -> int | None:
    """Rightmost cell with a cents part, else the rightmost bare number.

    Check and reference numbers trail the amount in pasted rows.
    """
    numbers = [
        index
        for index in range(len(cells) - 1, -1, -1)
        if index != date_index and parse_amount(cells[index]) is not None
    ]
    for index in numbers:
        match = AMOUNT.match(cells[index].strip().replace(" ", ""))
        if match and match.group("cents"):
            return index
    return numbers[0] if numbers else None


def _rejoin_thousands(fields: list[str]) -> list[str]:
    """Undo csv splitting of unquoted amounts such as ``-1,234.56``."""
    joined: list[str] = []
    for value in fields:
        stripped = value.strip()
        if joined and THOUSANDS_TAIL.match(stripped) and THOUSANDS_HEAD.match(joined[-1].strip()):
            joined[-1] = f"{joined[-1].strip()},{stripped}"
        else:
            joined.append(value)
    return joined


def _is_header(fields: list[str]) -> bool:
    cells = [value.strip() for value in fields if value.strip()]
    if not cells or any(looks_like_date(cell) or parse_amount(cell) is not None for cell in cells):
        return False
    return any(HEADER_CELL.match(cell) for cell in cells)


class ManualInputParser:
    """Parse free-form rows of ``date  description  amount``.

    Each line tries tab, comma (csv quoting respected) and runs of two or more
    spaces as separators, in that order; a single-space fallback handles
    loosely typed rows at lower confidence.
    """

    def __init__(self, statement_parser: StatementTextParser | None = default_statement_parser) -> None:
        self.statement_parser = statement_parser

    def parse(
        self,
        text: str,
        *,
        source: TransactionSource = TransactionSource.MANUAL,
        today: date | None = None,
    ) -> ManualParseResult:
        """Parse pasted text; a pasted bank statement goes through the statement parser first."""
        if self.statement_parser is not None and text and text.strip():
            try:
                parsed = self.statement_parser.parse(text, source=source, strict=True, today=today)
            except ParseError as exc:
                logger.debug("Manual text is not a known statement layout", reason=str(exc))
            else:
                return ManualParseResult(
                    transactions=parsed.transactions,
                    skipped_lines=parsed.skipped_rows,
                    total_lines=sum(1 for line in text.splitlines() if line.strip()),
                )
        return self.parse_lines(text, source=source, today=today)

    def parse_lines(
        self,
        text: str,
        *,
        source: TransactionSource = TransactionSource.MANUAL,
        today: date | None = None,
    ) -> ManualParseResult:
        today = today or date.today()
        result = ManualParseResult(transactions=[])
        for number, line in enumerate((text or "").splitlines(), start=1):
            if not line.strip():
                continue
            result.total_lines += 1
            candidate = self.parse_line(line, source=source, today=today)
            if candidate is not None:
                result.transactions.append(candidate)
            elif self._header_fields(line):
                result.header_lines += 1
            else:
                result.skipped_lines += 1
                result.skipped_line_numbers.append(number)

        if result.skipped_lines:
            logger.info(
                "Manual input lines skipped",
                skipped_lines=result.skipped_lines,
                total_lines=result.total_lines,
            )
        return result

    def parse_line(
        self,
        line: str,
        *,
        source: TransactionSource = TransactionSource.MANUAL,
        today: date | None = None,
    ) -> CandidateTransaction | None:
        """Parse one row, or None when no date-like and amount-like tokens are found."""
        for fields in self._structured_splits(line):
            candidate = self._from_fields(fields, line, source, today, CLEAN_CONFIDENCE)
            if candidate is not None:
                return candidate
        return self._from_fields(line.split(), line, source, today, UNSTRUCTURED_CONFIDENCE)

    def _structured_splits(self, line: str) -> list[list[str]]:
        splits = []
        if "\t" in line:
            splits.append(line.split("\t"))
        if "," in line:
            splits.append(_rejoin_thousands(next(csv.reader([line], skipinitialspace=True))))
        if MULTI_SPACE.search(line.strip()):
            splits.append(MULTI_SPACE.split(line.strip()))
        return splits

    def _header_fields(self, line: str) -> bool:
        return any(_is_header(fields) for fields in [*self._structured_splits(line), [line]])

    def _from_fields(
        self,
        fields: list[str],
        line: str,
        source: TransactionSource,
        today: date | None,
        confidence: float,
    ) -> CandidateTransaction | None:
        cells = [value.strip() for value in fields]
        date_index = next((index for index, cell in enumerate(cells) if looks_like_date(cell)), None)
        if date_index is None:
            return None
        txn_date = parse_date(cells[date_index], today)
        if txn_date is None:
            return None

        amount_index = _amount_index(cells, date_index)
        if amount_index is None:
            return None
        amount = parse_amount(cells[amount_index])
        if amount is None:
            return None

        description = " ".join(
            cell for index, cell in enumerate(cells) if cell and index not in (date_index, amount_index)
        )
        if not description:
            confidence = MISSING_DESCRIPTION_CONFIDENCE

        value, direction = split_signed_amount(amount)
        return CandidateTransaction(
            txn_date=txn_date,
            amount=value,
            direction=direction,
            description=description,
            source=source,
            merchant=derive_merchant(description),
            confidence=confidence,
            raw_text=line.strip(),
        )


default_manual_parser = ManualInputParser()
