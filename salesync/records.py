"""
Sales records and the per-source adapters that produce them.

Each spreadsheet layout gets one adapter that maps its cells onto the single
`SalesRecord` shape at ingestion time. Rows whose date or amount cannot be
parsed are counted in the report and dropped; they never abort a load.
"""
import dataclasses
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence

from salesync.dates import parse_sheet_date
from salesync.exceptions import RecordParseError
from salesync.numbers import normalize_customer_code, normalize_salesman, parse_locale_number
from salesync.observability import get_logger

logger = get_logger(__name__)

HEADER_SEARCH_ROWS = 10

# Greek document type initials in the ledger export
INVOICE_PREFIXES = ("Τ",)          # Τιμολόγιο
CREDIT_NOTE_PREFIXES = ("Π", "Α")  # Πιστωτικό, Ακυρωτικό


@dataclass(frozen=True)
class SalesRecord:
    date: date
    customer_code: str
    customer_name: str
    doc_type: str
    amount: float
    is_invoice: bool = True
    is_credit_note: bool = False
    handled_by: str = ""

    @property
    def year(self) -> int:
        return self.date.year


@dataclass
class ParseReport:
    """Records produced from one sheet plus what was left out."""

    records: List[SalesRecord] = field(default_factory=list)
    skipped: int = 0   # unparseable rows
    filtered: int = 0  # valid rows excluded on purpose (other year, zero amount)

    def to_dict(self) -> Dict[str, int]:
        return {"records": len(self.records), "skipped": self.skipped, "filtered": self.filtered}


def _cell(row: Sequence[str], index: Optional[int]) -> str:
    if index is None or index >= len(row):
        return ""
    value = row[index]
    return "" if value is None else str(value).strip()


def _is_blank(row: Sequence[str]) -> bool:
    return all(not str(cell or "").strip() for cell in row)


class HeaderRecordAdapter:
    """
    Sheets whose first rows contain a header naming each column.

    Usage:
        adapter = HeaderRecordAdapter(
            date_column="Billing Date",
            customer_code_column="Payer",
            customer_name_column="Name Payer",
            amount_column="Sales revenue",
            handled_by_column="Sales Rep",
        )
        report = adapter.parse(rows)
    """

    def __init__(
        self,
        date_column: str,
        customer_code_column: str,
        customer_name_column: str,
        amount_column: str,
        handled_by_column: Optional[str] = None,
        doc_type_column: Optional[str] = None,
    ):
        self.date_column = date_column
        self.customer_code_column = customer_code_column
        self.customer_name_column = customer_name_column
        self.amount_column = amount_column
        self.handled_by_column = handled_by_column
        self.doc_type_column = doc_type_column

    def _locate_header(self, rows: Sequence[Sequence[str]]) -> Optional[Dict[str, int]]:
        wanted = {
            "date": self.date_column,
            "code": self.customer_code_column,
            "name": self.customer_name_column,
            "amount": self.amount_column,
            "handled_by": self.handled_by_column,
            "doc_type": self.doc_type_column,
        }
        for index, row in enumerate(rows[:HEADER_SEARCH_ROWS]):
            labels = {str(cell or "").strip().lower(): i for i, cell in enumerate(row)}
            positions = {
                key: labels.get(name.strip().lower()) if name else None
                for key, name in wanted.items()
            }
            if positions["date"] is not None and positions["amount"] is not None and positions["code"] is not None:
                positions["_header_row"] = index
                return positions
        return None

    def _to_record(self, row: Sequence[str], columns: Dict[str, int], row_index: int) -> SalesRecord:
        record_date = parse_sheet_date(_cell(row, columns["date"]))
        if record_date is None:
            raise RecordParseError("Unparseable date", details=_cell(row, columns["date"]), row_index=row_index)

        amount = parse_locale_number(_cell(row, columns["amount"]), default=None)
        if amount is None:
            raise RecordParseError("Unparseable amount", details=_cell(row, columns["amount"]), row_index=row_index)

        credit = amount < 0
        return SalesRecord(
            date=record_date,
            customer_code=normalize_customer_code(_cell(row, columns["code"])),
            customer_name=_cell(row, columns["name"]),
            doc_type=_cell(row, columns["doc_type"]),
            amount=amount,
            is_invoice=not credit,
            is_credit_note=credit,
            handled_by=normalize_salesman(_cell(row, columns["handled_by"])),
        )

    def parse(self, rows: Sequence[Sequence[str]]) -> ParseReport:
        report = ParseReport()
        if not rows:
            return report

        columns = self._locate_header(rows)
        if columns is None:
            logger.warning(
                f"Header not found (looking for {self.date_column!r}, {self.amount_column!r})"
            )
            report.skipped = sum(1 for row in rows if not _is_blank(row))
            return report

        for index in range(columns["_header_row"] + 1, len(rows)):
            row = rows[index]
            if _is_blank(row):
                continue
            try:
                report.records.append(self._to_record(row, columns, index))
            except RecordParseError as e:
                report.skipped += 1
                logger.debug(f"Row {index} skipped: {e}")

        return report


class LedgerRecordAdapter:
    """
    Positional ledger export for one year.

    Columns: A date, B document type, C customer code, D customer name,
    E amount including VAT. Amounts are stored net of VAT; credit notes are
    negated. Rows of other years, zero amounts and unknown document types
    are filtered out.
    """

    DATE, DOC_TYPE, CODE, NAME, AMOUNT = range(5)

    def __init__(self, year: int, vat_divisor: float = 1.24):
        self.year = year
        self.vat_divisor = vat_divisor

    @staticmethod
    def find_header_row(rows: Sequence[Sequence[str]]) -> Optional[int]:
        for index, row in enumerate(rows[:HEADER_SEARCH_ROWS]):
            first = _cell(row, 0).lower()
            if "ημερ" in first or "date" in first:
                return index
        return None

    def parse(self, rows: Sequence[Sequence[str]]) -> ParseReport:
        report = ParseReport()
        if not rows:
            return report

        header = self.find_header_row(rows)
        start = 0 if header is None else header + 1

        for index in range(start, len(rows)):
            row = rows[index]
            if _is_blank(row):
                continue

            record_date = parse_sheet_date(_cell(row, self.DATE))
            if record_date is None:
                report.skipped += 1
                continue
            if record_date.year != self.year:
                report.filtered += 1
                continue

            gross = parse_locale_number(_cell(row, self.AMOUNT), default=None)
            if gross is None:
                report.skipped += 1
                continue
            if gross == 0:
                report.filtered += 1
                continue

            doc_type = _cell(row, self.DOC_TYPE)
            initial = doc_type[:1].upper()
            if initial in INVOICE_PREFIXES:
                credit = False
            elif initial in CREDIT_NOTE_PREFIXES:
                credit = True
            else:
                report.filtered += 1
                continue

            net = abs(gross) / self.vat_divisor
            report.records.append(SalesRecord(
                date=record_date,
                customer_code=_cell(row, self.CODE).upper(),
                customer_name=_cell(row, self.NAME),
                doc_type=doc_type,
                amount=-net if credit else net,
                is_invoice=not credit,
                is_credit_note=credit,
            ))

        logger.debug(f"Ledger {self.year}: {report.to_dict()}")
        return report


def header_reference_date(rows: Sequence[Sequence[str]]) -> Optional[date]:
    """Date written in the last filled cell of the first row ("data as of ...")."""
    if not rows or not rows[0]:
        return None
    for cell in reversed(rows[0]):
        if str(cell or "").strip():
            return parse_sheet_date(cell)
    return None


def attribute_handled_by(
    records: Sequence[SalesRecord], assignments: Dict[str, str]
) -> List[SalesRecord]:
    """
    Credit records of single-salesperson customers to that salesperson.

    `assignments` maps normalized customer codes to normalized salesperson
    names; records of other customers keep the attribution from the sheet.
    """
    if not assignments:
        return list(records)
    return [
        dataclasses.replace(r, handled_by=assignments[r.customer_code])
        if r.customer_code in assignments else r
        for r in records
    ]
