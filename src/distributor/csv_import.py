"""Recipient list parsing.

Expected layout (header required, extra columns ignored):

    address,amount
    rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe,100.5
"""

import csv
import io
from dataclasses import dataclass, field

from xrpl.core.addresscodec import is_valid_classic_address

from distributor.amounts import to_smallest_unit
from distributor.errors import AmountError, CsvImportError
from distributor.models import RecipientRow

REQUIRED_COLUMNS = ("address", "amount")
CSV_TEMPLATE = "address,amount\nrPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe,100.5\nrHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh,25\n"


@dataclass(frozen=True, slots=True)
class RejectedRow:
    line: int
    address: str
    amount: str
    reason: str

    def to_dict(self) -> dict:
        return {"line": self.line, "address": self.address, "amount": self.amount, "reason": self.reason}


@dataclass(slots=True)
class ImportResult:
    rows: list[RecipientRow] = field(default_factory=list)
    rejected: list[RejectedRow] = field(default_factory=list)


def parse_recipients(text: str, decimals: int) -> ImportResult:
    """Validate rows and scale amounts to smallest units.

    Bad rows are collected in `rejected` with their line number. Raises
    CsvImportError when the header is wrong or no row survives.
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    header = [(h or "").strip().lower() for h in (reader.fieldnames or [])]
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise CsvImportError(f"CSV header must contain {', '.join(REQUIRED_COLUMNS)} (missing {', '.join(missing)})")
    reader.fieldnames = header

    result = ImportResult()
    for row in reader:
        address = (row.get("address") or "").strip()
        amount = (row.get("amount") or "").strip()
        if not address and not amount:
            continue
        line = reader.line_num

        if not is_valid_classic_address(address):
            result.rejected.append(RejectedRow(line, address, amount, "invalid address"))
            continue
        try:
            units = to_smallest_unit(amount, decimals)
        except AmountError as e:
            result.rejected.append(RejectedRow(line, address, amount, str(e)))
            continue
        if units <= 0:
            result.rejected.append(RejectedRow(line, address, amount, "amount must be greater than zero"))
            continue
        result.rows.append(RecipientRow(recipient=address, amount=units))

    if not result.rows:
        raise CsvImportError(f"no valid recipients found ({len(result.rejected)} rows rejected)")
    return result
