"""Exact amount scaling and asset identifiers.

Amounts travel through the engine as integers in the asset's smallest unit.
Conversion is string based so "100.5" at 9 decimals is exactly 100500000000,
never whatever a float multiplication happens to produce.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from xrpl.core.addresscodec import is_valid_classic_address
from xrpl.models.amounts import IssuedCurrencyAmount, MPTAmount

import distributor.constants as C
from distributor.errors import AmountError

_AMOUNT_RE = re.compile(r"^\+?(\d*)(?:\.(\d*))?$")
_MPT_ID_RE = re.compile(r"^[0-9A-Fa-f]{48}$")


def to_smallest_unit(amount: str | int | Decimal, decimals: int) -> int:
    """Scale a decimal amount string into an integer of smallest units.

    Args:
        amount: Human amount, e.g. "100.5". Ints and Decimals are rendered to strings first.
        decimals: Asset precision.

    Returns:
        The integer amount, e.g. to_smallest_unit("100.5", 9) == 100500000000.

    Raises:
        AmountError: empty/negative/non-numeric input, or more fractional digits than
            `decimals` allows (truncating would silently change the amount).
    """
    if decimals < 0:
        raise AmountError(f"decimals must be >= 0, got {decimals}")
    if isinstance(amount, Decimal):
        text = format(amount, "f")
    else:
        text = str(amount).strip()

    m = _AMOUNT_RE.match(text)
    if not m or not (m.group(1) or m.group(2)):
        raise AmountError(f"not a non-negative decimal amount: {text!r}")

    whole, fraction = m.group(1) or "0", m.group(2) or ""
    significant = fraction.rstrip("0")
    if len(significant) > decimals:
        raise AmountError(f"{text} has more than {decimals} decimal places")

    return int(whole + fraction.ljust(decimals, "0")[:decimals])


def from_smallest_unit(units: int, decimals: int) -> str:
    """Inverse of to_smallest_unit, rendered without exponent or trailing zeros."""
    sign = "-" if units < 0 else ""
    digits = str(abs(units)).rjust(decimals + 1, "0")
    if decimals == 0:
        return sign + digits
    whole, fraction = digits[:-decimals], digits[-decimals:].rstrip("0")
    return f"{sign}{whole}.{fraction}" if fraction else f"{sign}{whole}"


class AssetKind(StrEnum):
    XRP = "xrp"
    MPT = "mpt"
    IOU = "iou"


@dataclass(frozen=True, slots=True)
class Asset:
    """Distributed asset: native XRP, an MPToken issuance, or an issued currency."""

    kind: AssetKind
    currency: str | None = None
    issuer: str | None = None
    mpt_issuance_id: str | None = None

    @classmethod
    def parse(cls, identifier: str) -> "Asset":
        ident = identifier.strip()
        if ident.upper() == C.XRP:
            return cls(AssetKind.XRP)
        if _MPT_ID_RE.match(ident):
            return cls(AssetKind.MPT, mpt_issuance_id=ident.upper())
        currency, sep, issuer = ident.partition(".")
        if sep and currency and is_valid_classic_address(issuer):
            return cls(AssetKind.IOU, currency=currency, issuer=issuer)
        raise AmountError(f"unrecognised asset identifier {identifier!r} (want XRP, MPT id, or CUR.rIssuer)")

    @property
    def identifier(self) -> str:
        if self.kind == AssetKind.XRP:
            return C.XRP
        if self.kind == AssetKind.MPT:
            return self.mpt_issuance_id
        return f"{self.currency}.{self.issuer}"

    def check_decimals(self, decimals: int) -> None:
        if self.kind == AssetKind.XRP and decimals != C.XRP_DECIMALS:
            raise AmountError(f"XRP precision is fixed at {C.XRP_DECIMALS}, got {decimals}")
        if self.kind == AssetKind.MPT and not 0 <= decimals <= 255:
            raise AmountError(f"MPT AssetScale must fit in a byte, got {decimals}")
        if decimals < 0:
            raise AmountError(f"decimals must be >= 0, got {decimals}")

    def to_amount(self, units: int, decimals: int) -> str | dict:
        """XRPL JSON Amount for `units` smallest units of this asset."""
        if self.kind == AssetKind.XRP:
            return str(units)
        if self.kind == AssetKind.MPT:
            return MPTAmount(mpt_issuance_id=self.mpt_issuance_id, value=str(units)).to_dict()
        return IssuedCurrencyAmount(
            currency=self.currency,
            issuer=self.issuer,
            value=from_smallest_unit(units, decimals),
        ).to_dict()
