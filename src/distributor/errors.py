"""Error taxonomy for the distribution engine and the helpers that make errors safe to persist."""

import re
from collections.abc import Callable

import distributor.constants as C


class DistributorError(Exception):
    """Base class for everything this package raises on purpose."""


class SetupError(DistributorError):
    """Job cannot start at all (missing row, source account, authority mismatch)."""


class BuildError(DistributorError):
    """The transaction builder refused the recipient."""


class RelayError(DistributorError):
    """The relay rejected or mangled an optimize/submit call."""

    def __init__(self, message: str, *, status: int | None = None, code: int | str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code

    def __str__(self) -> str:
        msg = super().__str__()
        parts = []
        if self.status is not None:
            parts.append(f"status={self.status}")
        if self.code is not None:
            parts.append(f"code={self.code}")
        return f"{msg} ({', '.join(parts)})" if parts else msg


class SigningError(DistributorError):
    """The signer could not produce a signed blob."""


class LedgerError(DistributorError):
    """A ledger query failed for a reason other than 'not found'."""


class RepositoryError(DistributorError):
    """A task/job store read or write failed."""


class InvalidTransition(RepositoryError):
    def __init__(self, kind: str, old: str, new: str):
        super().__init__(f"illegal {kind} transition {old} -> {new}")
        self.old = old
        self.new = new


class AmountError(DistributorError, ValueError):
    """Amount string can't be represented exactly at the requested precision."""


class CsvImportError(DistributorError, ValueError):
    pass


_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    # signed/unsigned blobs and private keys
    (re.compile(r"\b[0-9A-Fa-f]{66,}\b"), "[redacted-blob]"),
    # XRPL family seeds
    (re.compile(r"\bs[1-9A-HJ-NP-Za-km-z]{24,30}\b"), "[redacted-seed]"),
    (re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"), r"\1 [redacted-token]"),
    (
        re.compile(r"(?i)([?&](?:apikey|api_key|token|key)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)


def sanitize_error(error: BaseException | str, *, max_chars: int = C.MAX_ERROR_LENGTH) -> str:
    """Render an error for operator-visible storage: secrets redacted, length clamped."""
    if isinstance(error, BaseException):
        text = str(error).strip() or type(error).__name__
        if not isinstance(error, DistributorError):
            text = f"{type(error).__name__}: {text}"
    else:
        text = error.strip()

    for pattern, replacement in _REPLACEMENTS:
        text = pattern.sub(replacement, text)

    if len(text) <= max_chars:
        return text
    return text[:max_chars]
