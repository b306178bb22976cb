"""Unsigned transfer construction and account sequence bookkeeping."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.core.addresscodec import is_valid_classic_address
from xrpl.core.binarycodec import encode
from xrpl.core.binarycodec.exceptions import XRPLBinaryCodecException
from xrpl.models import TransactionFlag
from xrpl.models.exceptions import XRPLModelException
from xrpl.models.requests import AccountInfo
from xrpl.models.transactions import Batch, BatchFlag, Payment

import distributor.constants as C
from distributor.amounts import Asset, AssetKind
from distributor.errors import AmountError, LedgerError
from distributor.models import BuildResult, Err, Ok, TransferRequest, UnsignedTx

log = logging.getLogger("distributor.builder")


class TransactionBuilder(Protocol):
    async def build(self, req: TransferRequest) -> BuildResult: ...
    async def release(self, unsigned: UnsignedTx, *, resync: bool = False) -> None: ...


@dataclass
class _AccountSeq:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    next_seq: int | None = None


class SequenceAllocator:
    """Hands out account sequences without a ledger round trip per transaction.

    The first reservation for an account reads its Sequence from the current
    (open) ledger; after that the counter lives here under a per-account lock.
    """

    def __init__(self, client: AsyncJsonRpcClient, *, rpc_timeout: float = C.RPC_TIMEOUT) -> None:
        self.client = client
        self.rpc_timeout = rpc_timeout
        self._accounts: dict[str, _AccountSeq] = {}

    def _record_for(self, addr: str) -> _AccountSeq:
        rec = self._accounts.get(addr)
        if rec is None:
            rec = self._accounts[addr] = _AccountSeq()
        return rec

    async def alloc(self, addr: str, count: int = 1) -> int:
        """Reserve `count` consecutive sequences and return the first."""
        rec = self._record_for(addr)
        async with rec.lock:
            if rec.next_seq is None:
                ai = await asyncio.wait_for(
                    self.client.request(AccountInfo(account=addr, ledger_index="current", strict=True)),
                    timeout=self.rpc_timeout,
                )
                if not ai.is_successful():
                    raise LedgerError(f"account_info {addr} failed: {ai.result.get('error')}")
                rec.next_seq = ai.result["account_data"]["Sequence"]

            s = rec.next_seq
            rec.next_seq += count
            return s

    async def release(self, addr: str, seq: int, count: int = 1, *, resync: bool = False) -> None:
        """Give back a reservation that never made it into a validated ledger.

        Rolls back only when it was the most recent reservation. Otherwise the
        cached counter is dropped and the next alloc re-reads the ledger.
        """
        rec = self._record_for(addr)
        async with rec.lock:
            if not resync and rec.next_seq == seq + count:
                rec.next_seq = seq
                log.debug("Released sequence %s(+%s) for %s", seq, count - 1, addr)
            else:
                log.warning(
                    "Cannot roll back sequence %s for %s (next_seq=%s, resync=%s) - re-reading from ledger",
                    seq, addr, rec.next_seq, resync,
                )
                rec.next_seq = None


class XrplTransactionBuilder:
    """Builds one transfer per recipient as a hex binary-codec blob.

    Absent recipients get an atomic Batch: a reserve-funding XRP payment followed
    by the transfer. An XRP transfer at or above the reserve creates the account
    by itself and stays a plain Payment.
    """

    def __init__(
        self,
        sequences: SequenceAllocator,
        signing_pub_key: str,
        *,
        account_reserve_drops: int = C.ACCOUNT_RESERVE_DROPS,
    ) -> None:
        self.sequences = sequences
        self.signing_pub_key = signing_pub_key
        self.account_reserve_drops = account_reserve_drops

    async def build(self, req: TransferRequest) -> BuildResult:
        if not is_valid_classic_address(req.recipient):
            return Err(f"invalid recipient address {req.recipient!r}")
        if req.recipient == req.source_account:
            return Err("recipient is the source account")
        if req.amount <= 0:
            return Err(f"amount must be positive, got {req.amount}")
        try:
            asset = Asset.parse(req.asset)
            amount = asset.to_amount(req.amount, req.asset_decimals)
        except AmountError as e:
            return Err(str(e))

        wrap = req.create_account and not (asset.kind == AssetKind.XRP and req.amount >= self.account_reserve_drops)
        count = 3 if wrap else 1

        try:
            seq = await self.sequences.alloc(req.source_account, count)
        except (LedgerError, TimeoutError, KeyError, httpx.HTTPError) as e:
            return Err(f"sequence lookup for {req.source_account} failed: {e}")

        try:
            if wrap:
                tx = self._funding_batch(req.source_account, req.recipient, amount, seq)
            else:
                tx = Payment.from_xrpl(
                    {
                        "TransactionType": "Payment",
                        "Account": req.source_account,
                        "Destination": req.recipient,
                        "Amount": amount,
                        "Sequence": seq,
                        "Fee": C.DEFAULT_FEE_DROPS,
                        "SigningPubKey": self.signing_pub_key,
                    }
                )
            blob = encode(tx.to_xrpl())
        except (XRPLModelException, XRPLBinaryCodecException, ValueError, TypeError) as e:
            await self.sequences.release(req.source_account, seq, count)
            return Err(f"cannot encode transfer to {req.recipient}: {e}")

        log.debug("Built %s seq=%s -> %s", tx.transaction_type, seq, req.recipient)
        return Ok(UnsignedTx(tx_blob=blob, account=req.source_account, sequence=seq, sequence_count=count))

    def _funding_batch(self, source: str, recipient: str, amount: str | dict, seq: int) -> Batch:
        # Batch uses seq N, inner txns N+1 and N+2. Inner txns carry no fee and no key.
        def inner(amt: str | dict, inner_seq: int) -> Payment:
            return Payment.from_xrpl(
                {
                    "TransactionType": "Payment",
                    "Account": source,
                    "Destination": recipient,
                    "Amount": amt,
                    "Sequence": inner_seq,
                    "Fee": "0",
                    "SigningPubKey": "",
                    "Flags": TransactionFlag.TF_INNER_BATCH_TXN,
                }
            )

        return Batch(
            account=source,
            sequence=seq,
            fee=C.DEFAULT_FEE_DROPS,
            signing_pub_key=self.signing_pub_key,
            flags=BatchFlag.TF_ALL_OR_NOTHING,
            raw_transactions=[
                inner(str(self.account_reserve_drops), seq + 1),
                inner(amount, seq + 2),
            ],
        )

    async def release(self, unsigned: UnsignedTx, *, resync: bool = False) -> None:
        if unsigned.sequence is None:
            return
        await self.sequences.release(unsigned.account, unsigned.sequence, unsigned.sequence_count, resync=resync)
