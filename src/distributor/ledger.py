import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.models.requests import AccountInfo, Fee, ServerState, Tx
from xrpl.utils import drops_to_xrp

import distributor.constants as C
from distributor.errors import LedgerError
from distributor.fee_info import FeeInfo
from distributor.models import ConfirmationResult, ValidityWindow

log = logging.getLogger("distributor.ledger")


@dataclass(frozen=True, slots=True)
class LedgerRef:
    seq: int
    hash: str


class LedgerClient(Protocol):
    async def account_exists(self, address: str) -> bool: ...
    async def await_confirmation(self, signature: str, window: ValidityWindow) -> ConfirmationResult: ...


def _tx_fields(result: dict) -> dict:
    # API v2 nests the transaction under tx_json, v1 flattens it into result
    return result.get("tx_json", result)


class XrplLedgerClient:
    """Ledger queries over rippled JSON-RPC."""

    def __init__(
        self,
        client: AsyncJsonRpcClient,
        *,
        poll_interval: float = C.POLL_INTERVAL,
        grace: int = C.EXPIRY_GRACE,
        overall_timeout: float = C.CONFIRM_TIMEOUT,
        rpc_timeout: float = C.RPC_TIMEOUT,
    ) -> None:
        self.client = client
        self.poll_interval = poll_interval
        self.grace = grace
        self.overall_timeout = overall_timeout
        self.rpc_timeout = rpc_timeout

    async def _rpc(self, req, *, t: float | None = None):
        return await asyncio.wait_for(self.client.request(req), timeout=t or self.rpc_timeout)

    async def account_exists(self, address: str) -> bool:
        r = await self._rpc(AccountInfo(account=address, ledger_index="validated"))
        if r.is_successful():
            return True
        err = r.result.get("error")
        if err == "actNotFound":
            return False
        raise LedgerError(f"account_info {address} failed: {err or r.result}")

    async def latest_validated(self) -> LedgerRef:
        ss = await self._rpc(ServerState())
        vl = ss.result["state"]["validated_ledger"]
        return LedgerRef(seq=int(vl["seq"]), hash=vl["hash"])

    async def fee_info(self) -> FeeInfo:
        r = await self._rpc(Fee())
        if not r.is_successful():
            raise LedgerError(f"fee command failed: {r.result}")
        return FeeInfo.from_fee_result(r.result)

    async def _lookup(self, signature: str) -> ConfirmationResult | None:
        """One poll. None means 'not validated yet'."""
        txr = await self._rpc(Tx(transaction=signature))
        if not (txr.is_successful() and txr.result.get("validated")):
            return None

        li = int(txr.result["ledger_index"])
        result = txr.result["meta"]["TransactionResult"]
        if result != "tesSUCCESS":
            return ConfirmationResult(ok=False, error=f"transaction failed on-chain: {result}", ledger_index=li)

        fee_drops = _tx_fields(txr.result)["Fee"]
        return ConfirmationResult(ok=True, fee_paid=drops_to_xrp(str(fee_drops)), ledger_index=li)

    async def await_confirmation(self, signature: str, window: ValidityWindow) -> ConfirmationResult:
        """Poll until validated, failed on-chain, or the validity window has passed.

        A transaction can't be included after its LastLedgerSequence, so once the
        validated ledger is past `expiry_height + grace` without finding it, it's gone.
        """
        try:
            async with asyncio.timeout(self.overall_timeout):
                while True:
                    try:
                        found = await self._lookup(signature)
                        if found is not None:
                            log.debug("Validated %s in %s ok=%s", signature, found.ledger_index, found.ok)
                            return found
                        latest = await self.latest_validated()
                        if latest.seq > window.expiry_height + self.grace:
                            # Last look, it may have landed in the ledger we just passed
                            found = await self._lookup(signature)
                            if found is not None:
                                return found
                            return ConfirmationResult(
                                ok=False,
                                expired=True,
                                error=(
                                    f"confirmation timeout: not validated by ledger {latest.seq} "
                                    f"(LastLedgerSequence {window.expiry_height})"
                                ),
                            )
                    except (LedgerError, TimeoutError, KeyError, httpx.HTTPError) as e:
                        log.warning("[finality] poll for %s failed: %s - continuing", signature, e)
                    await asyncio.sleep(self.poll_interval)
        except TimeoutError:
            return ConfirmationResult(
                ok=False,
                expired=True,
                error=f"confirmation timeout: no finality for {signature} after {self.overall_timeout}s",
            )
