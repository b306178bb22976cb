import asyncio
import itertools
import logging
from typing import Protocol

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.core.binarycodec import decode, encode
from xrpl.models.requests import SubmitOnly

import distributor.constants as C
from distributor.errors import LedgerError, RelayError
from distributor.ledger import XrplLedgerClient
from distributor.models import DeliveryParams, OptimizedTx, ValidityWindow
from distributor.signer import txid_from_signed_blob

log = logging.getLogger("distributor.relay")


class RelayClient(Protocol):
    async def optimize(self, tx_blob: str, params: DeliveryParams) -> OptimizedTx: ...
    async def submit(self, signed_blob: str) -> str: ...


def _batch_fee_multiplier(tx: dict) -> int:
    # Outer Batch pays twice the base plus one per inner transaction (inner fees are zero)
    if tx.get("TransactionType") != "Batch":
        return 1
    return 2 + len(tx.get("RawTransactions", []))


class RippledRelayClient:
    """Prices and submits transactions against rippled itself.

    Fees come from the `fee` command by tier, the validity window from the latest
    validated ledger. `tip_tier` has no meaning on the XRP Ledger and is ignored.
    """

    def __init__(
        self,
        client: AsyncJsonRpcClient,
        ledger: XrplLedgerClient,
        *,
        horizon: int = C.HORIZON,
        max_fee_drops: int = C.MAX_FEE_DROPS,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
    ) -> None:
        self.client = client
        self.ledger = ledger
        self.horizon = horizon
        self.max_fee_drops = max_fee_drops
        self.submit_timeout = submit_timeout

    async def optimize(self, tx_blob: str, params: DeliveryParams) -> OptimizedTx:
        try:
            tx = decode(tx_blob)
        except Exception as e:
            raise RelayError(f"cannot decode transaction blob: {e}") from e

        try:
            fees = await self.ledger.fee_info()
            latest = await self.ledger.latest_validated()
        except (LedgerError, TimeoutError, KeyError, httpx.HTTPError) as e:
            raise RelayError(f"fee/ledger lookup failed: {e}") from e

        per_tx = fees.for_tier(params.priority_fee_tier)
        if per_tx > self.max_fee_drops:
            raise RelayError(
                f"fee too high ({per_tx} drops > {self.max_fee_drops} max) for tier {params.priority_fee_tier}",
                code="feeCapExceeded",
            )
        if fees.escalated:
            log.warning(
                "Queue fees escalated: minimum=%s open_ledger=%s base=%s queue=%s/%s",
                fees.minimum_fee, fees.open_ledger_fee, fees.base_fee, fees.current_queue_size, fees.max_queue_size,
            )

        fee = per_tx * _batch_fee_multiplier(tx)
        lls = latest.seq + self.horizon
        tx["Fee"] = str(fee)
        tx["LastLedgerSequence"] = lls
        log.debug("Priced %s seq=%s fee=%s lls=%s", tx.get("TransactionType"), tx.get("Sequence"), fee, lls)
        return OptimizedTx(tx_blob=encode(tx), window=ValidityWindow(reference_blockhash=latest.hash, expiry_height=lls))

    async def submit(self, signed_blob: str) -> str:
        try:
            resp = await asyncio.wait_for(self.client.request(SubmitOnly(tx_blob=signed_blob)), timeout=self.submit_timeout)
        except (TimeoutError, httpx.HTTPError) as e:
            raise RelayError(f"submit transport error: {type(e).__name__}: {e}") from e

        res = resp.result
        if not resp.is_successful():
            raise RelayError(f"submit failed: {res.get('error_message') or res.get('error')}", code=res.get("error"))

        er = res.get("engine_result")
        if isinstance(er, str) and er.startswith(("tem", "tef")):
            # never applied, safe to build again
            raise RelayError(f"submit rejected: {res.get('engine_result_message', er)}", code=er)
        if isinstance(er, str) and er.startswith("tel"):
            log.warning("tel* (may retry): %s - tracking until expiry", er)

        srv_txid = res.get("tx_json", {}).get("hash")
        return srv_txid or txid_from_signed_blob(signed_blob)


class GatewayRelayClient:
    """JSON-RPC client for an external transaction gateway."""

    def __init__(
        self,
        url: str,
        api_key: str,
        http: httpx.AsyncClient,
        *,
        horizon: int = C.HORIZON,
    ) -> None:
        if not url:
            raise ValueError("gateway url is required")
        self.url = url
        self.api_key = api_key
        self.http = http
        self.horizon = horizon
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: list):
        payload = {"jsonrpc": "2.0", "id": f"{method}-{next(self._ids)}", "method": method, "params": params}
        query = {"apiKey": self.api_key} if self.api_key else None
        try:
            r = await self.http.post(self.url, json=payload, params=query)
        except httpx.HTTPError as e:
            raise RelayError(f"{method} transport error: {type(e).__name__}: {e}") from e

        if not r.is_success:
            raise RelayError(f"{method} failed: {r.text[:200]}", status=r.status_code)
        try:
            body = r.json()
        except ValueError as e:
            raise RelayError(f"{method} returned non-JSON body", status=r.status_code) from e

        err = body.get("error") if isinstance(body, dict) else None
        if err:
            if isinstance(err, dict):
                raise RelayError(f"{method} error: {err.get('message', err)}", status=r.status_code, code=err.get("code"))
            raise RelayError(f"{method} error: {err}", status=r.status_code)
        if not isinstance(body, dict) or "result" not in body:
            raise RelayError(f"{method} response has no result", status=r.status_code)
        return body["result"]

    async def optimize(self, tx_blob: str, params: DeliveryParams) -> OptimizedTx:
        options = {
            "encoding": "hex",
            "priorityFeeTier": str(params.priority_fee_tier),
            "deliveryRoute": str(params.delivery_route),
            "expireInLedgers": self.horizon,
        }
        if params.tip_tier is not None:
            options["tipTier"] = str(params.tip_tier)

        result = await self._call("buildGatewayTransaction", [tx_blob, options])
        try:
            latest = result["latestLedger"]
            return OptimizedTx(
                tx_blob=result["transaction"],
                window=ValidityWindow(
                    reference_blockhash=latest["ledgerHash"],
                    expiry_height=int(latest["lastLedgerSequence"]),
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RelayError(f"buildGatewayTransaction result malformed: missing {e}") from e

    async def submit(self, signed_blob: str) -> str:
        result = await self._call("sendTransaction", [signed_blob, {"encoding": "hex"}])
        if not isinstance(result, str) or not result:
            raise RelayError(f"sendTransaction returned no signature: {result!r}")
        return result
