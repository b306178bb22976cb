import hashlib
import logging
from typing import Protocol

import httpx
from xrpl.core.binarycodec import decode, encode, encode_for_signing
from xrpl.core.keypairs import derive_classic_address, sign
from xrpl.wallet import Wallet

from distributor.errors import SigningError

log = logging.getLogger("distributor.signer")


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def txid_from_signed_blob(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


class Signer(Protocol):
    @property
    def public_key(self) -> str: ...
    async def sign(self, tx_blob: str) -> str: ...


def signer_address(signer: Signer) -> str:
    """Classic address the signer's key controls."""
    return derive_classic_address(signer.public_key)


class WalletSigner:
    """Signs with a key held in process."""

    def __init__(self, wallet: Wallet) -> None:
        self.wallet = wallet

    @classmethod
    def from_seed(cls, seed: str) -> "WalletSigner":
        return cls(Wallet.from_seed(seed))

    @property
    def public_key(self) -> str:
        return self.wallet.public_key

    async def sign(self, tx_blob: str) -> str:
        try:
            tx = decode(tx_blob)
        except Exception as e:
            raise SigningError(f"cannot decode transaction blob: {e}") from e
        tx["SigningPubKey"] = self.wallet.public_key
        tx.pop("TxnSignature", None)
        signing_blob = encode_for_signing(tx)
        to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
        tx["TxnSignature"] = sign(to_sign, self.wallet.private_key)
        return encode(tx)


class RemoteSigner:
    """Defers signing to an external service that holds the authority key.

    POST {"tx_blob": <hex>} -> {"signed_tx_blob": <hex>}
    """

    def __init__(self, url: str, public_key: str, http: httpx.AsyncClient) -> None:
        if not url or not public_key:
            raise ValueError("remote signer needs both a url and the authority public key")
        self.url = url
        self._public_key = public_key
        self.http = http

    @property
    def public_key(self) -> str:
        return self._public_key

    async def sign(self, tx_blob: str) -> str:
        try:
            r = await self.http.post(self.url, json={"tx_blob": tx_blob})
        except httpx.HTTPError as e:
            raise SigningError(f"signer transport error: {type(e).__name__}: {e}") from e
        if not r.is_success:
            raise SigningError(f"signer returned HTTP {r.status_code}")
        try:
            signed = r.json()["signed_tx_blob"]
        except (ValueError, KeyError, TypeError) as e:
            raise SigningError("signer response has no signed_tx_blob") from e
        if not isinstance(signed, str) or not signed:
            raise SigningError("signer returned an empty blob")
        return signed
