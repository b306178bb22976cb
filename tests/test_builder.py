import asyncio

import pytest
from xrpl.core.binarycodec import decode
from xrpl.models import TransactionFlag
from xrpl.models.transactions import BatchFlag
from xrpl.wallet import Wallet

from conftest import RECIPIENTS, SOURCE, FakeRpc
from distributor.builder import SequenceAllocator, XrplTransactionBuilder
from distributor.models import Err, Ok, TransferRequest, UnsignedTx

MPT_ID = "00000004A407AF5856CCF3C42619DAA925813FC955C72983"
ISSUER = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"


def _rpc(seq=7):
    return FakeRpc(account_info={"account_data": {"Account": SOURCE, "Sequence": seq}})


def _req(recipient=RECIPIENTS[1], amount=2_500_000, asset="XRP", decimals=6, create=False):
    return TransferRequest(
        source_account=SOURCE, recipient=recipient, amount=amount, asset=asset, asset_decimals=decimals, create_account=create,
    )


@pytest.fixture
def pub_key():
    return Wallet.create().public_key


def _inner(tx):
    return [e.get("RawTransaction", e) for e in tx["RawTransactions"]]


@pytest.mark.asyncio
async def test_allocator_reads_ledger_once():
    rpc = _rpc(7)
    seqs = SequenceAllocator(rpc)

    assert await seqs.alloc(SOURCE) == 7
    assert await seqs.alloc(SOURCE, 3) == 8
    assert await seqs.alloc(SOURCE) == 11
    assert rpc.count("account_info") == 1
    assert rpc.requests[0].ledger_index == "current"


@pytest.mark.asyncio
async def test_allocator_concurrent_reservations_are_distinct():
    seqs = SequenceAllocator(_rpc(1))

    got = await asyncio.gather(*(seqs.alloc(SOURCE) for _ in range(25)))

    assert sorted(got) == list(range(1, 26))


@pytest.mark.asyncio
async def test_release_of_latest_reservation_rolls_back():
    rpc = _rpc(7)
    seqs = SequenceAllocator(rpc)
    first = await seqs.alloc(SOURCE, 3)

    await seqs.release(SOURCE, first, 3)

    assert await seqs.alloc(SOURCE) == 7
    assert rpc.count("account_info") == 1


@pytest.mark.asyncio
async def test_release_out_of_order_rereads_ledger():
    rpc = FakeRpc(account_info=[{"account_data": {"Sequence": 7}}, {"account_data": {"Sequence": 8}}])
    seqs = SequenceAllocator(rpc)
    a = await seqs.alloc(SOURCE)
    await seqs.alloc(SOURCE)

    await seqs.release(SOURCE, a)

    assert await seqs.alloc(SOURCE) == 8
    assert rpc.count("account_info") == 2


@pytest.mark.asyncio
async def test_release_with_resync_rereads_ledger():
    rpc = _rpc(7)
    seqs = SequenceAllocator(rpc)
    s = await seqs.alloc(SOURCE)

    await seqs.release(SOURCE, s, resync=True)
    await seqs.alloc(SOURCE)

    assert rpc.count("account_info") == 2


@pytest.mark.asyncio
async def test_xrp_payment(pub_key):
    builder = XrplTransactionBuilder(SequenceAllocator(_rpc(7)), pub_key)

    result = await builder.build(_req())

    assert isinstance(result, Ok)
    assert result.value.sequence == 7 and result.value.sequence_count == 1
    tx = decode(result.value.tx_blob)
    assert tx["TransactionType"] == "Payment"
    assert tx["Account"] == SOURCE
    assert tx["Destination"] == RECIPIENTS[1]
    assert tx["Amount"] == "2500000"
    assert tx["Sequence"] == 7
    assert tx["SigningPubKey"] == pub_key


@pytest.mark.asyncio
async def test_issued_currency_payment(pub_key):
    builder = XrplTransactionBuilder(SequenceAllocator(_rpc()), pub_key)

    result = await builder.build(_req(amount=1_250, asset=f"USD.{ISSUER}", decimals=2))

    amount = decode(result.value.tx_blob)["Amount"]
    assert amount["currency"] == "USD"
    assert amount["issuer"] == ISSUER
    assert amount["value"] == "12.5"


@pytest.mark.asyncio
async def test_mpt_payment(pub_key):
    builder = XrplTransactionBuilder(SequenceAllocator(_rpc()), pub_key)

    result = await builder.build(_req(amount=42, asset=MPT_ID, decimals=0))

    amount = decode(result.value.tx_blob)["Amount"]
    assert amount["mpt_issuance_id"] == MPT_ID
    assert amount["value"] == "42"


@pytest.mark.asyncio
async def test_absent_recipient_gets_funding_batch(pub_key):
    builder = XrplTransactionBuilder(SequenceAllocator(_rpc(7)), pub_key, account_reserve_drops=1_000_000)

    result = await builder.build(_req(amount=500, create=True))

    assert result.value.sequence == 7 and result.value.sequence_count == 3
    tx = decode(result.value.tx_blob)
    assert tx["TransactionType"] == "Batch"
    assert tx["Sequence"] == 7
    assert tx["Flags"] & BatchFlag.TF_ALL_OR_NOTHING
    fund, transfer = _inner(tx)
    assert (fund["Sequence"], fund["Amount"]) == (8, "1000000")
    assert (transfer["Sequence"], transfer["Amount"]) == (9, "500")
    for inner in (fund, transfer):
        assert inner["Fee"] == "0"
        assert inner["SigningPubKey"] == ""
        assert inner["Flags"] & TransactionFlag.TF_INNER_BATCH_TXN
        assert inner["Destination"] == RECIPIENTS[1]


@pytest.mark.asyncio
async def test_large_xrp_transfer_creates_account_by_itself(pub_key):
    builder = XrplTransactionBuilder(SequenceAllocator(_rpc()), pub_key, account_reserve_drops=1_000_000)

    result = await builder.build(_req(amount=1_000_000, create=True))

    assert decode(result.value.tx_blob)["TransactionType"] == "Payment"
    assert result.value.sequence_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "req, reason",
    [
        (_req(recipient="not-an-address"), "invalid recipient"),
        (_req(recipient=SOURCE), "source account"),
        (_req(amount=0), "must be positive"),
        (_req(asset="DOGE"), "unrecognised asset"),
    ],
)
async def test_refusals_do_not_reserve_sequences(pub_key, req, reason):
    rpc = _rpc()
    builder = XrplTransactionBuilder(SequenceAllocator(rpc), pub_key)

    result = await builder.build(req)

    assert isinstance(result, Err)
    assert reason in result.reason
    assert rpc.count("account_info") == 0


@pytest.mark.asyncio
async def test_sequence_lookup_failure_is_an_err(pub_key):
    builder = XrplTransactionBuilder(SequenceAllocator(FakeRpc(account_info={"error": "actNotFound"})), pub_key)

    result = await builder.build(_req())

    assert isinstance(result, Err)
    assert "sequence lookup" in result.reason


@pytest.mark.asyncio
async def test_builder_release_returns_sequences(pub_key):
    rpc = _rpc(7)
    builder = XrplTransactionBuilder(SequenceAllocator(rpc), pub_key)
    built = (await builder.build(_req(amount=5, create=True))).value

    await builder.release(built)
    await builder.release(UnsignedTx(tx_blob="", account=SOURCE))

    again = (await builder.build(_req())).value
    assert again.sequence == 7
    assert rpc.count("account_info") == 1
