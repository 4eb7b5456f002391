import re

import httpx
import pytest

from qrsplit.services.errors import LedgerUnavailable
from qrsplit.services.ledger import HttpLedger, MockLedger, generate_tx_hash


def make_ledger(handler) -> HttpLedger:
    client = httpx.AsyncClient(base_url="http://ledger.test", transport=httpx.MockTransport(handler))
    return HttpLedger("http://ledger.test", client=client)


def test_tx_hash_format():
    assert re.fullmatch(r"0x[0-9a-f]{64}", generate_tx_hash())


@pytest.mark.asyncio
async def test_mock_ledger_records_receipts():
    ledger = MockLedger()
    receipt = await ledger.pay("0xa", "0xshop", 12.5, "eth")

    assert ledger.receipts == [receipt]
    assert re.fullmatch(r"0x[0-9a-f]{64}", receipt.tx_hash)
    assert receipt.amount == 12.5


@pytest.mark.asyncio
async def test_http_ledger_success():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = request.read()
        return httpx.Response(200, json={"txHash": "0xfeed"})

    ledger = make_ledger(handler)
    receipt = await ledger.pay("0xa", "0xshop", 3.0, "eth")
    await ledger.close()

    assert receipt.tx_hash == "0xfeed"
    assert seen["path"] == "/pay"
    assert b'"to":"0xshop"' in seen["body"].replace(b" ", b"")


@pytest.mark.asyncio
async def test_http_ledger_server_error():
    ledger = make_ledger(lambda request: httpx.Response(500, json={"error": "down"}))

    with pytest.raises(LedgerUnavailable):
        await ledger.pay("0xa", "0xshop", 3.0, "eth")


@pytest.mark.asyncio
async def test_http_ledger_missing_hash():
    ledger = make_ledger(lambda request: httpx.Response(200, json={"status": "ok"}))

    with pytest.raises(LedgerUnavailable) as excinfo:
        await ledger.pay("0xa", "0xshop", 3.0, "eth")
    assert excinfo.value.details["response"] == {"status": "ok"}
