"""Tests for ledger notaries: local hash chain and the HTTP gateway client."""

import json

import httpx
import pytest

from core.errors import NotaryError
from notary import HttpLedgerNotary, LocalLedgerNotary, build_notary
from notary.local_ledger import GENESIS

HASH_A = "0x" + "a" * 64
HASH_B = "0x" + "b" * 64


class TestBuildNotary:
    def test_local_without_url(self):
        assert build_notary().name == "local"

    def test_http_with_url(self):
        n = build_notary("https://notary.example/", token="t")
        assert n.name == "http"
        assert n.base_url == "https://notary.example"


class TestLocalLedger:
    def test_chain_links_entries(self):
        ledger = LocalLedgerNotary()
        first = ledger.submit(HASH_A)
        second = ledger.submit(HASH_B)
        entries = ledger.entries()
        assert [e.index for e in entries] == [0, 1]
        assert entries[0].previous_tx == GENESIS
        assert entries[1].previous_tx == first.tx_reference
        assert second.block == 1
        assert first.tx_reference != second.tx_reference
        assert ledger.verify_chain()

    def test_find_by_content_hash(self):
        ledger = LocalLedgerNotary()
        receipt = ledger.submit(HASH_A)
        assert ledger.find(HASH_A).tx_reference == receipt.tx_reference
        assert ledger.find(HASH_B) is None

    def test_rejects_malformed_hash(self):
        ledger = LocalLedgerNotary()
        with pytest.raises(NotaryError):
            ledger.submit("not-a-hash")
        assert ledger.entries() == []

    def test_tampering_breaks_verification(self):
        ledger = LocalLedgerNotary()
        ledger.submit(HASH_A)
        ledger.submit(HASH_B)
        forged = ledger._entries[0].__class__(
            index=0,
            content_hash=HASH_B,
            previous_tx=GENESIS,
            tx_reference=ledger._entries[0].tx_reference,
            recorded_at=ledger._entries[0].recorded_at,
        )
        ledger._entries[0] = forged
        assert not ledger.verify_chain()


def _notary(handler, token=None):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpLedgerNotary("https://notary.example", token=token, client=client)


class TestHttpNotary:
    def test_success_returns_receipt(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"tx_hash": "0xabc", "block": 42})

        receipt = _notary(handler, token="secret").submit(HASH_A)
        assert receipt.tx_reference == "0xabc"
        assert receipt.block == 42
        assert receipt.content_hash == HASH_A
        assert seen["url"] == "https://notary.example/anchor"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"content_hash": HASH_A}

    def test_no_auth_header_without_token(self):
        def handler(request):
            assert "Authorization" not in request.headers
            return httpx.Response(200, json={"tx_hash": "0xabc"})

        assert _notary(handler).submit(HASH_A).block is None

    def test_rejected_transaction(self):
        notary = _notary(lambda request: httpx.Response(422, text="execution reverted"))
        with pytest.raises(NotaryError, match="HTTP 422"):
            notary.submit(HASH_A)

    def test_missing_tx_hash(self):
        notary = _notary(lambda request: httpx.Response(200, json={"status": "queued"}))
        with pytest.raises(NotaryError, match="missing tx_hash"):
            notary.submit(HASH_A)

    def test_invalid_json(self):
        notary = _notary(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(NotaryError, match="invalid JSON"):
            notary.submit(HASH_A)

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow chain", request=request)

        with pytest.raises(NotaryError, match="timeout"):
            _notary(handler).submit(HASH_A)

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NotaryError, match="unreachable"):
            _notary(handler).submit(HASH_A)
