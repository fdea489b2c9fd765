"""Ledger notaries: local hash-chained ledger and remote HTTP gateway."""

from notary.base import NotaryReceipt
from notary.http_notary import HttpLedgerNotary
from notary.local_ledger import LocalLedgerNotary


def build_notary(url: str | None = None, token: str | None = None, timeout: float = 30.0, local_latency_s: float = 0.0):
    """HTTP notary when a gateway URL is configured, else the in-process ledger."""
    if url:
        return HttpLedgerNotary(url, token=token, timeout=timeout)
    return LocalLedgerNotary(latency_s=local_latency_s)


__all__ = ["NotaryReceipt", "HttpLedgerNotary", "LocalLedgerNotary", "build_notary"]
