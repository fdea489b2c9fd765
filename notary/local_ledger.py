"""
In-process append-only ledger. Each entry chains the previous entry's tx hash, so
rewriting any committed content hash changes every later reference.
Used when no remote notary is configured (local runs, demos, tests).
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from core.errors import NotaryError
from core.models import utc_now_iso
from notary.base import NotaryReceipt

logger = logging.getLogger("incident_pipeline.notary.local")

GENESIS = "0x" + "0" * 64


@dataclass(frozen=True)
class LedgerEntry:
    index: int
    content_hash: str
    previous_tx: str
    tx_reference: str
    recorded_at: str


def _chain_hash(index: int, previous_tx: str, content_hash: str) -> str:
    digest = hashlib.sha256(f"{index}:{previous_tx}:{content_hash}".encode("utf-8")).hexdigest()
    return "0x" + digest


class LocalLedgerNotary:
    name = "local"

    def __init__(self, latency_s: float = 0.0):
        self.latency_s = max(0.0, latency_s)
        self._lock = threading.Lock()
        self._entries: list[LedgerEntry] = []

    def submit(self, content_hash: str) -> NotaryReceipt:
        if not content_hash or not content_hash.startswith("0x"):
            raise NotaryError(f"rejected: malformed content hash {content_hash!r}")
        if self.latency_s:
            time.sleep(self.latency_s)
        with self._lock:
            index = len(self._entries)
            previous = self._entries[-1].tx_reference if self._entries else GENESIS
            entry = LedgerEntry(
                index=index,
                content_hash=content_hash,
                previous_tx=previous,
                tx_reference=_chain_hash(index, previous, content_hash),
                recorded_at=utc_now_iso(),
            )
            self._entries.append(entry)
        logger.debug("local ledger append index=%d tx=%s", entry.index, entry.tx_reference)
        return NotaryReceipt(tx_reference=entry.tx_reference, content_hash=content_hash, block=entry.index)

    def entries(self) -> list[LedgerEntry]:
        with self._lock:
            return list(self._entries)

    def find(self, content_hash: str) -> Optional[LedgerEntry]:
        with self._lock:
            return next((e for e in self._entries if e.content_hash == content_hash), None)

    def verify_chain(self) -> bool:
        """Recompute every link; False if any entry was altered."""
        previous = GENESIS
        for entry in self.entries():
            if entry.previous_tx != previous:
                return False
            if entry.tx_reference != _chain_hash(entry.index, previous, entry.content_hash):
                return False
            previous = entry.tx_reference
        return True
