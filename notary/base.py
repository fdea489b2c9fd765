"""Notary contract: submit(content_hash) -> NotaryReceipt, raising NotaryError on failure."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class NotaryReceipt:
    tx_reference: str
    content_hash: str
    block: Optional[int] = None

    def to_dict(self):
        d = {"tx_reference": self.tx_reference, "content_hash": self.content_hash}
        if self.block is not None:
            d["block"] = self.block
        return d
