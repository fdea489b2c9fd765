"""
Remote notary gateway over HTTP.

POST {LEDGER_NOTARY_URL}/anchor  {"content_hash": "0x..."}
  -> 2xx {"tx_hash": "0x...", "block": 123}
Anything else (timeout, connection error, non-2xx, body without tx_hash) is a NotaryError.
"""

import logging
from typing import Optional

import httpx

from core.errors import NotaryError
from notary.base import NotaryReceipt

logger = logging.getLogger("incident_pipeline.notary.http")


class HttpLedgerNotary:
    name = "http"

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _post(self, client: httpx.Client, content_hash: str) -> httpx.Response:
        return client.post(
            f"{self.base_url}/anchor",
            json={"content_hash": content_hash},
            headers=self._headers(),
        )

    def submit(self, content_hash: str) -> NotaryReceipt:
        try:
            if self._client is not None:
                r = self._post(self._client, content_hash)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    r = self._post(client, content_hash)
            r.raise_for_status()
            data = r.json()
        except httpx.TimeoutException as e:
            raise NotaryError(f"notary timeout after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise NotaryError(f"notary rejected transaction: HTTP {e.response.status_code} {e.response.text[:200]}") from e
        except httpx.HTTPError as e:
            raise NotaryError(f"notary unreachable: {e}") from e
        except ValueError as e:
            raise NotaryError(f"notary returned invalid JSON: {e}") from e

        tx_hash = data.get("tx_hash") if isinstance(data, dict) else None
        if not tx_hash:
            raise NotaryError("notary response missing tx_hash")
        logger.debug("notary anchored hash=%s tx=%s", content_hash, tx_hash)
        block = data.get("block")
        return NotaryReceipt(
            tx_reference=str(tx_hash),
            content_hash=content_hash,
            block=int(block) if isinstance(block, int) else None,
        )
