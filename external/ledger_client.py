"""
External ledger HTTP client.

Two calls only: push a settlement instruction, and page through confirmed
events (trades, settlements, deposits, withdrawals) after a cursor. The
mirror is never touched here; failures surface as ExternalLedgerError so
the caller can retry on the next cycle.
"""

import logging
from typing import Optional

import aiohttp

from config import LEDGER_API_KEY, LEDGER_API_URL, LEDGER_EVENT_PAGE_SIZE, LEDGER_TIMEOUT_SECONDS
from models.errors import ExternalLedgerError
from models.reasons import REASON_LEDGER_REJECTED, REASON_LEDGER_UNAVAILABLE

logger = logging.getLogger(__name__)


class LedgerClient:
    def __init__(
        self,
        base_url: str = LEDGER_API_URL,
        api_key: Optional[str] = LEDGER_API_KEY,
        timeout: float = LEDGER_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
                async with session.request(method, url, **kwargs) as resp:
                    if resp.status >= 500:
                        text = await resp.text()
                        logger.warning("Ledger %s %s -> %d: %s", method, path, resp.status, text[:200])
                        raise ExternalLedgerError(f"ledger returned {resp.status}", REASON_LEDGER_UNAVAILABLE)
                    if resp.status != 200:
                        text = await resp.text()
                        logger.warning("Ledger %s %s rejected (%d): %s", method, path, resp.status, text[:200])
                        raise ExternalLedgerError(f"ledger rejected request: {resp.status}", REASON_LEDGER_REJECTED)
                    return await resp.json()
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning("Ledger %s %s failed: %s", method, path, e)
            raise ExternalLedgerError(f"ledger unreachable: {e}", REASON_LEDGER_UNAVAILABLE) from e

    async def submit_settlement(self, pool_id: str, bd_score_ppm: int, epoch: int) -> str:
        """Send a settlement instruction. Returns the ledger's tx signature."""
        data = await self._request(
            "POST",
            "/settlements",
            json={"pool_id": pool_id, "bd_score_ppm": bd_score_ppm, "epoch": epoch},
        )
        signature = data.get("tx_signature")
        if not signature:
            raise ExternalLedgerError("settlement response missing tx_signature", REASON_LEDGER_REJECTED)
        logger.info("Settlement submitted pool=%s epoch=%d tx=%s", pool_id, epoch, signature)
        return signature

    async def fetch_events(self, cursor: Optional[str] = None, limit: int = LEDGER_EVENT_PAGE_SIZE) -> tuple[list[dict], Optional[str]]:
        """One page of raw events after *cursor*, plus the cursor for the next page."""
        params: dict = {"limit": limit}
        if cursor:
            params["after"] = cursor
        data = await self._request("GET", "/events", params=params)
        events = data.get("events") or []
        if not isinstance(events, list):
            raise ExternalLedgerError("events payload is not a list", REASON_LEDGER_REJECTED)
        return events, data.get("next_cursor") or cursor
