"""
Helius access: wallet balance (Solana JSON-RPC) and recent transaction
history (Helius enhanced transactions API).
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

HELIUS_RPC_URL = "https://mainnet.helius-rpc.com/"
HELIUS_API_URL = "https://api.helius.xyz/v0"
LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_HISTORY_LIMIT = 20


class HeliusClient:
    def __init__(
        self,
        api_key: Optional[str],
        *,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _require_configured(self) -> None:
        if not self.api_key:
            raise ConfigurationError("Payment service not configured", "Set HELIUS_API_KEY")

    async def get_balance(self, address: str) -> int:
        """Balance in lamports."""
        self._require_configured()
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getBalance", "params": [address]}
        try:
            response = await self._http.post(HELIUS_RPC_URL, params={"api-key": self.api_key}, json=payload)
        except httpx.HTTPError as e:
            raise UpstreamError("Failed to check wallet balance", str(e), status_code=502)

        if not response.is_success:
            logger.error("helius.balance_error status=%d body=%s", response.status_code, response.text[:200])
            raise UpstreamError("Failed to check wallet balance", status_code=response.status_code)

        data = response.json()
        if data.get("error"):
            message = (data["error"] or {}).get("message") if isinstance(data["error"], dict) else str(data["error"])
            raise UpstreamError("Failed to check wallet balance", message, status_code=400)

        result = data.get("result")
        value = result.get("value") if isinstance(result, dict) else result
        return int(value or 0)

    async def get_transactions(self, address: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        """Most recent enhanced transactions touching `address`, newest first."""
        self._require_configured()
        try:
            response = await self._http.get(
                f"{HELIUS_API_URL}/addresses/{address}/transactions",
                params={"api-key": self.api_key, "limit": limit},
            )
        except httpx.HTTPError as e:
            raise UpstreamError("Failed to fetch transactions", str(e), status_code=502)

        if not response.is_success:
            logger.error("helius.history_error status=%d body=%s", response.status_code, response.text[:200])
            raise UpstreamError("Failed to fetch transactions", status_code=response.status_code)

        data = response.json()
        return data if isinstance(data, list) else []

    async def aclose(self) -> None:
        await self._http.aclose()
