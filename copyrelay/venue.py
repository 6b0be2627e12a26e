"""
Polymarket Data API client for positions.

GET {data_api_url}/positions?user=<address> returns a JSON array of the
account's open positions.
"""

import logging
from typing import List, Optional

import httpx

from copyrelay.errors import CopyRelayError, ErrorKind
from copyrelay.schema import Position, short_address

logger = logging.getLogger(__name__)


class PositionsClient:
    """Async positions lookup. Raw errors propagate; callers wrap in breakers."""

    def __init__(
        self,
        data_api_url: str = "https://data-api.polymarket.com",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.data_api_url = data_api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def get_positions(self, address: str) -> List[Position]:
        """
        Fetch current positions for an account.

        Raises:
            CopyRelayError(VALIDATION): response is not a list of positions
            httpx errors on transport or HTTP status failure
        """
        response = await self._client.get(
            f"{self.data_api_url}/positions", params={"user": address}
        )
        response.raise_for_status()
        data = response.json()

        if not isinstance(data, list):
            raise CopyRelayError(
                ErrorKind.VALIDATION, "Invalid positions data received from API"
            )

        try:
            positions = [Position.from_api(row) for row in data]
        except (KeyError, TypeError, ValueError) as e:
            raise CopyRelayError(
                ErrorKind.VALIDATION, f"Invalid positions data received from API: {e}"
            ) from e

        logger.debug(f"Fetched {len(positions)} positions for {short_address(address)}")
        return positions

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "PositionsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
