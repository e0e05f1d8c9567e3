"""Trade execution clients.

The engine only needs ``execute_trade(wallet_id, amount, from_asset,
to_asset)``, which must block until the trade has settled on-chain or
failed. Two implementations:

- HttpTradeClient: calls the custody/trade service over HTTP (httpx)
- PaperTradeClient: simulated fills for paper trading and local runs

Both raise typed errors so the engine never has to parse strings; the
HTTP client falls back to keyword classification of the service's error
body when the status code alone is not conclusive.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Protocol

import httpx
from loguru import logger

from sip_engine.config.base import TradeApiConfig
from sip_engine.errors import (
    ErrorKind,
    InsufficientFundsError,
    PlanValidationError,
    TransientError,
    classify_error,
)


@dataclass
class SettledTrade:
    """A trade that has settled on-chain."""

    trade_id: str
    wallet_id: str
    amount: Decimal
    from_asset: str
    to_asset: str
    transaction_hash: Optional[str] = None
    network: Optional[str] = None
    status: str = "complete"
    raw: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "trade_id": self.trade_id,
            "wallet_id": self.wallet_id,
            "amount": str(self.amount),
            "from_asset": self.from_asset,
            "to_asset": self.to_asset,
            "transaction_hash": self.transaction_hash,
            "network": self.network,
            "status": self.status,
        }


class TradeClient(Protocol):
    """Blocking-until-settled trade primitive."""

    async def execute_trade(
        self, wallet_id: str, amount: Decimal, from_asset: str, to_asset: str
    ) -> SettledTrade: ...


class HttpTradeClient:
    """Trade client backed by the custody/trade HTTP service.

    POSTs to ``{url}/trade`` and waits for the settled response.

    Example:
        >>> client = HttpTradeClient(TradeApiConfig(url="http://localhost:3000"))
        >>> trade = await client.execute_trade("w-1", Decimal("10"), "ETH", "USDC")
    """

    def __init__(
        self,
        config: TradeApiConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            config: Trade service URL, key and timeout
            transport: Optional httpx transport (tests use MockTransport)
        """
        if not config.url:
            raise ValueError("Trade service URL is not configured")
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = httpx.AsyncClient(
            base_url=config.url,
            headers=headers,
            timeout=config.timeout,
            transport=transport,
        )

    async def execute_trade(
        self, wallet_id: str, amount: Decimal, from_asset: str, to_asset: str
    ) -> SettledTrade:
        payload = {
            "wallet_id": wallet_id,
            "amount": str(amount),
            "from_token": from_asset,
            "to_token": to_asset,
        }

        try:
            response = await self._client.post("/trade", json=payload)
        except httpx.TimeoutException as e:
            raise TransientError(f"Trade service timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransientError(f"Trade service unreachable: {e}") from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        body = response.json()
        trade = SettledTrade(
            trade_id=str(body.get("id") or body.get("trade_id") or ""),
            wallet_id=wallet_id,
            amount=Decimal(str(body.get("amount", amount))),
            from_asset=body.get("from_token", from_asset),
            to_asset=body.get("to_token", to_asset),
            transaction_hash=body.get("transaction_hash"),
            network=body.get("network"),
            status=body.get("status", "complete"),
            raw=body,
        )
        logger.debug(f"Trade settled via service: {trade.trade_id}")
        return trade

    @staticmethod
    def _error_from_response(response: httpx.Response) -> Exception:
        """Turn an error response into a typed error."""
        try:
            detail = response.json().get("error") or response.text
        except ValueError:
            detail = response.text
        message = f"Trade service returned {response.status_code}: {detail}"

        if response.status_code == 402:
            return InsufficientFundsError(message)

        kind = classify_error(Exception(str(detail)))
        if kind == ErrorKind.INSUFFICIENT_FUNDS:
            return InsufficientFundsError(message)
        if response.status_code in (400, 422) and kind == ErrorKind.VALIDATION:
            return PlanValidationError(message)
        return TransientError(message)

    async def aclose(self) -> None:
        await self._client.aclose()


class PaperTradeClient:
    """Simulated trade client for paper trading.

    Fills every trade after an optional settlement delay. Wallets listed in
    ``unfunded_wallets`` fail with insufficient funds.
    """

    def __init__(
        self,
        settlement_delay: float = 0.0,
        unfunded_wallets: Optional[set[str]] = None,
    ):
        self.settlement_delay = settlement_delay
        self.unfunded_wallets = set(unfunded_wallets or ())
        self.trades: list[SettledTrade] = []

    async def execute_trade(
        self, wallet_id: str, amount: Decimal, from_asset: str, to_asset: str
    ) -> SettledTrade:
        if wallet_id in self.unfunded_wallets:
            raise InsufficientFundsError(
                f"Insufficient {from_asset} balance in wallet {wallet_id}"
            )
        if self.settlement_delay:
            await asyncio.sleep(self.settlement_delay)

        trade = SettledTrade(
            trade_id=f"paper-{uuid.uuid4().hex[:12]}",
            wallet_id=wallet_id,
            amount=Decimal(str(amount)),
            from_asset=from_asset,
            to_asset=to_asset,
            transaction_hash=f"0x{uuid.uuid4().hex}",
            network="paper",
        )
        self.trades.append(trade)
        logger.info(
            f"PAPER TRADE: {amount} {from_asset} -> {to_asset} "
            f"(wallet={wallet_id}, id={trade.trade_id})"
        )
        return trade

    async def aclose(self) -> None:
        return None


def build_trade_client(config) -> TradeClient:
    """Pick the trade client for the configured mode.

    Args:
        config: Application Config

    Returns:
        PaperTradeClient in paper mode, HttpTradeClient otherwise
    """
    if config.paper_trading:
        logger.info("Paper trading mode: trades are simulated")
        return PaperTradeClient()
    return HttpTradeClient(config.trade_api)
