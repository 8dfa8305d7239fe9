"""Exchange contract, market value types and the paper exchange used for dry runs.

Live connectivity is provided by an adapter implementing ``ExchangeClient``;
the trading core only ever sees the value types defined here.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class OrderSide(str, Enum):
    """Order side enumeration."""
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    """Order type enumeration."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"


class OrderStatus(str, Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class ExchangeError(Exception):
    """Raised when the exchange rejects a request or cannot be reached."""
    pass


def _to_decimal(value: Any, name: str) -> Decimal:
    if value is None:
        return ZERO
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ExchangeError(f"Invalid decimal for {name}: {value!r}")


@dataclass(frozen=True)
class Candle:
    """A closed OHLCV candle."""
    open_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = ZERO
    is_closed: bool = True


@dataclass(frozen=True)
class BalanceSnapshot:
    """Free balances as reported by the exchange."""
    usdt: Decimal
    btc: Decimal
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class Fill:
    price: Decimal
    qty: Decimal
    commission: Decimal
    commission_asset: str


@dataclass
class OrderResult:
    """Normalized order response.

    ``executed_qty`` is gross BTC; fees are split by the asset they were
    charged in so fill accounting can treat them separately.
    """
    order_id: str
    client_order_id: str
    symbol: str
    side: OrderSide
    status: OrderStatus
    executed_qty: Decimal
    cummulative_quote_qty: Decimal
    avg_price: Decimal
    fee_btc: Decimal = ZERO
    fee_usdt: Decimal = ZERO
    fills: List[Fill] = field(default_factory=list)

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED

    @property
    def is_open(self) -> bool:
        """Still working on the exchange."""
        return self.status in (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], base_asset: str = "BTC", quote_asset: str = "USDT") -> "OrderResult":
        """Parse an exchange order payload.

        Raises:
            ExchangeError: If a required field is missing or malformed.
        """
        try:
            order_id = str(payload["orderId"])
            side = OrderSide(payload["side"])
            status = OrderStatus(payload["status"])
        except (KeyError, ValueError) as e:
            raise ExchangeError(f"Malformed order payload: {e}")

        fills = [
            Fill(
                price=_to_decimal(f.get("price"), "fill.price"),
                qty=_to_decimal(f.get("qty"), "fill.qty"),
                commission=_to_decimal(f.get("commission"), "fill.commission"),
                commission_asset=f.get("commissionAsset", ""),
            )
            for f in payload.get("fills", [])
        ]

        executed_qty = _to_decimal(payload.get("executedQty"), "executedQty")
        quote_qty = _to_decimal(payload.get("cummulativeQuoteQty"), "cummulativeQuoteQty")

        fee_btc = sum((f.commission for f in fills if f.commission_asset == base_asset), ZERO)
        fee_usdt = sum((f.commission for f in fills if f.commission_asset == quote_asset), ZERO)

        if executed_qty > ZERO:
            avg_price = quote_qty / executed_qty
        else:
            avg_price = _to_decimal(payload.get("price"), "price")

        return cls(
            order_id=order_id,
            client_order_id=payload.get("clientOrderId", ""),
            symbol=payload.get("symbol", ""),
            side=side,
            status=status,
            executed_qty=executed_qty,
            cummulative_quote_qty=quote_qty,
            avg_price=avg_price,
            fee_btc=fee_btc,
            fee_usdt=fee_usdt,
            fills=fills,
        )

    def summary(self) -> Dict[str, str]:
        """Compact, JSON-safe description for logs and the write-ahead log."""
        return {
            "order_id": self.order_id,
            "client_order_id": self.client_order_id,
            "side": self.side.value,
            "status": self.status.value,
            "executed_qty": format(self.executed_qty, "f"),
            "cummulative_quote_qty": format(self.cummulative_quote_qty, "f"),
            "avg_price": format(self.avg_price, "f"),
            "fee_btc": format(self.fee_btc, "f"),
            "fee_usdt": format(self.fee_usdt, "f"),
        }


class ExchangeClient(Protocol):
    """What the trading core needs from an exchange."""

    async def create_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: str,
        price: Optional[str] = None,
        time_in_force: TimeInForce = TimeInForce.GTC,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        ...

    async def get_order(
        self,
        symbol: str,
        order_id: Optional[str] = None,
        client_order_id: Optional[str] = None,
    ) -> Optional[OrderResult]:
        ...

    async def cancel_order(
        self,
        symbol: str,
        order_id: Optional[str] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        ...

    async def get_balances(self) -> BalanceSnapshot:
        ...

    async def ping(self) -> bool:
        ...


class PaperExchange:
    """In-memory exchange for dry runs and tests.

    Limit orders fill immediately at their limit price, completely unless
    ``fill_ratio`` is below 1, in which case the rest stays open until
    canceled. Commissions are charged in USDT on both sides.
    """

    def __init__(
        self,
        usdt_balance: Decimal = Decimal("1000"),
        btc_balance: Decimal = ZERO,
        fee_rate: Decimal = ZERO,
        latency_seconds: float = 0.0,
    ):
        self._balances = {"USDT": usdt_balance, "BTC": btc_balance}
        self.fee_rate = fee_rate
        self.latency_seconds = latency_seconds
        self.reachable = True
        self.fail_next_order: Optional[Exception] = None
        self.fill_ratio = Decimal("1")
        self._orders: Dict[str, OrderResult] = {}
        self._order_counter = 0

    async def _simulate_latency(self) -> None:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

    async def create_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: str,
        price: Optional[str] = None,
        time_in_force: TimeInForce = TimeInForce.GTC,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        """Fill an order against the in-memory balances.

        Raises:
            ExchangeError: When unreachable, on injected failure, missing
                price, or insufficient balance.
        """
        await self._simulate_latency()

        if not self.reachable:
            raise ExchangeError("Exchange unreachable")

        if self.fail_next_order is not None:
            error, self.fail_next_order = self.fail_next_order, None
            raise error

        if price is None:
            raise ExchangeError("Paper exchange only supports priced orders")

        requested = Decimal(quantity)
        qty = requested * self.fill_ratio if self.fill_ratio < 1 else requested
        fill_price = Decimal(price)
        quote = qty * fill_price
        fee = quote * self.fee_rate

        if side == OrderSide.BUY:
            if self._balances["USDT"] < quote + fee:
                raise ExchangeError(f"Insufficient USDT balance: need {quote + fee}, have {self._balances['USDT']}")
            self._balances["USDT"] -= quote + fee
            self._balances["BTC"] += qty
        else:
            if self._balances["BTC"] < qty:
                raise ExchangeError(f"Insufficient BTC balance: need {qty}, have {self._balances['BTC']}")
            self._balances["BTC"] -= qty
            self._balances["USDT"] += quote - fee

        self._order_counter += 1
        result = OrderResult(
            order_id=str(self._order_counter),
            client_order_id=client_order_id or f"paper-{uuid.uuid4().hex[:12]}",
            symbol=symbol,
            side=side,
            status=OrderStatus.FILLED if qty == requested else OrderStatus.PARTIALLY_FILLED,
            executed_qty=qty,
            cummulative_quote_qty=quote,
            avg_price=fill_price,
            fee_usdt=fee,
            fills=[Fill(price=fill_price, qty=qty, commission=fee, commission_asset="USDT")],
        )
        self._orders[result.client_order_id] = result

        logger.info(
            f"Paper {side.value} {order_type.value} {result.status.value}: qty={qty}/{requested} price={fill_price} "
            f"quote={quote} fee={fee} client_order_id={result.client_order_id}"
        )
        return result

    async def get_order(
        self,
        symbol: str,
        order_id: Optional[str] = None,
        client_order_id: Optional[str] = None,
    ) -> Optional[OrderResult]:
        if client_order_id is not None:
            return self._orders.get(client_order_id)
        for order in self._orders.values():
            if order.order_id == order_id:
                return order
        return None

    async def cancel_order(
        self,
        symbol: str,
        order_id: Optional[str] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        """Cancel what is left of an open order.

        Raises:
            ExchangeError: If the order is unknown or no longer open.
        """
        await self._simulate_latency()
        if not self.reachable:
            raise ExchangeError("Exchange unreachable")

        order = await self.get_order(symbol, order_id=order_id, client_order_id=client_order_id)
        if order is None:
            raise ExchangeError(f"Unknown order {client_order_id or order_id}")
        if not order.is_open:
            raise ExchangeError(f"Order {order.client_order_id} is {order.status.value}, cannot cancel")

        canceled = replace(order, status=OrderStatus.CANCELED)
        self._orders[canceled.client_order_id] = canceled
        logger.info(f"Paper order {canceled.client_order_id} canceled after {canceled.executed_qty} filled")
        return canceled

    async def get_balances(self) -> BalanceSnapshot:
        await self._simulate_latency()
        if not self.reachable:
            raise ExchangeError("Exchange unreachable")
        return BalanceSnapshot(usdt=self._balances["USDT"], btc=self._balances["BTC"])

    async def ping(self) -> bool:
        return self.reachable

    def set_balance(self, asset: str, amount: Decimal) -> None:
        self._balances[asset] = amount
