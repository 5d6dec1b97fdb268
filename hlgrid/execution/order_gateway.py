"""
Order gateway: uniform place / cancel / status / fill-stream contract.

Errors are classified RETRYABLE, TERMINAL or SESSION here, at the edge that
knows the exchange's vocabulary, and returned as typed results. The lifecycle
manager acts on the classification and never inspects raw exchange messages.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

from hyperliquid.info import Info
from hyperliquid.utils.error import ClientError, ServerError

from hlgrid.core.errors import SessionExpiredError
from hlgrid.core.models import Fill, OrderIntent
from hlgrid.core.utils import hl_round_price, to_int_safe
from hlgrid.core.wallet import WalletSession
from hlgrid.infra.async_execution import AsyncExchange
from hlgrid.infra.logging_cfg import log_event
from hlgrid.market_data.info_client import AsyncInfo

log = logging.getLogger("gridbot")


class GatewayErrorKind(Enum):
    RETRYABLE = auto()  # timeout, rate limit, exchange busy
    TERMINAL = auto()   # rejected; resending the same order will not help
    SESSION = auto()    # signer expired or revoked


@dataclass(frozen=True)
class GatewayError:
    kind: GatewayErrorKind
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind is GatewayErrorKind.RETRYABLE


@dataclass(frozen=True)
class PlaceResult:
    client_order_id: str
    exchange_order_id: Optional[int] = None
    error: Optional[GatewayError] = None
    # Crossed the book and filled on placement; the fill still arrives on the stream
    filled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.exchange_order_id is not None


class CancelOutcome(Enum):
    OK = auto()
    NOT_FOUND = auto()  # already filled or cancelled by the exchange
    ERROR = auto()


@dataclass(frozen=True)
class CancelResult:
    outcome: CancelOutcome
    error: Optional[GatewayError] = None


class ExchangeOrderStatus(Enum):
    OPEN = auto()
    FILLED = auto()
    CANCELLED = auto()
    REJECTED = auto()
    UNKNOWN = auto()  # exchange has no record of the order


@dataclass(frozen=True)
class OrderStatusReport:
    status: ExchangeOrderStatus
    exchange_order_id: Optional[int] = None
    client_order_id: Optional[str] = None
    filled_size: float = 0.0
    # Set when the query itself failed; status is then UNKNOWN and not authoritative
    error: Optional[GatewayError] = None


class OrderGateway(Protocol):
    async def place_order(self, intent: OrderIntent) -> PlaceResult:
        ...

    async def cancel_order(self, symbol: str, exchange_order_id: int) -> CancelResult:
        ...

    async def get_order_status(
        self,
        symbol: str,
        exchange_order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderStatusReport:
        ...

    def stream_fills(self, account_id: str) -> AsyncIterator[Fill]:
        ...


_RETRYABLE_MARKERS = (
    "rate limit",
    "too many",
    "timeout",
    "timed out",
    "busy",
    "temporarily",
    "try again",
    "connection",
    "502",
    "503",
    "504",
)
_SESSION_MARKERS = (
    "user or api wallet",
    "api wallet has expired",
    "agent wallet",
    "invalid signature",
    "not authorized",
)
_NOT_FOUND_MARKERS = (
    "never placed",
    "already canceled",
    "already cancelled",
    "or filled",
    "unknown oid",
)


def classify_error(message: str) -> GatewayErrorKind:
    msg = (message or "").lower()
    if any(m in msg for m in _RETRYABLE_MARKERS):
        return GatewayErrorKind.RETRYABLE
    if any(m in msg for m in _SESSION_MARKERS):
        return GatewayErrorKind.SESSION
    return GatewayErrorKind.TERMINAL


def classify_exception(exc: BaseException) -> GatewayError:
    if isinstance(exc, SessionExpiredError):
        return GatewayError(GatewayErrorKind.SESSION, str(exc))
    if isinstance(exc, (ServerError, asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return GatewayError(GatewayErrorKind.RETRYABLE, str(exc) or type(exc).__name__)
    if isinstance(exc, ClientError):
        text = getattr(exc, "error_message", None) or str(exc)
        if getattr(exc, "status_code", None) == 429:
            return GatewayError(GatewayErrorKind.RETRYABLE, text)
        return GatewayError(classify_error(text), text)
    return GatewayError(classify_error(str(exc)), str(exc))


def _statuses(resp: Any) -> Tuple[List[Any], Optional[str]]:
    """Pull the per-order statuses out of an exchange action response."""
    if not isinstance(resp, dict):
        return [], f"unexpected response: {resp!r}"
    if resp.get("status") != "ok":
        return [], str(resp.get("response") or resp)
    data = (resp.get("response") or {}).get("data") or {}
    return list(data.get("statuses") or []), None


_STATUS_MAP = {
    "open": ExchangeOrderStatus.OPEN,
    "triggered": ExchangeOrderStatus.OPEN,
    "filled": ExchangeOrderStatus.FILLED,
    "canceled": ExchangeOrderStatus.CANCELLED,
    "cancelled": ExchangeOrderStatus.CANCELLED,
    "margincanceled": ExchangeOrderStatus.CANCELLED,
    "reduceonlycanceled": ExchangeOrderStatus.CANCELLED,
    "selftradecanceled": ExchangeOrderStatus.CANCELLED,
    "scheduledcancel": ExchangeOrderStatus.CANCELLED,
    "rejected": ExchangeOrderStatus.REJECTED,
}


def parse_order_status(resp: Any) -> OrderStatusReport:
    """Parse an orderStatus info response."""
    if not isinstance(resp, dict) or resp.get("status") != "order":
        return OrderStatusReport(ExchangeOrderStatus.UNKNOWN)
    wrapper = resp.get("order") or {}
    order = wrapper.get("order") or {}
    raw_status = str(wrapper.get("status", "")).lower()
    status = _STATUS_MAP.get(raw_status)
    if status is None:
        status = ExchangeOrderStatus.CANCELLED if raw_status.endswith("canceled") else ExchangeOrderStatus.UNKNOWN
    orig = float(order.get("origSz") or 0.0)
    remaining = float(order.get("sz") or 0.0)
    return OrderStatusReport(
        status=status,
        exchange_order_id=to_int_safe(order.get("oid")),
        client_order_id=order.get("cloid"),
        filled_size=max(0.0, orig - remaining),
    )


class HyperliquidOrderGateway:
    """
    OrderGateway over the Hyperliquid SDK.

    One gateway serves one wallet session; every call checks the session
    first and reports SESSION errors without touching the network.
    """

    def __init__(
        self,
        session: WalletSession,
        exchange: AsyncExchange,
        async_info: AsyncInfo,
        info: Optional[Info] = None,
        sz_decimals: Optional[Dict[str, int]] = None,
        dex: str = "",
    ) -> None:
        self.session = session
        self.exchange = exchange
        self.async_info = async_info
        self.info = info
        self.sz_decimals = sz_decimals or {}
        self.dex = dex

    def _round_price(self, symbol: str, px: float) -> float:
        decimals = self.sz_decimals.get(symbol)
        if decimals is None:
            return px
        return hl_round_price(px, decimals, is_perp=True)

    async def place_order(self, intent: OrderIntent) -> PlaceResult:
        cloid = intent.client_order_id
        if self.session.is_expired():
            return PlaceResult(cloid, error=GatewayError(GatewayErrorKind.SESSION, "session_expired"))
        px = self._round_price(intent.symbol, intent.price)
        try:
            resp = await self.exchange.order(
                intent.symbol,
                intent.side.is_buy,
                intent.size,
                px,
                intent.to_wire(),
                intent.reduce_only,
                cloid=cloid,
            )
        except Exception as exc:
            return PlaceResult(cloid, error=classify_exception(exc))

        statuses, err = _statuses(resp)
        if err:
            return PlaceResult(cloid, error=GatewayError(classify_error(err), err))
        if not statuses:
            return PlaceResult(cloid, error=GatewayError(GatewayErrorKind.RETRYABLE, "missing_status"))
        st = statuses[0]
        if isinstance(st, dict):
            if "resting" in st:
                return PlaceResult(cloid, exchange_order_id=to_int_safe(st["resting"].get("oid")))
            if "filled" in st:
                return PlaceResult(cloid, exchange_order_id=to_int_safe(st["filled"].get("oid")), filled=True)
            if "error" in st:
                msg = str(st["error"])
                return PlaceResult(cloid, error=GatewayError(classify_error(msg), msg))
        return PlaceResult(cloid, error=GatewayError(GatewayErrorKind.TERMINAL, f"unrecognised status {st!r}"))

    async def cancel_order(self, symbol: str, exchange_order_id: int) -> CancelResult:
        if self.session.is_expired():
            return CancelResult(CancelOutcome.ERROR, GatewayError(GatewayErrorKind.SESSION, "session_expired"))
        try:
            resp = await self.exchange.cancel(symbol, exchange_order_id)
        except Exception as exc:
            return CancelResult(CancelOutcome.ERROR, classify_exception(exc))

        statuses, err = _statuses(resp)
        if err:
            return CancelResult(CancelOutcome.ERROR, GatewayError(classify_error(err), err))
        st = statuses[0] if statuses else None
        if st == "success":
            return CancelResult(CancelOutcome.OK)
        if isinstance(st, dict) and "error" in st:
            msg = str(st["error"])
            if any(m in msg.lower() for m in _NOT_FOUND_MARKERS):
                return CancelResult(CancelOutcome.NOT_FOUND)
            return CancelResult(CancelOutcome.ERROR, GatewayError(classify_error(msg), msg))
        return CancelResult(CancelOutcome.ERROR, GatewayError(GatewayErrorKind.RETRYABLE, f"unrecognised cancel status {st!r}"))

    async def get_order_status(
        self,
        symbol: str,
        exchange_order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderStatusReport:
        if exchange_order_id is None and client_order_id is None:
            raise ValueError("exchange_order_id or client_order_id is required")
        account = self.session.account_id
        try:
            if exchange_order_id is not None:
                resp = await self.async_info.query_order_by_oid(account, exchange_order_id)
            else:
                resp = await self.async_info.query_order_by_cloid(account, client_order_id)
        except Exception as exc:
            return OrderStatusReport(ExchangeOrderStatus.UNKNOWN, error=classify_exception(exc))
        return parse_order_status(resp)

    async def get_margin_utilization(self) -> Optional[float]:
        state = await self.async_info.user_state(self.session.account_id, self.dex or None)
        summary = (state or {}).get("marginSummary") or {}
        account_value = float(summary.get("accountValue") or 0.0)
        used = float(summary.get("totalMarginUsed") or 0.0)
        if account_value <= 0:
            return None
        return used / account_value

    async def stream_fills(self, account_id: str) -> AsyncIterator[Fill]:
        if self.info is None:
            raise RuntimeError("stream_fills requires an Info client with websocket enabled")
        self.session.ensure_active()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Fill] = asyncio.Queue()

        def _on_user_fills(msg: Any) -> None:
            data = msg.get("data", {}) if isinstance(msg, dict) else {}
            if str(data.get("user", "")).lower() != account_id.lower():
                return
            # The first message replays history; grids only care about live fills
            if data.get("isSnapshot"):
                return
            for raw in data.get("fills") or []:
                try:
                    fill = Fill.from_hyperliquid(raw)
                except (KeyError, TypeError, ValueError) as exc:
                    log_event(log, "fill_parse_error", level=logging.WARNING, err=str(exc), raw=raw)
                    continue
                loop.call_soon_threadsafe(queue.put_nowait, fill)

        subscription = {"type": "userFills", "user": account_id}
        sub_id = self.info.subscribe(subscription, _on_user_fills)
        try:
            while True:
                yield await queue.get()
        finally:
            try:
                self.info.unsubscribe(subscription, sub_id)
            except Exception as exc:
                log_event(log, "fill_unsubscribe_error", level=logging.DEBUG, err=str(exc))
