"""Order gateway, order state machine and the lifecycle manager."""

from hlgrid.execution.lifecycle_manager import (
    FillOutcome,
    LifecycleSettings,
    OrderLifecycleManager,
    SlotKind,
    SlotOverride,
)
from hlgrid.execution.order_gateway import (
    CancelOutcome,
    CancelResult,
    ExchangeOrderStatus,
    GatewayError,
    GatewayErrorKind,
    HyperliquidOrderGateway,
    OrderGateway,
    OrderStatusReport,
    PlaceResult,
)
from hlgrid.execution.order_state_machine import ManagedOrder, OrderStateMachine, OrderStatus

__all__ = [
    "FillOutcome",
    "LifecycleSettings",
    "OrderLifecycleManager",
    "SlotKind",
    "SlotOverride",
    "CancelOutcome",
    "CancelResult",
    "ExchangeOrderStatus",
    "GatewayError",
    "GatewayErrorKind",
    "HyperliquidOrderGateway",
    "OrderGateway",
    "OrderStatusReport",
    "PlaceResult",
    "ManagedOrder",
    "OrderStateMachine",
    "OrderStatus",
]
