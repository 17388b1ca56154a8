"""
订单/报价单状态流转规则

纯函数，不访问数据库：
- 各状态下允许的目标状态
- 订单状态变更附带的付款/生产/发货字段变更（side_effects_for）
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple, Any

from app.schemas.order import OrderStatus
from app.schemas.payment import PaymentStatus, PaymentMethod
from app.schemas.quotation import QuotationStatus


# 订单主线（线性）
ORDER_FLOW: Tuple[str, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.IN_PRODUCTION,
    OrderStatus.READY_FOR_DISPATCH,
    OrderStatus.DISPATCHED,
    OrderStatus.DELIVERED,
)

# 可取消的订单状态
CANCELLABLE_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.IN_PRODUCTION,
})

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# 报价单允许的流转
QUOTATION_TRANSITIONS: Dict[str, frozenset] = {
    QuotationStatus.DRAFT: frozenset({QuotationStatus.SENT}),
    QuotationStatus.SENT: frozenset({
        QuotationStatus.ACCEPTED, QuotationStatus.REJECTED, QuotationStatus.EXPIRED
    }),
    QuotationStatus.ACCEPTED: frozenset({QuotationStatus.ORDER_CREATED}),
    QuotationStatus.REJECTED: frozenset(),
    QuotationStatus.EXPIRED: frozenset(),
    QuotationStatus.ORDER_CREATED: frozenset(),
}


def can_transition_quotation(current: str, target: str) -> bool:
    return target in QUOTATION_TRANSITIONS.get(current, frozenset())


def can_transition_order(current: str, target: str, manual_override: bool = False) -> bool:
    """
    判断订单状态流转是否合法

    常规：只能前进到下一个状态、重复当前状态，或从可取消状态取消。
    manual_override：后台可跳级推进到主线上任意后续状态，但不能回退，也不能离开终态。
    """
    if target not in OrderStatus.ALL:
        return False
    if current in TERMINAL_ORDER_STATUSES:
        return target == current
    if target == current:
        return True
    if target == OrderStatus.CANCELLED:
        return current in CANCELLABLE_STATUSES
    current_index = ORDER_FLOW.index(current)
    target_index = ORDER_FLOW.index(target)
    if manual_override:
        return target_index > current_index
    return target_index == current_index + 1


@dataclass(frozen=True)
class StatusSideEffects:
    """
    订单进入某状态时附带的字段变更

    payment_status: 付款状态改写为该值（None 表示不变）
    complete_payment_details: 补齐 paid_at 与默认付款方式
    stamp_now: 需要写入当前时间的字段
    stamp_if_absent: 仅在为空时写入当前时间的字段
    estimated_completion_from_input: 用调用方给出的预计交期填充 production_estimated_completion
    """
    payment_status: Optional[str] = None
    complete_payment_details: bool = False
    stamp_now: Tuple[str, ...] = ()
    stamp_if_absent: Tuple[str, ...] = ()
    estimated_completion_from_input: bool = False


# 凡是“已确认”及以后的履约状态都视为已付款（业务约定，后台可直接推进）
_STATUS_SIDE_EFFECTS: Dict[str, StatusSideEffects] = {
    OrderStatus.PENDING: StatusSideEffects(),
    OrderStatus.CONFIRMED: StatusSideEffects(
        payment_status=PaymentStatus.COMPLETED,
        complete_payment_details=True,
        stamp_if_absent=("confirmed_at",),
    ),
    OrderStatus.IN_PRODUCTION: StatusSideEffects(
        payment_status=PaymentStatus.COMPLETED,
        complete_payment_details=True,
        stamp_if_absent=("production_start_date",),
        estimated_completion_from_input=True,
    ),
    OrderStatus.READY_FOR_DISPATCH: StatusSideEffects(
        payment_status=PaymentStatus.COMPLETED,
        complete_payment_details=True,
        stamp_now=("production_actual_completion",),
    ),
    OrderStatus.DISPATCHED: StatusSideEffects(
        payment_status=PaymentStatus.COMPLETED,
        complete_payment_details=True,
        stamp_now=("dispatch_dispatched_at",),
    ),
    OrderStatus.DELIVERED: StatusSideEffects(
        payment_status=PaymentStatus.COMPLETED,
        complete_payment_details=True,
        stamp_now=("dispatch_actual_delivery",),
    ),
    OrderStatus.CANCELLED: StatusSideEffects(
        payment_status=PaymentStatus.REFUNDED,
    ),
}


def side_effects_for(new_status: str) -> StatusSideEffects:
    """获取进入 new_status 时的附带变更"""
    try:
        return _STATUS_SIDE_EFFECTS[new_status]
    except KeyError:
        raise ValueError(f"未知的订单状态: {new_status}")


def build_status_update(
    order: Any,
    new_status: str,
    now: datetime,
    estimated_delivery: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    根据 side_effects_for 计算一次状态变更需要写入的字段

    order 只读取当前值，不做修改；返回值可直接用于条件更新。
    """
    effects = side_effects_for(new_status)
    values: Dict[str, Any] = {"status": new_status}

    if effects.payment_status:
        values["payment_status"] = effects.payment_status
    if effects.complete_payment_details:
        if not order.payment_paid_at:
            values["payment_paid_at"] = now
        if not order.payment_method or order.payment_method == PaymentMethod.PENDING:
            values["payment_method"] = PaymentMethod.BANK_TRANSFER

    for field in effects.stamp_if_absent:
        if getattr(order, field) is None:
            values[field] = now
    for field in effects.stamp_now:
        values[field] = now

    if effects.estimated_completion_from_input and estimated_delivery is not None:
        values["production_estimated_completion"] = estimated_delivery

    return values
