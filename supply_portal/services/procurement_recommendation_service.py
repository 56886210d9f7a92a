from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from enum import Enum


class RecommendationPriority(str, Enum):
    CRITICAL = 'CRITICAL'
    HIGH = 'HIGH'
    MEDIUM = 'MEDIUM'
    LOW = 'LOW'


CRITICAL_MINIMUM_QTY = Decimal('100')


@dataclass(frozen=True)
class StockLevelInput:
    qty_on_hand: Decimal
    reorder_level: Decimal = Decimal('0')
    low_stock_threshold: Decimal | None = None
    low_stock_alert: bool = False


@dataclass(frozen=True)
class Recommendation:
    priority: RecommendationPriority
    suggested_qty: int
    reason: str
    current_stock: Decimal
    reorder_level: Decimal
    low_stock_threshold: Decimal


def _ceil(value: Decimal) -> int:
    if value <= 0:
        return 0
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def recommend(level: StockLevelInput) -> Recommendation:
    current = Decimal(level.qty_on_hand)
    reorder = Decimal(level.reorder_level or 0)
    threshold = Decimal(level.low_stock_threshold or 0)

    if current == 0:
        return Recommendation(
            priority=RecommendationPriority.CRITICAL,
            suggested_qty=_ceil(max(reorder * 2, CRITICAL_MINIMUM_QTY)),
            reason='Out of stock - immediate purchase required',
            current_stock=current,
            reorder_level=reorder,
            low_stock_threshold=threshold,
        )
    if level.low_stock_alert or current <= threshold:
        return Recommendation(
            priority=RecommendationPriority.HIGH,
            suggested_qty=_ceil(max(reorder - current, reorder)),
            reason='Below low stock threshold',
            current_stock=current,
            reorder_level=reorder,
            low_stock_threshold=threshold,
        )
    if current <= reorder:
        return Recommendation(
            priority=RecommendationPriority.MEDIUM,
            suggested_qty=_ceil(reorder * Decimal('1.5') - current),
            reason='At or below reorder level',
            current_stock=current,
            reorder_level=reorder,
            low_stock_threshold=threshold,
        )
    return Recommendation(
        priority=RecommendationPriority.LOW,
        suggested_qty=0,
        reason='Stock level is healthy',
        current_stock=current,
        reorder_level=reorder,
        low_stock_threshold=threshold,
    )
