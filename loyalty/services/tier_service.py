"""
Tier Resolution Service.

Static tier table and pure lookups over it. Tier membership is a function of
the current points balance only:

    bronze  >= 0       1% cashback   x1.0 earn multiplier
    silver  >= 1000    2% cashback   x1.2
    gold    >= 5000    3% cashback   x1.5
    platinum>= 20000   5% cashback   x2.0

The table can be replaced through the LOYALTY_TIERS config key. It is built
and validated once in create_app() and shared through app.extensions.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app

from ..utils.exceptions import ConfigurationError


@dataclass(frozen=True)
class Tier:
    """One tranche of the loyalty program."""
    code: str
    name: str
    min_points: int
    cashback_percent: Decimal
    earn_multiplier: Decimal
    color: str = None
    icon: str = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'name': self.name,
            'min_points': self.min_points,
            'cashback_percent': float(self.cashback_percent),
            'earn_multiplier': float(self.earn_multiplier),
            'color': self.color,
            'icon': self.icon,
        }


DEFAULT_TIERS = (
    Tier('bronze', 'Bronze', 0, Decimal('1'), Decimal('1'), '#CD7F32', 'bronze-medal'),
    Tier('silver', 'Silver', 1000, Decimal('2'), Decimal('1.2'), '#C0C0C0', 'silver-medal'),
    Tier('gold', 'Gold', 5000, Decimal('3'), Decimal('1.5'), '#FFD700', 'gold-medal'),
    Tier('platinum', 'Platinum', 20000, Decimal('5'), Decimal('2'), '#E5E4E2', 'gem'),
)


def _tier_from_config(data: Dict[str, Any]) -> Tier:
    try:
        return Tier(
            code=data['code'],
            name=data.get('name', data['code'].title()),
            min_points=int(data['min_points']),
            cashback_percent=Decimal(str(data.get('cashback_percent', 0))),
            earn_multiplier=Decimal(str(data.get('earn_multiplier', 1))),
            color=data.get('color'),
            icon=data.get('icon'),
        )
    except (KeyError, TypeError, ValueError, ArithmeticError) as e:
        raise ConfigurationError(f"Invalid tier definition {data!r}: {e}")


class TierService:
    """
    Pure lookups over an ordered tier table.

    Usage:
        tiers = get_tier_service()
        tier = tiers.get_tier_for_points(1200)       # silver
        progress = tiers.get_progress(1200)
    """

    def __init__(self, tiers: Iterable[Tier] = None):
        ordered = sorted(tiers or DEFAULT_TIERS, key=lambda t: t.min_points)

        if not ordered:
            raise ConfigurationError("Tier table is empty")
        if ordered[0].min_points != 0:
            raise ConfigurationError("Tier table must include a tier with min_points 0")

        codes = [t.code for t in ordered]
        if len(set(codes)) != len(codes):
            raise ConfigurationError("Tier codes must be unique")

        thresholds = [t.min_points for t in ordered]
        if len(set(thresholds)) != len(thresholds):
            raise ConfigurationError("Tier thresholds must be unique")

        for tier in ordered:
            if tier.earn_multiplier < 1:
                raise ConfigurationError(f"Tier '{tier.code}' earn multiplier must be >= 1")

        self.tiers: List[Tier] = ordered
        self._by_code = {t.code: t for t in ordered}
        self._rank = {t.code: i for i, t in enumerate(ordered)}

    @classmethod
    def from_config(cls, config) -> 'TierService':
        """Build from LOYALTY_TIERS (list of dicts) or fall back to defaults."""
        raw = config.get('LOYALTY_TIERS')
        if not raw:
            return cls(DEFAULT_TIERS)
        return cls(_tier_from_config(item) for item in raw)

    # ==================== Lookups ====================

    @property
    def default_tier(self) -> Tier:
        return self.tiers[0]

    def get_tier(self, code: str) -> Tier:
        """Get tier by code; unknown codes resolve to the default tier."""
        return self._by_code.get(code, self.default_tier)

    def get_tier_for_points(self, balance: int) -> Tier:
        """Highest tier whose threshold is <= balance."""
        current = self.tiers[0]
        for tier in self.tiers:
            if tier.min_points <= balance:
                current = tier
            else:
                break
        return current

    def get_next_tier(self, code: str) -> Optional[Tier]:
        """Next-higher tier, or None at the top."""
        rank = self._rank.get(code, 0)
        if rank + 1 < len(self.tiers):
            return self.tiers[rank + 1]
        return None

    def compare(self, old_code: str, new_code: str) -> int:
        """1 if new is higher, -1 if lower, 0 if equal."""
        old_rank = self._rank.get(old_code, 0)
        new_rank = self._rank.get(new_code, 0)
        return (new_rank > old_rank) - (new_rank < old_rank)

    def get_progress(self, balance: int) -> Dict[str, Any]:
        """
        Progress of a balance inside its tier band.

        Returns:
            Dict with current_tier, next_tier, points_to_next and
            progress_percent (0 at the tier floor, 100 at the next floor,
            100 at the top tier)
        """
        current = self.get_tier_for_points(balance)
        next_tier = self.get_next_tier(current.code)

        if not next_tier:
            return {
                'current_tier': current.to_dict(),
                'next_tier': None,
                'points_to_next': 0,
                'progress_percent': 100,
            }

        band = next_tier.min_points - current.min_points
        progress = balance - current.min_points
        percent = min(100, max(0, (progress * 100) // band))

        return {
            'current_tier': current.to_dict(),
            'next_tier': next_tier.to_dict(),
            'points_to_next': max(0, next_tier.min_points - balance),
            'progress_percent': percent,
        }

    def get_all_tiers(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self.tiers]

    # ==================== Calculations ====================

    def apply_multiplier(self, amount: int, code: str) -> int:
        """floor(amount * earn_multiplier) for the given tier."""
        multiplier = self.get_tier(code).earn_multiplier
        return int((Decimal(amount) * multiplier).to_integral_value(rounding=ROUND_FLOOR))

    def calculate_order_points(
        self,
        order_amount,
        code: str,
        points_per_unit: int = 100,
        min_order_amount=5000,
        max_points_per_order: int = 1000
    ) -> Dict[str, int]:
        """
        Preview of the points an order earns at a tier.

        Returns:
            Dict with base_points (capped, pre-multiplier) and total_points
        """
        base = calculate_order_base_points(
            order_amount, points_per_unit, min_order_amount, max_points_per_order
        )
        return {
            'base_points': base,
            'total_points': self.apply_multiplier(base, code) if base else 0,
        }

    def calculate_cashback(self, order_amount, code: str) -> int:
        """Cashback owed on an order at the tier's cashback percent (floored)."""
        percent = self.get_tier(code).cashback_percent
        value = Decimal(str(order_amount)) * percent / Decimal('100')
        return int(value.to_integral_value(rounding=ROUND_FLOOR))


def calculate_order_base_points(
    order_amount,
    points_per_unit: int,
    min_order_amount,
    max_points_per_order: int
) -> int:
    """
    Raw (pre-multiplier) points for an order.

    Orders under the minimum earn nothing; the result is capped at
    max_points_per_order before any tier multiplier is applied.
    """
    amount = Decimal(str(order_amount))
    if amount < Decimal(str(min_order_amount)):
        return 0

    base = int((amount / Decimal(points_per_unit)).to_integral_value(rounding=ROUND_FLOOR))
    return min(base, max_points_per_order)


def get_tier_service() -> TierService:
    """Tier table of the current app (built in create_app)."""
    service = current_app.extensions.get('loyalty_tiers')
    if service is None:
        service = TierService.from_config(current_app.config)
        current_app.extensions['loyalty_tiers'] = service
    return service
