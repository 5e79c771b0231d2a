"""
Tests for TierService.

Tests cover:
- Tier resolution from a balance
- Next tier and progress within a band
- Earn multiplier and order point calculations
- Tier table validation and config overrides
"""
import pytest
from decimal import Decimal

from loyalty.services.tier_service import (
    DEFAULT_TIERS,
    Tier,
    TierService,
    calculate_order_base_points,
)
from loyalty.utils.exceptions import ConfigurationError


@pytest.fixture
def tiers():
    return TierService(DEFAULT_TIERS)


class TestTierResolution:
    """Tests for get_tier_for_points."""

    @pytest.mark.parametrize('balance,expected', [
        (0, 'bronze'),
        (999, 'bronze'),
        (1000, 'silver'),
        (4999, 'silver'),
        (5000, 'gold'),
        (19999, 'gold'),
        (20000, 'platinum'),
        (1000000, 'platinum'),
    ])
    def test_highest_tier_at_or_below_balance(self, tiers, balance, expected):
        """Test the highest tier whose threshold is <= balance wins."""
        assert tiers.get_tier_for_points(balance).code == expected

    def test_tier_is_monotonic_in_balance(self, tiers):
        """Test more points never resolve to a lower tier."""
        previous_rank = 0
        for balance in range(0, 25000, 250):
            code = tiers.get_tier_for_points(balance).code
            rank = [t.code for t in tiers.tiers].index(code)
            assert rank >= previous_rank
            previous_rank = rank

    def test_unknown_code_falls_back_to_default(self, tiers):
        """Test get_tier returns the zero-threshold tier for unknown codes."""
        assert tiers.get_tier('diamond').code == 'bronze'

    def test_compare(self, tiers):
        assert tiers.compare('bronze', 'silver') == 1
        assert tiers.compare('gold', 'silver') == -1
        assert tiers.compare('gold', 'gold') == 0


class TestNextTierAndProgress:
    """Tests for get_next_tier and get_progress."""

    def test_next_tier(self, tiers):
        assert tiers.get_next_tier('bronze').code == 'silver'
        assert tiers.get_next_tier('gold').code == 'platinum'

    def test_no_next_tier_at_top(self, tiers):
        assert tiers.get_next_tier('platinum') is None

    def test_progress_at_floor_is_zero(self, tiers):
        progress = tiers.get_progress(1000)
        assert progress['current_tier']['code'] == 'silver'
        assert progress['next_tier']['code'] == 'gold'
        assert progress['points_to_next'] == 4000
        assert progress['progress_percent'] == 0

    def test_progress_mid_band(self, tiers):
        progress = tiers.get_progress(500)
        assert progress['points_to_next'] == 500
        assert progress['progress_percent'] == 50

    def test_progress_just_below_next_floor(self, tiers):
        progress = tiers.get_progress(4999)
        assert progress['points_to_next'] == 1
        assert progress['progress_percent'] == 99

    def test_progress_at_top_tier_is_full(self, tiers):
        progress = tiers.get_progress(25000)
        assert progress['next_tier'] is None
        assert progress['points_to_next'] == 0
        assert progress['progress_percent'] == 100


class TestCalculations:
    """Tests for multiplier, order points and cashback."""

    @pytest.mark.parametrize('code,amount,expected', [
        ('bronze', 100, 100),
        ('silver', 100, 120),
        ('silver', 7, 8),       # 8.4 floored
        ('gold', 101, 151),     # 151.5 floored
        ('platinum', 75, 150),
    ])
    def test_apply_multiplier_floors(self, tiers, code, amount, expected):
        assert tiers.apply_multiplier(amount, code) == expected

    def test_order_base_points(self):
        assert calculate_order_base_points(Decimal('7550'), 100, 5000, 1000) == 75

    def test_order_below_minimum_earns_nothing(self):
        assert calculate_order_base_points(Decimal('4999'), 100, 5000, 1000) == 0

    def test_order_points_capped_before_multiplier(self, tiers):
        """Test the per-order cap applies to raw points, the multiplier on top."""
        result = tiers.calculate_order_points(Decimal('500000'), 'gold')
        assert result['base_points'] == 1000
        assert result['total_points'] == 1500

    def test_cashback(self, tiers):
        assert tiers.calculate_cashback(Decimal('10000'), 'silver') == 200
        assert tiers.calculate_cashback(Decimal('199'), 'bronze') == 1

    def test_get_all_tiers_serializable(self, tiers):
        data = tiers.get_all_tiers()
        assert [t['code'] for t in data] == ['bronze', 'silver', 'gold', 'platinum']
        assert data[1]['earn_multiplier'] == 1.2
        assert data[3]['cashback_percent'] == 5.0


class TestTierTableValidation:
    """Tests for tier table validation."""

    def test_requires_zero_threshold_tier(self):
        with pytest.raises(ConfigurationError):
            TierService([Tier('silver', 'Silver', 1000, Decimal('2'), Decimal('1.2'))])

    def test_rejects_duplicate_codes(self):
        with pytest.raises(ConfigurationError):
            TierService([
                Tier('basic', 'Basic', 0, Decimal('1'), Decimal('1')),
                Tier('basic', 'Basic+', 500, Decimal('1'), Decimal('1')),
            ])

    def test_rejects_duplicate_thresholds(self):
        with pytest.raises(ConfigurationError):
            TierService([
                Tier('basic', 'Basic', 0, Decimal('1'), Decimal('1')),
                Tier('plus', 'Plus', 0, Decimal('1'), Decimal('1.1')),
            ])

    def test_rejects_multiplier_below_one(self):
        with pytest.raises(ConfigurationError):
            TierService([Tier('basic', 'Basic', 0, Decimal('1'), Decimal('0.5'))])

    def test_unordered_table_is_sorted(self):
        service = TierService(reversed(DEFAULT_TIERS))
        assert [t.code for t in service.tiers] == ['bronze', 'silver', 'gold', 'platinum']

    def test_from_config_override(self):
        service = TierService.from_config({'LOYALTY_TIERS': [
            {'code': 'member', 'min_points': 0},
            {'code': 'vip', 'name': 'VIP', 'min_points': 300, 'earn_multiplier': '1.5', 'cashback_percent': 4},
        ]})
        assert service.get_tier_for_points(300).name == 'VIP'
        assert service.apply_multiplier(10, 'vip') == 15
        assert service.get_tier('member').name == 'Member'

    def test_from_config_invalid_entry(self):
        with pytest.raises(ConfigurationError):
            TierService.from_config({'LOYALTY_TIERS': [{'name': 'No code'}]})

    def test_from_config_defaults(self):
        service = TierService.from_config({'LOYALTY_TIERS': None})
        assert len(service.tiers) == 4

    def test_app_exposes_tier_service(self, app):
        from loyalty.services.tier_service import get_tier_service

        with app.app_context():
            assert get_tier_service() is app.extensions['loyalty_tiers']
