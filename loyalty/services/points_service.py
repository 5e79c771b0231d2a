"""
Points Service for the loyalty core.

Central ledger operations:
- Enrollment and one-time bonuses (welcome, first order, referral)
- Earning with tier multipliers, including order-completion earning
- Spending with FIFO consumption of the oldest remainders
- Manual adjustments by staff
- Balance snapshot and paginated history queries

ARCHITECTURE:
- PointsLedger is the append-only record of every movement
- UserLoyaltyState.points_balance is the projection of the ledger sum
- Every mutation runs in one locked unit (see locking.locked_user_state), so
  the ledger append, the projection update and the FIFO bookkeeping commit
  or roll back together
- Signals are sent only after the unit committed
"""

from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    BACKING_TYPES,
    DEFAULT_DESCRIPTIONS,
    PointsLedger,
    PointsSource,
    PointsTransactionType,
    ProcessedOrder,
    UserLoyaltyState,
)
from ..signals import (
    points_adjusted,
    points_earned,
    points_expired,
    points_spent,
    send_signal,
    streak_milestone,
    tier_changed,
)
from ..utils.exceptions import (
    InsufficientPointsError,
    UserNotFoundError,
    ValidationError,
)
from .locking import locked_user_state
from .streak_service import apply_activity, get_milestones
from .tier_service import TierService, calculate_order_base_points, get_tier_service


# Rows fetched per round trip while walking remainders oldest-first
FIFO_BATCH_SIZE = 50

MAX_HISTORY_PER_PAGE = 100

VALID_SOURCES = {s.value for s in PointsSource}
VALID_TRANSACTION_TYPES = {t.value for t in PointsTransactionType}


def expirable_entries_query(now: datetime):
    """Backing entries whose remainder is due to expire at `now`."""
    return PointsLedger.query.filter(
        PointsLedger.transaction_type.in_(BACKING_TYPES),
        PointsLedger.is_expired.is_(False),
        PointsLedger.expires_at.isnot(None),
        PointsLedger.expires_at < now,
        PointsLedger.remaining_points > 0
    )


def _require_positive_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field.replace('_', ' ').capitalize()} must be a whole number of points", field)
    if value <= 0:
        raise ValidationError(f"{field.replace('_', ' ').capitalize()} must be positive", field)
    return value


def _normalize_source(source) -> str:
    value = source.value if isinstance(source, PointsSource) else source
    if value not in VALID_SOURCES:
        raise ValidationError(f"Unknown points source: {source}", 'source')
    return value


class PointsService:
    """
    Central service for all points-related operations.

    Usage:
        service = PointsService(tenant_id)

        # Award points
        result = service.earn_points(user_id, 100, 'order', reference_id='1234')

        # Spend points at checkout
        result = service.spend_points(user_id, 250, reference_id='1234')

        # Order completed
        result = service.process_order_points(user_id, '1234', Decimal('7500'))
    """

    def __init__(self, tenant_id, tier_service: TierService = None):
        """
        Initialize PointsService.

        Args:
            tenant_id: Tenant the users belong to
            tier_service: Optional tier table (defaults to the app's)
        """
        self.tenant_id = tenant_id
        self._tiers = tier_service

    @property
    def tiers(self) -> TierService:
        if self._tiers is None:
            self._tiers = get_tier_service()
        return self._tiers

    @property
    def config(self):
        return current_app.config

    # ==================== Enrollment ====================

    def enroll(self, user_id) -> Dict[str, Any]:
        """
        Create the user's loyalty state (bronze, zero balance).

        Returns the existing state when the user is already enrolled.
        """
        state = self._get_state(user_id)
        if state:
            return state.to_dict()

        state = UserLoyaltyState(
            tenant_id=self.tenant_id,
            user_id=user_id,
            points_balance=0,
            tier=self.tiers.default_tier.code,
        )
        db.session.add(state)

        try:
            db.session.commit()
        except IntegrityError:
            # Enrolled concurrently by another worker
            db.session.rollback()
            state = self._get_state(user_id)
            if state is None:
                raise
            return state.to_dict()

        current_app.logger.info(f"Loyalty: enrolled user {user_id} (tenant {self.tenant_id})")
        return state.to_dict()

    def grant_welcome_bonus(self, user_id) -> Optional[Dict[str, Any]]:
        """Award the welcome bonus once. Returns None if already granted."""
        bonus = self.config.get('LOYALTY_WELCOME_BONUS', 0)
        if bonus <= 0:
            return None

        pending = []
        with locked_user_state(self.tenant_id, user_id) as state:
            if state.welcome_bonus_granted:
                return None

            entry, tier_change = self._credit(
                state, bonus, PointsSource.WELCOME_BONUS.value, pending,
                reference_type='enrollment'
            )
            state.welcome_bonus_granted = True
            result = self._earn_result(state, entry, tier_change)

        self._dispatch(pending)
        return result

    # ==================== Earning ====================

    def earn_points(
        self,
        user_id,
        amount: int,
        source,
        reference_id: str = None,
        reference_type: str = None,
        description: str = None,
        metadata: Dict[str, Any] = None
    ) -> Dict[str, Any]:
        """
        Award points to a user.

        The user's current tier multiplier is applied and the result floored.

        Args:
            user_id: User to award points to
            amount: Base points amount (before multiplier)
            source: PointsSource value (order, referral, daily_quest, ...)
            reference_id: ID of the triggering event (order id, quest id, ...)
            reference_type: Kind of the triggering event
            description: Human-readable description
            metadata: Optional JSON payload stored on the entry

        Returns:
            Dict with credited_amount, new_balance, tier_changed, tier and
            transaction_id

        Raises:
            ValidationError: Non-positive amount or unknown source
            UserNotFoundError: User has no loyalty state
        """
        amount = _require_positive_int(amount, 'amount')
        source = _normalize_source(source)

        pending = []
        with locked_user_state(self.tenant_id, user_id) as state:
            entry, tier_change = self._credit(
                state, amount, source, pending,
                reference_id=reference_id,
                reference_type=reference_type,
                description=description,
                metadata=metadata,
            )
            result = self._earn_result(state, entry, tier_change)

        self._dispatch(pending)
        return result

    def process_order_points(
        self,
        user_id,
        order_id,
        order_amount,
        activity_date: date = None
    ) -> Dict[str, Any]:
        """
        Award points for a completed order.

        In one unit: updates the order aggregates, records streak activity,
        credits the order points (1 per LOYALTY_POINTS_PER_CURRENCY_UNIT,
        nothing under LOYALTY_MIN_ORDER_AMOUNT, capped before the multiplier),
        then any streak milestone bonus and the first-order bonus.

        Returns:
            Earn result for the order points plus base_points, streak,
            streak_bonus and first_order_bonus
        """
        try:
            amount = Decimal(str(order_amount))
        except ArithmeticError:
            raise ValidationError(f"Invalid order amount: {order_amount}", 'order_amount')
        if not amount.is_finite() or amount < 0:
            raise ValidationError("Order amount must not be negative", 'order_amount')

        order_ref = str(order_id)
        now = datetime.utcnow()
        activity_date = activity_date or now.date()

        base_points = calculate_order_base_points(
            amount,
            self.config['LOYALTY_POINTS_PER_CURRENCY_UNIT'],
            self.config['LOYALTY_MIN_ORDER_AMOUNT'],
            self.config['LOYALTY_MAX_POINTS_PER_ORDER'],
        )

        pending = []
        with locked_user_state(self.tenant_id, user_id) as state:
            already = ProcessedOrder.query.filter_by(
                tenant_id=self.tenant_id,
                user_id=user_id,
                order_id=order_ref,
            ).first()
            if already:
                raise ValidationError(f"Order {order_ref} was already processed", 'order_id')

            db.session.add(ProcessedOrder(
                tenant_id=self.tenant_id,
                user_id=user_id,
                order_id=order_ref,
                order_amount=amount,
                base_points=base_points,
            ))

            tier_before = state.tier
            state.total_orders = (state.total_orders or 0) + 1
            state.total_spent = (state.total_spent or Decimal('0')) + amount
            state.last_order_at = now

            milestone = apply_activity(state, activity_date, get_milestones())

            entry = None
            if base_points > 0:
                entry, _ = self._credit(
                    state, base_points, PointsSource.ORDER.value, pending,
                    reference_id=order_ref,
                    reference_type='order',
                    metadata={'order_amount': str(amount), 'base_points': base_points},
                )

            streak_bonus = None
            if milestone:
                bonus_entry, _ = self._credit(
                    state, milestone['bonus'], PointsSource.STREAK_BONUS.value, pending,
                    reference_id=str(milestone['days']),
                    reference_type='streak',
                    description=milestone.get('message'),
                )
                streak_bonus = dict(milestone, credited=bonus_entry.points)
                pending.append((streak_milestone, {
                    'user_id': user_id,
                    'tenant_id': self.tenant_id,
                    'days': milestone['days'],
                    'bonus': milestone['bonus'],
                    'message': milestone.get('message'),
                }))

            first_order_bonus = 0
            if state.total_orders == 1:
                bonus_entry, _ = self._grant_first_order(state, order_ref, pending)
                if bonus_entry:
                    first_order_bonus = bonus_entry.points

            result = {
                'order_id': order_ref,
                'base_points': base_points,
                'credited_amount': entry.points if entry else 0,
                'new_balance': state.points_balance,
                'tier_changed': state.tier != tier_before,
                'tier': self.tiers.get_tier(state.tier).to_dict() if state.tier != tier_before else None,
                'transaction_id': entry.id if entry else None,
                'streak': state.current_streak,
                'streak_bonus': streak_bonus,
                'first_order_bonus': first_order_bonus,
            }

        current_app.logger.info(
            f"Order points: user {user_id} order {order_ref} "
            f"+{result['credited_amount']} pts ({base_points} base), streak {result['streak']}"
        )

        self._dispatch(pending)
        return result

    def grant_first_order_bonus(self, user_id, order_id) -> Optional[Dict[str, Any]]:
        """
        Award the first-order bonus when the user has exactly one order.

        Returns None when not eligible or already awarded.
        """
        pending = []
        with locked_user_state(self.tenant_id, user_id) as state:
            if state.total_orders != 1:
                return None

            entry, tier_change = self._grant_first_order(state, str(order_id), pending)
            if entry is None:
                return None
            result = self._earn_result(state, entry, tier_change)

        self._dispatch(pending)
        return result

    def grant_referral_bonus(self, referrer_id, referred_id, referral_id) -> Dict[str, Any]:
        """
        Award referral points to both sides of a completed referral.

        The referrer gets LOYALTY_REFERRAL_BONUS (source referral), the invited
        user LOYALTY_REFERRED_BONUS (source referral_bonus).
        """
        if str(referrer_id) == str(referred_id):
            raise ValidationError("Users cannot refer themselves", 'referred_id')

        for user_id in (referrer_id, referred_id):
            if not self._get_state(user_id):
                raise UserNotFoundError(user_id)

        results = {'referrer': None, 'referred': None}

        referrer_bonus = self.config.get('LOYALTY_REFERRAL_BONUS', 0)
        if referrer_bonus > 0:
            results['referrer'] = self.earn_points(
                referrer_id, referrer_bonus, PointsSource.REFERRAL,
                reference_id=str(referral_id),
                reference_type='referral',
                metadata={'referred_id': str(referred_id)},
            )

        referred_bonus = self.config.get('LOYALTY_REFERRED_BONUS', 0)
        if referred_bonus > 0:
            results['referred'] = self.earn_points(
                referred_id, referred_bonus, PointsSource.REFERRAL_BONUS,
                reference_id=str(referral_id),
                reference_type='referral',
                metadata={'referrer_id': str(referrer_id)},
            )

        return results

    # ==================== Spending ====================

    def spend_points(
        self,
        user_id,
        amount: int,
        reference_id: str = None,
        reference_type: str = None,
        description: str = None
    ) -> Dict[str, Any]:
        """
        Spend points (e.g. as a discount at checkout).

        The "at most N% of the order" rule is the caller's responsibility, see
        validate_spend_for_order().

        Returns:
            Dict with debited_amount, new_balance, monetary_value and
            transaction_id

        Raises:
            ValidationError: Amount below LOYALTY_MIN_POINTS_TO_SPEND
            InsufficientPointsError: Amount above the current balance
            UserNotFoundError: User has no loyalty state
        """
        amount = _require_positive_int(amount, 'amount')

        min_points = self.config.get('LOYALTY_MIN_POINTS_TO_SPEND', 0)
        if amount < min_points:
            raise ValidationError(f"Minimum {min_points} points required to spend", 'amount')

        pending = []
        with locked_user_state(self.tenant_id, user_id) as state:
            if amount > state.points_balance:
                raise InsufficientPointsError(state.points_balance, amount)

            state.points_balance -= amount
            entry = self._append_entry(
                state,
                PointsTransactionType.SPEND.value,
                -amount,
                PointsSource.PURCHASE.value,
                reference_id=reference_id,
                reference_type=reference_type,
                description=description,
            )
            self._consume_points_fifo(state, amount)
            tier_change = self._refresh_tier(state, pending)

            db.session.flush()
            monetary_value = amount * Decimal(str(self.config.get('LOYALTY_POINT_VALUE', 1)))

            result = {
                'debited_amount': amount,
                'new_balance': state.points_balance,
                'monetary_value': monetary_value,
                'transaction_id': entry.id,
                'tier_changed': tier_change is not None,
                'tier': self.tiers.get_tier(state.tier).to_dict() if tier_change else None,
            }
            pending.insert(0, (points_spent, {
                'user_id': user_id,
                'tenant_id': self.tenant_id,
                'amount': amount,
                'reference_id': reference_id,
                'new_balance': state.points_balance,
                'monetary_value': monetary_value,
            }))

        current_app.logger.info(
            f"Points spent: user {user_id} -{amount} pts, balance {result['new_balance']}"
        )

        self._dispatch(pending)
        return result

    def validate_spend_for_order(self, balance: int, amount: int, order_amount) -> Dict[str, Any]:
        """
        Check a planned spend against the order-coverage cap.

        Points may cover at most LOYALTY_MAX_SPEND_PERCENT of the order total.

        Returns:
            Dict with max_points and monetary_value

        Raises:
            ValidationError: Below the minimum or above the cap
            InsufficientPointsError: Above the balance
        """
        amount = _require_positive_int(amount, 'amount')

        min_points = self.config.get('LOYALTY_MIN_POINTS_TO_SPEND', 0)
        if amount < min_points:
            raise ValidationError(f"Minimum {min_points} points required to spend", 'amount')
        if amount > balance:
            raise InsufficientPointsError(balance, amount)

        point_value = Decimal(str(self.config.get('LOYALTY_POINT_VALUE', 1)))
        max_value = Decimal(str(order_amount)) * Decimal(self.config['LOYALTY_MAX_SPEND_PERCENT']) / 100
        max_points = int((max_value / point_value).to_integral_value(rounding=ROUND_FLOOR))

        if amount > max_points:
            raise ValidationError(
                f"Points can cover at most {self.config['LOYALTY_MAX_SPEND_PERCENT']}% "
                f"of the order ({max_points} points)",
                'amount'
            )

        return {
            'max_points': min(max_points, balance),
            'monetary_value': amount * point_value,
        }

    # ==================== Adjustments ====================

    def adjust_points(self, user_id, delta: int, reason: str, actor_id) -> Dict[str, Any]:
        """
        Manually adjust a user's points balance.

        Used for corrections, customer service adjustments, etc. No tier
        multiplier is applied. Positive adjustments expire like earned points;
        negative ones consume the oldest remainders.

        Args:
            user_id: User to adjust
            delta: Points to add (positive) or remove (negative)
            reason: Reason for the adjustment (audit)
            actor_id: Staff member making the adjustment

        Raises:
            ValidationError: Zero delta, missing reason or negative result
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("Adjustment must be a whole number of points", 'delta')
        if delta == 0:
            raise ValidationError("Adjustment amount cannot be zero", 'delta')
        if not reason or not str(reason).strip():
            raise ValidationError("A reason is required for adjustments", 'reason')

        reason = str(reason).strip()
        actor = str(actor_id) if actor_id is not None else None

        pending = []
        with locked_user_state(self.tenant_id, user_id) as state:
            if state.points_balance + delta < 0:
                raise ValidationError(
                    f"Adjustment would make the balance negative. "
                    f"Current: {state.points_balance}, Adjustment: {delta}",
                    'delta'
                )

            if delta > 0:
                entry, tier_change = self._credit(
                    state, delta, PointsSource.ADMIN.value, pending,
                    transaction_type=PointsTransactionType.ADJUST.value,
                    apply_multiplier=False,
                    description=f"Adjustment: {reason}",
                    admin_id=actor,
                    admin_reason=reason,
                    emit=False,
                )
            else:
                state.points_balance += delta
                entry = self._append_entry(
                    state,
                    PointsTransactionType.ADJUST.value,
                    delta,
                    PointsSource.ADMIN.value,
                    description=f"Adjustment: {reason}",
                    admin_id=actor,
                    admin_reason=reason,
                )
                self._consume_points_fifo(state, -delta)
                tier_change = self._refresh_tier(state, pending)
                db.session.flush()

            result = {
                'transaction_id': entry.id,
                'amount': delta,
                'new_balance': state.points_balance,
                'tier_changed': tier_change is not None,
                'tier': self.tiers.get_tier(state.tier).to_dict() if tier_change else None,
                'reason': reason,
                'actor_id': actor,
            }
            pending.insert(0, (points_adjusted, {
                'user_id': user_id,
                'tenant_id': self.tenant_id,
                'amount': delta,
                'reason': reason,
                'actor_id': actor,
                'new_balance': state.points_balance,
            }))

        current_app.logger.info(
            f"Points adjustment: user {user_id} {delta:+d} pts by {actor}: {reason}"
        )

        self._dispatch(pending)
        return result

    # ==================== Expiration ====================

    def expire_user_points(self, user_id, now: datetime = None) -> Dict[str, Any]:
        """Expire a user's aged remainders.

        Every backing entry with expires_at < now, a positive remainder and
        is_expired = false gets an expire entry for its remainder and is
        marked expired. Re-running with the same `now` changes nothing.

        Returns:
            Dict with entries_expired, points_expired and new_balance
        """
        now = now or datetime.utcnow()

        pending = []
        with locked_user_state(self.tenant_id, user_id) as state:
            entries = expirable_entries_query(now).filter(
                PointsLedger.tenant_id == self.tenant_id,
                PointsLedger.user_id == user_id
            ).order_by(
                PointsLedger.expires_at.asc(),
                PointsLedger.id.asc()
            ).all()

            total_expired = 0
            for txn in entries:
                points_to_expire = txn.remaining_points

                # Floored at zero so projection drift never blocks the sweep
                state.points_balance = max(0, (state.points_balance or 0) - points_to_expire)
                self._append_entry(
                    state,
                    PointsTransactionType.EXPIRE.value,
                    -points_to_expire,
                    PointsSource.EXPIRY.value,
                    reference_id=txn.id,
                    reference_type='points_ledger',
                    description=(
                        f'Points expired (earned {txn.created_at.strftime("%Y-%m-%d")})'
                        if txn.created_at else None
                    ),
                )

                # Mark original transaction as fully consumed
                txn.remaining_points = 0
                txn.is_expired = True

                total_expired += points_to_expire

                current_app.logger.info(
                    f"Expired {points_to_expire} pts from txn {txn.id} for user {user_id}"
                )

            if total_expired:
                self._refresh_tier(state, pending)
                pending.insert(0, (points_expired, {
                    'user_id': user_id,
                    'tenant_id': self.tenant_id,
                    'amount': total_expired,
                    'new_balance': state.points_balance,
                }))

            result = {
                'entries_expired': len(entries),
                'points_expired': total_expired,
                'new_balance': state.points_balance,
            }

        self._dispatch(pending)
        return result

    # ==================== Queries ====================

    def get_balance(self, user_id) -> Dict[str, Any]:
        """
        Balance, tier and streak snapshot for a user.

        Returns:
            Dict with points_balance, tier, next_tier, points_to_next_tier,
            tier_progress, total_earned, total_spent, expiring_soon,
            current_streak, longest_streak and welcome_bonus_granted
        """
        state = self._get_state(user_id)
        if not state:
            raise UserNotFoundError(user_id)

        progress = self.tiers.get_progress(state.points_balance)
        warning_days = self.config.get('LOYALTY_EXPIRY_WARNING_DAYS', 30)
        expiring = self._calculate_expiring_points(user_id, warning_days)

        return {
            'user_id': user_id,
            'points_balance': state.points_balance,
            'tier': self.tiers.get_tier(state.tier).to_dict(),
            'next_tier': progress['next_tier'],
            'points_to_next_tier': progress['points_to_next'],
            'tier_progress': progress['progress_percent'],
            'total_earned': self._calculate_total_earned(user_id),
            'total_spent': self._calculate_total_spent(user_id),
            'expiring_soon': expiring['points'],
            'next_expiry_date': expiring['next_expiry'].isoformat() if expiring['next_expiry'] else None,
            'current_streak': state.current_streak,
            'longest_streak': state.longest_streak,
            'welcome_bonus_granted': state.welcome_bonus_granted,
        }

    def get_points_history(
        self,
        user_id,
        page: int = 1,
        per_page: int = 20,
        transaction_type: str = None,
        source: str = None,
        date_from=None,
        date_to=None
    ) -> Dict[str, Any]:
        """
        Get a user's points transaction history, newest first.

        Args:
            user_id: User ID
            page: 1-based page number
            per_page: Page size (capped at 100)
            transaction_type: Filter by type (earn, spend, adjust, expire)
            source: Filter by source
            date_from: Inclusive start (date or datetime)
            date_to: Inclusive end; a plain date covers the whole day

        Returns:
            Dict with transactions, total, page, per_page and pages
        """
        if not self._get_state(user_id):
            raise UserNotFoundError(user_id)

        page = max(1, int(page or 1))
        per_page = min(max(1, int(per_page or 20)), MAX_HISTORY_PER_PAGE)

        query = PointsLedger.query.filter_by(tenant_id=self.tenant_id, user_id=user_id)

        if transaction_type:
            if transaction_type not in VALID_TRANSACTION_TYPES:
                raise ValidationError(f"Unknown transaction type: {transaction_type}", 'transaction_type')
            query = query.filter(PointsLedger.transaction_type == transaction_type)

        if source:
            query = query.filter(PointsLedger.source == _normalize_source(source))

        if date_from:
            if not isinstance(date_from, datetime):
                date_from = datetime.combine(date_from, datetime.min.time())
            query = query.filter(PointsLedger.created_at >= date_from)

        if date_to:
            if isinstance(date_to, datetime):
                query = query.filter(PointsLedger.created_at <= date_to)
            else:
                end = datetime.combine(date_to, datetime.min.time()) + timedelta(days=1)
                query = query.filter(PointsLedger.created_at < end)

        pagination = query.order_by(
            PointsLedger.created_at.desc(), PointsLedger.id.desc()
        ).paginate(page=page, per_page=per_page, error_out=False)

        return {
            'transactions': [t.to_dict() for t in pagination.items],
            'total': pagination.total,
            'page': page,
            'per_page': per_page,
            'pages': pagination.pages,
        }

    # ==================== Internals ====================

    def _get_state(self, user_id) -> Optional[UserLoyaltyState]:
        return UserLoyaltyState.query.filter_by(tenant_id=self.tenant_id, user_id=user_id).first()

    def _append_entry(
        self,
        state: UserLoyaltyState,
        transaction_type: str,
        points: int,
        source: str,
        reference_id: str = None,
        reference_type: str = None,
        description: str = None,
        metadata: Dict[str, Any] = None,
        expires_at: datetime = None,
        remaining_points: int = None,
        admin_id: str = None,
        admin_reason: str = None
    ) -> PointsLedger:
        """Append one ledger row; state.points_balance must already be updated."""
        entry = PointsLedger(
            tenant_id=self.tenant_id,
            user_id=state.user_id,
            transaction_type=transaction_type,
            points=points,
            balance_after=state.points_balance,
            source=source,
            reference_id=str(reference_id) if reference_id is not None else None,
            reference_type=reference_type,
            description=description or DEFAULT_DESCRIPTIONS.get(source),
            metadata_json=metadata,
            expires_at=expires_at,
            remaining_points=remaining_points,
            is_expired=False,
            admin_id=admin_id,
            admin_reason=admin_reason,
            created_at=datetime.utcnow(),
        )
        db.session.add(entry)
        return entry

    def _credit(
        self,
        state: UserLoyaltyState,
        amount: int,
        source: str,
        pending: List,
        transaction_type: str = PointsTransactionType.EARN.value,
        apply_multiplier: bool = True,
        emit: bool = True,
        **fields
    ) -> Tuple[PointsLedger, Optional[Dict[str, str]]]:
        """Credit points to a locked state as a new expiring, consumable entry."""
        credited = self.tiers.apply_multiplier(amount, state.tier) if apply_multiplier else amount

        now = datetime.utcnow()
        expiry_days = self.config.get('LOYALTY_EXPIRY_DAYS', 365)

        state.points_balance = (state.points_balance or 0) + credited
        entry = self._append_entry(
            state,
            transaction_type,
            credited,
            source,
            expires_at=now + timedelta(days=expiry_days),
            remaining_points=credited,
            **fields
        )
        tier_change = self._refresh_tier(state, pending)
        db.session.flush()

        current_app.logger.info(
            f"Points earned: user {state.user_id} +{credited} pts "
            f"({amount} base) from {source}"
        )

        if emit:
            pending.append((points_earned, {
                'user_id': state.user_id,
                'tenant_id': self.tenant_id,
                'amount': credited,
                'source': source,
                'reference_id': entry.reference_id,
                'new_balance': state.points_balance,
            }))

        return entry, tier_change

    def _grant_first_order(self, state: UserLoyaltyState, order_ref: str, pending: List):
        bonus = self.config.get('LOYALTY_FIRST_ORDER_BONUS', 0)
        if bonus <= 0:
            return None, None

        existing = PointsLedger.query.filter_by(
            tenant_id=self.tenant_id,
            user_id=state.user_id,
            source=PointsSource.FIRST_ORDER.value,
        ).first()
        if existing:
            return None, None

        return self._credit(
            state, bonus, PointsSource.FIRST_ORDER.value, pending,
            reference_id=order_ref,
            reference_type='order',
        )

    def _refresh_tier(self, state: UserLoyaltyState, pending: List) -> Optional[Dict[str, str]]:
        """Re-resolve the tier from the balance; queue tier_changed if it moved."""
        new_tier = self.tiers.get_tier_for_points(state.points_balance)
        if new_tier.code == state.tier:
            return None

        old_tier = state.tier
        state.tier = new_tier.code
        direction = 'up' if self.tiers.compare(old_tier, new_tier.code) > 0 else 'down'

        current_app.logger.info(
            f"Tier change: user {state.user_id} {old_tier} -> {new_tier.code} ({direction})"
        )

        pending.append((tier_changed, {
            'user_id': state.user_id,
            'tenant_id': self.tenant_id,
            'old_tier': old_tier,
            'new_tier': new_tier.code,
            'new_balance': state.points_balance,
        }))
        return {'old_tier': old_tier, 'new_tier': new_tier.code, 'direction': direction}

    def _consume_points_fifo(self, state: UserLoyaltyState, points_to_consume: int) -> int:
        """Consume remainders from the oldest backing entries first (FIFO).

        Walks non-expired earn/positive-adjust entries ordered by creation and
        stops as soon as the amount is covered. Does not touch the balance.

        Returns:
            Actual points consumed (less only if the remainders ran out)
        """
        if points_to_consume <= 0:
            return 0

        query = PointsLedger.query.filter(
            PointsLedger.tenant_id == self.tenant_id,
            PointsLedger.user_id == state.user_id,
            PointsLedger.transaction_type.in_(BACKING_TYPES),
            PointsLedger.is_expired.is_(False),
            PointsLedger.remaining_points > 0
        ).order_by(
            PointsLedger.created_at.asc(),
            PointsLedger.id.asc()
        )

        remaining_to_consume = points_to_consume
        while remaining_to_consume > 0:
            # Autoflush makes rows zeroed in the previous batch drop out
            batch = query.limit(FIFO_BATCH_SIZE).all()
            if not batch:
                break

            for entry in batch:
                consume = min(entry.remaining_points, remaining_to_consume)
                entry.remaining_points -= consume
                remaining_to_consume -= consume
                if remaining_to_consume == 0:
                    break

        consumed = points_to_consume - remaining_to_consume
        if remaining_to_consume:
            current_app.logger.warning(
                f"FIFO: user {state.user_id} had only {consumed} of "
                f"{points_to_consume} pts backed by open entries"
            )
        return consumed

    def _calculate_total_earned(self, user_id) -> int:
        result = db.session.query(func.coalesce(func.sum(PointsLedger.points), 0)).filter(
            PointsLedger.tenant_id == self.tenant_id,
            PointsLedger.user_id == user_id,
            PointsLedger.transaction_type.in_(BACKING_TYPES),
            PointsLedger.points > 0
        ).scalar()
        return int(result or 0)

    def _calculate_total_spent(self, user_id) -> int:
        result = db.session.query(func.coalesce(func.sum(PointsLedger.points), 0)).filter(
            PointsLedger.tenant_id == self.tenant_id,
            PointsLedger.user_id == user_id,
            PointsLedger.transaction_type == PointsTransactionType.SPEND.value
        ).scalar()
        return abs(int(result or 0))

    def _calculate_expiring_points(self, user_id, days: int = 30) -> Dict[str, Any]:
        now = datetime.utcnow()
        cutoff = now + timedelta(days=days)

        points, next_expiry = db.session.query(
            func.coalesce(func.sum(PointsLedger.remaining_points), 0),
            func.min(PointsLedger.expires_at)
        ).filter(
            PointsLedger.tenant_id == self.tenant_id,
            PointsLedger.user_id == user_id,
            PointsLedger.transaction_type.in_(BACKING_TYPES),
            PointsLedger.is_expired.is_(False),
            PointsLedger.remaining_points > 0,
            PointsLedger.expires_at.isnot(None),
            PointsLedger.expires_at <= cutoff
        ).one()

        return {'points': int(points or 0), 'next_expiry': next_expiry}

    def _earn_result(self, state: UserLoyaltyState, entry: PointsLedger, tier_change) -> Dict[str, Any]:
        return {
            'credited_amount': entry.points,
            'new_balance': state.points_balance,
            'tier_changed': tier_change is not None,
            'tier': self.tiers.get_tier(state.tier).to_dict() if tier_change else None,
            'transaction_id': entry.id,
        }

    def _dispatch(self, pending: List) -> None:
        """Send queued signals (only called after the unit committed)."""
        for signal, data in pending:
            send_signal(signal, self, **data)
