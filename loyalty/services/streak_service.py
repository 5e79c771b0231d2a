"""
Streak Service

Tracks consecutive calendar days of activity per user and reports streak
milestones. Milestone bonuses are not awarded here; the caller credits them
through the points service.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from flask import current_app

from ..models import UserLoyaltyState
from ..signals import send_signal, streak_milestone
from ..utils.exceptions import UserNotFoundError
from .locking import locked_user_state


def get_milestones() -> List[Dict[str, Any]]:
    """Configured milestones, ordered by days."""
    milestones = current_app.config.get('LOYALTY_STREAK_MILESTONES') or []
    return sorted(milestones, key=lambda m: m['days'])


def apply_activity(state, activity_date: date, milestones: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Update the streak fields of a (locked) loyalty state.

    Returns the milestone dict if the streak value changed on this call and
    now equals a milestone, else None. Milestones are matched on value only,
    so a streak that resets and grows back re-triggers the same milestone.
    """
    previous = state.current_streak or 0
    last = state.last_activity_date

    if last is not None:
        days_since = (activity_date - last).days

        if days_since == 0:
            # Already active that day
            return None
        elif days_since == 1:
            # Consecutive day - extend streak
            state.current_streak = previous + 1
        else:
            # Streak broken (or out-of-order date) - reset
            state.current_streak = 1
    else:
        state.current_streak = 1

    state.longest_streak = max(state.longest_streak or 0, state.current_streak)
    state.last_activity_date = activity_date

    if state.current_streak == previous:
        return None

    for milestone in milestones:
        if milestone['days'] == state.current_streak:
            return {
                'days': milestone['days'],
                'bonus': milestone['bonus'],
                'message': milestone.get('message'),
            }

    return None


class StreakService:
    """
    Consecutive-day streak tracking.

    Usage:
        service = StreakService(tenant_id)
        milestone = service.record_activity(user_id)
        if milestone:
            points_service.earn_points(user_id, milestone['bonus'], 'streak_bonus')
    """

    def __init__(self, tenant_id):
        self.tenant_id = tenant_id

    def record_activity(self, user_id, activity_date: date = None) -> Optional[Dict[str, Any]]:
        """
        Record one day of activity for a user.

        Args:
            user_id: User who was active
            activity_date: Calendar day of the activity (defaults to today, UTC)

        Returns:
            Milestone dict (days, bonus, message) or None
        """
        activity_date = activity_date or datetime.utcnow().date()

        with locked_user_state(self.tenant_id, user_id) as state:
            milestone = apply_activity(state, activity_date, get_milestones())
            current = state.current_streak

        current_app.logger.debug(f"Streak for user {user_id}: {current} day(s)")

        if milestone:
            send_signal(
                streak_milestone, self,
                user_id=user_id,
                tenant_id=self.tenant_id,
                days=milestone['days'],
                bonus=milestone['bonus'],
                message=milestone['message'],
            )

        return milestone

    def get_streak(self, user_id) -> Dict[str, Any]:
        """Current streak snapshot for a user."""
        state = UserLoyaltyState.query.filter_by(
            tenant_id=self.tenant_id, user_id=user_id
        ).first()
        if not state:
            raise UserNotFoundError(user_id)

        next_milestone = None
        for milestone in get_milestones():
            if milestone['days'] > (state.current_streak or 0):
                next_milestone = milestone
                break

        return {
            'current_streak': state.current_streak,
            'longest_streak': state.longest_streak,
            'last_activity_date': state.last_activity_date.isoformat() if state.last_activity_date else None,
            'next_milestone': next_milestone,
        }
