"""
Business logic services for the loyalty core.
"""
from .tier_service import Tier, TierService, DEFAULT_TIERS, get_tier_service
from .points_service import PointsService
from .streak_service import StreakService
from .scheduled_tasks import ScheduledTasksService, scheduled_tasks_service
from .stats_service import StatsService

__all__ = [
    'Tier',
    'TierService',
    'DEFAULT_TIERS',
    'get_tier_service',
    'PointsService',
    'StreakService',
    'ScheduledTasksService',
    'scheduled_tasks_service',
    'StatsService',
]
