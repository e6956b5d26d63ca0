"""
Read-only dashboard statistics.

Percentages and day averages are rounded half up (2.5 -> 3), not with
Python's round-half-to-even.
"""

import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from database import utcnow
from schemas import (
    AdminStats,
    CategoryCount,
    Identity,
    PriorityCount,
    StatusBreakdown,
    UserStats,
    VotingStats,
)

RECENT_WINDOW = timedelta(days=7)
MS_PER_DAY = 24 * 60 * 60 * 1000


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class StatsService:
    def __init__(self, issues, ledger, users, clock: Callable[[], datetime] = utcnow):
        self.issues = issues
        self.ledger = ledger
        self.users = users
        self.clock = clock

    async def status_breakdown(self, reporter_id: Optional[str] = None) -> StatusBreakdown:
        counts = dict(await self.issues.count_by("status", reporter_id))
        return StatusBreakdown(
            totalIssues=sum(counts.values()),
            pendingIssues=counts.get("pending", 0),
            inProgressIssues=counts.get("in-progress", 0),
            resolvedIssues=counts.get("resolved", 0),
        )

    async def voting_stats(self, voter_id: Optional[str] = None) -> VotingStats:
        return await self.ledger.stats(voter_id)

    async def average_resolution_days(self) -> int:
        avg_ms = await self.issues.average_resolution_ms()
        if not avg_ms:
            return 0
        return round_half_up(avg_ms / MS_PER_DAY)

    async def admin_dashboard(self) -> AdminStats:
        now = self.clock()
        since = now - RECENT_WINDOW
        breakdown = await self.status_breakdown()
        voting = await self.voting_stats()
        by_category = await self.issues.count_by("category")
        by_priority = await self.issues.count_by("priority")

        resolution_rate = 0
        if breakdown.totalIssues:
            resolution_rate = round_half_up(breakdown.resolvedIssues / breakdown.totalIssues * 100)

        return AdminStats(
            **breakdown.model_dump(),
            **voting.model_dump(),
            totalUsers=await self.users.count(),
            totalAdmins=await self.users.count(role="admin"),
            newUsersThisMonth=await self.users.count(since=month_start(now)),
            recentIssues=await self.issues.count_created_since(since),
            recentVotes=await self.ledger.count_created_since(since),
            resolutionRate=resolution_rate,
            avgResolutionDays=await self.average_resolution_days(),
            issuesByCategory=[CategoryCount(category=k, count=n) for k, n in by_category],
            issuesByPriority=[PriorityCount(priority=k, count=n) for k, n in by_priority],
        )

    async def user_dashboard(self, identity: Identity) -> UserStats:
        breakdown = await self.status_breakdown(identity.id)
        voting = await self.voting_stats(identity.id)
        return UserStats(
            **breakdown.model_dump(),
            totalVotes=voting.totalVotes,
            uniqueIssuesVoted=voting.uniqueIssues,
        )
