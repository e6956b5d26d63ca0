"""Builds the service graph for one storage backend."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

import config
from aggregation import StatsService
from auth import AuthService
from database import MemoryDatabase, MongoDatabase, utcnow
from errors import ConflictError
from issue_store import MemoryIssueStore, MongoIssueStore
from ledger import MemoryVoteLedger, MongoVoteLedger
from lifecycle import IssueService
from notifications import build_notifier
from queries import IssueQueryService
from ratelimit import OtpRateLimiter
from schemas import User
from users import MemoryUserStore, MongoUserStore
from voting import VoteToggleService

log = structlog.get_logger(__name__)

STORES = {
    "mongo": (MongoIssueStore, MongoVoteLedger, MongoUserStore),
    "memory": (MemoryIssueStore, MemoryVoteLedger, MemoryUserStore),
}


@dataclass
class Services:
    database: Any
    issues: Any
    ledger: Any
    users: Any
    limiter: OtpRateLimiter
    notifier: Any
    issue_service: IssueService
    votes: VoteToggleService
    queries: IssueQueryService
    stats: StatsService
    auth: AuthService

    async def ensure_indexes(self) -> None:
        await self.issues.ensure_indexes()
        await self.ledger.ensure_indexes()
        await self.users.ensure_indexes()

    async def ensure_admin(self, email: Optional[str], name: str) -> Optional[User]:
        """Create the bootstrap administrator unless an account already uses the email."""
        if not email:
            return None
        existing = await self.users.find_by_email(email)
        if existing is None:
            try:
                admin = await self.users.create_admin(email, name)
            except ConflictError:
                # another worker created it first
                return await self.users.find_by_email(email)
            log.info("bootstrap_admin_created", user_id=admin.id, email=admin.email)
            return admin
        if existing.role != "admin":
            log.warning("bootstrap_admin_conflict", email=existing.email, role=existing.role)
        return existing


def build_database(backend: str = config.STORE_BACKEND):
    if backend == "mongo":
        if not config.DATABASE_URL:
            raise RuntimeError("DATABASE_URL must be set for the mongo backend")
        return MongoDatabase(config.DATABASE_URL, config.DATABASE_NAME)
    if backend == "memory":
        return MemoryDatabase()
    raise RuntimeError(f"Unknown STORE_BACKEND {backend!r}")


def build_services(
    database=None,
    clock: Callable[[], datetime] = utcnow,
    notifier=None,
    limiter: Optional[OtpRateLimiter] = None,
) -> Services:
    database = database if database is not None else build_database()
    notifier = notifier if notifier is not None else build_notifier()
    limiter = limiter or OtpRateLimiter(config.OTP_RATE_LIMIT_WINDOW_SECONDS, config.OTP_RATE_LIMIT_MAX_REQUESTS)

    issue_cls, ledger_cls, user_cls = STORES[database.backend]
    issues = issue_cls(database, clock)
    ledger = ledger_cls(database, clock)
    users = user_cls(database, clock)

    return Services(
        database=database,
        issues=issues,
        ledger=ledger,
        users=users,
        limiter=limiter,
        notifier=notifier,
        issue_service=IssueService(database, issues, ledger, users, notifier, clock),
        votes=VoteToggleService(database, ledger, issues),
        queries=IssueQueryService(issues, ledger, users),
        stats=StatsService(issues, ledger, users, clock),
        auth=AuthService(users, notifier, limiter, clock),
    )
