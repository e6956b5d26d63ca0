"""Issue create/update/delete/comment with ownership checks and status notifications."""

from datetime import datetime
from typing import Any, Callable, Dict, Union

import structlog

from database import new_id, utcnow
from errors import NotFoundError, PermissionDeniedError, ValidationError
from schemas import Comment, Identity, Issue, IssueCreate, StatusChangeEvent

log = structlog.get_logger(__name__)

ADMIN_FIELDS = ("status", "assignedTo")


class IssueService:
    def __init__(self, database, issues, ledger, users, notifier, clock: Callable[[], datetime] = utcnow):
        self.database = database
        self.issues = issues
        self.ledger = ledger
        self.users = users
        self.notifier = notifier
        self.clock = clock

    async def create(self, payload: Union[IssueCreate, Dict[str, Any]], identity: Identity) -> Issue:
        issue = await self.issues.create(payload, identity.id)
        log.info("issue_created", issue_id=issue.id, reporter=identity.id, category=issue.category)
        return issue

    async def get(self, issue_id: str) -> Issue:
        issue = await self.issues.get(issue_id)
        if issue is None:
            raise NotFoundError("Issue", issue_id)
        return issue

    @staticmethod
    def _check_owner(issue: Issue, identity: Identity, action: str) -> None:
        if issue.reportedBy != identity.id and not identity.is_admin:
            raise PermissionDeniedError(f"Not authorized to {action} this issue")

    async def update(self, issue_id: str, patch: Dict[str, Any], identity: Identity) -> Issue:
        current = await self.get(issue_id)
        self._check_owner(current, identity, "update")
        if not identity.is_admin and any(name in patch for name in ADMIN_FIELDS):
            raise PermissionDeniedError("Only admins can change issue status or assignment")
        if patch.get("assignedTo") is not None:
            await self._check_assignee(patch["assignedTo"])

        before, updated = await self.issues.change_fields(issue_id, patch)
        log.info("issue_updated", issue_id=issue_id, by=identity.id, fields=sorted(patch))
        new_status = patch.get("status")
        if new_status is not None and new_status != before.status:
            await self._notify_status_change(updated, before.status, new_status)
        return updated

    async def _check_assignee(self, user_id: Any) -> None:
        user = await self.users.get(user_id) if isinstance(user_id, str) else None
        if user is None or user.role != "admin" or not user.isVerified:
            raise ValidationError("Validation error", ["assignedTo: must be an administrator"])

    async def update_status(self, issue_id: str, status: str, identity: Identity) -> Issue:
        return await self.update(issue_id, {"status": status}, identity)

    async def _notify_status_change(self, issue: Issue, old_status: str, new_status: str) -> None:
        try:
            reporter = await self.users.get(issue.reportedBy)
            if reporter is None:
                log.warning("status_notification_skipped", issue_id=issue.id, reason="reporter not found")
                return
            event = StatusChangeEvent(
                recipientEmail=reporter.email,
                recipientName=reporter.name,
                issueTitle=issue.title,
                oldStatus=old_status,
                newStatus=new_status,
                issueId=issue.id,
            )
            await self.notifier.send_status_change(event)
        except Exception as exc:
            # the status change is already committed
            log.error("status_notification_failed", issue_id=issue.id, error=str(exc))

    async def delete(self, issue_id: str, identity: Identity) -> None:
        issue = await self.get(issue_id)
        self._check_owner(issue, identity, "delete")
        async with self.database.transaction() as session:
            removed = await self.ledger.delete_for_issue(issue_id, session=session)
            if not await self.issues.delete(issue_id, session=session):
                raise NotFoundError("Issue", issue_id)
        log.info("issue_deleted", issue_id=issue_id, by=identity.id, votes_removed=removed)

    async def add_comment(self, issue_id: str, text: str, identity: Identity) -> Issue:
        comment = Comment(
            id=new_id(),
            text=text,
            author=identity.id,
            authorName=identity.name or identity.email or "Anonymous",
            createdAt=self.clock(),
        )
        issue = await self.issues.add_comment(issue_id, comment)
        log.info("comment_added", issue_id=issue_id, author=identity.id)
        return issue
