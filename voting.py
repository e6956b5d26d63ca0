"""
Vote toggling.

A toggle is check-then-act: look for the caller's ledger row, then either
delete it and decrement the issue counter, or insert one and increment. Both
writes happen inside one unit of work, so no reader sees the counter without
the matching ledger row or the other way round.

Concurrent toggles by the same caller are ordered by the ledger's unique
(voter, issue) index. When the insert loses that race, the unit of work is
aborted and the call becomes a no-op: the caller's vote already stands, so it
is reported as ``added``. A lost race never deletes anything, so a vote cast by
an interleaved request is never stripped.

Transient store failures (write conflicts, aborted transactions, dropped
connections) are retried ``retries`` times before ``TransientError`` reaches
the caller. A commit whose outcome is unknown is never retried here: the
store retries the commit alone, and if it still cannot tell, the caller gets
``CommitUnknownError`` instead of a second toggle that could undo the first.
"""

import structlog

from errors import DuplicateVoteError, NotFoundError, TransientError
from schemas import Issue, VoteResult

log = structlog.get_logger(__name__)


class VoteToggleService:
    def __init__(self, database, ledger, issues, retries: int = 1):
        self.database = database
        self.ledger = ledger
        self.issues = issues
        self.retries = retries

    async def toggle(self, issue_id: str, voter_id: str) -> VoteResult:
        attempt = 0
        while True:
            try:
                return await self._toggle_once(issue_id, voter_id)
            except TransientError:
                if attempt >= self.retries:
                    log.error("vote_toggle_failed", issue_id=issue_id, voter_id=voter_id, attempts=attempt + 1)
                    raise
                attempt += 1
                log.warning("vote_toggle_retry", issue_id=issue_id, voter_id=voter_id, attempt=attempt)

    async def _toggle_once(self, issue_id: str, voter_id: str) -> VoteResult:
        if not await self.issues.exists(issue_id):
            raise NotFoundError("Issue", issue_id)

        try:
            async with self.database.transaction() as session:
                if await self.ledger.exists(voter_id, issue_id, session=session):
                    await self.ledger.delete(voter_id, issue_id, session=session)
                    await self._move_counter(issue_id, voter_id, False, session)
                    action = "removed"
                else:
                    await self.ledger.insert(voter_id, issue_id, session=session)
                    await self._move_counter(issue_id, voter_id, True, session)
                    action = "added"
        except DuplicateVoteError:
            log.info("vote_toggle_race_collapsed", issue_id=issue_id, voter_id=voter_id)
            action = "added"

        issue = await self._require(issue_id)
        result = VoteResult(
            issueId=issue_id,
            action=action,
            votes=issue.votes,
            hasVoted=voter_id in issue.votedBy,
        )
        log.info("vote_toggled", issue_id=issue_id, voter_id=voter_id, action=action, votes=result.votes)
        return result

    async def _move_counter(self, issue_id: str, voter_id: str, added: bool, session) -> None:
        if await self.issues.apply_vote(issue_id, voter_id, added, session=session):
            return
        # nothing matched: either the issue vanished or the cache already agrees
        if not await self.issues.exists(issue_id, session=session):
            raise NotFoundError("Issue", issue_id)
        log.warning("vote_cache_already_consistent", issue_id=issue_id, voter_id=voter_id, added=added)

    async def _require(self, issue_id: str) -> Issue:
        issue = await self.issues.get(issue_id)
        if issue is None:
            raise NotFoundError("Issue", issue_id)
        return issue

    async def status(self, issue_id: str, voter_id: str) -> dict:
        issue = await self._require(issue_id)
        has_voted = await self.ledger.exists(voter_id, issue_id)
        return {"issueId": issue_id, "hasVoted": has_voted, "votes": issue.votes}

    async def reconcile(self, issue_id: str) -> dict:
        """Rewrite the issue's vote cache from the ledger."""
        async with self.database.transaction() as session:
            if not await self.issues.exists(issue_id, session=session):
                raise NotFoundError("Issue", issue_id)
            voters = await self.ledger.voters_for_issue(issue_id, session=session)
            before = await self.issues.get(issue_id, session=session)
            await self.issues.set_votes(issue_id, voters, session=session)
        changed = before.votes != len(voters) or sorted(before.votedBy) != sorted(voters)
        if changed:
            log.warning("vote_cache_reconciled", issue_id=issue_id, cached=before.votes, ledger=len(voters))
        return {"issueId": issue_id, "votes": len(voters), "changed": changed}
