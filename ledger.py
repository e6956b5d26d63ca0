"""
Vote ledger: one row per (voter, issue), the source of truth for vote
existence. The issue documents only cache what is recorded here.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from database import MemoryDatabase, MongoDatabase, new_id, to_public, utcnow
from errors import DuplicateVoteError
from schemas import Vote, VotingStats

COLLECTION = "vote"


def voting_stats_pipeline(voter_id: Optional[str] = None) -> List[Dict]:
    pipeline: List[Dict] = [
        {
            "$group": {
                "_id": None,
                "totalVotes": {"$sum": 1},
                "uniqueVoters": {"$addToSet": "$userId"},
                "uniqueIssues": {"$addToSet": "$issueId"},
            }
        },
        {
            "$project": {
                "_id": 0,
                "totalVotes": 1,
                "uniqueVoters": {"$size": "$uniqueVoters"},
                "uniqueIssues": {"$size": "$uniqueIssues"},
            }
        },
    ]
    if voter_id:
        pipeline.insert(0, {"$match": {"userId": voter_id}})
    return pipeline


class MongoVoteLedger:
    def __init__(self, database: MongoDatabase, clock: Callable[[], datetime] = utcnow):
        self.collection = database[COLLECTION]
        self.clock = clock

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("userId", ASCENDING), ("issueId", ASCENDING)], unique=True)
        await self.collection.create_index([("issueId", ASCENDING), ("createdAt", DESCENDING)])
        await self.collection.create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])

    async def exists(self, voter_id: str, issue_id: str, session=None) -> bool:
        found = await self.collection.find_one({"userId": voter_id, "issueId": issue_id}, {"_id": 1}, session=session)
        return found is not None

    async def insert(self, voter_id: str, issue_id: str, session=None) -> Vote:
        doc = {"userId": voter_id, "issueId": issue_id, "createdAt": self.clock()}
        try:
            await self.collection.insert_one(doc, session=session)
        except DuplicateKeyError as exc:
            raise DuplicateVoteError(voter_id, issue_id) from exc
        return Vote(**to_public(doc))

    async def delete(self, voter_id: str, issue_id: str, session=None) -> bool:
        res = await self.collection.delete_one({"userId": voter_id, "issueId": issue_id}, session=session)
        return res.deleted_count > 0

    async def delete_for_issue(self, issue_id: str, session=None) -> int:
        res = await self.collection.delete_many({"issueId": issue_id}, session=session)
        return res.deleted_count

    async def count_by_issue(self, issue_id: str, session=None) -> int:
        return await self.collection.count_documents({"issueId": issue_id}, session=session)

    async def voters_for_issue(self, issue_id: str, session=None) -> List[str]:
        cursor = self.collection.find({"issueId": issue_id}, {"userId": 1}, session=session).sort("createdAt", ASCENDING)
        return [doc["userId"] async for doc in cursor]

    async def stats(self, voter_id: Optional[str] = None) -> VotingStats:
        cursor = await self.collection.aggregate(voting_stats_pipeline(voter_id))
        rows = await cursor.to_list()
        return VotingStats(**rows[0]) if rows else VotingStats()

    async def count_created_since(self, moment: datetime) -> int:
        return await self.collection.count_documents({"createdAt": {"$gte": moment}})

    async def list_by_voter(self, voter_id: str, skip: int = 0, limit: int = 10) -> List[Vote]:
        cursor = self.collection.find({"userId": voter_id}).sort("createdAt", DESCENDING).skip(skip).limit(limit)
        return [Vote(**to_public(doc)) async for doc in cursor]

    async def count_by_voter(self, voter_id: str) -> int:
        return await self.collection.count_documents({"userId": voter_id})


class MemoryVoteLedger:
    def __init__(self, database: MemoryDatabase, clock: Callable[[], datetime] = utcnow):
        self.rows = database[COLLECTION]
        self.clock = clock

    async def ensure_indexes(self) -> None:
        return None

    def _find(self, voter_id: str, issue_id: str) -> Optional[Dict]:
        for row in self.rows.values():
            if row["userId"] == voter_id and row["issueId"] == issue_id:
                return row
        return None

    async def exists(self, voter_id: str, issue_id: str, session=None) -> bool:
        return self._find(voter_id, issue_id) is not None

    async def insert(self, voter_id: str, issue_id: str, session=None) -> Vote:
        if self._find(voter_id, issue_id) is not None:
            raise DuplicateVoteError(voter_id, issue_id)
        row = {"_id": new_id(), "userId": voter_id, "issueId": issue_id, "createdAt": self.clock()}
        self.rows[row["_id"]] = row
        return Vote(**to_public(row))

    async def delete(self, voter_id: str, issue_id: str, session=None) -> bool:
        row = self._find(voter_id, issue_id)
        if row is None:
            return False
        del self.rows[row["_id"]]
        return True

    async def delete_for_issue(self, issue_id: str, session=None) -> int:
        doomed = [key for key, row in self.rows.items() if row["issueId"] == issue_id]
        for key in doomed:
            del self.rows[key]
        return len(doomed)

    async def count_by_issue(self, issue_id: str, session=None) -> int:
        return sum(1 for row in self.rows.values() if row["issueId"] == issue_id)

    async def voters_for_issue(self, issue_id: str, session=None) -> List[str]:
        rows = sorted((r for r in self.rows.values() if r["issueId"] == issue_id), key=lambda r: r["createdAt"])
        return [row["userId"] for row in rows]

    async def stats(self, voter_id: Optional[str] = None) -> VotingStats:
        rows = [r for r in self.rows.values() if voter_id is None or r["userId"] == voter_id]
        return VotingStats(
            totalVotes=len(rows),
            uniqueVoters=len({r["userId"] for r in rows}),
            uniqueIssues=len({r["issueId"] for r in rows}),
        )

    async def count_created_since(self, moment: datetime) -> int:
        return sum(1 for row in self.rows.values() if row["createdAt"] >= moment)

    async def list_by_voter(self, voter_id: str, skip: int = 0, limit: int = 10) -> List[Vote]:
        rows = sorted(
            (r for r in self.rows.values() if r["userId"] == voter_id),
            key=lambda r: (r["createdAt"], r["_id"]),
            reverse=True,
        )
        return [Vote(**to_public(row)) for row in rows[skip : skip + limit]]

    async def count_by_voter(self, voter_id: str) -> int:
        return sum(1 for row in self.rows.values() if row["userId"] == voter_id)
