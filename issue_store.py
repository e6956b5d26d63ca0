"""
Issue store.

Owns the issue documents, including the denormalized ``votes``/``votedBy``
cache. Content edits go through ``update_fields``, which refuses the
system-managed fields and applies the ``resolvedAt`` rule in the same
single-document write as the status change. Vote counter changes go through
``apply_vote``, whose filter includes the ``votedBy`` membership test so the
counter can only move together with the set.

Listing queries are built from a typed ``IssueFilter``: each optional field
has its own predicate builder in ``PREDICATE_BUILDERS`` and the results are
ANDed. Geo filtering uses ``$geoWithin``/``$centerSphere`` rather than
``$near`` so it can be combined with ``$text`` and used by ``count_documents``.
"""

import math
import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, TEXT, ReturnDocument

from database import MemoryDatabase, MongoDatabase, new_id, oid, to_public, utcnow
from errors import NotFoundError, ValidationError, from_pydantic
from schemas import RESOLVED, Comment, Issue, IssueCreate, IssueFilter, IssueUpdate

COLLECTION = "issue"
EARTH_RADIUS_KM = 6378.1
TEXT_WEIGHTS = {"title": 10, "description": 5, "address": 1}
CONTENT_FIELDS = ("title", "description", "category", "priority", "location", "address", "images")
SYSTEM_FIELDS = frozenset(
    {"id", "_id", "votes", "votedBy", "resolvedAt", "comments", "reportedBy", "createdAt", "updatedAt"}
)
GROUPABLE_FIELDS = ("status", "category", "priority")


# ------------------ Validation ------------------

def build_issue(payload: Union[IssueCreate, Dict[str, Any]], reporter_id: str, now: datetime, issue_id: str) -> Issue:
    data = payload.model_dump() if isinstance(payload, IssueCreate) else dict(payload)
    content = {k: data[k] for k in CONTENT_FIELDS if k in data}
    try:
        return Issue(
            **content,
            id=issue_id,
            status="pending",
            reportedBy=reporter_id,
            votes=0,
            votedBy=[],
            comments=[],
            createdAt=now,
            updatedAt=now,
        )
    except PydanticValidationError as exc:
        raise from_pydantic(exc)


def validate_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    forbidden = sorted(SYSTEM_FIELDS.intersection(patch))
    if forbidden:
        raise ValidationError("Validation error", [f"{name}: field is managed by the system" for name in forbidden])
    try:
        update = IssueUpdate.model_validate(patch)
    except PydanticValidationError as exc:
        raise from_pydantic(exc)
    return update.model_dump(exclude_unset=True)


def new_issue_document(issue: Issue) -> Dict[str, Any]:
    doc = issue.model_dump(exclude={"id"}, exclude_none=True)
    doc["_id"] = issue.id
    return doc


# ------------------ Query building ------------------

def _equals(field: str) -> Callable[[IssueFilter], Dict[str, Any]]:
    def build(f: IssueFilter) -> Dict[str, Any]:
        value = getattr(f, field)
        return {field: value} if value is not None else {}

    return build


def _text(f: IssueFilter) -> Dict[str, Any]:
    return {"$text": {"$search": f.search}} if f.search else {}


def _within(f: IssueFilter) -> Dict[str, Any]:
    if f.near is None:
        return {}
    sphere = [[f.near.lng, f.near.lat], f.near.radiusKm / EARTH_RADIUS_KM]
    return {"location": {"$geoWithin": {"$centerSphere": sphere}}}


PREDICATE_BUILDERS: Dict[str, Callable[[IssueFilter], Dict[str, Any]]] = {
    "status": _equals("status"),
    "category": _equals("category"),
    "priority": _equals("priority"),
    "reportedBy": _equals("reportedBy"),
    "assignedTo": _equals("assignedTo"),
    "search": _text,
    "near": _within,
}


def build_issue_query(f: IssueFilter) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for build in PREDICATE_BUILDERS.values():
        query.update(build(f))
    return query


def build_sort(f: IssueFilter) -> List[Tuple[str, Any]]:
    direction = ASCENDING if f.sortOrder == "asc" else DESCENDING
    keys: List[Tuple[str, Any]] = [(f.sortBy, direction)]
    if f.search:
        keys.append(("score", {"$meta": "textScore"}))
    keys.append(("_id", direction))
    return keys


def build_projection(f: IssueFilter) -> Optional[Dict[str, Any]]:
    return {"score": {"$meta": "textScore"}} if f.search else None


def near_query(lng: float, lat: float, max_distance_m: float) -> Dict[str, Any]:
    return {
        "location": {
            "$near": {
                "$geometry": {"type": "Point", "coordinates": [lng, lat]},
                "$maxDistance": max_distance_m,
            }
        }
    }


def update_pipeline(changes: Dict[str, Any], now: datetime) -> List[Dict[str, Any]]:
    """Single-document update applying ``changes`` and the resolvedAt rule.

    Values are wrapped in ``$literal`` because pipeline stages would otherwise
    read strings starting with ``$`` as field paths.
    """
    fields: Dict[str, Any] = {}
    unset: List[str] = []
    for name, value in changes.items():
        if name == "assignedTo" and value is None:
            unset.append("assignedTo")
        else:
            fields[name] = {"$literal": value}
    fields["updatedAt"] = now
    status = changes.get("status")
    if status == RESOLVED:
        fields["resolvedAt"] = {"$ifNull": ["$resolvedAt", now]}
    elif status is not None:
        unset.append("resolvedAt")
    stages: List[Dict[str, Any]] = [{"$set": fields}]
    if unset:
        stages.append({"$unset": unset})
    return stages


def group_count_pipeline(field: str, reporter_id: Optional[str] = None) -> List[Dict[str, Any]]:
    pipeline: List[Dict[str, Any]] = [
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
    ]
    if reporter_id:
        pipeline.insert(0, {"$match": {"reportedBy": reporter_id}})
    return pipeline


def resolution_time_pipeline() -> List[Dict[str, Any]]:
    return [
        {"$match": {"status": RESOLVED, "resolvedAt": {"$ne": None}}},
        {"$project": {"resolutionTime": {"$subtract": ["$resolvedAt", "$createdAt"]}}},
        {"$group": {"_id": None, "avgTime": {"$avg": "$resolutionTime"}}},
    ]


def _check_groupable(field: str) -> None:
    if field not in GROUPABLE_FIELDS:
        raise ValueError(f"Cannot group issues by {field!r}")


# ------------------ Geometry ------------------

def distance_km(lng1: float, lat1: float, lng2: float, lat2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _terms(text: str) -> List[str]:
    return re.findall(r"\w+", text.lower())


def text_score(doc: Dict[str, Any], terms: List[str]) -> float:
    score = 0.0
    for field, weight in TEXT_WEIGHTS.items():
        words = set(_terms(doc.get(field, "")))
        score += weight * sum(1 for term in terms if term in words)
    return score


# ------------------ MongoDB ------------------

class MongoIssueStore:
    def __init__(self, database: MongoDatabase, clock: Callable[[], datetime] = utcnow):
        self.collection = database[COLLECTION]
        self.clock = clock

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("location", GEOSPHERE)])
        await self.collection.create_index([("status", ASCENDING), ("createdAt", DESCENDING)])
        await self.collection.create_index([("category", ASCENDING), ("createdAt", DESCENDING)])
        await self.collection.create_index([("reportedBy", ASCENDING), ("createdAt", DESCENDING)])
        await self.collection.create_index([("votes", DESCENDING)])
        await self.collection.create_index([("createdAt", DESCENDING)])
        await self.collection.create_index(
            [(field, TEXT) for field in TEXT_WEIGHTS],
            weights=TEXT_WEIGHTS,
            name="issue_text",
        )

    @staticmethod
    def _to_issue(doc: Optional[Dict[str, Any]]) -> Optional[Issue]:
        return Issue(**to_public(doc)) if doc else None

    async def create(self, payload: Union[IssueCreate, Dict[str, Any]], reporter_id: str) -> Issue:
        issue = build_issue(payload, reporter_id, self.clock(), new_id())
        doc = new_issue_document(issue)
        doc["_id"] = ObjectId(issue.id)
        await self.collection.insert_one(doc)
        return issue

    async def get(self, issue_id: str, session=None) -> Optional[Issue]:
        doc = await self.collection.find_one({"_id": oid(issue_id, "issue ID")}, session=session)
        return self._to_issue(doc)

    async def exists(self, issue_id: str, session=None) -> bool:
        doc = await self.collection.find_one({"_id": oid(issue_id, "issue ID")}, {"_id": 1}, session=session)
        return doc is not None

    async def find_many(self, issue_ids: Iterable[str]) -> Dict[str, Issue]:
        ids = [ObjectId(i) for i in set(issue_ids) if ObjectId.is_valid(i)]
        if not ids:
            return {}
        issues = [self._to_issue(doc) async for doc in self.collection.find({"_id": {"$in": ids}})]
        return {issue.id: issue for issue in issues}

    async def change_fields(self, issue_id: str, patch: Dict[str, Any]) -> Tuple[Issue, Issue]:
        """Apply ``patch`` and return the issue as the write found it and as it is afterwards."""
        changes = validate_patch(patch)
        if not changes:
            issue = await self.get(issue_id)
            if issue is None:
                raise NotFoundError("Issue", issue_id)
            return issue, issue
        before = await self.collection.find_one_and_update(
            {"_id": oid(issue_id, "issue ID")},
            update_pipeline(changes, self.clock()),
            return_document=ReturnDocument.BEFORE,
        )
        after = await self.get(issue_id) if before else None
        if after is None:
            raise NotFoundError("Issue", issue_id)
        return self._to_issue(before), after

    async def update_fields(self, issue_id: str, patch: Dict[str, Any]) -> Issue:
        _, after = await self.change_fields(issue_id, patch)
        return after

    async def update_status(self, issue_id: str, status: str) -> Issue:
        return await self.update_fields(issue_id, {"status": status})

    async def apply_vote(self, issue_id: str, voter_id: str, added: bool, session=None) -> bool:
        _id = oid(issue_id, "issue ID")
        stamp = {"$set": {"updatedAt": self.clock()}}
        if added:
            query = {"_id": _id, "votedBy": {"$ne": voter_id}}
            update = {"$inc": {"votes": 1}, "$push": {"votedBy": voter_id}, **stamp}
        else:
            query = {"_id": _id, "votedBy": voter_id}
            update = {"$inc": {"votes": -1}, "$pull": {"votedBy": voter_id}, **stamp}
        res = await self.collection.update_one(query, update, session=session)
        return res.modified_count > 0

    async def set_votes(self, issue_id: str, voters: List[str], session=None) -> bool:
        res = await self.collection.update_one(
            {"_id": oid(issue_id, "issue ID")},
            {"$set": {"votes": len(voters), "votedBy": voters, "updatedAt": self.clock()}},
            session=session,
        )
        return res.matched_count > 0

    async def add_comment(self, issue_id: str, comment: Comment) -> Issue:
        doc = await self.collection.find_one_and_update(
            {"_id": oid(issue_id, "issue ID")},
            {"$push": {"comments": comment.model_dump()}, "$set": {"updatedAt": self.clock()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError("Issue", issue_id)
        return self._to_issue(doc)

    async def delete(self, issue_id: str, session=None) -> bool:
        res = await self.collection.delete_one({"_id": oid(issue_id, "issue ID")}, session=session)
        return res.deleted_count > 0

    async def find(self, f: IssueFilter, skip: int = 0, limit: int = 10) -> List[Issue]:
        cursor = (
            self.collection.find(build_issue_query(f), build_projection(f))
            .sort(build_sort(f))
            .skip(skip)
            .limit(limit)
        )
        return [self._to_issue(doc) async for doc in cursor]

    async def count(self, f: IssueFilter) -> int:
        return await self.collection.count_documents(build_issue_query(f))

    async def find_near(self, lng: float, lat: float, max_distance_m: float, limit: int = 50) -> List[Issue]:
        cursor = self.collection.find(near_query(lng, lat, max_distance_m)).limit(limit)
        return [self._to_issue(doc) async for doc in cursor]

    async def count_by(self, field: str, reporter_id: Optional[str] = None) -> List[Tuple[str, int]]:
        _check_groupable(field)
        cursor = await self.collection.aggregate(group_count_pipeline(field, reporter_id))
        return [(row["_id"], row["count"]) async for row in cursor]

    async def average_resolution_ms(self) -> Optional[float]:
        cursor = await self.collection.aggregate(resolution_time_pipeline())
        rows = await cursor.to_list()
        return rows[0]["avgTime"] if rows else None

    async def count_created_since(self, moment: datetime) -> int:
        return await self.collection.count_documents({"createdAt": {"$gte": moment}})


# ------------------ In-memory ------------------

class MemoryIssueStore:
    def __init__(self, database: MemoryDatabase, clock: Callable[[], datetime] = utcnow):
        self.docs = database[COLLECTION]
        self.clock = clock

    async def ensure_indexes(self) -> None:
        return None

    def _doc(self, issue_id: str) -> Optional[Dict[str, Any]]:
        oid(issue_id, "issue ID")
        return self.docs.get(issue_id)

    def _require(self, issue_id: str) -> Dict[str, Any]:
        doc = self._doc(issue_id)
        if doc is None:
            raise NotFoundError("Issue", issue_id)
        return doc

    @staticmethod
    def _to_issue(doc: Optional[Dict[str, Any]]) -> Optional[Issue]:
        return Issue(**to_public(doc)) if doc else None

    async def create(self, payload: Union[IssueCreate, Dict[str, Any]], reporter_id: str) -> Issue:
        issue = build_issue(payload, reporter_id, self.clock(), new_id())
        self.docs[issue.id] = new_issue_document(issue)
        return issue

    async def get(self, issue_id: str, session=None) -> Optional[Issue]:
        return self._to_issue(self._doc(issue_id))

    async def exists(self, issue_id: str, session=None) -> bool:
        return self._doc(issue_id) is not None

    async def find_many(self, issue_ids: Iterable[str]) -> Dict[str, Issue]:
        return {i: self._to_issue(self.docs[i]) for i in set(issue_ids) if i in self.docs}

    async def change_fields(self, issue_id: str, patch: Dict[str, Any]) -> Tuple[Issue, Issue]:
        changes = validate_patch(patch)
        doc = self._require(issue_id)
        before = self._to_issue(doc)
        if not changes:
            return before, before
        now = self.clock()
        for name, value in changes.items():
            if name == "assignedTo" and value is None:
                doc.pop("assignedTo", None)
            else:
                doc[name] = value
        status = changes.get("status")
        if status == RESOLVED:
            if doc.get("resolvedAt") is None:
                doc["resolvedAt"] = now
        elif status is not None:
            doc.pop("resolvedAt", None)
        doc["updatedAt"] = now
        return before, self._to_issue(doc)

    async def update_fields(self, issue_id: str, patch: Dict[str, Any]) -> Issue:
        _, after = await self.change_fields(issue_id, patch)
        return after

    async def update_status(self, issue_id: str, status: str) -> Issue:
        return await self.update_fields(issue_id, {"status": status})

    async def apply_vote(self, issue_id: str, voter_id: str, added: bool, session=None) -> bool:
        doc = self._doc(issue_id)
        if doc is None or (voter_id in doc["votedBy"]) == added:
            return False
        if added:
            doc["votedBy"].append(voter_id)
            doc["votes"] += 1
        else:
            doc["votedBy"].remove(voter_id)
            doc["votes"] -= 1
        doc["updatedAt"] = self.clock()
        return True

    async def set_votes(self, issue_id: str, voters: List[str], session=None) -> bool:
        doc = self._doc(issue_id)
        if doc is None:
            return False
        doc["votedBy"] = list(voters)
        doc["votes"] = len(voters)
        doc["updatedAt"] = self.clock()
        return True

    async def add_comment(self, issue_id: str, comment: Comment) -> Issue:
        doc = self._require(issue_id)
        doc["comments"].append(comment.model_dump())
        doc["updatedAt"] = self.clock()
        return self._to_issue(doc)

    async def delete(self, issue_id: str, session=None) -> bool:
        return self.docs.pop(issue_id, None) is not None

    def _matches(self, doc: Dict[str, Any], f: IssueFilter, terms: List[str]) -> bool:
        for field in ("status", "category", "priority", "reportedBy", "assignedTo"):
            value = getattr(f, field)
            if value is not None and doc.get(field) != value:
                return False
        if terms and text_score(doc, terms) == 0:
            return False
        if f.near is not None:
            lng, lat = doc["location"]["coordinates"]
            if distance_km(f.near.lng, f.near.lat, lng, lat) > f.near.radiusKm:
                return False
        return True

    def _select(self, f: IssueFilter) -> List[Dict[str, Any]]:
        terms = _terms(f.search) if f.search else []
        hits = [doc for doc in self.docs.values() if self._matches(doc, f, terms)]
        descending = f.sortOrder == "desc"
        hits.sort(key=lambda d: d["_id"], reverse=descending)
        if terms:
            hits.sort(key=lambda d: text_score(d, terms), reverse=True)
        hits.sort(key=lambda d: d[f.sortBy], reverse=descending)
        return hits

    async def find(self, f: IssueFilter, skip: int = 0, limit: int = 10) -> List[Issue]:
        return [self._to_issue(doc) for doc in self._select(f)[skip : skip + limit]]

    async def count(self, f: IssueFilter) -> int:
        return len(self._select(f))

    async def find_near(self, lng: float, lat: float, max_distance_m: float, limit: int = 50) -> List[Issue]:
        ranked = []
        for doc in self.docs.values():
            doc_lng, doc_lat = doc["location"]["coordinates"]
            meters = distance_km(lng, lat, doc_lng, doc_lat) * 1000
            if meters <= max_distance_m:
                ranked.append((meters, doc["_id"], doc))
        ranked.sort(key=lambda item: (item[0], item[1]))
        return [self._to_issue(doc) for _, _, doc in ranked[:limit]]

    async def count_by(self, field: str, reporter_id: Optional[str] = None) -> List[Tuple[str, int]]:
        _check_groupable(field)
        counts: Dict[str, int] = {}
        for doc in self.docs.values():
            if reporter_id and doc["reportedBy"] != reporter_id:
                continue
            counts[doc[field]] = counts.get(doc[field], 0) + 1
        return sorted(counts.items(), key=lambda item: (-item[1], item[0]))

    async def average_resolution_ms(self) -> Optional[float]:
        spans = [
            (doc["resolvedAt"] - doc["createdAt"]).total_seconds() * 1000
            for doc in self.docs.values()
            if doc["status"] == RESOLVED and doc.get("resolvedAt") is not None
        ]
        return sum(spans) / len(spans) if spans else None

    async def count_created_since(self, moment: datetime) -> int:
        return sum(1 for doc in self.docs.values() if doc["createdAt"] >= moment)
