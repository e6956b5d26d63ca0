"""User accounts: role, verification flag and the pending OTP hash."""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import MemoryDatabase, MongoDatabase, new_id, oid, to_public, utcnow
from errors import ConflictError
from schemas import User

COLLECTION = "user"
PRIVATE_FIELDS = ("otpHash", "otpExpires")


def _to_user(doc: Optional[Dict[str, Any]]) -> Optional[User]:
    if not doc:
        return None
    public = to_public(doc)
    for name in PRIVATE_FIELDS:
        public.pop(name, None)
    return User(**public)


def _count_filter(role: Optional[str], since: Optional[datetime]) -> Dict[str, Any]:
    query: Dict[str, Any] = {"isVerified": True}
    if role:
        query["role"] = role
    if since:
        query["createdAt"] = {"$gte": since}
    return query


class MongoUserStore:
    def __init__(self, database: MongoDatabase, clock: Callable[[], datetime] = utcnow):
        self.collection = database[COLLECTION]
        self.clock = clock

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("email", ASCENDING)], unique=True)

    async def get(self, user_id: str) -> Optional[User]:
        if not ObjectId.is_valid(user_id):
            return None
        return _to_user(await self.collection.find_one({"_id": ObjectId(user_id)}))

    async def find_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        ids = [ObjectId(i) for i in set(user_ids) if ObjectId.is_valid(i)]
        if not ids:
            return {}
        users = [_to_user(doc) async for doc in self.collection.find({"_id": {"$in": ids}})]
        return {user.id: user for user in users}

    async def find_by_email(self, email: str) -> Optional[User]:
        return _to_user(await self.collection.find_one({"email": email.lower()}))

    async def create(self, email: str, name: str, role: str = "user", verified: bool = False) -> User:
        now = self.clock()
        user = User(id=new_id(), email=email.lower(), name=name, role=role, isVerified=verified, createdAt=now, updatedAt=now)
        doc = user.model_dump(exclude={"id"})
        doc["_id"] = ObjectId(user.id)
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConflictError("User with this email already exists") from exc
        return user

    async def create_admin(self, email: str, name: str) -> User:
        if await self.find_by_email(email) is not None:
            raise ConflictError("User with this email already exists")
        return await self.create(email, name, role="admin", verified=True)

    async def set_otp(self, user_id: str, otp_hash: str, expires_at: datetime) -> None:
        await self.collection.update_one(
            {"_id": oid(user_id)},
            {"$set": {"otpHash": otp_hash, "otpExpires": expires_at, "updatedAt": self.clock()}},
        )

    async def get_otp(self, user_id: str) -> Optional[Tuple[str, datetime]]:
        doc = await self.collection.find_one({"_id": oid(user_id)}, {"otpHash": 1, "otpExpires": 1})
        if not doc or not doc.get("otpHash"):
            return None
        return doc["otpHash"], doc["otpExpires"]

    async def clear_otp(self, user_id: str) -> None:
        await self.collection.update_one({"_id": oid(user_id)}, {"$unset": {"otpHash": "", "otpExpires": ""}})

    async def mark_verified(self, user_id: str, name: Optional[str] = None) -> User:
        changes: Dict[str, Any] = {"isVerified": True, "updatedAt": self.clock()}
        if name:
            changes["name"] = name
        doc = await self.collection.find_one_and_update(
            {"_id": oid(user_id)},
            {"$set": changes, "$unset": {"otpHash": "", "otpExpires": ""}},
            return_document=ReturnDocument.AFTER,
        )
        return _to_user(doc)

    async def count(self, role: Optional[str] = None, since: Optional[datetime] = None) -> int:
        return await self.collection.count_documents(_count_filter(role, since))


class MemoryUserStore:
    def __init__(self, database: MemoryDatabase, clock: Callable[[], datetime] = utcnow):
        self.docs = database[COLLECTION]
        self.clock = clock

    async def ensure_indexes(self) -> None:
        return None

    async def get(self, user_id: str) -> Optional[User]:
        return _to_user(self.docs.get(user_id))

    async def find_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        return {i: _to_user(self.docs[i]) for i in set(user_ids) if i in self.docs}

    def _by_email(self, email: str) -> Optional[Dict[str, Any]]:
        email = email.lower()
        return next((doc for doc in self.docs.values() if doc["email"] == email), None)

    async def find_by_email(self, email: str) -> Optional[User]:
        return _to_user(self._by_email(email))

    async def create(self, email: str, name: str, role: str = "user", verified: bool = False) -> User:
        if self._by_email(email) is not None:
            raise ConflictError("User with this email already exists")
        now = self.clock()
        user = User(id=new_id(), email=email.lower(), name=name, role=role, isVerified=verified, createdAt=now, updatedAt=now)
        doc = user.model_dump(exclude={"id"})
        doc["_id"] = user.id
        self.docs[user.id] = doc
        return user

    async def create_admin(self, email: str, name: str) -> User:
        if await self.find_by_email(email) is not None:
            raise ConflictError("User with this email already exists")
        return await self.create(email, name, role="admin", verified=True)

    async def set_otp(self, user_id: str, otp_hash: str, expires_at: datetime) -> None:
        doc = self.docs[user_id]
        doc.update(otpHash=otp_hash, otpExpires=expires_at, updatedAt=self.clock())

    async def get_otp(self, user_id: str) -> Optional[Tuple[str, datetime]]:
        doc = self.docs.get(user_id)
        if not doc or not doc.get("otpHash"):
            return None
        return doc["otpHash"], doc["otpExpires"]

    async def clear_otp(self, user_id: str) -> None:
        for field in PRIVATE_FIELDS:
            self.docs[user_id].pop(field, None)

    async def mark_verified(self, user_id: str, name: Optional[str] = None) -> User:
        doc = self.docs[user_id]
        doc.update(isVerified=True, updatedAt=self.clock())
        if name:
            doc["name"] = name
        for field in PRIVATE_FIELDS:
            doc.pop(field, None)
        return _to_user(doc)

    async def count(self, role: Optional[str] = None, since: Optional[datetime] = None) -> int:
        total = 0
        for doc in self.docs.values():
            if not doc.get("isVerified"):
                continue
            if role and doc.get("role") != role:
                continue
            if since and doc["createdAt"] < since:
                continue
            total += 1
        return total
