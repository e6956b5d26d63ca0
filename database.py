"""
Storage backends.

``MongoDatabase`` wraps pymongo's asyncio client. Its ``transaction()`` yields
a client session that every store call inside the unit of work must receive;
the transaction commits when the block exits cleanly and aborts otherwise.

``MemoryDatabase`` keeps the same collections as plain dicts. Its
``transaction()`` serializes units of work on one ``asyncio.Lock`` and restores
a snapshot of the collections if the block raises, which gives the memory
backend the same all-or-nothing behaviour for tests and local development.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import structlog
from bson import ObjectId
from pymongo import AsyncMongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

from errors import CommitUnknownError, TransientError, ValidationError

log = structlog.get_logger(__name__)

TRANSIENT_LABELS = ("TransientTransactionError",)
UNKNOWN_COMMIT_LABEL = "UnknownTransactionCommitResult"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


def oid(id_str: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationError(f"Invalid {label}")


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Rename ``_id`` to a string ``id`` the way the API exposes documents."""
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


def is_transient(exc: PyMongoError) -> bool:
    if isinstance(exc, ConnectionFailure):
        return True
    return any(exc.has_error_label(label) for label in TRANSIENT_LABELS)


class MongoDatabase:
    backend = "mongo"

    def __init__(self, url: str, name: str, client: Optional[AsyncMongoClient] = None, commit_retries: int = 3):
        self.client = client or AsyncMongoClient(url, tz_aware=True)
        self.db = self.client[name]
        self.name = name
        self.commit_retries = commit_retries

    def __getitem__(self, collection: str):
        return self.db[collection]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        try:
            async with self.client.start_session() as session:
                await session.start_transaction()
                try:
                    yield session
                except BaseException:
                    if session.in_transaction:
                        await session.abort_transaction()
                    raise
                await self._commit(session)
        except PyMongoError as exc:
            if is_transient(exc):
                log.warning("transaction_aborted", error=str(exc))
                raise TransientError() from exc
            raise

    async def _commit(self, session) -> None:
        # only the commit is repeated; the work inside the block already ran
        attempt = 0
        while True:
            try:
                await session.commit_transaction()
                return
            except PyMongoError as exc:
                if not (isinstance(exc, ConnectionFailure) or exc.has_error_label(UNKNOWN_COMMIT_LABEL)):
                    raise
                if attempt >= self.commit_retries:
                    log.error("transaction_commit_unknown", attempts=attempt + 1, error=str(exc))
                    raise CommitUnknownError() from exc
                attempt += 1
                log.warning("transaction_commit_retry", attempt=attempt, error=str(exc))

    async def ping(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    async def collection_names(self):
        return await self.db.list_collection_names()

    async def close(self) -> None:
        await self.client.close()


class MemoryDatabase:
    backend = "memory"

    def __init__(self):
        self.name = "memory"
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {"issue": {}, "vote": {}, "user": {}}
        self._lock = asyncio.Lock()

    def __getitem__(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(collection, {})

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            snapshot = copy.deepcopy(self.collections)
            try:
                yield None
            except BaseException:
                for name, docs in snapshot.items():
                    live = self.collections.setdefault(name, {})
                    live.clear()
                    live.update(docs)
                raise

    async def ping(self) -> bool:
        return True

    async def collection_names(self):
        return [name for name, docs in self.collections.items() if docs]

    async def close(self) -> None:
        return None

