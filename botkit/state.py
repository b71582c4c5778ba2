"""
State Repository Module

Key-value storage with per-entry TTL used for every piece of mutable runtime
state: rate-limit windows, token counters, queue and migration locks,
migration progress and cache entries.

Backends:
- InMemoryStateRepository: process-local, for tests and single-process use
- SQLStateRepository: the state_entries table of the relational store
- MongoStateRepository: a MongoDB collection with a TTL index

Design Rationale:
- Components receive a repository instead of reaching for globals
- Expiry is checked on read, so correctness never depends on a sweeper;
  purge_expired() reclaims the space and runs once per worker cycle
- Every write stamps a fresh version token. compare_and_set() and update()
  build on it, so read-modify-write stays atomic across processes sharing
  one backend
- add() is an atomic insert-if-absent, the primitive behind every lock
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from config.settings import StateConfig, get_settings
from botkit.exceptions import StateConflictError

# Configure logging
logger = logging.getLogger(__name__)

_MISSING = object()

Mutator = Callable[[Any], Tuple[Any, Any]]


def _new_version() -> str:
    return uuid.uuid4().hex


class StateRepository(ABC):
    """
    Abstract key-value store with TTL.

    All implementations must provide get/set/add/delete/increment, versioned
    reads with compare_and_set, prefix scans and prefix deletion.
    """

    UPDATE_ATTEMPTS = 200

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for key, or default if missing or expired."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value; ttl in seconds, None for no expiry."""
        pass

    @abstractmethod
    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store value only if key is absent or expired. Returns True if stored."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove key. Returns True if a live entry was removed."""
        pass

    @abstractmethod
    def increment(self, key: str, amount: float = 1, ttl: Optional[float] = None) -> float:
        """Atomically add amount to a numeric value, creating it with ttl if absent."""
        pass

    @abstractmethod
    def get_versioned(self, key: str) -> Tuple[Any, Optional[str]]:
        """Return (value, version) of the live entry, or (None, None)."""
        pass

    @abstractmethod
    def compare_and_set(self, key: str, value: Any, version: Optional[str], ttl: Optional[float] = None) -> bool:
        """
        Store value only if the entry still carries version.

        A version of None means "absent or expired". Returns True if stored.
        """
        pass

    @abstractmethod
    def scan(self, prefix: str = "") -> List[Tuple[str, bool]]:
        """Return (key, expired) pairs for every stored key under prefix."""
        pass

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every key under prefix. Returns number of keys removed."""
        pass

    def update(self, key: str, mutate: Mutator, ttl: Optional[float] = None) -> Any:
        """
        Optimistic read-modify-write.

        mutate(current) returns (new_value, result) and may run more than once.
        A new_value of None leaves the entry untouched.

        Args:
            key: Entry key
            mutate: Function of the live value (None when absent)
            ttl: Expiry for the written value

        Returns:
            The result of the attempt that was stored

        Raises:
            StateConflictError: Every attempt lost to a concurrent writer
        """
        for _ in range(self.UPDATE_ATTEMPTS):
            current, version = self.get_versioned(key)
            new_value, result = mutate(current)
            if new_value is None or self.compare_and_set(key, new_value, version, ttl):
                return result
        raise StateConflictError(f"Gave up updating {key} after {self.UPDATE_ATTEMPTS} attempts")

    def has(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def keys(self, prefix: str = "") -> List[str]:
        return [key for key, expired in self.scan(prefix) if not expired]

    def purge_expired(self) -> int:
        """Physically remove expired entries."""
        removed = 0
        for key, expired in self.scan(""):
            if expired:
                self.delete(key)
                removed += 1
        if removed:
            logger.debug(f"Purged {removed} expired state entries")
        return removed

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self.now() + ttl


class InMemoryStateRepository(StateRepository):
    """Dictionary-backed repository guarded by a re-entrant lock."""

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        # key -> (value, expires_at, version)
        self._data: Dict[str, Tuple[Any, Optional[float], str]] = {}
        self._lock = threading.RLock()

    def _is_expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= self.now()

    def _live_entry(self, key: str):
        entry = self._data.get(key)
        if entry is None or self._is_expired(entry[1]):
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live_entry(key)
            return default if entry is None else entry[0]

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(ttl), _new_version())

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return self.compare_and_set(key, value, None, ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._data.pop(key, None)
            return entry is not None and not self._is_expired(entry[1])

    def increment(self, key: str, amount: float = 1, ttl: Optional[float] = None) -> float:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._data[key] = (amount, self._expiry(ttl), _new_version())
                return amount
            value = entry[0] + amount
            self._data[key] = (value, entry[1], _new_version())
            return value

    def get_versioned(self, key: str) -> Tuple[Any, Optional[str]]:
        with self._lock:
            entry = self._live_entry(key)
            return (None, None) if entry is None else (entry[0], entry[2])

    def compare_and_set(self, key: str, value: Any, version: Optional[str], ttl: Optional[float] = None) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            current = None if entry is None else entry[2]
            if current != version:
                return False
            self._data[key] = (value, self._expiry(ttl), _new_version())
            return True

    def update(self, key: str, mutate: Mutator, ttl: Optional[float] = None) -> Any:
        # Holding the lock makes the first attempt win
        with self._lock:
            return super().update(key, mutate, ttl)

    def scan(self, prefix: str = "") -> List[Tuple[str, bool]]:
        with self._lock:
            return [
                (key, self._is_expired(expires_at))
                for key, (_, expires_at, _) in self._data.items()
                if key.startswith(prefix)
            ]

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._data if key.startswith(prefix)]
            for key in doomed:
                del self._data[key]
            return len(doomed)


class SQLStateRepository(StateRepository):
    """
    Repository stored in the state_entries table.

    Conditional writes are single UPDATE statements matched on the version
    column (or a primary-key insert for absent keys), so they hold across
    processes. The in-process lock only keeps SQLite writers in one thread.
    """

    def __init__(self, database, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.database = database
        self._lock = threading.RLock()

    def _now_dt(self) -> datetime:
        return datetime.fromtimestamp(self.now(), tz=timezone.utc).replace(tzinfo=None)

    def _expiry_dt(self, ttl: Optional[float]) -> Optional[datetime]:
        expires = self._expiry(ttl)
        if expires is None:
            return None
        return datetime.fromtimestamp(expires, tz=timezone.utc).replace(tzinfo=None)

    def _live(self, entry) -> bool:
        return entry is not None and (entry.expires_at is None or entry.expires_at > self._now_dt())

    def get(self, key: str, default: Any = None) -> Any:
        from botkit.database import StateEntry

        with self.database.session() as session:
            entry = session.get(StateEntry, key)
            if not self._live(entry):
                return default
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        from botkit.database import StateEntry

        with self._lock, self.database.session() as session:
            session.merge(StateEntry(
                key=key,
                value=value,
                expires_at=self._expiry_dt(ttl),
                version=_new_version(),
            ))

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return self.compare_and_set(key, value, None, ttl)

    def delete(self, key: str) -> bool:
        from botkit.database import StateEntry

        with self._lock, self.database.session() as session:
            entry = session.get(StateEntry, key)
            if entry is None:
                return False
            live = self._live(entry)
            session.delete(entry)
            return live

    def increment(self, key: str, amount: float = 1, ttl: Optional[float] = None) -> float:
        for _ in range(self.UPDATE_ATTEMPTS):
            entry = self._read(key)
            if entry is None:
                total, version, expires_at = amount, None, self._expiry_dt(ttl)
            else:
                total = (entry["value"] or 0) + amount
                version, expires_at = entry["version"], entry["expires_at"]
            if self._conditional_write(key, total, version, expires_at):
                return total
        raise StateConflictError(f"Gave up incrementing {key} after {self.UPDATE_ATTEMPTS} attempts")

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        from botkit.database import StateEntry

        with self.database.session() as session:
            entry = session.get(StateEntry, key)
            if not self._live(entry):
                return None
            return {"value": entry.value, "version": entry.version, "expires_at": entry.expires_at}

    def get_versioned(self, key: str) -> Tuple[Any, Optional[str]]:
        entry = self._read(key)
        return (None, None) if entry is None else (entry["value"], entry["version"])

    def compare_and_set(self, key: str, value: Any, version: Optional[str], ttl: Optional[float] = None) -> bool:
        return self._conditional_write(key, value, version, self._expiry_dt(ttl))

    def _conditional_write(
        self,
        key: str,
        value: Any,
        version: Optional[str],
        expires_at: Optional[datetime],
    ) -> bool:
        from sqlalchemy import and_, or_, update
        from sqlalchemy.exc import IntegrityError

        from botkit.database import StateEntry

        now = self._now_dt()
        if version is None:
            # Absent keys are inserted below; only an expired row may be reused
            condition = and_(StateEntry.expires_at.isnot(None), StateEntry.expires_at <= now)
        else:
            condition = and_(
                StateEntry.version == version,
                or_(StateEntry.expires_at.is_(None), StateEntry.expires_at > now),
            )
        values = {"value": value, "expires_at": expires_at, "version": _new_version()}

        with self._lock:
            with self.database.session() as session:
                result = session.execute(
                    update(StateEntry)
                    .where(StateEntry.key == key, condition)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return True
            if version is not None:
                return False
            try:
                with self.database.session() as session:
                    session.add(StateEntry(key=key, **values))
            except IntegrityError:
                return False
            return True

    def scan(self, prefix: str = "") -> List[Tuple[str, bool]]:
        from botkit.database import StateEntry

        with self.database.session() as session:
            rows = session.query(StateEntry).filter(StateEntry.key.startswith(prefix, autoescape=True)).all()
            return [(row.key, not self._live(row)) for row in rows]

    def delete_prefix(self, prefix: str) -> int:
        from botkit.database import StateEntry

        with self._lock, self.database.session() as session:
            return (
                session.query(StateEntry)
                .filter(StateEntry.key.startswith(prefix, autoescape=True))
                .delete(synchronize_session=False)
            )

    def purge_expired(self) -> int:
        from botkit.database import StateEntry

        with self._lock, self.database.session() as session:
            removed = (
                session.query(StateEntry)
                .filter(StateEntry.expires_at.isnot(None), StateEntry.expires_at <= self._now_dt())
                .delete(synchronize_session=False)
            )
        if removed:
            logger.debug(f"Purged {removed} expired state entries")
        return removed


class MongoStateRepository(StateRepository):
    """
    Repository stored in a MongoDB collection.

    Documents look like {_id: key, value: ..., expires_at: datetime|None,
    version: str}. A TTL index lets MongoDB reap expired entries; reads still
    check expiry because the reaper runs only once a minute.
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        database: Optional[str] = None,
        collection: Optional[str] = None,
        config: Optional[StateConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self.config = config or get_settings().state
        self.uri = uri or self.config.mongodb_uri
        self.database_name = database or self.config.mongodb_database
        self.collection_name = collection or self.config.mongodb_collection
        self._client = None
        self._collection = None

        logger.info(
            f"MongoStateRepository initialized: db={self.database_name}, "
            f"collection={self.collection_name}"
        )

    def _connect(self):
        """Establish connection to MongoDB."""
        if self._collection is not None:
            return self._collection

        if not self.uri:
            raise ValueError(
                "MongoDB URI not configured. Set MONGODB_URI environment variable."
            )

        try:
            from pymongo import MongoClient

            self._client = MongoClient(self.uri, serverSelectionTimeoutMS=15000)
            self._collection = self._client[self.database_name][self.collection_name]
            self._collection.create_index("expires_at", expireAfterSeconds=0)
            logger.info("Connected to MongoDB state store")

        except ImportError:
            raise ImportError(
                "pymongo is required for the MongoDB state backend. "
                "Install with: pip install pymongo"
            )
        return self._collection

    def _now_dt(self) -> datetime:
        return datetime.fromtimestamp(self.now(), tz=timezone.utc).replace(tzinfo=None)

    def _expiry_dt(self, ttl: Optional[float]) -> Optional[datetime]:
        expires = self._expiry(ttl)
        if expires is None:
            return None
        return datetime.fromtimestamp(expires, tz=timezone.utc).replace(tzinfo=None)

    def _live_filter(self, key: str) -> Dict[str, Any]:
        return {
            "_id": key,
            "$or": [{"expires_at": None}, {"expires_at": {"$gt": self._now_dt()}}],
        }

    def get(self, key: str, default: Any = None) -> Any:
        doc = self._connect().find_one(self._live_filter(key))
        return default if doc is None else doc.get("value")

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._connect().replace_one(
            {"_id": key},
            {"_id": key, "value": value, "expires_at": self._expiry_dt(ttl), "version": _new_version()},
            upsert=True,
        )

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return self.compare_and_set(key, value, None, ttl)

    def delete(self, key: str) -> bool:
        result = self._connect().delete_one(self._live_filter(key))
        if result.deleted_count:
            return True
        self._connect().delete_one({"_id": key})
        return False

    def increment(self, key: str, amount: float = 1, ttl: Optional[float] = None) -> float:
        from pymongo import ReturnDocument

        collection = self._connect()
        collection.delete_one({"_id": key, "expires_at": {"$lte": self._now_dt()}})
        doc = collection.find_one_and_update(
            {"_id": key},
            {
                "$inc": {"value": amount},
                "$set": {"version": _new_version()},
                "$setOnInsert": {"expires_at": self._expiry_dt(ttl)},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["value"]

    def get_versioned(self, key: str) -> Tuple[Any, Optional[str]]:
        doc = self._connect().find_one(self._live_filter(key))
        return (None, None) if doc is None else (doc.get("value"), doc.get("version"))

    def compare_and_set(self, key: str, value: Any, version: Optional[str], ttl: Optional[float] = None) -> bool:
        from pymongo.errors import DuplicateKeyError

        collection = self._connect()
        fields = {"value": value, "expires_at": self._expiry_dt(ttl), "version": _new_version()}

        if version is None:
            collection.delete_one({"_id": key, "expires_at": {"$lte": self._now_dt()}})
            try:
                collection.insert_one({"_id": key, **fields})
            except DuplicateKeyError:
                return False
            return True

        query = self._live_filter(key)
        query["version"] = version
        result = collection.update_one(query, {"$set": fields})
        return result.modified_count == 1

    def scan(self, prefix: str = "") -> List[Tuple[str, bool]]:
        import re

        now = self._now_dt()
        cursor = self._connect().find({"_id": {"$regex": f"^{re.escape(prefix)}"}})
        return [
            (doc["_id"], doc.get("expires_at") is not None and doc["expires_at"] <= now)
            for doc in cursor
        ]

    def delete_prefix(self, prefix: str) -> int:
        import re

        result = self._connect().delete_many({"_id": {"$regex": f"^{re.escape(prefix)}"}})
        return result.deleted_count

    def purge_expired(self) -> int:
        result = self._connect().delete_many({"expires_at": {"$lte": self._now_dt()}})
        return result.deleted_count


def create_state_repository(database=None, config: Optional[StateConfig] = None) -> StateRepository:
    """
    Build the repository selected by configuration.

    Args:
        database: Database instance (required for the sql backend)
        config: Optional StateConfig

    Returns:
        StateRepository instance
    """
    config = config or get_settings().state

    if config.backend == "memory":
        return InMemoryStateRepository()
    elif config.backend == "sql":
        if database is None:
            raise ValueError("The sql state backend needs a Database instance")
        return SQLStateRepository(database)
    elif config.backend == "mongodb":
        return MongoStateRepository(config=config)
    else:
        raise ValueError(f"Unknown state backend: {config.backend}")
