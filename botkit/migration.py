"""
Migration Module

Moves vectors between the local store and Pinecone, and re-embeds chunks when
the embedding model changes.

Runs:
    to_pinecone: local chunks (by chunk id) → Pinecone upserts
    to_local:    Pinecone list/fetch pages → local upserts
    reembed:     local chunks → new embeddings → live vector database

Design Rationale:
- Progress is persisted after every batch under `migration_progress`
  {migration_id, direction, scope, status, processed, total, cursor,
  migrated_count, error_count, errors, started_at, updated_at}
- Status: not_started → in_progress → completed | failed
- A failed or interrupted run with the same direction and scope resumes from
  the stored cursor; destination writes are idempotent upserts, so replayed
  items never duplicate
- Item failures are collected as MigrationError entries; a batch-level
  failure (source unreachable) stops the run as failed and keeps the cursor
- Only one run at a time: `migration_lock` in the state repository, one-hour TTL
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func

from config.settings import get_settings, MigrationConfig
from botkit.database import Chunk, Document, Embedding, utcnow
from botkit.events import MIGRATION_COMPLETED, ERROR_OCCURRED, EventBus
from botkit.exceptions import MigrationError

# Configure logging
logger = logging.getLogger(__name__)

PROGRESS_KEY = "migration_progress"
LOCK_KEY = "migration_lock"
LAST_RUN_KEY = "migration_last_completed"

DIRECTIONS = ("to_pinecone", "to_local")
SCOPES = ("all", "by_type", "by_date", "selected")

NOT_STARTED = "not_started"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"


def _parse_date(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime.fromisoformat(str(value)).replace(tzinfo=None)


class MigrationManager:
    """
    Resumable migrations between vector backends.

    Example:
        manager = MigrationManager(database, local_db, pinecone_db, state)
        result = manager.start_migration({"direction": "to_pinecone", "scope": "all"})
        manager.get_migration_status()
    """

    def __init__(
        self,
        database,
        local_db,
        remote_db,
        state,
        embeddings=None,
        vector_db=None,
        config: Optional[MigrationConfig] = None,
        bus: Optional[EventBus] = None,
        cache=None,
    ):
        """
        Initialize the manager.

        Args:
            database: Database holding documents and chunks
            local_db: LocalVectorDatabase
            remote_db: PineconeVectorDatabase, or None when Pinecone is unused
            state: StateRepository for progress and the run lock
            embeddings: EmbeddingsGenerator (needed by reembed_chunks)
            vector_db: Live vector database for re-embedding (default: local_db)
            config: Optional MigrationConfig instance
            bus: Optional EventBus
            cache: Optional UnifiedCacheManager, its migration group is cleared after runs
        """
        self.database = database
        self.local_db = local_db
        self.remote_db = remote_db
        self.state = state
        self.embeddings = embeddings
        self.vector_db = vector_db or local_db
        self.config = config or get_settings().migration
        self.bus = bus or EventBus()
        self.cache = cache

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def remote_configured(self) -> bool:
        return self.remote_db is not None and self.remote_db.is_configured()

    def get_progress(self) -> Dict[str, Any]:
        return self.state.get(PROGRESS_KEY) or {"status": NOT_STARTED}

    def get_migration_status(self) -> Dict[str, Any]:
        """Counts on both sides plus the current or last run."""
        local = self.local_db.get_stats()

        pinecone = {"configured": self.remote_configured(), "vector_count": 0, "status": "not_configured"}
        if pinecone["configured"]:
            try:
                pinecone["vector_count"] = self.remote_db.count()
                pinecone["status"] = "has_data" if pinecone["vector_count"] else "empty"
            except Exception as e:
                logger.error(f"Failed to read Pinecone stats: {e}")
                pinecone["status"] = "unreachable"

        return {
            "local_database": {
                "chunk_count": local["total_chunks"],
                "embedding_count": local["total_embeddings"],
                "status": "has_data" if local["total_chunks"] else "empty",
            },
            "pinecone_database": pinecone,
            "migration_available": pinecone["configured"],
            "migration_in_progress": self.state.has(LOCK_KEY),
            "last_migration": self.state.get(LAST_RUN_KEY),
            "progress": self.get_progress(),
        }

    def get_available_content_types(self) -> Dict[str, Dict[str, Any]]:
        """Document counts per source type, for by_type scoping."""
        with self.database.session() as session:
            rows = (
                session.query(Document.source_type, func.count(Document.id))
                .group_by(Document.source_type)
                .all()
            )
        if not rows:
            return {"post": {"name": "Posts", "count": 0}, "page": {"name": "Pages", "count": 0}}
        return {
            source_type: {"name": source_type.replace("-", " ").replace("_", " ").capitalize(), "count": count}
            for source_type, count in rows
        }

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def validate_options(options: Dict[str, Any]) -> Optional[str]:
        """Return an error message, or None when the options are usable."""
        direction = options.get("direction")
        scope = options.get("scope", "all")
        if direction not in DIRECTIONS:
            return f"Invalid direction: {direction}"
        if scope not in SCOPES:
            return f"Invalid scope: {scope}"
        if scope == "by_type" and not options.get("content_types"):
            return "Scope by_type needs content_types"
        if scope == "by_date":
            date_range = options.get("date_range") or {}
            if not date_range.get("start") or not date_range.get("end"):
                return "Scope by_date needs date_range with start and end"
            try:
                _parse_date(date_range["start"])
                _parse_date(date_range["end"])
            except ValueError:
                return "date_range values must be ISO-8601 dates"
        if scope == "selected" and not options.get("document_ids"):
            return "Scope selected needs document_ids"
        return None

    @staticmethod
    def _selection(options: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "content_types": sorted(options.get("content_types") or []),
            "date_range": dict(options.get("date_range") or {}),
            "document_ids": sorted(int(i) for i in options.get("document_ids") or []),
        }

    def _begin(self, direction: str, scope: str, selection: Dict[str, Any], resume: bool) -> Dict[str, Any]:
        previous = self.state.get(PROGRESS_KEY)
        if (
            resume
            and previous
            and previous.get("status") in (IN_PROGRESS, FAILED)
            and previous.get("direction") == direction
            and previous.get("scope") == scope
            and previous.get("selection") == selection
        ):
            logger.info(
                f"Resuming migration {previous['migration_id']} from cursor {previous.get('cursor')} "
                f"({previous.get('migrated_count', 0)} already migrated)"
            )
            previous["status"] = IN_PROGRESS
            previous["updated_at"] = utcnow().isoformat()
            previous["resumed"] = previous.get("resumed", 0) + 1
            return previous

        now = utcnow().isoformat()
        return {
            "migration_id": uuid.uuid4().hex,
            "direction": direction,
            "scope": scope,
            "selection": selection,
            "status": IN_PROGRESS,
            "processed": 0,
            "total": 0,
            "cursor": None,
            "migrated_count": 0,
            "error_count": 0,
            "errors": [],
            "started_at": now,
            "updated_at": now,
            "resumed": 0,
        }

    def _save(self, progress: Dict[str, Any]) -> None:
        progress["updated_at"] = utcnow().isoformat()
        self.state.set(PROGRESS_KEY, progress)

    def _record_errors(self, progress: Dict[str, Any], errors: List[MigrationError]) -> None:
        progress["error_count"] += len(errors)
        for error in errors:
            logger.warning(f"Migration item {error.item_id} failed: {error}")
            if len(progress["errors"]) < self.config.max_recorded_errors:
                progress["errors"].append(error.to_dict())

    def _result(self, progress: Dict[str, Any], message: str) -> Dict[str, Any]:
        return {
            "success": progress["status"] == COMPLETED and progress["error_count"] == 0,
            "status": progress["status"],
            "message": message,
            "migration_id": progress["migration_id"],
            "migrated_count": progress["migrated_count"],
            "error_count": progress["error_count"],
            "errors": list(progress["errors"]),
            "processed": progress["processed"],
            "total": progress["total"],
        }

    def _run(
        self,
        direction: str,
        scope: str,
        selection: Dict[str, Any],
        resume: bool,
        batch_size: int,
        total: Callable[[], int],
        step: Callable[[Optional[str], int, Dict[str, Any]], Tuple[int, int, List[MigrationError], Optional[str], bool]],
    ) -> Dict[str, Any]:
        """
        Drive a migration under the run lock.

        `step(cursor, batch_size, selection)` migrates one batch and returns
        (processed, migrated, errors, next_cursor, done).
        """
        progress = self._begin(direction, scope, selection, resume)
        if not self.state.add(LOCK_KEY, progress["migration_id"], ttl=self.config.lock_ttl):
            return {
                "success": False,
                "status": IN_PROGRESS,
                "message": "A migration is already in progress",
            }

        try:
            if not progress["total"]:
                progress["total"] = total()
            self._save(progress)
            logger.info(
                f"Migration {progress['migration_id']} started: {direction}, scope={scope}, "
                f"total={progress['total']}, batch_size={batch_size}"
            )

            while True:
                try:
                    processed, migrated, errors, next_cursor, done = step(progress["cursor"], batch_size, selection)
                except Exception as e:
                    progress["status"] = FAILED
                    progress["last_error"] = str(e)
                    self._save(progress)
                    logger.error(f"Migration {progress['migration_id']} failed at cursor {progress['cursor']}: {e}")
                    self.bus.publish(ERROR_OCCURRED, {
                        "component": "migration",
                        "migration_id": progress["migration_id"],
                        "error": str(e),
                    })
                    return self._result(progress, f"Migration failed: {e}")

                progress["processed"] += processed
                progress["migrated_count"] += migrated
                self._record_errors(progress, errors)
                progress["cursor"] = next_cursor
                self._save(progress)
                logger.debug(
                    f"Migration batch done: {migrated}/{processed} migrated, "
                    f"total {progress['migrated_count']}, cursor={next_cursor}"
                )
                if done:
                    break

            progress["status"] = COMPLETED
            self._save(progress)
            self.state.set(LAST_RUN_KEY, progress["updated_at"])
            if self.cache is not None:
                self.cache.invalidate_group("migration")
            self.bus.publish(MIGRATION_COMPLETED, {
                "migration_id": progress["migration_id"],
                "direction": direction,
                "migrated_count": progress["migrated_count"],
                "error_count": progress["error_count"],
            })
            message = (
                f"Migration completed. Migrated: {progress['migrated_count']}, "
                f"Errors: {progress['error_count']}"
            )
            logger.info(message)
            return self._result(progress, message)
        finally:
            self.state.delete(LOCK_KEY)

    # ------------------------------------------------------------------
    # Directions
    # ------------------------------------------------------------------

    def start_migration(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Start or resume a migration.

        Args:
            options: direction (to_pinecone | to_local), scope (all | by_type |
                by_date | selected), content_types, date_range {start, end},
                document_ids, batch_size (default 20), resume (default True)

        Returns:
            {success, status, message, migration_id, migrated_count,
             error_count, errors, processed, total}
        """
        options = dict(options or {})
        options.setdefault("direction", "to_pinecone")
        options.setdefault("scope", "all")

        error = self.validate_options(options)
        if error:
            return {"success": False, "status": NOT_STARTED, "message": f"Invalid migration options: {error}"}
        if not self.remote_configured():
            return {"success": False, "status": NOT_STARTED, "message": "Pinecone is not configured"}

        direction = options["direction"]
        batch_size = max(1, int(options.get("batch_size") or self.config.batch_size))
        selection = self._selection(options)

        if direction == "to_pinecone":
            return self._run(
                direction, options["scope"], selection, bool(options.get("resume", True)), batch_size,
                total=lambda: self._count_local_chunks(options["scope"], selection),
                step=lambda cursor, size, sel: self._step_to_pinecone(options["scope"], cursor, size, sel),
            )
        return self._run(
            direction, options["scope"], selection, bool(options.get("resume", True)), batch_size,
            total=self.remote_db.count,
            step=lambda cursor, size, sel: self._step_to_local(options["scope"], cursor, size, sel),
        )

    def _chunk_query(self, session, scope: str, selection: Dict[str, Any]):
        query = session.query(Chunk).join(Document, Chunk.document_id == Document.id)
        if scope == "by_type":
            query = query.filter(Document.source_type.in_(selection["content_types"]))
        elif scope == "by_date":
            query = query.filter(
                Document.created_at >= _parse_date(selection["date_range"]["start"]),
                Document.created_at <= _parse_date(selection["date_range"]["end"]),
            )
        elif scope == "selected":
            query = query.filter(Document.id.in_(selection["document_ids"]))
        return query

    def _count_local_chunks(self, scope: str, selection: Dict[str, Any]) -> int:
        with self.database.session() as session:
            return self._chunk_query(session, scope, selection).count()

    def _next_chunk_ids(self, scope: str, cursor: Optional[str], size: int, selection: Dict[str, Any]) -> List[int]:
        with self.database.session() as session:
            query = self._chunk_query(session, scope, selection).with_entities(Chunk.id)
            if cursor:
                query = query.filter(Chunk.id > int(cursor))
            return [row[0] for row in query.order_by(Chunk.id).limit(size).all()]

    def _step_to_pinecone(self, scope: str, cursor: Optional[str], size: int, selection: Dict[str, Any]):
        chunk_ids = self._next_chunk_ids(scope, cursor, size, selection)
        if not chunk_ids:
            return 0, 0, [], cursor, True

        vector_ids = [str(i) for i in chunk_ids]
        found = self.local_db.fetch(vector_ids)
        errors = [
            MigrationError("No local embedding for chunk", item_id=vector_id)
            for vector_id in vector_ids
            if vector_id not in found
        ]
        records = [
            {"id": vector_id, "values": item["values"], "metadata": item["metadata"]}
            for vector_id, item in found.items()
        ]
        migrated = self.remote_db.upsert_many(records) if records else 0
        return len(chunk_ids), migrated, errors, vector_ids[-1], len(chunk_ids) < size

    def _selected(self, scope: str, metadata: Dict[str, Any], selection: Dict[str, Any]) -> bool:
        if scope == "by_type":
            return (metadata.get("source_type") or metadata.get("type")) in selection["content_types"]
        if scope == "selected":
            document_id = metadata.get("document_id")
            return document_id not in (None, "") and int(document_id) in selection["document_ids"]
        if scope == "by_date":
            stamp = metadata.get("created_at") or metadata.get("last_modified")
            try:
                when = _parse_date(stamp)
            except ValueError:
                return False
            if when is None:
                return False
            return (
                _parse_date(selection["date_range"]["start"])
                <= when
                <= _parse_date(selection["date_range"]["end"])
            )
        return True

    def _step_to_local(self, scope: str, cursor: Optional[str], size: int, selection: Dict[str, Any]):
        vector_ids, next_cursor = self.remote_db.list_ids(cursor=cursor, limit=size)
        if not vector_ids:
            return 0, 0, [], cursor, True

        fetched = self.remote_db.fetch(vector_ids)
        migrated = 0
        errors: List[MigrationError] = []
        for vector_id in vector_ids:
            item = fetched.get(vector_id)
            if item is None or not item.get("values"):
                errors.append(MigrationError("Vector missing from fetch response", item_id=vector_id))
                continue
            if not self._selected(scope, item["metadata"], selection):
                continue
            try:
                self.local_db.upsert_many([{"id": vector_id, "values": item["values"], "metadata": item["metadata"]}])
                migrated += 1
            except Exception as e:
                errors.append(MigrationError(str(e), item_id=vector_id))

        return len(vector_ids), migrated, errors, next_cursor, next_cursor is None

    # ------------------------------------------------------------------
    # Re-embedding and clearing
    # ------------------------------------------------------------------

    def reembed_chunks(
        self,
        model: Optional[str] = None,
        batch_size: Optional[int] = None,
        resume: bool = True,
        drop_previous: bool = True,
    ) -> Dict[str, Any]:
        """
        Regenerate every chunk embedding with a (new) embedding model.

        Args:
            model: Target embedding model (default: the generator's model)
            batch_size: Chunks per batch
            resume: Continue an interrupted re-embed of the same model
            drop_previous: Remove local vectors of other models once replaced

        Returns:
            Same shape as start_migration
        """
        if self.embeddings is None:
            return {"success": False, "status": NOT_STARTED, "message": "No embeddings generator configured"}

        generator = self.embeddings
        if model and model != generator.model_name:
            generator = type(generator)(
                generator.llm_client,
                config=replace(generator.config, model=model, allow_fallback=False),
                cache=generator.cache,
                bus=generator.bus,
            )
        selection = {"model": generator.model_name}
        size = max(1, int(batch_size or self.config.batch_size))

        def step(cursor, size, selection):
            return self._step_reembed(generator, cursor, size, drop_previous)

        return self._run(
            "reembed", "all", selection, resume, size,
            total=lambda: self._count_local_chunks("all", {}),
            step=step,
        )

    def _step_reembed(self, generator, cursor: Optional[str], size: int, drop_previous: bool):
        with self.database.session() as session:
            query = (
                session.query(Chunk, Document)
                .join(Document, Chunk.document_id == Document.id)
            )
            if cursor:
                query = query.filter(Chunk.id > int(cursor))
            rows = [
                (chunk.id, chunk.document_id, chunk.chunk_index, chunk.content, dict(chunk.meta or {}),
                 document.title, document.source_type, document.source_id)
                for chunk, document in query.order_by(Chunk.id).limit(size).all()
            ]
        if not rows:
            return 0, 0, [], cursor, True

        errors = [MigrationError("Chunk has no content", item_id=str(row[0])) for row in rows if not row[3].strip()]
        usable = [row for row in rows if row[3].strip()]

        migrated = 0
        if usable:
            vectors = generator.generate_with_model([row[3] for row in usable])
            records = []
            for row, (vector, used_model) in zip(usable, vectors):
                chunk_id, document_id, chunk_index, content, meta, title, source_type, source_id = row
                records.append({
                    "id": str(chunk_id),
                    "values": vector,
                    "metadata": {
                        **meta,
                        "document_id": document_id,
                        "chunk_index": chunk_index,
                        "content": content,
                        "title": title,
                        "source_type": source_type,
                        "source_id": source_id,
                        "model": used_model,
                    },
                })
            migrated = self.vector_db.upsert_many(records)

            if drop_previous and self.vector_db is self.local_db:
                # A fallback provider may have served some vectors; keep whichever model each chunk got
                replaced: Dict[str, List[int]] = {}
                for row, (_, used_model) in zip(usable, vectors):
                    replaced.setdefault(used_model, []).append(row[0])
                with self.database.session() as session:
                    for used_model, chunk_ids in replaced.items():
                        session.query(Embedding).filter(
                            Embedding.chunk_id.in_(chunk_ids),
                            Embedding.model != used_model,
                        ).delete(synchronize_session=False)

        return len(rows), migrated, errors, str(rows[-1][0]), len(rows) < size

    def clear_database(self, target: str, confirm: bool = False) -> Dict[str, Any]:
        """
        Remove every vector from one side.

        Args:
            target: local or pinecone
            confirm: Must be True; guards against accidental wipes

        Returns:
            {success, message, cleared}
        """
        if not confirm:
            return {"success": False, "message": "Clearing requires confirm=True", "cleared": 0}
        if self.state.has(LOCK_KEY):
            return {"success": False, "message": "A migration is in progress", "cleared": 0}

        try:
            if target == "local":
                cleared = self.local_db.clear()
                with self.database.session() as session:
                    session.query(Chunk).delete(synchronize_session=False)
                    session.query(Document).delete(synchronize_session=False)
            elif target == "pinecone":
                if not self.remote_configured():
                    return {"success": False, "message": "Pinecone is not configured", "cleared": 0}
                cleared = self.remote_db.clear()
            else:
                return {"success": False, "message": f"Invalid database: {target}", "cleared": 0}
        except Exception as e:
            logger.error(f"Failed to clear {target} database: {e}")
            return {"success": False, "message": f"Failed to clear {target}: {e}", "cleared": 0}

        self.state.delete(PROGRESS_KEY)
        if self.cache is not None:
            self.cache.invalidate_group("content")
        logger.info(f"Cleared {cleared} vectors from {target}")
        return {"success": True, "message": f"Cleared {cleared} vectors from {target}", "cleared": cleared}
