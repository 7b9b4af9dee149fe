"""
Translation Memory Repository
SQLAlchemy implementation of the TM gateway.

All writes go through one lock; the affected exact-match cache keys are
invalidated after commit and before the call returns.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Tuple
from pathlib import Path

from sqlalchemy import case, create_engine, event, func, or_
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from .cache import TMCache
from .exceptions import TMNotFoundError, TMStoreError, TMValidationError
from .gateway import EntryData, EntryFilter
from .models import Base, TMEntry, TMUsage, generate_uuid, utcnow
from .normalizer import (
    NormalizationOptions, hash_normalized, normalize, significant_terms, strip_invalid_xml,
)
from .schemas import TMStats

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
_UNSET = object()


def _enable_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _merge_quality(old: Optional[float], new: Optional[float]) -> Optional[float]:
    """Max of the two, unrated counts as missing."""
    if old is None:
        return new
    if new is None:
        return old
    return max(old, new)


class TMRepository:
    """
    Repository for Translation Memory database operations.

    Entries returned are detached copies (expire_on_commit=False); mutating
    them has no effect on the store.
    """

    def __init__(
        self,
        db_path: str = "data/tm.db",
        cache: Optional[TMCache] = None,
        normalization: Optional[NormalizationOptions] = None,
        tokens_per_reuse: int = 50,
    ):
        """Initialize repository with database path."""
        self.db_path = db_path
        self.cache = cache
        self.normalization = normalization
        self.tokens_per_reuse = tokens_per_reuse
        self._engine = None
        self._session_factory = None
        self._write_lock = threading.RLock()

    @property
    def engine(self):
        """Get or create SQLAlchemy engine."""
        if self._engine is None:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                f"sqlite:///{self.db_path}",
                echo=False,
                connect_args={"check_same_thread": False}
            )
            event.listen(engine, "connect", _enable_sqlite_pragmas)
            try:
                Base.metadata.create_all(engine)
            except SQLAlchemyError:
                engine.dispose()
                raise
            self._engine = engine
        return self._engine

    @property
    def session_factory(self):
        """Get session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._session_factory

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.session_factory()

    @contextmanager
    def _session(self, operation: str, entry_id: Optional[str] = None) -> Iterator[Session]:
        """Session that turns driver and file failures into TMStoreError."""
        try:
            session = self.get_session()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"TM store unavailable for {operation}: {e}")
            raise TMStoreError(operation, str(e), entry_id=entry_id) from e

        with session:
            try:
                yield session
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"TM store failure in {operation}: {e}")
                raise TMStoreError(operation, str(e), entry_id=entry_id) from e

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None

    # ==================== CACHE PROTOCOL ====================

    def _invalidate(self, keys: Iterable[Tuple[str, str]]) -> None:
        if self.cache is not None:
            self.cache.invalidate_many(keys)

    def hash_source(self, text: str) -> Tuple[str, str]:
        """Return (normalized, hash) with this store's normalization."""
        normalized = normalize(text, self.normalization)
        return normalized, hash_normalized(normalized)

    # ==================== WRITES ====================

    def insert_or_merge(self, data: EntryData) -> TMEntry:
        """
        Insert an entry, or merge into the one with the same
        (source_hash, target_language, domain_context).

        Merge: usage +1, quality = max(old, new), timestamps bumped. The
        target text is replaced only if the incoming quality is at least
        the stored one (or the stored entry is unrated).
        """
        source_text = strip_invalid_xml(data.source_text)
        target_text = strip_invalid_xml(data.target_text)
        domain_context = strip_invalid_xml(data.domain_context) or None

        normalized, source_hash = self.hash_source(source_text)
        if not normalized:
            raise TMValidationError("Source text is empty after normalization")
        if not normalize(target_text):
            raise TMValidationError("Target text is empty after normalization")
        if data.quality_score is not None and not 0.0 <= data.quality_score <= 1.0:
            raise TMValidationError(f"Quality score out of range: {data.quality_score}")
        if data.usage_count < 1:
            raise TMValidationError(f"Usage count must be >= 1: {data.usage_count}")

        with self._write_lock:
            with self._session("insert_or_merge") as session:
                existing = self._query_identity(
                    session, source_hash, data.target_language, domain_context
                )
                now = utcnow()

                if existing is not None:
                    replace_text = existing.quality_score is None or (
                        data.quality_score is not None
                        and data.quality_score >= existing.quality_score
                    )
                    if replace_text:
                        existing.target_text = target_text
                        existing.provider_id = data.provider_id or existing.provider_id
                    existing.quality_score = _merge_quality(existing.quality_score, data.quality_score)
                    existing.usage_count += 1
                    existing.last_used_at = now
                    existing.updated_at = now
                    entry = existing
                    logger.debug(f"Merged duplicate into TM entry {entry.id}")
                else:
                    created = data.created_at or now
                    entry = TMEntry(
                        id=generate_uuid(),
                        source_text=source_text,
                        target_text=target_text,
                        source_hash=source_hash,
                        source_normalized=normalized,
                        source_language=data.source_language,
                        target_language=data.target_language,
                        domain_context=domain_context,
                        provider_id=data.provider_id,
                        quality_score=data.quality_score,
                        usage_count=data.usage_count,
                        created_at=created,
                        last_used_at=data.last_used_at or created,
                        updated_at=max(created, now),
                    )
                    session.add(entry)

                session.commit()
            self._invalidate([(source_hash, data.target_language)])
        return entry

    def update_entry(
        self,
        entry_id: str,
        target_text=_UNSET,
        quality_score=_UNSET,
        provider_id=_UNSET,
        usage_count=_UNSET,
        last_used_at=_UNSET,
    ) -> TMEntry:
        """Set individual fields; unspecified fields are left alone."""
        if target_text is not _UNSET:
            target_text = strip_invalid_xml(target_text)
        if target_text is not _UNSET and not normalize(target_text):
            raise TMValidationError("Target text is empty after normalization")
        if quality_score is not _UNSET and quality_score is not None and not 0.0 <= quality_score <= 1.0:
            raise TMValidationError(f"Quality score out of range: {quality_score}")
        if usage_count is not _UNSET and usage_count < 1:
            raise TMValidationError(f"Usage count must be >= 1: {usage_count}")

        with self._write_lock:
            with self._session("update_entry", entry_id) as session:
                entry = session.get(TMEntry, entry_id)
                if entry is None:
                    raise TMNotFoundError(entry_id)
                if target_text is not _UNSET:
                    entry.target_text = target_text
                if quality_score is not _UNSET:
                    entry.quality_score = quality_score
                if provider_id is not _UNSET:
                    entry.provider_id = provider_id
                if usage_count is not _UNSET:
                    entry.usage_count = usage_count
                if last_used_at is not _UNSET:
                    entry.last_used_at = last_used_at
                entry.updated_at = max(utcnow(), entry.created_at)
                session.commit()
            self._invalidate([(entry.source_hash, entry.target_language)])
        return entry

    def update_usage(self, entry_id: str, usage_count: int, last_used_at: datetime) -> TMEntry:
        return self.update_entry(entry_id, usage_count=usage_count, last_used_at=last_used_at)

    def update_quality(self, entry_id: str, quality_score: Optional[float]) -> TMEntry:
        return self.update_entry(entry_id, quality_score=quality_score)

    def increment_usage(
        self,
        entry_id: str,
        consumer_ref: Optional[str] = None,
        confidence: float = 1.0,
    ) -> Tuple[TMEntry, TMUsage]:
        """
        Record that an entry was applied.

        Single UPDATE ... SET usage_count = usage_count + 1 plus one
        append-only usage row, in one transaction.
        """
        if not 0.0 <= confidence <= 1.0:
            raise TMValidationError(f"Match confidence out of range: {confidence}")

        with self._write_lock:
            with self._session("increment_usage", entry_id) as session:
                now = utcnow()
                updated = session.query(TMEntry).filter(
                    TMEntry.id == entry_id
                ).update({
                    TMEntry.usage_count: TMEntry.usage_count + 1,
                    TMEntry.last_used_at: now,
                }, synchronize_session=False)
                if updated == 0:
                    session.rollback()
                    raise TMNotFoundError(entry_id)

                usage = TMUsage(
                    id=generate_uuid(),
                    entry_id=entry_id,
                    consumer_ref=consumer_ref,
                    match_confidence=confidence,
                    applied_at=now,
                )
                session.add(usage)
                session.commit()
                entry = session.get(TMEntry, entry_id, populate_existing=True)
            self._invalidate([(entry.source_hash, entry.target_language)])
        return entry, usage

    def delete(self, entry_id: str) -> None:
        with self._write_lock:
            with self._session("delete", entry_id) as session:
                entry = session.get(TMEntry, entry_id)
                if entry is None:
                    raise TMNotFoundError(entry_id)
                key = (entry.source_hash, entry.target_language)
                session.delete(entry)
                session.commit()
            self._invalidate([key])
        logger.info(f"Deleted TM entry {entry_id}")

    def delete_where(self, predicate: EntryFilter) -> int:
        """Delete every entry matching the predicate; returns the count."""
        with self._write_lock:
            with self._session("delete_where") as session:
                rows = self._apply_filter(
                    session.query(TMEntry.id, TMEntry.source_hash, TMEntry.target_language),
                    predicate,
                ).all()
                if not rows:
                    return 0

                ids = [row.id for row in rows]
                for i in range(0, len(ids), 500):
                    chunk = ids[i:i + 500]
                    session.query(TMUsage).filter(TMUsage.entry_id.in_(chunk)).delete(
                        synchronize_session=False
                    )
                    session.query(TMEntry).filter(TMEntry.id.in_(chunk)).delete(
                        synchronize_session=False
                    )
                session.commit()
            self._invalidate({(row.source_hash, row.target_language) for row in rows})
        return len(rows)

    def rebuild_hashes(self, on_progress=None) -> Tuple[int, int, int]:
        """
        Recompute normalized text and hash of every entry.

        Entries whose new identity collides are folded into the best one
        (highest quality, then usage): usage summed, quality maxed.

        Returns:
            (scanned, rehashed, merged)
        """
        with self._write_lock:
            with self._session("rebuild_hashes") as session:
                entries = session.query(TMEntry).order_by(
                    TMEntry.quality_score.is_(None),
                    TMEntry.quality_score.desc(),
                    TMEntry.usage_count.desc(),
                    TMEntry.created_at,
                    TMEntry.id,
                ).all()
                total = len(entries)

                survivors = {}
                changed = []
                merged = 0
                for i, entry in enumerate(entries, 1):
                    normalized, source_hash = self.hash_source(entry.source_text)
                    identity = (source_hash, entry.target_language, entry.domain_context or "")
                    keeper = survivors.get(identity)
                    if keeper is not None:
                        keeper.usage_count += entry.usage_count
                        keeper.quality_score = _merge_quality(keeper.quality_score, entry.quality_score)
                        keeper.last_used_at = max(keeper.last_used_at, entry.last_used_at)
                        session.query(TMUsage).filter(TMUsage.entry_id == entry.id).update(
                            {TMUsage.entry_id: keeper.id}, synchronize_session=False
                        )
                        session.delete(entry)
                        merged += 1
                    else:
                        survivors[identity] = entry
                        if entry.source_hash != source_hash or entry.source_normalized != normalized:
                            changed.append((entry, normalized, source_hash))
                    if on_progress:
                        on_progress(i, total)

                # Park changed rows on unique placeholder hashes so the
                # unique index never sees a transient collision
                session.flush()
                for entry, _, _ in changed:
                    entry.source_hash = f"rehash:{entry.id}"
                session.flush()
                for entry, normalized, source_hash in changed:
                    entry.source_hash = source_hash
                    entry.source_normalized = normalized
                session.commit()

            if self.cache is not None:
                self.cache.clear()

        logger.info(f"Rebuilt TM hashes: {total} scanned, {len(changed)} rehashed, {merged} merged")
        return total, len(changed), merged

    # ==================== READS ====================

    def _query_identity(
        self, session: Session, source_hash: str, target_language: str, context: Optional[str]
    ) -> Optional[TMEntry]:
        return session.query(TMEntry).filter(
            TMEntry.source_hash == source_hash,
            TMEntry.target_language == target_language,
            TMEntry.context_key == (context or ""),
        ).first()

    def find_identity(
        self, source_hash: str, target_language: str, context: Optional[str] = None
    ) -> Optional[TMEntry]:
        """The entry with exactly this identity, no context fallback."""
        with self._session("find_identity") as session:
            return self._query_identity(session, source_hash, target_language, context)

    def find_exact(
        self, source_hash: str, target_language: str, context: Optional[str] = None
    ) -> Optional[TMEntry]:
        """
        Exact lookup by hash and language.

        With a context: that context first, else the null-context entry.
        Without one: the null-context entry first, else the best other.
        """
        with self._session("find_exact") as session:
            if context:
                entry = self._query_identity(session, source_hash, target_language, context)
                if entry is None:
                    entry = self._query_identity(session, source_hash, target_language, None)
                return entry

            return session.query(TMEntry).filter(
                TMEntry.source_hash == source_hash,
                TMEntry.target_language == target_language,
            ).order_by(
                TMEntry.context_key != "",
                TMEntry.quality_score.is_(None),
                TMEntry.quality_score.desc(),
                TMEntry.usage_count.desc(),
                TMEntry.id,
            ).first()

    def scan_candidates(
        self,
        target_language: str,
        context: Optional[str] = None,
        limit: int = 1000,
        query_text: Optional[str] = None,
    ) -> List[TMEntry]:
        """
        Bounded candidate set for fuzzy matching.

        With query_text (normalized), entries sharing more of its significant
        terms come first, then those closest in length; the quality order only
        breaks ties. Without it, best entries come first.

        With a context, only that context and null-context entries qualify.
        """
        relevance = []
        if query_text:
            terms = significant_terms(query_text)
            if terms:
                relevance.append(sum(
                    case((func.instr(TMEntry.source_normalized, term) > 0, 1), else_=0)
                    for term in terms
                ).desc())
            relevance.append(func.abs(func.length(TMEntry.source_normalized) - len(query_text)))

        with self._session("scan_candidates") as session:
            query = session.query(TMEntry).filter(TMEntry.target_language == target_language)
            if context:
                query = query.filter(TMEntry.context_key.in_([context, ""]))
            return query.order_by(
                *relevance,
                TMEntry.quality_score.is_(None),
                TMEntry.quality_score.desc(),
                TMEntry.usage_count.desc(),
                TMEntry.id,
            ).limit(limit).all()

    def get(self, entry_id: str) -> TMEntry:
        with self._session("get", entry_id) as session:
            entry = session.get(TMEntry, entry_id)
            if entry is None:
                raise TMNotFoundError(entry_id)
            return entry

    def _apply_filter(self, query, predicate: Optional[EntryFilter]):
        if predicate is None:
            return query
        if predicate.source_language:
            query = query.filter(TMEntry.source_language == predicate.source_language)
        if predicate.target_language:
            query = query.filter(TMEntry.target_language == predicate.target_language)
        if predicate.domain_context is not None:
            query = query.filter(TMEntry.context_key == predicate.domain_context)
        if predicate.has_quality_bound():
            bounds = []
            if predicate.min_quality is not None:
                bounds.append(TMEntry.quality_score >= predicate.min_quality)
            if predicate.quality_below is not None:
                bounds.append(TMEntry.quality_score < predicate.quality_below)
            if predicate.include_unrated:
                query = query.filter(or_(TMEntry.quality_score.is_(None), *bounds))
            else:
                query = query.filter(*bounds)
        if predicate.last_used_before is not None:
            query = query.filter(TMEntry.last_used_at < predicate.last_used_before)
        if predicate.search:
            pattern = f"%{predicate.search}%"
            query = query.filter(or_(
                TMEntry.source_text.ilike(pattern),
                TMEntry.target_text.ilike(pattern),
            ))
        return query

    def count(self, predicate: Optional[EntryFilter] = None) -> int:
        with self._session("count") as session:
            return self._apply_filter(session.query(func.count(TMEntry.id)), predicate).scalar() or 0

    def list_entries(
        self,
        predicate: Optional[EntryFilter] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[TMEntry], int]:
        """Paginated listing, most recently updated first."""
        if page < 1:
            raise TMValidationError(f"Page must be >= 1: {page}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise TMValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}: {limit}")

        with self._session("list_entries") as session:
            query = self._apply_filter(session.query(TMEntry), predicate)
            total = query.count()
            entries = query.order_by(
                TMEntry.updated_at.desc(), TMEntry.id
            ).offset((page - 1) * limit).limit(limit).all()
            return entries, total

    def iter_entries(self, predicate: Optional[EntryFilter] = None, batch_size: int = 500) -> Iterator[TMEntry]:
        """Stream entries page by page in creation order."""
        offset = 0
        while True:
            with self._session("iter_entries") as session:
                batch = self._apply_filter(session.query(TMEntry), predicate).order_by(
                    TMEntry.created_at, TMEntry.id
                ).offset(offset).limit(batch_size).all()
            if not batch:
                return
            yield from batch
            offset += len(batch)

    def most_used(self, limit: int = 1000) -> List[TMEntry]:
        with self._session("most_used") as session:
            return session.query(TMEntry).order_by(
                TMEntry.usage_count.desc(), TMEntry.id
            ).limit(limit).all()

    def usage_trace(self, entry_id: str) -> List[TMUsage]:
        with self._session("usage_trace", entry_id) as session:
            return session.query(TMUsage).filter(
                TMUsage.entry_id == entry_id
            ).order_by(TMUsage.applied_at, TMUsage.id).all()

    def aggregate_stats(self) -> TMStats:
        """Fresh aggregate over the whole store."""
        with self._session("aggregate_stats") as session:
            total_entries, total_usage, average_quality = session.query(
                func.count(TMEntry.id),
                func.coalesce(func.sum(TMEntry.usage_count), 0),
                func.avg(TMEntry.quality_score),
            ).one()
            unrated = session.query(func.count(TMEntry.id)).filter(
                TMEntry.quality_score.is_(None)
            ).scalar() or 0
            pairs = session.query(
                TMEntry.source_language, TMEntry.target_language, func.count(TMEntry.id)
            ).group_by(TMEntry.source_language, TMEntry.target_language).all()

        total_usage = int(total_usage)
        total_reuses = max(0, total_usage - total_entries)
        return TMStats(
            total_entries=total_entries,
            entries_by_language_pair={f"{src}→{tgt}": count for src, tgt, count in pairs},
            average_quality=round(average_quality, 4) if average_quality is not None else None,
            unrated_entries=unrated,
            total_usage=total_usage,
            total_reuses=total_reuses,
            tokens_saved=total_reuses * self.tokens_per_reuse,
            reuse_rate=round(total_reuses / total_usage, 4) if total_usage else 0.0,
        )

