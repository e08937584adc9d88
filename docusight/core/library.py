"""
MediaLibrary: the query and mutation API of a DocuSight library.

Wires the enrichment pipeline, identity resolver, index, collections, batch
queue and record store together. Every published asset is written to the
store (one atomic key) and swapped into the index under its write lock.
"""

import logging
import threading
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..analysis.metadata import guess_mime, kind_for_mime
from ..analysis.scoring import tag_color
from ..config import LibrarySettings, get_config_value, get_default_config
from ..detection.adapter import DetectionAdapter
from ..errors import (
    DocuSightError, EnrichmentCancelled, EnrichmentError, UnknownEntity, UnsupportedFormat,
)
from ..identity.resolver import IdentityResolver
from ..library.collections import CollectionRegistry, SmartCollectionGenerator
from ..library.export import build_export, write_export
from ..library.index import LibraryIndex
from ..library.query import SearchQuery, SortSpec
from ..models.collections import Collection, CollectionSettings, CollectionType
from ..models.jobs import BatchJob, BatchOperation
from ..models.media import (
    AssetStatus, MediaAsset, MediaKind, Tag, TagCategory, TagSource,
)
from ..models.people import Person
from ..pipeline.batch import BatchJobQueue
from ..pipeline.enrichment import CancellationToken, EnrichmentPipeline, FileDescriptor
from ..storage.store import (
    ASSET_PREFIX, COLLECTIONS_KEY, PERSON_REGISTRY_KEY, KeyValueStore, asset_key, create_store,
)

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64


class MediaLibrary:
    """
    A media library with enrichment, identity, search and collections.

    Example:
        library = MediaLibrary(SidecarDetectionAdapter())
        asset = library.ingest(FileDescriptor.from_path("interview.jpg"))
        library.search(SearchQuery.build(text="interview"))
    """

    def __init__(self, adapter: DetectionAdapter, config: Optional[Dict[str, Any]] = None,
                 store: Optional[KeyValueStore] = None,
                 settings: Optional[LibrarySettings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or get_default_config()
        self.settings = settings or LibrarySettings.from_config(self.config)
        self.store = store or create_store(self.config)

        self.resolver = IdentityResolver(self.settings)
        self.index = LibraryIndex(canonical_person=self.resolver.canonical_id)
        self.collections = CollectionRegistry()
        self.generator = SmartCollectionGenerator(self.settings)
        self.pipeline = EnrichmentPipeline(adapter, self.resolver, self.settings, sleep=sleep)

        self.queue = BatchJobQueue(
            max_workers=int(get_config_value(self.config, 'batch.max_workers', 4)),
            max_queue_size=int(get_config_value(self.config, 'batch.max_queue_size', 100)),
        )
        self.queue.register_handler(BatchOperation.INGEST, self._ingest_item)
        self.queue.register_handler(BatchOperation.ANALYZE, self._analyze_item)
        self.queue.register_handler(BatchOperation.TAG, self._tag_item)
        self.queue.register_handler(BatchOperation.MOVE, self._move_item)
        self.queue.register_handler(BatchOperation.DELETE, self._delete_item)
        self.queue.register_handler(BatchOperation.EXPORT, self._export_item)

        self._pending: Dict[str, FileDescriptor] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._pending_lock = threading.Lock()
        self._asset_locks = [threading.RLock() for _ in range(_LOCK_STRIPES)]
        self._persist_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self, wait: bool = True) -> None:
        self.queue.shutdown(wait=wait)

    def _asset_lock(self, asset_id: str) -> threading.RLock:
        return self._asset_locks[hash(asset_id) % _LOCK_STRIPES]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _publish(self, asset: MediaAsset) -> MediaAsset:
        """Swap an asset into the index and write it to the store."""
        with self._asset_lock(asset.id):
            stored = self.index.upsert(asset)
            self.store.put(asset_key(stored.id), stored.to_dict())
            return stored

    def _persist_registry(self) -> None:
        with self._persist_lock:
            self.store.put(PERSON_REGISTRY_KEY, self.resolver.snapshot())

    def _persist_collections(self) -> None:
        with self._persist_lock:
            self.store.put(COLLECTIONS_KEY, self.collections.snapshot())

    def load(self) -> int:
        """
        Rebuild the index, person registry and collections from the store.

        Assets still ``processing`` were interrupted mid-enrichment; their
        upload is gone, so they are moved to ``error``.

        Returns:
            Number of assets loaded
        """
        registry = self.store.get_or_default(PERSON_REGISTRY_KEY)
        if registry:
            self.resolver.restore(registry)
        collections = self.store.get_or_default(COLLECTIONS_KEY)
        if collections:
            self.collections.restore(collections)

        self.index.clear()
        count = 0
        for key in self.store.keys(ASSET_PREFIX):
            asset = MediaAsset.from_dict(self.store.get(key))
            if asset.status is AssetStatus.PROCESSING:
                asset.mark_error("Enrichment interrupted before completion", EnrichmentError.code)
                self._publish(asset)
            else:
                self.index.upsert(asset)
            count += 1
        logger.info(f"Loaded {count} assets and {len(self.resolver)} persons")
        return count

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------

    def search(self, query: Optional[SearchQuery] = None, sort: Optional[SortSpec] = None,
               limit: Optional[int] = None, offset: int = 0) -> List[MediaAsset]:
        return self.index.search(query, sort, limit=limit, offset=offset)

    def get_asset(self, asset_id: str) -> MediaAsset:
        return self.index.get(asset_id)

    def get_person(self, person_id: str) -> Person:
        person = self.resolver.get_person(person_id)
        if person is None:
            raise UnknownEntity(f"Unknown person: {person_id}")
        return person

    def list_persons(self, include_retired: bool = False) -> List[Person]:
        return self.resolver.list_persons(include_retired)

    def list_collections(self, type: Optional[CollectionType] = None) -> List[Collection]:
        return self.collections.list(type)

    def get_collection(self, collection_id: str) -> Collection:
        return self.collections.get(collection_id)

    def get_job(self, job_id: str) -> BatchJob:
        return self.queue.get(job_id)

    def wait_job(self, job_id: str, timeout: Optional[float] = None) -> BatchJob:
        return self.queue.wait(job_id, timeout)

    def list_jobs(self) -> List[BatchJob]:
        return self.queue.list_jobs()

    def suggest_merges(self, threshold: Optional[float] = None) -> List[Dict[str, Any]]:
        return self.resolver.suggest_merges(threshold)

    def stats(self) -> Dict[str, Any]:
        stats = self.index.stats()
        stats['persons'] = len(self.resolver)
        stats['collections'] = {
            'manual': len(self.collections.list(CollectionType.MANUAL)),
            'auto': len(self.collections.list(CollectionType.AUTO)),
        }
        queue_stats = self.queue.get_stats()
        stats['queue'] = queue_stats
        stats['processing_queue'] = queue_stats['active_jobs']
        return stats

    # ------------------------------------------------------------------
    # Ingest and enrichment
    # ------------------------------------------------------------------

    def ingest(self, descriptor: FileDescriptor, correlation_id: Optional[str] = None,
               cancel_token: Optional[CancellationToken] = None) -> MediaAsset:
        """
        Enrich and publish one file synchronously.

        Returns:
            The published asset, ``ready`` or ``error``

        Raises:
            EnrichmentCancelled: Nothing was published
        """
        asset = self.pipeline.enrich(descriptor, correlation_id, cancel_token=cancel_token)
        stored = self._publish(asset)
        if stored.faces:
            self._persist_registry()
        return stored

    def enqueue_enrichment(self, descriptor: FileDescriptor, priority: str = 'normal',
                           correlation_id: Optional[str] = None) -> str:
        """
        Create the asset in ``processing`` state and queue its enrichment.

        Returns:
            Id of the ingest job
        """
        asset_id = f"asset-{uuid.uuid4().hex[:12]}"
        try:
            kind = descriptor.kind or kind_for_mime(
                descriptor.mime_type or guess_mime(descriptor.filename),
                self.settings.supported_mime_prefixes)
        except UnsupportedFormat:
            kind = MediaKind.DOCUMENT
        placeholder = MediaAsset(id=asset_id, filename=descriptor.filename, kind=kind,
                                 size=descriptor.size,
                                 correlation_id=correlation_id or uuid.uuid4().hex[:12])
        self._publish(placeholder)
        with self._pending_lock:
            self._pending[asset_id] = descriptor

        job = self.queue.submit(BatchOperation.INGEST, [asset_id], priority)
        if job.fault:
            with self._pending_lock:
                self._pending.pop(asset_id, None)
            placeholder.mark_error(f"Not queued: {job.fault}", EnrichmentError.code)
            self._publish(placeholder)
        return job.id

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a job; in-flight enrichments stop at their next step.

        Uploads of an ingest job that never started are dropped and their
        placeholders move to ``error`` with code ``CANCELLED``.
        """
        job = self.queue.get(job_id)
        cancelled = self.queue.cancel(job_id)
        if not cancelled or job.operation not in (BatchOperation.INGEST, BatchOperation.ANALYZE):
            return cancelled
        with self._pending_lock:
            for asset_id in job.asset_ids:
                token = self._tokens.get(asset_id)
                if token is not None:
                    token.cancel()
        if job.operation is BatchOperation.INGEST:
            for error in self.queue.get(job_id).errors:
                if error.code == EnrichmentCancelled.code:
                    self._abandon_upload(error.asset_id, "Enrichment cancelled", EnrichmentCancelled.code)
        return cancelled

    def _token_for(self, asset_id: str) -> CancellationToken:
        token = CancellationToken()
        with self._pending_lock:
            self._tokens[asset_id] = token
        return token

    def _release_token(self, asset_id: str) -> None:
        with self._pending_lock:
            self._tokens.pop(asset_id, None)

    def _abandon_upload(self, asset_id: str, reason: str, code: str) -> None:
        """Drop a queued upload and move its placeholder to ``error``."""
        with self._pending_lock:
            self._pending.pop(asset_id, None)
        with self._asset_lock(asset_id):
            if asset_id not in self.index:
                return
            asset = self.index.get(asset_id)
            if asset.status is AssetStatus.PROCESSING:
                asset.mark_error(reason, code)
                self._publish(asset)

    def _ingest_item(self, asset_id: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        with self._pending_lock:
            descriptor = self._pending.get(asset_id)
        if descriptor is None:
            raise UnknownEntity(f"No pending upload for asset {asset_id}")

        placeholder = self.index.get(asset_id)
        token = self._token_for(asset_id)
        try:
            asset = self.pipeline.enrich(descriptor, placeholder.correlation_id, asset_id=asset_id,
                                         cancel_token=token, previous=placeholder)
        except EnrichmentError as e:
            self._abandon_upload(asset_id, e.reason, e.code)
            raise
        except Exception as e:
            logger.error(f"Enrichment of {asset_id} raised unexpectedly: {e}")
            self._abandon_upload(asset_id, f"Enrichment failed: {e}", EnrichmentError.code)
            raise
        finally:
            self._release_token(asset_id)

        with self._pending_lock:
            self._pending.pop(asset_id, None)
        stored = self._publish(asset)
        if stored.faces:
            self._persist_registry()
        if stored.status is AssetStatus.ERROR:
            raise EnrichmentError(stored.error, asset_id)
        return {'status': stored.status.value, 'tags': len(stored.tags), 'faces': len(stored.faces)}

    def reanalyze(self, asset_id: str, cancel_token: Optional[CancellationToken] = None) -> MediaAsset:
        """
        Re-run enrichment on an existing asset from its original version.

        Manual tags survive; derived tags, faces and analysis are replaced.
        A face whose signature changed is re-resolved and can move to
        another person; face detections that no longer exist are retracted
        from the person registry.
        """
        previous = self.index.get(asset_id)
        original = previous.original
        declared = {k: v for k, v in previous.metadata.to_dict().items() if v is not None}
        if previous.captured_at:
            declared['captured_at'] = previous.captured_at
        descriptor = FileDescriptor(
            filename=previous.filename,
            path=original.url if original else None,
            mime_type=original.format if original else None,
            kind=previous.kind,
            declared=declared,
        )
        asset = self.pipeline.enrich(descriptor, previous.correlation_id, asset_id=asset_id,
                                     cancel_token=cancel_token, previous=previous)

        current_faces = {face.id for face in asset.faces}
        stale = [face.id for face in previous.faces if face.id not in current_faces]
        if stale:
            self.resolver.retract(stale)
        stored = self._publish(asset)
        if stale or stored.faces:
            self._persist_registry()
        return stored

    def _analyze_item(self, asset_id: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        token = self._token_for(asset_id)
        try:
            stored = self.reanalyze(asset_id, cancel_token=token)
        finally:
            self._release_token(asset_id)
        if stored.status is AssetStatus.ERROR:
            raise EnrichmentError(stored.error, asset_id)
        return {'status': stored.status.value, 'quality': stored.quality_score}

    # ------------------------------------------------------------------
    # Asset mutation
    # ------------------------------------------------------------------

    def tag_asset(self, asset_id: str, name: str, category: TagCategory = TagCategory.CUSTOM,
                  confidence: float = 1.0) -> MediaAsset:
        """Add a manual tag; an existing tag with the same name and category is replaced."""
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Tag confidence {confidence} outside [0, 1]")
        with self._asset_lock(asset_id):
            asset = self.index.get(asset_id)
            asset.set_tag(Tag(name=name, category=category, confidence=confidence,
                              source=TagSource.MANUAL, color=tag_color(name)))
            return self._publish(asset)

    def untag_asset(self, asset_id: str, name: str, category: TagCategory = TagCategory.CUSTOM) -> MediaAsset:
        with self._asset_lock(asset_id):
            asset = self.index.get(asset_id)
            key = (name.lower(), category)
            asset.tags = [tag for tag in asset.tags if tag.key != key]
            return self._publish(asset)

    def _tag_item(self, asset_id: str, parameters: Dict[str, Any]) -> List[str]:
        category = TagCategory(parameters.get('category', TagCategory.CUSTOM.value))
        names = parameters.get('tags') or []
        if not names:
            raise DocuSightError("Tag operation needs at least one tag")
        for name in names:
            self.tag_asset(asset_id, name, category, float(parameters.get('confidence', 1.0)))
        return list(names)

    def delete_asset(self, asset_id: str) -> None:
        """Remove an asset from the store, index, collections and person registry."""
        with self._asset_lock(asset_id):
            asset = self.index.get(asset_id)
            if asset.faces:
                self.resolver.retract([face.id for face in asset.faces])
            self.index.remove(asset_id)
            self.store.delete(asset_key(asset_id))
        with self._pending_lock:
            self._pending.pop(asset_id, None)
        self.collections.drop_asset(asset_id)
        if asset.faces:
            self._persist_registry()
        self.regenerate_collections()
        logger.info(f"Deleted asset {asset_id}")

    def _delete_item(self, asset_id: str, parameters: Dict[str, Any]) -> bool:
        self.delete_asset(asset_id)
        return True

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def merge_persons(self, target_id: str, source_id: str) -> Person:
        """
        Merge ``source_id`` into ``target_id`` and rewrite every asset
        that referenced the source.

        Raises:
            MergeConflict: Either person is retired, or the ids are the same
            UnknownEntity: Either id is unknown
        """
        person = self.resolver.merge(target_id, source_id)
        changed = self.index.replace_person(source_id, target_id)
        for asset_id in changed:
            with self._asset_lock(asset_id):
                self.store.put(asset_key(asset_id), self.index.get(asset_id).to_dict())
        self._persist_registry()
        self.regenerate_collections()
        logger.info(f"Merge of {source_id} into {target_id} rewrote {len(changed)} assets")
        return person

    def split_person(self, person_id: str, face_ids: Sequence[str]) -> Dict[str, str]:
        """
        Move some of a person's detections out and re-resolve them,
        never back into the person they came from.

        Returns:
            Mapping of face id to the person it now belongs to
        """
        person = self.get_person(person_id)
        unknown = [fid for fid in face_ids if fid not in person.face_ids]
        if unknown:
            raise UnknownEntity(f"Faces {unknown} are not assigned to {person_id}")

        affected = self.index.search(SearchQuery(persons=frozenset([person_id])))
        seen_at = {face.id: asset.effective_date for asset in affected for face in asset.faces}

        self.resolver.unassign(face_ids)
        moved = {}
        for face_id in face_ids:
            moved[face_id] = self.resolver.resolve(face_id, seen_at=seen_at.get(face_id),
                                                   exclude=[person_id])

        for asset in affected:
            if not any(face.id in moved for face in asset.faces):
                continue
            with self._asset_lock(asset.id):
                current = self.index.get(asset.id)
                current.faces = [face.with_person(moved[face.id]) if face.id in moved else face
                                 for face in current.faces]
                self._publish(current)
        self._persist_registry()
        self.regenerate_collections()
        logger.info(f"Split {len(face_ids)} faces out of {person_id}")
        return moved

    def rename_person(self, person_id: str, name: str) -> Person:
        person = self.resolver.rename(person_id, name)
        self._persist_registry()
        return person

    def verify_person(self, person_id: str) -> Person:
        """Mark a person as confirmed by a user without renaming it."""
        person = self.resolver.verify(person_id)
        self._persist_registry()
        return person

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def regenerate_collections(self) -> List[Collection]:
        """Recompute every auto collection and swap the set in."""
        names = {p.id: p.name for p in self.resolver.list_persons()}
        generated = self.generator.generate(self.index.all(), names)
        self.collections.replace_auto(generated)
        self._persist_collections()
        return generated

    def create_collection(self, name: str, asset_ids: Iterable[str] = (), description: str = "",
                          settings: Optional[CollectionSettings] = None) -> Collection:
        asset_ids = list(asset_ids)
        missing = [asset_id for asset_id in asset_ids if asset_id not in self.index]
        if missing:
            raise UnknownEntity(f"Unknown assets: {missing}")
        collection = self.collections.create_manual(name, asset_ids, description, settings)
        self._persist_collections()
        return collection

    def add_to_collection(self, collection_id: str, asset_ids: Iterable[str]) -> Collection:
        asset_ids = list(asset_ids)
        missing = [asset_id for asset_id in asset_ids if asset_id not in self.index]
        if missing:
            raise UnknownEntity(f"Unknown assets: {missing}")
        collection = self.collections.add_assets(collection_id, asset_ids)
        self._persist_collections()
        return collection

    def collection_assets(self, collection_id: str, sort: Optional[SortSpec] = None) -> List[MediaAsset]:
        """Members of a collection, ordered by its own sort settings unless overridden."""
        collection = self.collections.get(collection_id)
        sort = sort or SortSpec(collection.settings.sort_by, collection.settings.sort_order)
        query = SearchQuery.from_dict(collection.settings.filters)
        query = replace(query, asset_ids=frozenset(collection.asset_ids))
        return self.index.search(query, sort)

    def _move_item(self, asset_id: str, parameters: Dict[str, Any]) -> str:
        collection_id = parameters.get('collection_id')
        if not collection_id:
            raise DocuSightError("Move operation needs a collection_id")
        self.add_to_collection(collection_id, [asset_id])
        return collection_id

    # ------------------------------------------------------------------
    # Batch and export
    # ------------------------------------------------------------------

    def submit_batch(self, operation: BatchOperation, asset_ids: Sequence[str],
                     priority: str = 'normal',
                     parameters: Optional[Dict[str, Any]] = None) -> BatchJob:
        return self.queue.submit(operation, list(asset_ids), priority, parameters)

    def export(self, collection_id: Optional[str] = None, output=None) -> Dict[str, Any]:
        """
        Export the whole library, or one collection, as a JSON document.

        Args:
            collection_id: Restrict to this collection
            output: Optional path the document is written to
        """
        collection = self.collections.get(collection_id) if collection_id else None
        document = build_export(self.index.all(), self.resolver.list_persons(include_retired=True),
                                self.collections.list(), collection)
        if output is not None:
            write_export(document, output)
        return document

    def _export_item(self, asset_id: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        return self.index.get(asset_id).to_dict()
