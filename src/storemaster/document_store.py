"""Document store adapter for StoreMaster.

The store keeps schemaless documents grouped by collection and addressed by an
opaque identifier it assigns itself. Every committed write bumps the
document's ``version``; transactions record the versions they read and only
commit when none of them moved in the meantime (optimistic concurrency at the
document level).

The public API is organised around four responsibilities:

1. Single-document CRUD: :meth:`DocumentStore.get`, ``create``, ``update``,
   ``set`` and ``delete``.
2. Snapshot queries with filters, ordering and limits.
3. Live subscriptions that push a fresh snapshot after each committed change.
4. :meth:`DocumentStore.run_transaction`, which owns the bounded
   retry-on-conflict loop so callers can write their logic once.

Persistence is delegated to an optional :class:`StoreBackend`; the workbook
backend lives in :mod:`storemaster.data_manager`.
"""

from __future__ import annotations

import operator
import threading
import time
import uuid
from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    ContextManager,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
    TypeVar,
)

from . import log
from .constants import (
    DEFAULT_MAX_TRANSACTION_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    MAX_RETRY_BACKOFF_SECONDS,
)


T = TypeVar("T")

DocumentKey = Tuple[str, str]
SnapshotCallback = Callable[[List["Document"]], None]
ErrorCallback = Callable[[Exception], None]


class StoreError(Exception):
    """Base class for every failure raised by the document store."""


class DocumentNotFound(StoreError):
    """Raised when a document id does not exist in its collection."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"Document not found: {collection}/{doc_id}")
        self.collection = collection
        self.doc_id = doc_id


class TransactionError(StoreError):
    """Raised when a transaction handle is used outside its contract."""


class TransactionConflict(StoreError):
    """Raised when a transaction still conflicts after every allowed attempt."""

    def __init__(self, attempts: int, message: Optional[str] = None) -> None:
        super().__init__(message or f"Transaction aborted after {attempts} conflicting attempt(s)")
        self.attempts = attempts


class StoreUnavailable(StoreError):
    """Raised when the persistent backend cannot be read or written."""


@dataclass(frozen=True)
class Document:
    """Immutable snapshot of a stored document."""

    id: str
    data: Mapping[str, Any]
    version: int

    def get(self, field: str, default: Any = None) -> Any:
        return self.data.get(field, default)


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


@dataclass(frozen=True)
class Filter:
    """Field predicate applied by :meth:`DocumentStore.query`.

    Documents that do not carry ``field`` never match, mirroring how remote
    document databases treat missing fields in ``where`` clauses.
    """

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, data: Mapping[str, Any]) -> bool:
        if self.field not in data:
            return False
        return _OPERATORS[self.op](data[self.field], self.value)


@dataclass(frozen=True)
class QueryOptions:
    """Normalized query arguments shared by queries and subscriptions."""

    filters: Tuple[Filter, ...] = ()
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit <= 0:
            raise ValueError("Query limit must be greater than zero")


class StoreBackend(Protocol):
    """Persistence contract used by :class:`DocumentStore`."""

    def load(self) -> Dict[str, Dict[str, Document]]:
        ...

    def save(self, collections: Mapping[str, Mapping[str, Document]]) -> None:
        ...

    def locked(self) -> ContextManager[None]:
        """Hold the backend exclusively across a load and the matching save."""
        ...


def _freeze(data: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(data))


def new_document_id() -> str:
    """Return a fresh opaque document identifier."""
    return uuid.uuid4().hex


class Subscription:
    """Handle returned by :meth:`DocumentStore.subscribe`."""

    def __init__(
        self,
        store: "DocumentStore",
        collection: str,
        callback: SnapshotCallback,
        options: QueryOptions,
        on_error: Optional[ErrorCallback],
    ) -> None:
        self._store = store
        self.collection = collection
        self.callback = callback
        self.options = options
        self.on_error = on_error
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop delivering snapshots. Calling this twice is harmless."""
        if not self._active:
            return
        self._active = False
        self._store._remove_subscription(self)

    def deliver(self) -> None:
        """Push the current query snapshot to the callback."""
        if not self._active:
            return
        snapshot = self._store._run_query(self.collection, self.options)
        try:
            self.callback(snapshot)
        except Exception as exc:
            log.exception("Listener on collection '%s' failed", self.collection)
            if self.on_error is not None:
                self.on_error(exc)


@dataclass(frozen=True)
class _StagedWrite:
    kind: str
    collection: str
    doc_id: str
    data: Mapping[str, Any]


class Transaction:
    """Handle passed to the function run by :meth:`DocumentStore.run_transaction`.

    Reads go straight to the committed state and remember the version they
    observed. Writes are only staged; nothing becomes visible to other readers
    until the store commits the whole transaction. All reads must happen before
    the first write.
    """

    def __init__(self, store: "DocumentStore", attempt: int) -> None:
        self._store = store
        self.attempt = attempt
        self._reads: Dict[DocumentKey, Optional[int]] = {}
        self._writes: List[_StagedWrite] = []
        self._closed = False

    @property
    def reads(self) -> Mapping[DocumentKey, Optional[int]]:
        return MappingProxyType(self._reads)

    @property
    def writes(self) -> Sequence[_StagedWrite]:
        return tuple(self._writes)

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransactionError("Transaction handle is no longer usable")

    def get(self, collection: str, doc_id: str) -> Document:
        """Read a document and record its version for the commit check.

        Raises:
            DocumentNotFound: If the document does not exist. The absence is
                still recorded, so a concurrent creation aborts the commit.
            TransactionError: If a write was already staged.
        """
        self._ensure_open()
        if self._writes:
            raise TransactionError("Transactions require all reads to be executed before all writes")
        document = self._store._peek(collection, doc_id)
        key = (collection, doc_id)
        if key not in self._reads:
            self._reads[key] = document.version if document is not None else None
        if document is None:
            raise DocumentNotFound(collection, doc_id)
        return document

    def update(self, collection: str, doc_id: str, partial_data: Mapping[str, Any]) -> None:
        self._stage("update", collection, doc_id, partial_data)

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        self._stage("set", collection, doc_id, data)

    def delete(self, collection: str, doc_id: str) -> None:
        self._stage("delete", collection, doc_id, {})

    def create(self, collection: str, data: Mapping[str, Any]) -> str:
        """Stage a new document and return the id it will carry once committed."""
        doc_id = new_document_id()
        self._stage("create", collection, doc_id, data)
        return doc_id

    def _stage(self, kind: str, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        self._ensure_open()
        self._writes.append(_StagedWrite(kind=kind, collection=collection, doc_id=doc_id, data=dict(data)))

    def _close(self) -> None:
        self._closed = True


class DocumentStore:
    """Thread-safe, versioned document store.

    Args:
        collections (Iterable[str]): Collection names that exist up front.
            Other collections are created lazily on first write.
        backend (StoreBackend | None): Optional persistence backend used by
            :meth:`flush`.
        max_attempts (int): Default number of attempts granted to
            :meth:`run_transaction` before it raises
            :class:`TransactionConflict`.
        retry_backoff (float): Base delay in seconds between attempts. The
            delay doubles after each conflict and is capped at
            ``MAX_RETRY_BACKOFF_SECONDS``.
        autosave (bool): When ``True`` every committed write is saved to the
            backend before it becomes visible. A failed save leaves the store
            unchanged, and a write racing another client is retried by
            :meth:`run_transaction` against the reloaded state.
    """

    def __init__(
        self,
        collections: Iterable[str] = (),
        *,
        backend: Optional[StoreBackend] = None,
        max_attempts: int = DEFAULT_MAX_TRANSACTION_ATTEMPTS,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        autosave: bool = False,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if retry_backoff < 0:
            raise ValueError("retry_backoff must be zero or positive")
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Document]] = {name: {} for name in collections}
        self._subscriptions: List[Subscription] = []
        self.backend = backend
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.autosave = autosave
        # Versions last seen on the backend, and keys changed since the last save.
        self._base_versions: Dict[DocumentKey, Optional[int]] = {}
        self._dirty: Set[DocumentKey] = set()

    @classmethod
    def open(cls, backend: StoreBackend, **options: Any) -> "DocumentStore":
        """Create a store pre-populated with the documents held by ``backend``.

        Raises:
            StoreUnavailable: If the backend cannot be read.
        """
        loaded = backend.load()
        store = cls(loaded.keys(), backend=backend, **options)
        for name, documents in loaded.items():
            store._collections[name] = dict(documents)
            for doc_id, document in documents.items():
                store._base_versions[(name, doc_id)] = document.version
        log.debug(
            "Opened document store with %s",
            ", ".join(f"{name}={len(docs)}" for name, docs in loaded.items()) or "no collections",
        )
        return store

    # ------------------------------------------------------------------
    # Single-document operations
    # ------------------------------------------------------------------

    def get(self, collection: str, doc_id: str) -> Document:
        """Return the committed document or raise :class:`DocumentNotFound`."""
        document = self._peek(collection, doc_id)
        if document is None:
            raise DocumentNotFound(collection, doc_id)
        return document

    def create(self, collection: str, data: Mapping[str, Any]) -> str:
        """Insert a new document; the store chooses its id."""
        doc_id = new_document_id()
        self._commit_writes([_StagedWrite("create", collection, doc_id, dict(data))])
        log.debug("Created document %s/%s", collection, doc_id)
        return doc_id

    def update(self, collection: str, doc_id: str, partial_data: Mapping[str, Any]) -> None:
        """Merge ``partial_data`` into an existing document.

        Raises:
            DocumentNotFound: If ``doc_id`` does not exist.
        """
        self._commit_writes([_StagedWrite("update", collection, doc_id, dict(partial_data))])

    def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        """Replace the full content of an existing document."""
        self._commit_writes([_StagedWrite("set", collection, doc_id, dict(data))])

    def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document. Deleting an unknown id is a no-op."""
        self._commit_writes([_StagedWrite("delete", collection, doc_id, {})])

    # ------------------------------------------------------------------
    # Queries and subscriptions
    # ------------------------------------------------------------------

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        *,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """Return a snapshot of the documents matching the query.

        Args:
            collection (str): Collection to scan.
            filters (Sequence[Filter]): Predicates that must all match.
            order_by (str | None): Field used for ordering. Documents without
                the field are left out of ordered results.
            descending (bool): Reverse the ordering.
            limit (int | None): Maximum number of documents to return.

        Returns:
            list[Document]: Matching documents. An unknown collection yields an
                empty list.
        """
        options = QueryOptions(tuple(filters), order_by, descending, limit)
        return self._run_query(collection, options)

    def subscribe(
        self,
        collection: str,
        callback: SnapshotCallback,
        *,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Register a live query.

        The callback receives the current snapshot right away and then a new
        snapshot after every committed change to ``collection``. Exceptions
        raised by the callback are logged and handed to ``on_error``; they do
        not affect the write that triggered the delivery.
        """
        options = QueryOptions(tuple(filters), order_by, descending, limit)
        subscription = Subscription(self, collection, callback, options, on_error)
        with self._lock:
            self._subscriptions.append(subscription)
        subscription.deliver()
        return subscription

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def run_transaction(self, fn: Callable[[Transaction], T], *, max_attempts: Optional[int] = None) -> T:
        """Run ``fn`` atomically, retrying it from scratch on conflicts.

        ``fn`` receives a fresh :class:`Transaction` on each attempt. When it
        returns, the staged writes are committed only if every document it read
        still carries the version it observed. Otherwise the attempt is
        discarded and ``fn`` is called again after a backoff delay.

        Args:
            fn (Callable[[Transaction], T]): Read-compute-write function. It
                must not have side effects outside the transaction handle
                because it may run several times.
            max_attempts (int | None): Override for the store default.

        Returns:
            T: Whatever ``fn`` returned on the committed attempt.

        Raises:
            TransactionConflict: If every attempt conflicted.
            Exception: Anything raised by ``fn`` propagates unchanged and
                leaves the store untouched.
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        for attempt in range(1, attempts + 1):
            transaction = Transaction(self, attempt)
            try:
                result = fn(transaction)
                conflict = self._commit_transaction(transaction)
            finally:
                transaction._close()
            if conflict is None:
                if attempt > 1:
                    log.info("Transaction committed on attempt %d/%d", attempt, attempts)
                return result
            log.warning(
                "Transaction attempt %d/%d conflicted on %s/%s",
                attempt,
                attempts,
                conflict[0],
                conflict[1],
            )
            if attempt < attempts:
                self._backoff(attempt)

        log.error("Transaction abandoned after %d conflicting attempts", attempts)
        raise TransactionConflict(attempts)

    def _backoff(self, attempt: int) -> None:
        if self.retry_backoff <= 0:
            return
        delay = min(self.retry_backoff * (2 ** (attempt - 1)), MAX_RETRY_BACKOFF_SECONDS)
        time.sleep(delay)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def flush(self) -> None:
        """Write the documents changed since the last save to the backend.

        The backend is reloaded under its lock and the changes are merged into
        what is on disk, so documents written by other clients in the meantime
        survive. A changed document whose on-disk version moved since this
        store last saw it is a lost update and aborts the whole flush.

        Raises:
            TransactionConflict: If another client changed one of the same
                documents. Nothing is written; reopen the store and retry.
            StoreUnavailable: If the backend cannot persist the snapshot.
        """
        if self.backend is None:
            log.debug("Flush requested on a store without backend; nothing to do")
            return
        with self._lock:
            if not self._dirty:
                log.debug("Flush requested with no pending changes")
                return
            stale = self._persist_locked({}, ())
        if stale is not None:
            log.error("Flush rejected: %s/%s was changed by another client", stale[0], stale[1])
            raise TransactionConflict(
                1, f"Document {stale[0]}/{stale[1]} was changed by another client; reload and retry")

    def collection_names(self) -> List[str]:
        with self._lock:
            return sorted(self._collections)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _peek(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            return self._collections.get(collection, {}).get(doc_id)

    def _run_query(self, collection: str, options: QueryOptions) -> List[Document]:
        with self._lock:
            documents = list(self._collections.get(collection, {}).values())

        matched = [doc for doc in documents if all(f.matches(doc.data) for f in options.filters)]
        if options.order_by is not None:
            field = options.order_by
            matched = [doc for doc in matched if doc.data.get(field) is not None]
            # Stable tie-break on id keeps equal keys in a deterministic order.
            matched.sort(key=lambda doc: doc.id)
            matched.sort(key=lambda doc: doc.data[field], reverse=options.descending)
        if options.limit is not None:
            matched = matched[: options.limit]
        return matched

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _commit_transaction(self, transaction: Transaction) -> Optional[DocumentKey]:
        """Validate read versions and apply staged writes atomically.

        Returns the key of the first conflicting document, or ``None`` once the
        writes are committed.
        """
        with self._lock:
            for key, seen_version in transaction.reads.items():
                current = self._collections.get(key[0], {}).get(key[1])
                current_version = current.version if current is not None else None
                if current_version != seen_version:
                    return key
            if not transaction.writes:
                return None
            pending = self._resolve_locked(transaction.writes)
            stale = self._publish_locked(pending, transaction.reads.keys())
        if stale is not None:
            # The store now holds the backend's copy, so the rerun sees it.
            self._notify(self.collection_names())
            return stale
        self._notify({write.collection for write in transaction.writes})
        return None

    def _commit_writes(self, writes: Sequence[_StagedWrite]) -> None:
        with self._lock:
            pending = self._resolve_locked(writes)
            stale = self._publish_locked(pending, ())
        if stale is not None:
            self._notify(self.collection_names())
            raise TransactionConflict(
                1, f"Document {stale[0]}/{stale[1]} was changed by another client; retry")
        self._notify({write.collection for write in writes})

    def _publish_locked(
        self,
        pending: Mapping[DocumentKey, Optional[Document]],
        reads: Iterable[DocumentKey],
    ) -> Optional[DocumentKey]:
        """Make ``pending`` the committed state.

        With autosave the backend is written first and the in-memory state is
        only replaced once that succeeds, so a failed save leaves no trace.
        Returns the first stale key when the backend moved underneath us.
        """
        if self.autosave and self.backend is not None:
            stale = self._persist_locked(pending, reads)
            if stale is not None:
                return stale
        else:
            self._dirty.update(pending)
        self._install_locked(pending)
        return None

    def _persist_locked(
        self,
        pending: Mapping[DocumentKey, Optional[Document]],
        reads: Iterable[DocumentKey],
    ) -> Optional[DocumentKey]:
        """Merge dirty and ``pending`` documents into the backend under its lock.

        Every key written, plus every key in ``reads``, must still carry on the
        backend the version this store last saw there. On a mismatch nothing
        is saved and the key is returned; when the store has no unsaved
        changes it also adopts the backend's documents.
        """
        assert self.backend is not None
        with self.backend.locked():
            on_disk = self.backend.load()
            watched = set(self._dirty) | set(pending) | set(reads)
            for key in sorted(watched):
                document = on_disk.get(key[0], {}).get(key[1])
                disk_version = document.version if document is not None else None
                if disk_version != self._base_versions.get(key):
                    if not self._dirty:
                        self._adopt_locked(on_disk)
                    return key

            merged = {name: dict(documents) for name, documents in on_disk.items()}
            changes = {key: self._collections.get(key[0], {}).get(key[1]) for key in self._dirty}
            changes.update(pending)
            for (collection, doc_id), document in changes.items():
                bucket = merged.setdefault(collection, {})
                if document is None:
                    bucket.pop(doc_id, None)
                else:
                    bucket[doc_id] = document
            self.backend.save(merged)

        for key, document in changes.items():
            self._base_versions[key] = document.version if document is not None else None
        self._dirty.clear()
        log.debug("Saved %d changed document(s) to backend", len(changes))
        return None

    def _adopt_locked(self, on_disk: Mapping[str, Mapping[str, Document]]) -> None:
        self._collections = {name: dict(documents) for name, documents in on_disk.items()}
        self._base_versions = {
            (name, doc_id): document.version
            for name, documents in on_disk.items()
            for doc_id, document in documents.items()
        }
        log.info("Reloaded store from backend after a concurrent change")

    def _resolve_locked(self, writes: Sequence[_StagedWrite]) -> Dict[DocumentKey, Optional[Document]]:
        # Resolve every write against a scratch view first so a failing write
        # leaves the committed state untouched.
        pending: Dict[DocumentKey, Optional[Document]] = {}

        def current(key: DocumentKey) -> Optional[Document]:
            if key in pending:
                return pending[key]
            return self._collections.get(key[0], {}).get(key[1])

        for write in writes:
            key = (write.collection, write.doc_id)
            existing = current(key)
            if write.kind == "create":
                pending[key] = Document(write.doc_id, _freeze(write.data), 1)
            elif write.kind == "delete":
                pending[key] = None
            elif existing is None:
                raise DocumentNotFound(write.collection, write.doc_id)
            elif write.kind == "update":
                merged = dict(existing.data)
                merged.update(write.data)
                pending[key] = Document(write.doc_id, _freeze(merged), existing.version + 1)
            elif write.kind == "set":
                pending[key] = Document(write.doc_id, _freeze(write.data), existing.version + 1)
            else:
                raise TransactionError(f"Unknown write kind: {write.kind}")
        return pending

    def _install_locked(self, pending: Mapping[DocumentKey, Optional[Document]]) -> None:
        for (collection, doc_id), document in pending.items():
            bucket = self._collections.setdefault(collection, {})
            if document is None:
                bucket.pop(doc_id, None)
            else:
                bucket[doc_id] = document

    def _notify(self, touched: Iterable[str]) -> None:
        touched = set(touched)
        with self._lock:
            listeners = [sub for sub in self._subscriptions if sub.collection in touched]
        for subscription in listeners:
            subscription.deliver()
