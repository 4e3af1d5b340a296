"""Document persistence.

A small document-store interface with two backends: Cloud Firestore for
deployments, and an in-process store for local development and tests.
Both support atomic multi-document batches, ``create`` writes that fail
on existing documents, a counter ``Increment`` and a server timestamp.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from google.api_core.exceptions import AlreadyExists, FailedPrecondition
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from mindsieve.config import FirestoreConfig, GCPConfig, get_settings
from mindsieve.exceptions import DocumentExistsError, MissingIndexError
from mindsieve.models import now_ms

logger = logging.getLogger(__name__)

DESCENDING = "desc"
ASCENDING = "asc"

Filter = Tuple[str, str, Any]       # (field, "==" | ">=", value)
OrderBy = Tuple[str, str]           # (field, DESCENDING | ASCENDING)


@dataclass(frozen=True)
class Increment:
    """Add ``amount`` to a numeric field, starting from zero."""
    amount: int = 1


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass
class Write:
    """One operation of an atomic batch."""
    op: str  # create, set
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False


class DocumentStore(ABC):
    """Abstract base class for document stores."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one document, or None."""
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False):
        """Write one document."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[List[Filter]] = None,
        order_by: Optional[List[OrderBy]] = None,
        start_after: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Run a filtered, ordered query.

        Raises:
            MissingIndexError: The store needs a composite index it lacks
        """
        pass

    @abstractmethod
    async def commit(self, writes: List[Write]):
        """Apply ``writes`` atomically.

        Raises:
            DocumentExistsError: A ``create`` hit an existing document;
                nothing was written
        """
        pass

    async def close(self):
        pass


class FirestoreDocumentStore(DocumentStore):
    """Document store backed by Cloud Firestore."""

    def __init__(
        self,
        config: Optional[FirestoreConfig] = None,
        gcp: Optional[GCPConfig] = None,
        client: Optional[firestore.AsyncClient] = None,
    ):
        settings = get_settings()
        self.config = config or settings.firestore
        self.gcp = gcp or settings.gcp
        self._client = client

    def _ensure_initialized(self):
        """Lazy initialization of the Firestore client."""
        if self._client is None:
            kwargs: Dict[str, Any] = {"project": self.gcp.project_id}
            if self.config.database:
                kwargs["database"] = self.config.database
            self._client = firestore.AsyncClient(**kwargs)

    @staticmethod
    def _encode(data: Dict[str, Any]) -> Dict[str, Any]:
        encoded = {}
        for key, value in data.items():
            if isinstance(value, Increment):
                encoded[key] = firestore.Increment(value.amount)
            elif value is SERVER_TIMESTAMP:
                encoded[key] = firestore.SERVER_TIMESTAMP
            else:
                encoded[key] = value
        return encoded

    def _ref(self, collection: str, doc_id: str):
        return self._client.collection(collection).document(doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_initialized()
        snap = await self._ref(collection, doc_id).get()
        return snap.to_dict() if snap.exists else None

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False):
        self._ensure_initialized()
        await self._ref(collection, doc_id).set(self._encode(data), merge=merge)

    async def query(
        self,
        collection: str,
        filters: Optional[List[Filter]] = None,
        order_by: Optional[List[OrderBy]] = None,
        start_after: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._ensure_initialized()
        query = self._client.collection(collection)
        for field_path, op, value in filters or []:
            query = query.where(filter=FieldFilter(field_path, op, value))
        for field_path, direction in order_by or []:
            query = query.order_by(
                field_path,
                direction=firestore.Query.DESCENDING if direction == DESCENDING else firestore.Query.ASCENDING,
            )
        if start_after:
            query = query.start_after(start_after)
        if limit:
            query = query.limit(limit)

        try:
            return [snap.to_dict() async for snap in query.stream()]
        except FailedPrecondition as e:
            # Firestore reports a missing composite index this way
            raise MissingIndexError("Composite index required.", {"collection": collection}) from e

    async def commit(self, writes: List[Write]):
        self._ensure_initialized()
        batch = self._client.batch()
        for write in writes:
            ref = self._ref(write.collection, write.doc_id)
            if write.op == "create":
                batch.create(ref, self._encode(write.data))
            else:
                batch.set(ref, self._encode(write.data), merge=write.merge)
        try:
            await batch.commit()
        except AlreadyExists as e:
            raise DocumentExistsError("Document already exists.", {"writes": len(writes)}) from e


class InMemoryDocumentStore(DocumentStore):
    """Process-local document store.

    Operations never await between reading and writing state, so each call
    is atomic on the event loop. With ``require_composite_index`` set, a
    query that combines filters with ordering raises ``MissingIndexError``
    the way Firestore does without the index.
    """

    def __init__(self, require_composite_index: bool = False):
        self.require_composite_index = require_composite_index
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    @staticmethod
    def _apply(existing: Optional[Dict[str, Any]], data: Dict[str, Any], merge: bool) -> Dict[str, Any]:
        result = dict(existing) if (merge and existing) else {}
        for key, value in data.items():
            if isinstance(value, Increment):
                result[key] = (result.get(key) or 0) + value.amount
            elif value is SERVER_TIMESTAMP:
                result[key] = now_ms()
            else:
                result[key] = copy.deepcopy(value)
        return result

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self._docs(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False):
        docs = self._docs(collection)
        docs[doc_id] = self._apply(docs.get(doc_id), data, merge)

    @staticmethod
    def _matches(doc: Dict[str, Any], filters: List[Filter]) -> bool:
        for field_path, op, value in filters:
            actual = doc.get(field_path)
            if op == "==":
                if actual != value:
                    return False
            elif op == ">=":
                if actual is None or actual < value:
                    return False
            else:
                raise ValueError(f"Unsupported filter operator: {op}")
        return True

    async def query(
        self,
        collection: str,
        filters: Optional[List[Filter]] = None,
        order_by: Optional[List[OrderBy]] = None,
        start_after: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        filters = filters or []
        order_by = order_by or []
        if self.require_composite_index and filters and order_by:
            raise MissingIndexError("Composite index required.", {"collection": collection})

        docs = [d for d in self._docs(collection).values() if self._matches(d, filters)]

        # Stable sorts applied from the last key to the first
        for field_path, direction in reversed(order_by):
            docs.sort(key=lambda d: d.get(field_path), reverse=direction == DESCENDING)

        if start_after and order_by:
            cursor = tuple(start_after.get(f) for f, _ in order_by)
            docs = [
                d for d in docs
                if _after(tuple(d.get(f) for f, _ in order_by), cursor, [dir_ for _, dir_ in order_by])
            ]

        if limit:
            docs = docs[:limit]
        return [copy.deepcopy(d) for d in docs]

    async def commit(self, writes: List[Write]):
        for write in writes:
            if write.op == "create" and write.doc_id in self._docs(write.collection):
                raise DocumentExistsError(
                    "Document already exists.",
                    {"collection": write.collection, "id": write.doc_id},
                )
        for write in writes:
            docs = self._docs(write.collection)
            docs[write.doc_id] = self._apply(docs.get(write.doc_id), write.data, write.merge)


def _after(values: Tuple, cursor: Tuple, directions: List[str]) -> bool:
    """Whether ``values`` sorts strictly after ``cursor`` under ``directions``."""
    for value, bound, direction in zip(values, cursor, directions):
        if value == bound:
            continue
        if direction == DESCENDING:
            return value < bound
        return value > bound
    return False


def create_document_store(config: Optional[FirestoreConfig] = None) -> DocumentStore:
    """Build the configured document store."""
    config = config or get_settings().firestore
    if config.backend == "memory":
        logger.info("Using in-memory document store")
        return InMemoryDocumentStore()
    if config.backend == "firestore":
        return FirestoreDocumentStore(config=config)
    raise ValueError(f"Unknown document store backend: {config.backend}")
