"""
Local-first persistence for knowledge graphs and study material sets.

Documents are kept as JSON strings in a key-value backend under `<prefix><id>` keys, with a
JSON list of ids under an index key so they can be listed. The local backend is the source
of truth. A `RemoteSync` can be attached as a backing store: writes go local first and then
remote, and local misses are looked up remotely and cached.
"""

import json
import logging
import os
import re
import threading
import uuid
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import StorageError
from .llm_pipelines.models import (
    Concept,
    GenerationMethod,
    GraphSource,
    KnowledgeGraph,
    MaterialBundle,
    StudyMaterialSet,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)

GRAPH_PREFIX = 'kg_'
GRAPH_INDEX_KEY = 'kg_index'
MATERIALS_PREFIX = 'materials_'
MATERIALS_INDEX_KEY = 'materials_index'

_VALID_KEY = re.compile(r'^[A-Za-z0-9_.-]+$')


class KeyValueStore(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStore:
    """Process-local backend, nothing survives a restart"""

    def __init__(self):
        self._items: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_item(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class JsonFileStore:
    """One `<key>.json` file per key under `directory`, with an in-memory read cache"""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f'Cannot create data directory {self.directory}: {e}') from e

    def _path(self, key: str) -> Path:
        if not _VALID_KEY.match(key):
            raise StorageError(f'Invalid storage key: {key!r}')
        return self.directory / f'{key}.json'

    def get_item(self, key: str) -> str | None:
        # no file can exist under a key that could never be written
        if not _VALID_KEY.match(key):
            return None
        path = self._path(key)
        with self._lock:
            if key in self._cache:
                return self._cache[key]
            if not path.exists():
                return None
            try:
                value = path.read_text(encoding='utf-8')
            except OSError as e:
                raise StorageError(f'Failed to read {path}: {e}') from e
            self._cache[key] = value
            return value

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix('.json.tmp')
        with self._lock:
            try:
                tmp_path.write_text(value, encoding='utf-8')
                os.replace(tmp_path, path)
            except OSError as e:
                raise StorageError(f'Failed to write {path}: {e}') from e
            self._cache[key] = value

    def remove_item(self, key: str) -> None:
        if not _VALID_KEY.match(key):
            return
        path = self._path(key)
        with self._lock:
            self._cache.pop(key, None)
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f'Failed to remove {path}: {e}') from e


class RemoteSync(Protocol):
    """Backing store for syncing documents across devices, keyed by collection and id"""

    async def push(self, collection: str, owner_id: str, document: dict[str, Any]) -> None: ...

    async def fetch(self, collection: str, document_id: str) -> dict[str, Any] | None: ...

    async def remove(self, collection: str, document_id: str) -> None: ...


class _DocumentStore(Generic[T]):
    collection: str
    prefix: str
    index_key: str
    document_model: type[T]

    def __init__(self, backend: KeyValueStore, remote: RemoteSync | None = None):
        self._backend = backend
        self._remote = remote

    def _ids(self) -> list[str]:
        raw = self._backend.get_item(self.index_key)
        if raw is None:
            return []
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f'Corrupt index {self.index_key}: {e}') from e

    def _key(self, document_id: str) -> str | None:
        """Backend key of a document, None for ids that would collide with the index key"""
        key = f'{self.prefix}{document_id}'
        return None if key == self.index_key else key

    def _read(self, document_id: str) -> T | None:
        key = self._key(document_id)
        if key is None:
            return None
        raw = self._backend.get_item(key)
        if raw is None:
            return None
        try:
            return self.document_model.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f'Corrupt document {key}: {e}') from e

    def _write(self, document_id: str, document: T) -> None:
        key = self._key(document_id)
        if key is None:
            raise StorageError(f'Reserved document id: {document_id!r}')
        self._backend.set_item(key, document.model_dump_json())
        ids = self._ids()
        if document_id not in ids:
            ids.append(document_id)
            self._backend.set_item(self.index_key, json.dumps(ids))

    def _remove(self, document_id: str) -> None:
        key = self._key(document_id)
        if key is None:
            return
        self._backend.remove_item(key)
        ids = self._ids()
        if document_id in ids:
            ids.remove(document_id)
            self._backend.set_item(self.index_key, json.dumps(ids))

    def _all(self) -> list[T]:
        documents = []
        for document_id in self._ids():
            document = self._read(document_id)
            if document is not None:
                documents.append(document)
        return documents

    async def _push(self, owner_id: str, document: T) -> None:
        if self._remote is not None:
            await self._remote.push(self.collection, owner_id, document.model_dump(mode='json'))

    async def _fetch(self, document_id: str) -> T | None:
        if self._remote is None:
            return None
        data = await self._remote.fetch(self.collection, document_id)
        if data is None:
            return None
        try:
            document = self.document_model.model_validate(data)
        except ValidationError as e:
            raise StorageError(f'Corrupt remote document {document_id}: {e}') from e
        self._write(document_id, document)
        return document

    async def _delete(self, document_id: str) -> None:
        self._remove(document_id)
        if self._remote is not None:
            await self._remote.remove(self.collection, document_id)


class GraphStore(_DocumentStore[KnowledgeGraph]):
    collection = 'knowledge_graphs'
    prefix = GRAPH_PREFIX
    index_key = GRAPH_INDEX_KEY
    document_model = KnowledgeGraph

    async def save(self, graph: KnowledgeGraph) -> None:
        """Insert or replace the graph by id"""
        self._write(graph.id, graph)
        await self._push(graph.owner_id, graph)

    async def get(self, graph_id: str) -> KnowledgeGraph | None:
        return self._read(graph_id) or await self._fetch(graph_id)

    async def get_by_content_hash(self, owner_id: str, content_hash: str) -> KnowledgeGraph | None:
        """First graph of `owner_id` whose source has `content_hash`"""
        for graph in self._all():
            if graph.owner_id == owner_id and graph.source.content_hash == content_hash:
                return graph
        return None

    async def list(self, owner_id: str | None = None) -> list[KnowledgeGraph]:
        return [graph for graph in self._all() if owner_id is None or graph.owner_id == owner_id]

    async def delete(self, graph_id: str) -> None:
        await self._delete(graph_id)


class MaterialStore(_DocumentStore[StudyMaterialSet]):
    collection = 'study_materials'
    prefix = MATERIALS_PREFIX
    index_key = MATERIALS_INDEX_KEY
    document_model = StudyMaterialSet

    UPDATABLE_FIELDS = frozenset(
        {
            'flashcards',
            'quiz_questions',
            'written_questions',
            'fill_in_blank_questions',
            'notes',
            'generation_method',
            'model',
            'title',
            'emoji',
            'progress',
            'user_answers',
        }
    )

    async def save(self, material_set: StudyMaterialSet) -> None:
        self._write(material_set.id, material_set)
        await self._push(material_set.owner_id, material_set)

    async def get(self, material_id: str) -> StudyMaterialSet | None:
        return self._read(material_id) or await self._fetch(material_id)

    async def get_by_graph_id(self, graph_id: str) -> StudyMaterialSet | None:
        for material_set in self._all():
            if material_set.knowledge_graph_id == graph_id:
                return material_set
        return None

    async def update(self, material_id: str, **updates: Any) -> StudyMaterialSet | None:
        """
        Apply a partial update and stamp `updated_at`.

        Returns the updated set, or None when `material_id` is unknown.
        """
        unknown = set(updates) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f'Fields cannot be updated: {sorted(unknown)}')

        existing = await self.get(material_id)
        if existing is None:
            return None

        updated = StudyMaterialSet.model_validate(
            existing.model_dump() | updates | {'updated_at': utc_now()}
        )
        await self.save(updated)
        return updated

    async def list(self, owner_id: str | None = None) -> list[StudyMaterialSet]:
        return [
            material_set
            for material_set in self._all()
            if owner_id is None or material_set.owner_id == owner_id
        ]

    async def delete(self, material_id: str) -> None:
        await self._delete(material_id)


def create_knowledge_graph(
    owner_id: str,
    source: GraphSource,
    concepts: list[Concept],
    title: str | None = None,
    emoji: str | None = None,
) -> KnowledgeGraph:
    now = utc_now()
    return KnowledgeGraph(
        id=f'kg_{uuid.uuid4().hex}',
        owner_id=owner_id,
        created_at=now,
        updated_at=now,
        source=source,
        concepts=concepts,
        title=title,
        emoji=emoji,
    )


def create_study_material_set(
    knowledge_graph_id: str,
    owner_id: str,
    materials: MaterialBundle,
    generation_method: GenerationMethod,
    model: str | None = None,
    title: str | None = None,
    emoji: str | None = None,
) -> StudyMaterialSet:
    now = utc_now()
    return StudyMaterialSet(
        id=f'mat_{uuid.uuid4().hex}',
        knowledge_graph_id=knowledge_graph_id,
        owner_id=owner_id,
        created_at=now,
        updated_at=now,
        generation_method=generation_method,
        model=model,
        title=title,
        emoji=emoji,
        flashcards=materials.flashcards,
        quiz_questions=materials.quiz_questions,
        written_questions=materials.written_questions,
        fill_in_blank_questions=materials.fill_in_blank_questions,
        notes=materials.notes,
    )
