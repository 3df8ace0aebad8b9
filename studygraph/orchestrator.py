import asyncio
import logging
import weakref
from collections.abc import Iterable
from typing import Any, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel

from .errors import AIConfigurationError, ExtractionError, StudyGraphError
from .hashing import hash_content
from .llm_pipelines import ExtractGraphPipeline, GenerateMaterialsPipeline, MaterialCounts
from .llm_pipelines.models import (
    MATERIAL_FIELDS,
    ExtractedGraph,
    GenerationMethod,
    GraphSource,
    KnowledgeGraph,
    MaterialBundle,
    MaterialType,
    SourceKind,
    StudyMaterialSet,
    is_populated,
    resolve_material_types,
)
from .logic import HeuristicConceptExtractor, derive_all_materials
from .settings import Settings
from .storage import (
    GraphStore,
    JsonFileStore,
    MaterialStore,
    create_knowledge_graph,
    create_study_material_set,
)

logger = logging.getLogger(__name__)

DEFAULT_METHODS = ['quiz', 'flashcards', 'written', 'fill', 'notes']


class ConceptExtractor(Protocol):
    async def extract(self, content: str) -> ExtractedGraph: ...


class GenerationResult(BaseModel):
    graph: KnowledgeGraph
    materials: StudyMaterialSet


def missing_types(
    existing: StudyMaterialSet | None, requested: Iterable[MaterialType]
) -> list[MaterialType]:
    """Requested types the existing set does not have yet, all of them if there is no set"""
    if existing is None:
        return list(requested)
    return [
        material_type for material_type in requested if not is_populated(existing, material_type)
    ]


def merge_materials(base: MaterialBundle | None, generated: MaterialBundle) -> dict[str, Any]:
    """Take each generated field when it is non-empty, otherwise keep the base value"""
    base = base or MaterialBundle()
    return {
        field: getattr(generated, field) or getattr(base, field)
        for field in MATERIAL_FIELDS.values()
    }


class GenerationOrchestrator:
    """
    Pipeline controller: content -> knowledge graph -> study materials.

    Reuses the graph of identical content from the same owner, generates only the requested
    material types the stored set is missing, prefers the AI generator and falls back to the
    template engine when it fails.
    """

    def __init__(
        self,
        graph_store: GraphStore,
        material_store: MaterialStore,
        extractor: ConceptExtractor,
        generator: GenerateMaterialsPipeline | None = None,
        *,
        model_name: str | None = None,
        generation_timeout: float | None = None,
    ):
        self.graph_store = graph_store
        self.material_store = material_store
        self.extractor = extractor
        self.generator = generator
        self.model_name = model_name
        self.generation_timeout = generation_timeout
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, owner_id: str, content_hash: str) -> asyncio.Lock:
        key = (owner_id, content_hash)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get_or_create_graph(
        self,
        owner_id: str,
        content: str,
        source_kind: SourceKind,
        content_hash: str,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeGraph:
        graph = await self.graph_store.get_by_content_hash(owner_id, content_hash)
        if graph is not None:
            logger.info(f'Reusing knowledge graph {graph.id} for {content_hash}')
            return graph

        try:
            extracted = await self.extractor.extract(content)
        except ExtractionError:
            raise
        except StudyGraphError as e:
            raise ExtractionError(f'Concept extraction failed: {e}') from e

        graph = create_knowledge_graph(
            owner_id,
            GraphSource(kind=source_kind, content_hash=content_hash, metadata=metadata),
            extracted.concepts,
            title=extracted.title,
            emoji=extracted.emoji,
        )
        await self.graph_store.save(graph)
        logger.info(f'Created knowledge graph {graph.id} with {len(graph.concepts)} concepts')
        return graph

    async def _generate_with_ai(
        self, graph: KnowledgeGraph, types: list[MaterialType]
    ) -> MaterialBundle:
        if self.generator is None:
            raise AIConfigurationError('No AI generator configured')
        generation = self.generator.generate(graph, types)
        if self.generation_timeout is not None:
            return await asyncio.wait_for(generation, timeout=self.generation_timeout)
        return await generation

    async def generate_selected_materials(
        self,
        graph: KnowledgeGraph,
        types: list[MaterialType],
        use_ai: bool = True,
        allow_fallback: bool = True,
    ) -> tuple[MaterialBundle, GenerationMethod]:
        """
        Generate exactly `types` for the graph.

        Any AI failure sends all of `types` to the template engine, AI results of the types
        that did succeed are not kept. With `allow_fallback=False` the failure is raised.
        """
        if use_ai:
            try:
                return await self._generate_with_ai(graph, types), GenerationMethod.AI
            except (StudyGraphError, TimeoutError) as e:
                if not allow_fallback:
                    raise
                logger.warning(f'AI generation failed, falling back to templates: {e!r}')

        return derive_all_materials(graph).select(types), GenerationMethod.TEMPLATE

    async def process_content(
        self,
        owner_id: str,
        content: str,
        source_kind: SourceKind = SourceKind.TEXT,
        metadata: dict[str, Any] | None = None,
        use_ai: bool = True,
        methods: Iterable[str] = DEFAULT_METHODS,
        allow_fallback: bool = True,
    ) -> GenerationResult:
        """
        Turn content into a knowledge graph and the requested study materials.

        Parameters
        ----------
        owner_id : str
            User the graph and materials belong to.
        content : str
            Raw text, hashed as-is for reuse of earlier extractions.
        source_kind : SourceKind
            Where the content came from.
        metadata : dict, optional
            Stored on the graph source for new graphs.
        use_ai : bool, default=True
            Prefer the AI generator, otherwise use templates only.
        methods : iterable of str
            Study methods wanted: flashcards, quiz, written, fill, notes, tutor.
        allow_fallback : bool, default=True
            Fall back to templates when AI generation fails.

        Returns
        -------
        GenerationResult
            The (possibly reused) graph and the merged material set.
        """
        content_hash = hash_content(content)
        requested = resolve_material_types(methods)

        async with self._lock_for(owner_id, content_hash):
            graph = await self.get_or_create_graph(
                owner_id, content, source_kind, content_hash, metadata
            )
            existing = await self.material_store.get_by_graph_id(graph.id)

            to_generate = missing_types(existing, requested)
            if existing is not None and not to_generate:
                logger.info(f'Materials {existing.id} already have {[str(t) for t in requested]}')
                return GenerationResult(graph=graph, materials=existing)

            logger.info(f'Generating {[str(t) for t in to_generate]} for graph {graph.id}')
            generated, method = await self.generate_selected_materials(
                graph, to_generate, use_ai=use_ai, allow_fallback=allow_fallback
            )
            if existing is not None and not any(
                is_populated(generated, material_type) for material_type in to_generate
            ):
                # nothing to add for this graph, e.g. too few concepts for a quiz
                logger.info(f'No new materials for graph {graph.id}, keeping {existing.id}')
                return GenerationResult(graph=graph, materials=existing)

            merged = merge_materials(existing, generated)
            model = self.model_name if method == GenerationMethod.AI else None

            if existing is not None:
                materials = await self.material_store.update(
                    existing.id, generation_method=method, model=model, **merged
                )
                if materials is None:
                    raise StudyGraphError(f'Material set {existing.id} disappeared during update')
            else:
                materials = create_study_material_set(
                    graph.id,
                    owner_id,
                    MaterialBundle(**merged),
                    generation_method=method,
                    model=model,
                    title=graph.title,
                    emoji=graph.emoji,
                )
                await self.material_store.save(materials)

        return GenerationResult(graph=graph, materials=materials)


def build_openai_client(settings: Settings) -> AsyncOpenAI | None:
    if not settings.ai_configured:
        return None
    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=str(settings.openai_base_url) if settings.openai_base_url else None,
        timeout=settings.openai_timeout,
        max_retries=settings.openai_max_retries,
    )


def build_orchestrator(
    settings: Settings, client: AsyncOpenAI | None = None
) -> GenerationOrchestrator:
    """Wire stores and collaborators from settings, offline when no client is available"""
    backend = JsonFileStore(settings.data_dir)
    if client is None:
        extractor: ConceptExtractor = HeuristicConceptExtractor()
        generator = None
    else:
        extractor = ExtractGraphPipeline(client, settings.model_name, settings.language)
        generator = GenerateMaterialsPipeline(
            client,
            settings.model_name,
            settings.language,
            MaterialCounts(
                flashcards=settings.flashcard_count,
                quiz=settings.quiz_count,
                written=settings.written_count,
                fill=settings.fill_count,
            ),
        )

    return GenerationOrchestrator(
        GraphStore(backend),
        MaterialStore(backend),
        extractor,
        generator,
        model_name=settings.model_name,
        generation_timeout=settings.generation_timeout,
    )
