import logging

from openai import AsyncOpenAI

from studygraph.errors import ExtractionError, StudyGraphError
from studygraph.llm_pipelines.extract_graph.prompts import extract_concepts_prompt
from studygraph.llm_pipelines.models import Concept, ExtractedGraph
from studygraph.llm_pipelines.response_model import (
    ConceptExtractionResponse,
    ExtractedConcept,
)
from studygraph.llm_pipelines.utils import request_structured, to_concept_id

logger = logging.getLogger(__name__)


def preprocess_concepts(extracted: list[ExtractedConcept]) -> list[Concept]:
    """
    Normalize ids and clear mistaken dependencies.

    Ids are forced to snake_case and duplicates keep their first occurrence. Dependencies on
    unknown ids and on the concept itself are dropped, as are concepts with an empty
    definition.
    """
    concepts: list[Concept] = []
    seen: set[str] = set()
    for item in extracted:
        concept_id = to_concept_id(item.id)
        if not concept_id or concept_id in seen or not item.definition.strip():
            continue
        seen.add(concept_id)
        concepts.append(
            Concept(
                id=concept_id,
                definition=item.definition.strip(),
                inputs=item.inputs or None,
                outputs=item.outputs or None,
                process_steps=item.process_steps or None,
                dependencies=[to_concept_id(dep) for dep in item.dependencies],
                common_mistakes=item.common_mistakes,
            )
        )

    for concept in concepts:
        dependencies = []
        for dep in concept.dependencies:
            if dep in seen and dep != concept.id and dep not in dependencies:
                dependencies.append(dep)
        if len(dependencies) != len(concept.dependencies):
            logger.warning(
                f'Dropped unknown dependencies of {concept.id!r}: '
                f'{sorted(set(concept.dependencies) - set(dependencies))}'
            )
        concept.dependencies = dependencies

    return concepts


class ExtractGraphPipeline:
    """
    LLM pipeline turning raw content into a list of atomic concepts.

    This is the concept-extraction collaborator of the orchestrator: failures are raised as
    `ExtractionError` and are fatal for content that has no graph yet.
    """

    def __init__(self, client: AsyncOpenAI | None, model: str, language: str = 'en'):
        self._client: AsyncOpenAI | None = client
        self._model: str = model
        self._language: str = language

    async def extract(self, content: str) -> ExtractedGraph:
        """
        Extract a knowledge graph from content.

        Parameters
        ----------
        content : str
            Raw text: transcript, OCR output, pasted notes.

        Returns
        -------
        ExtractedGraph
            Concepts with optional title and emoji.
        """
        messages = extract_concepts_prompt(
            content=content,
            language=self._language,
            response_model=ConceptExtractionResponse,
        )
        try:
            response = await request_structured(
                self._client,
                model=self._model,
                messages=messages,
                response_model=ConceptExtractionResponse,
                temperature=0.0,
                seed=42,
            )
        except StudyGraphError as e:
            raise ExtractionError(f'Concept extraction failed: {e}') from e

        concepts = preprocess_concepts(response.concepts)
        if not concepts:
            raise ExtractionError('Concept extraction returned no concepts')

        return ExtractedGraph(concepts=concepts, title=response.title, emoji=response.emoji)
