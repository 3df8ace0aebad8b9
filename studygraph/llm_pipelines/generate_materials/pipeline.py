import asyncio
import logging
from dataclasses import dataclass
from typing import TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel

from studygraph.errors import MalformedResponseError
from studygraph.llm_pipelines.generate_materials.prompts import material_prompt
from studygraph.llm_pipelines.models import (
    FillInBlankQuestion,
    Flashcard,
    KnowledgeGraph,
    MaterialBundle,
    MaterialType,
    QuizQuestion,
    WrittenQuestion,
)
from studygraph.llm_pipelines.response_model import (
    FillInBlankResponse,
    FlashcardsResponse,
    NotesResponse,
    QuizResponse,
    WrittenResponse,
)
from studygraph.llm_pipelines.utils import (
    request_structured,
    require_client,
    serialize_concepts,
)
from studygraph.notes import validate_notes

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)

QUIZ_OPTION_COUNT = 4
BLANK = '___'


@dataclass
class MaterialCounts:
    """How many items to ask for per material type"""

    flashcards: int = 10
    quiz: int = 10
    written: int = 5
    fill: int = 10


def _known_concept(items: list[T], graph: KnowledgeGraph, kind: str) -> list[T]:
    """Drop items that point at concepts the graph does not have"""
    concept_ids = graph.concept_ids()
    kept = [item for item in items if item.concept_id in concept_ids]
    if len(kept) != len(items):
        logger.warning(f'Dropped {len(items) - len(kept)} {kind} with unknown concept_id')
    return kept


def _ensure_not_empty(items: list, graph: KnowledgeGraph, kind: str) -> list:
    if graph.concepts and not items:
        raise MalformedResponseError(f'No usable {kind} in response')
    return items


class GenerateMaterialsPipeline:
    """
    LLM pipeline for deriving study materials from a knowledge graph.

    Produces the same shapes as the template engine in `studygraph.logic`, with explanations
    on quiz questions and sample answers on written questions on top. Every call raises
    `AIConfigurationError` when no client is configured; falling back to templates is up to
    the caller.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None,
        model: str,
        language: str = 'en',
        counts: MaterialCounts | None = None,
    ):
        self._client: AsyncOpenAI | None = client
        self._model: str = model
        self._language: str = language
        self._counts: MaterialCounts = counts or MaterialCounts()

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def _request(
        self,
        material: str,
        graph: KnowledgeGraph,
        response_model: type[T],
        count: int | None = None,
        max_tokens: int | None = None,
    ) -> T:
        require_client(self._client)
        messages = material_prompt(
            material=material,
            concepts_json=serialize_concepts(graph.concepts),
            count=count,
            language=self._language,
            response_model=response_model,
        )
        limits = {'max_tokens': max_tokens} if max_tokens else {}
        return await request_structured(
            self._client,
            model=self._model,
            messages=messages,
            response_model=response_model,
            temperature=0.7,
            **limits,
        )

    async def generate_flashcards(self, graph: KnowledgeGraph) -> list[Flashcard]:
        response = await self._request(
            'flashcards', graph, FlashcardsResponse, count=self._counts.flashcards
        )
        cards = _known_concept(response.flashcards, graph, 'flashcards')
        return _ensure_not_empty(
            [
                Flashcard(
                    id=f'fc_ai_{graph.id}_{i}',
                    concept_id=card.concept_id,
                    front=card.front,
                    back=card.back,
                )
                for i, card in enumerate(cards)
            ],
            graph,
            'flashcards',
        )

    async def generate_quiz_questions(self, graph: KnowledgeGraph) -> list[QuizQuestion]:
        response = await self._request('quiz', graph, QuizResponse, count=self._counts.quiz)
        questions = [
            question
            for question in _known_concept(response.questions, graph, 'quiz questions')
            if len(question.options) == QUIZ_OPTION_COUNT
            and 0 <= question.correct_answer_index < QUIZ_OPTION_COUNT
        ]
        return _ensure_not_empty(
            [
                QuizQuestion(
                    id=f'quiz_ai_{graph.id}_{i}',
                    concept_id=question.concept_id,
                    question=question.question,
                    options=question.options,
                    correct_answer_index=question.correct_answer_index,
                    explanation=question.explanation,
                )
                for i, question in enumerate(questions)
            ],
            graph,
            'quiz questions',
        )

    async def generate_written_questions(self, graph: KnowledgeGraph) -> list[WrittenQuestion]:
        response = await self._request(
            'written', graph, WrittenResponse, count=self._counts.written
        )
        questions = _known_concept(response.questions, graph, 'written questions')
        return _ensure_not_empty(
            [
                WrittenQuestion(
                    id=f'written_ai_{graph.id}_{i}',
                    concept_id=question.concept_id,
                    question=question.question,
                    rubric=question.rubric,
                    sample_answer=question.sample_answer,
                )
                for i, question in enumerate(questions)
            ],
            graph,
            'written questions',
        )

    async def generate_fill_in_blank_questions(
        self, graph: KnowledgeGraph
    ) -> list[FillInBlankQuestion]:
        response = await self._request('fill', graph, FillInBlankResponse, count=self._counts.fill)
        questions = [
            question
            for question in _known_concept(response.questions, graph, 'fill-in-the-blank items')
            if BLANK in question.text
        ]
        return _ensure_not_empty(
            [
                FillInBlankQuestion(
                    id=f'fib_ai_{graph.id}_{i}',
                    concept_id=question.concept_id,
                    text=question.text,
                    answer=question.answer,
                    context=question.context,
                )
                for i, question in enumerate(questions)
            ],
            graph,
            'fill-in-the-blank items',
        )

    async def generate_notes(self, graph: KnowledgeGraph) -> str:
        response = await self._request('notes', graph, NotesResponse, max_tokens=4000)
        return validate_notes(response.notes)

    async def generate(self, graph: KnowledgeGraph, types: list[MaterialType]) -> MaterialBundle:
        """
        Generate the requested material types concurrently.

        All calls run to completion before returning. If any of them failed, the first error
        is raised and the successful results are discarded.
        """
        require_client(self._client)
        generators = {
            MaterialType.FLASHCARDS: self.generate_flashcards,
            MaterialType.QUIZ: self.generate_quiz_questions,
            MaterialType.WRITTEN: self.generate_written_questions,
            MaterialType.FILL: self.generate_fill_in_blank_questions,
            MaterialType.NOTES: self.generate_notes,
        }
        selected = [material_type for material_type in generators if material_type in types]
        results = await asyncio.gather(
            *(generators[material_type](graph) for material_type in selected),
            return_exceptions=True,
        )

        failures = [
            (material_type, result)
            for material_type, result in zip(selected, results, strict=True)
            if isinstance(result, BaseException)
        ]
        for material_type, error in failures:
            logger.warning(f'AI generation of {material_type} failed: {error}')
        if failures:
            raise failures[0][1]

        by_type = dict(zip(selected, results, strict=True))
        return MaterialBundle(
            flashcards=by_type.get(MaterialType.FLASHCARDS, []),
            quiz_questions=by_type.get(MaterialType.QUIZ, []),
            written_questions=by_type.get(MaterialType.WRITTEN, []),
            fill_in_blank_questions=by_type.get(MaterialType.FILL, []),
            notes=by_type.get(MaterialType.NOTES, ''),
        )
