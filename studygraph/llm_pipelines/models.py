import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


class Concept(BaseModel):
    """
    An atomic unit of knowledge.

    `inputs`, `outputs` and `process_steps` are only present when they apply to the concept.
    `dependencies` holds ids of other concepts in the same graph that this one presupposes.
    """

    id: str
    definition: str
    inputs: list[str] | None = None
    outputs: list[str] | None = None
    process_steps: list[str] | None = None
    dependencies: list[str] = Field(default_factory=list)
    common_mistakes: list[str] = Field(default_factory=list)

    @field_validator('definition')
    @classmethod
    def _definition_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('definition must not be empty')
        return value


class SourceKind(StrEnum):
    LECTURE = 'lecture'
    TEXT = 'text'
    UPLOAD = 'upload'
    MANUAL = 'manual'


class GraphSource(BaseModel):
    """Provenance of the content a knowledge graph was extracted from"""

    kind: SourceKind
    content_hash: str | None = None
    metadata: dict[str, Any] | None = None


class KnowledgeGraph(BaseModel):
    """
    Concepts extracted from one piece of source content.

    Graphs are immutable once created, apart from the display-only `title` and `emoji`.
    """

    id: str
    owner_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    source: GraphSource
    concepts: list[Concept]

    title: str | None = None
    emoji: str | None = None

    def concept_ids(self) -> set[str]:
        return {concept.id for concept in self.concepts}


class Flashcard(BaseModel):
    id: str
    concept_id: str
    front: str
    back: str


class QuizQuestion(BaseModel):
    id: str
    concept_id: str
    question: str
    options: list[str]
    correct_answer_index: int
    explanation: str | None = None


class WrittenQuestion(BaseModel):
    id: str
    concept_id: str
    question: str
    rubric: list[str] = Field(default_factory=list)
    sample_answer: str | None = None


class FillInBlankQuestion(BaseModel):
    id: str
    concept_id: str
    text: str
    answer: str
    context: str | None = None


class GenerationMethod(StrEnum):
    AI = 'ai'
    TEMPLATE = 'template'


class MaterialType(StrEnum):
    FLASHCARDS = 'flashcards'
    QUIZ = 'quiz'
    WRITTEN = 'written'
    FILL = 'fill'
    NOTES = 'notes'


class StudyProgress(BaseModel):
    """Correct-answer counters per study category, totals come from the material arrays"""

    multiple_choice: int = 0
    flashcards: int = 0
    fill_in_blanks: int = 0
    written: int = 0


class GradedAnswer(BaseModel):
    answer: str
    correct: bool
    explanation: str | None = None


class UserAnswers(BaseModel):
    quiz_questions: dict[str, int] = Field(default_factory=dict)
    flashcards: dict[str, Literal['correct', 'incorrect']] = Field(default_factory=dict)
    written_questions: dict[str, GradedAnswer] = Field(default_factory=dict)
    fill_in_blank_questions: dict[str, GradedAnswer] = Field(default_factory=dict)


class MaterialBundle(BaseModel):
    """The five material collections produced by one generation batch"""

    flashcards: list[Flashcard] = Field(default_factory=list)
    quiz_questions: list[QuizQuestion] = Field(default_factory=list)
    written_questions: list[WrittenQuestion] = Field(default_factory=list)
    fill_in_blank_questions: list[FillInBlankQuestion] = Field(default_factory=list)
    notes: str = ''

    def select(self, types: Iterable[MaterialType]) -> 'MaterialBundle':
        """Keep only the requested types, everything else is emptied"""
        wanted = set(types)
        return MaterialBundle(
            **{
                MATERIAL_FIELDS[material_type]: getattr(self, MATERIAL_FIELDS[material_type])
                for material_type in wanted
            }
        )


class StudyMaterialSet(MaterialBundle):
    """Derived study artifacts for one knowledge graph"""

    id: str
    knowledge_graph_id: str
    owner_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    generation_method: GenerationMethod
    model: str | None = None
    title: str | None = None
    emoji: str | None = None

    progress: StudyProgress | None = None
    user_answers: UserAnswers | None = None


MATERIAL_FIELDS: dict[MaterialType, str] = {
    MaterialType.FLASHCARDS: 'flashcards',
    MaterialType.QUIZ: 'quiz_questions',
    MaterialType.WRITTEN: 'written_questions',
    MaterialType.FILL: 'fill_in_blank_questions',
    MaterialType.NOTES: 'notes',
}

METHOD_TO_TYPE: dict[str, MaterialType] = {
    'notes': MaterialType.NOTES,
    'flashcards': MaterialType.FLASHCARDS,
    'quiz': MaterialType.QUIZ,
    'written': MaterialType.WRITTEN,
    'fill': MaterialType.FILL,
    # tutoring reads the notes as context, it has nothing of its own to generate
    'tutor': MaterialType.NOTES,
}


def is_populated(materials: MaterialBundle, material_type: MaterialType) -> bool:
    """Whether the collection (or notes string) for `material_type` holds anything"""
    return bool(getattr(materials, MATERIAL_FIELDS[material_type]))


def resolve_material_types(methods: Iterable[str]) -> list[MaterialType]:
    """Map requested study methods to material types, dropping duplicates and unknown names"""
    types: list[MaterialType] = []
    for method in methods:
        material_type = METHOD_TO_TYPE.get(method)
        if material_type is None:
            logger.warning(f'Ignoring unknown study method: {method!r}')
            continue
        if material_type not in types:
            types.append(material_type)
    return types


class ExtractedGraph(BaseModel):
    """Output of a concept-extraction collaborator, before it becomes a stored graph"""

    concepts: list[Concept]
    title: str | None = None
    emoji: str | None = None
