"""Structured output shapes requested from the text-generation collaborator"""

from inspect import cleandoc

from pydantic import BaseModel, Field


class ExtractedConcept(BaseModel):
    """A single atomic concept found in the content"""

    id: str = Field(
        description='Stable snake_case identifier, e.g. "mitochondria_energy_production"'
    )
    definition: str = Field(description='Concise, factual explanation of the concept')
    inputs: list[str] | None = Field(
        description='What goes into this concept. null when not applicable'
    )
    outputs: list[str] | None = Field(
        description='What this concept produces. null when not applicable'
    )
    process_steps: list[str] | None = Field(
        description='Ordered steps if the concept is a process. null otherwise'
    )
    dependencies: list[str] = Field(
        description=cleandoc("""
            Ids of other concepts from the same response that this concept relies on.
            Empty list when there are none. Must not form cycles.
        """)
    )
    common_mistakes: list[str] = Field(
        description='Student confusions or misconceptions mentioned or implied in the content'
    )


class ConceptExtractionResponse(BaseModel):
    """Knowledge graph extracted from one piece of content"""

    title: str | None = Field(description='Short topic title, e.g. "Electromagnetism"')
    emoji: str | None = Field(description='Single emoji for the topic')
    concepts: list[ExtractedConcept]


class GeneratedFlashcard(BaseModel):
    concept_id: str = Field(description='Id of the concept from the knowledge graph')
    front: str = Field(description='Clear, specific question')
    back: str = Field(description='Concise, accurate answer')


class FlashcardsResponse(BaseModel):
    flashcards: list[GeneratedFlashcard]


class GeneratedQuizQuestion(BaseModel):
    concept_id: str = Field(description='Id of the concept from the knowledge graph')
    question: str
    options: list[str] = Field(description='Exactly 4 answer options')
    correct_answer_index: int = Field(description='Index of the correct option, 0 to 3')
    explanation: str = Field(description='Why the correct answer is correct')


class QuizResponse(BaseModel):
    questions: list[GeneratedQuizQuestion]


class GeneratedWrittenQuestion(BaseModel):
    concept_id: str = Field(description='Id of the concept from the knowledge graph')
    question: str = Field(description='Short question, one sentence at most')
    rubric: list[str] = Field(description='Points a good answer should address')
    sample_answer: str = Field(description='Example of a good answer, 1-2 sentences')


class WrittenResponse(BaseModel):
    questions: list[GeneratedWrittenQuestion]


class GeneratedFillInBlankQuestion(BaseModel):
    concept_id: str = Field(description='Id of the concept from the knowledge graph')
    text: str = Field(description='Text with ___ at the location of the blank')
    answer: str = Field(description='The word or phrase that fills the blank')
    context: str | None = Field(description='Additional context if needed')


class FillInBlankResponse(BaseModel):
    questions: list[GeneratedFillInBlankQuestion]


class NotesResponse(BaseModel):
    notes: str = Field(description='Markdown notes in the exact required format')
