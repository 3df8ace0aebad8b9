from __future__ import annotations

import logging
import random
import re
from typing import List

from .errors import ExtractionError
from .llm_pipelines.models import (
    Concept,
    ExtractedGraph,
    FillInBlankQuestion,
    Flashcard,
    KnowledgeGraph,
    MaterialBundle,
    QuizQuestion,
    WrittenQuestion,
)
from .llm_pipelines.utils import humanize_id, to_concept_id, topological_sort
from .notes import DEFAULT_TITLE, KeySection, render_notes

logger = logging.getLogger(__name__)

BLANK = '___'
DISTRACTOR_COUNT = 3
MAX_KEY_TERMS = 2
MAX_SHUFFLE_ATTEMPTS = 20

# Capitalized words longer than five characters are treated as terms worth testing
KEY_TERM_PATTERN = re.compile(r'\b[A-Z][\w\'-]{5,}\b')


def generate_flashcards(graph: KnowledgeGraph) -> List[Flashcard]:
    flashcards = []
    for concept in graph.concepts:
        name = humanize_id(concept.id)
        flashcards.append(
            Flashcard(
                id=f'fc_{concept.id}_def',
                concept_id=concept.id,
                front=f'What is {name}?',
                back=concept.definition,
            )
        )
        if concept.inputs:
            flashcards.append(
                Flashcard(
                    id=f'fc_{concept.id}_inputs',
                    concept_id=concept.id,
                    front=f'What are the inputs for {name}?',
                    back=', '.join(concept.inputs),
                )
            )
        if concept.outputs:
            flashcards.append(
                Flashcard(
                    id=f'fc_{concept.id}_outputs',
                    concept_id=concept.id,
                    front=f'What are the outputs of {name}?',
                    back=', '.join(concept.outputs),
                )
            )
        if concept.process_steps:
            flashcards.append(
                Flashcard(
                    id=f'fc_{concept.id}_steps',
                    concept_id=concept.id,
                    front=f'What are the steps in {name}?',
                    back='\n'.join(
                        f'{i}. {step}' for i, step in enumerate(concept.process_steps, 1)
                    ),
                )
            )
    return flashcards


def _shuffled(items: list, rng: random.Random) -> list:
    copy = list(items)
    rng.shuffle(copy)
    return copy


def _definition_question(
    concept: Concept, others: List[Concept], rng: random.Random
) -> QuizQuestion:
    distractors = [other.definition for other in rng.sample(others, DISTRACTOR_COUNT)]
    options = _shuffled(
        [(concept.definition, True)] + [(text, False) for text in distractors], rng
    )
    return QuizQuestion(
        id=f'quiz_{concept.id}_def',
        concept_id=concept.id,
        question=f'What is {humanize_id(concept.id)}?',
        options=[text for text, _ in options],
        correct_answer_index=next(i for i, (_, correct) in enumerate(options) if correct),
    )


def _order_question(concept: Concept, rng: random.Random) -> QuizQuestion | None:
    steps = concept.process_steps or []
    if len(set(steps)) < 2:
        return None

    distractors = []
    for _ in range(DISTRACTOR_COUNT):
        for _ in range(MAX_SHUFFLE_ATTEMPTS):
            candidate = _shuffled(steps, rng)
            if candidate != steps:
                distractors.append(candidate)
                break
    if not distractors:
        return None
    # short sequences have few permutations, repeat one so there are always four options
    while len(distractors) < DISTRACTOR_COUNT:
        distractors.append(rng.choice(distractors))

    options = _shuffled([(steps, True)] + [(order, False) for order in distractors], rng)
    return QuizQuestion(
        id=f'quiz_{concept.id}_order',
        concept_id=concept.id,
        question=f'What is the correct order of steps in {humanize_id(concept.id)}?',
        options=[' → '.join(order) for order, _ in options],
        correct_answer_index=next(i for i, (_, correct) in enumerate(options) if correct),
    )


def generate_quiz_questions(
    graph: KnowledgeGraph, rng: random.Random | None = None
) -> List[QuizQuestion]:
    rng = rng or random.Random()
    questions = []
    for concept in graph.concepts:
        others = [other for other in graph.concepts if other.id != concept.id]
        if len(others) >= DISTRACTOR_COUNT:
            questions.append(_definition_question(concept, others, rng))

        if concept.process_steps and len(concept.process_steps) > 1:
            order_question = _order_question(concept, rng)
            if order_question:
                questions.append(order_question)
    return questions


def generate_written_questions(graph: KnowledgeGraph) -> List[WrittenQuestion]:
    questions = []
    for concept in graph.concepts:
        question = f'Explain {humanize_id(concept.id)}.'
        rubric = [f'Provides accurate definition: {concept.definition}']

        if concept.inputs:
            question += ' Include what inputs it requires.'
            rubric.append(f'Mentions inputs: {", ".join(concept.inputs)}')
        if concept.outputs:
            question += ' Include what outputs it produces.'
            rubric.append(f'Mentions outputs: {", ".join(concept.outputs)}')
        if concept.process_steps:
            question += ' Describe the main steps involved.'
            rubric.append('Describes process steps in order')
        if concept.dependencies:
            related = ', '.join(humanize_id(dep) for dep in concept.dependencies)
            rubric.append(f'Explains relationship to: {related}')

        questions.append(
            WrittenQuestion(
                id=f'written_{concept.id}',
                concept_id=concept.id,
                question=question,
                rubric=rubric,
            )
        )
    return questions


def _blank_out(text: str, term: str, count: int = 0) -> str:
    pattern = re.compile(rf'\b{re.escape(term)}\b', re.IGNORECASE)
    return pattern.sub(BLANK, text, count=count)


def generate_fill_in_blank_questions(graph: KnowledgeGraph) -> List[FillInBlankQuestion]:
    questions = []
    for concept in graph.concepts:
        name = humanize_id(concept.id)
        text = _blank_out(concept.definition, name)
        if text != concept.definition:
            questions.append(
                FillInBlankQuestion(
                    id=f'fib_{concept.id}_name',
                    concept_id=concept.id,
                    text=text,
                    answer=name,
                )
            )

        terms = []
        for term in KEY_TERM_PATTERN.findall(concept.definition):
            if term.lower() != name.lower() and term not in terms:
                terms.append(term)

        for term in terms[:MAX_KEY_TERMS]:
            blanked = _blank_out(concept.definition, term, count=1)
            if blanked != concept.definition:
                questions.append(
                    FillInBlankQuestion(
                        id=f'fib_{concept.id}_{term.lower()}',
                        concept_id=concept.id,
                        text=blanked,
                        answer=term,
                    )
                )
    return questions


def generate_notes(graph: KnowledgeGraph) -> str:
    """Render structured notes with concepts in dependency order"""
    title = humanize_id(graph.concepts[0].id) if graph.concepts else DEFAULT_TITLE
    ordered = topological_sort(graph.concepts)

    core_idea = ' '.join(concept.definition.strip() for concept in ordered)
    sections = [
        KeySection(
            name=humanize_id(concept.id),
            explanation=concept.definition,
            steps=list(concept.process_steps or []),
        )
        for concept in ordered
    ]
    return render_notes(title=title, core_idea=core_idea, sections=sections)


def derive_all_materials(
    graph: KnowledgeGraph, rng: random.Random | None = None
) -> MaterialBundle:
    """Derive every material type from the graph without any external calls"""
    return MaterialBundle(
        flashcards=generate_flashcards(graph),
        quiz_questions=generate_quiz_questions(graph, rng=rng),
        written_questions=generate_written_questions(graph),
        fill_in_blank_questions=generate_fill_in_blank_questions(graph),
        notes=generate_notes(graph),
    )


_SENTENCE_END = re.compile(r'(?<=[.!?])\s+')
_DEFINITION_SENTENCE = re.compile(
    r'^(?:(?:the|a|an)\s+)?(?P<term>[A-Za-z][\w\- ]{1,60}?)\s+'
    r'(?:is|are|refers to|means)\s+(?P<rest>.+)$',
    re.IGNORECASE,
)
_PRONOUNS = {'it', 'this', 'that', 'they', 'these', 'those', 'there', 'he', 'she', 'which'}


def _split_sentences(content: str) -> List[str]:
    text = ' '.join(content.split())
    return [sentence.strip() for sentence in _SENTENCE_END.split(text) if sentence.strip()]


class HeuristicConceptExtractor:
    """
    Offline concept extractor.

    Picks definition-like sentences ("X is ...", "X refers to ...") out of the content and
    turns each subject into a concept. A concept depends on every earlier concept whose
    name appears in its definition, so the result is always acyclic.
    """

    async def extract(self, content: str) -> ExtractedGraph:
        concepts: List[Concept] = []
        for sentence in _split_sentences(content):
            match = _DEFINITION_SENTENCE.match(sentence)
            if not match:
                continue
            term = match.group('term').strip()
            if term.lower() in _PRONOUNS:
                continue
            concept_id = to_concept_id(term)
            if not concept_id or any(c.id == concept_id for c in concepts):
                continue

            dependencies = [
                earlier.id
                for earlier in concepts
                if re.search(
                    rf'\b{re.escape(humanize_id(earlier.id))}\b', sentence, re.IGNORECASE
                )
            ]
            concepts.append(
                Concept(id=concept_id, definition=sentence, dependencies=dependencies)
            )

        if not concepts:
            raise ExtractionError('No definition-like sentences found in content')

        logger.info(f'Heuristically extracted {len(concepts)} concepts')
        return ExtractedGraph(concepts=concepts, title=humanize_id(concepts[0].id), emoji=None)
