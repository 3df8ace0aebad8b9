import json
import logging
import re
from typing import Any, TypeVar

from openai import AsyncOpenAI, OpenAIError
from openai.types.chat import ChatCompletionMessageParam
from pydantic import BaseModel, ValidationError

from studygraph.errors import (
    AIConfigurationError,
    MalformedResponseError,
    MaterialGenerationError,
)
from studygraph.llm_pipelines.models import Concept

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)

_NON_WORD = re.compile(r'[^0-9a-zA-Z]+')


def humanize_id(concept_id: str) -> str:
    """
    Convert concept id into display name.

    `mitochondria_energy_production` -> `Mitochondria Energy Production`. The fill-in-the-blank
    matcher searches definitions for exactly this string.
    """
    return ' '.join(part[:1].upper() + part[1:] for part in concept_id.split('_') if part)


def to_concept_id(name: str) -> str:
    """Normalize a free-form concept name into a snake_case id"""
    return _NON_WORD.sub('_', name.strip()).strip('_').lower()


def topological_sort(concepts: list[Concept]) -> list[Concept]:
    """
    Order concepts so that every dependency comes before its dependents.

    Each concept is emitted once and the original order breaks ties. A dependency that is
    already on the current visit path closes a cycle and is skipped, so the concept that
    started the cycle ends up first.
    """
    by_id = {concept.id: concept for concept in concepts}
    visited: set[str] = set()
    on_path: set[str] = set()
    ordered: list[Concept] = []

    def _visit(concept: Concept):
        if concept.id in visited:
            return
        on_path.add(concept.id)

        for dependency_id in concept.dependencies:
            if dependency_id in on_path:
                logger.warning(f'Dependency cycle through {concept.id!r} -> {dependency_id!r}')
                continue
            dependency = by_id.get(dependency_id)
            if dependency is not None:
                _visit(dependency)

        on_path.discard(concept.id)
        visited.add(concept.id)
        ordered.append(concept)

    for concept in concepts:
        _visit(concept)

    return ordered


def serialize_concepts(concepts: list[Concept]) -> str:
    """Serialize concepts for the prompts, leaving out fields that do not apply"""
    return json.dumps(
        [concept.model_dump(exclude_none=True) for concept in concepts],
        ensure_ascii=False,
        indent=2,
    )


def require_client(client: AsyncOpenAI | None) -> AsyncOpenAI:
    if client is None:
        raise AIConfigurationError('OpenAI client is not configured, set OPENAI_API_KEY')
    return client


async def request_structured(
    client: AsyncOpenAI | None,
    *,
    model: str,
    messages: list[ChatCompletionMessageParam],
    response_model: type[T],
    **kwargs: Any,
) -> T:
    """
    Run one structured-output chat completion.

    Raises
    ------
    AIConfigurationError
        If no client is configured.
    MalformedResponseError
        If the answer could not be parsed into `response_model`.
    MaterialGenerationError
        On transport or API errors.
    """
    client = require_client(client)
    try:
        response = await client.chat.completions.parse(
            model=model,
            messages=messages,
            response_format=response_model,
            **kwargs,
        )
    except (ValidationError, json.JSONDecodeError) as e:
        raise MalformedResponseError(f'{response_model.__name__}: {e}') from e
    except OpenAIError as e:
        raise MaterialGenerationError(f'OpenAI request failed: {e}') from e

    message = response.choices[0].message
    if message.parsed is None:
        refusal = getattr(message, 'refusal', None)
        raise MalformedResponseError(
            f'{response_model.__name__} missing from response'
            + (f' (refusal: {refusal})' if refusal else '')
        )
    return message.parsed
