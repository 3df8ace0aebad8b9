"""
Shared fixtures: sample knowledge graphs, in-memory stores and collaborator fakes.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from studygraph.errors import ExtractionError
from studygraph.llm_pipelines.models import (
    Concept,
    ExtractedGraph,
    GraphSource,
    KnowledgeGraph,
    MaterialBundle,
    SourceKind,
)
from studygraph.orchestrator import GenerationOrchestrator
from studygraph.storage import GraphStore, MaterialStore, MemoryStore

PHOTOSYNTHESIS_TEXT = (
    'Photosynthesis is the process by which plants convert sunlight into chemical energy. '
    'Chlorophyll is a green pigment that absorbs light.'
)


def sample_concepts() -> list[Concept]:
    return [
        Concept(
            id='light_absorption',
            definition=(
                'Light Absorption is the capture of sunlight by Chlorophyll '
                'in the thylakoid membranes.'
            ),
            inputs=['sunlight'],
            outputs=['excited electrons'],
        ),
        Concept(
            id='photosynthesis',
            definition=(
                'Photosynthesis is the process by which plants convert sunlight '
                'into chemical energy.'
            ),
            process_steps=['Light absorption', 'Water splitting', 'Carbon fixation'],
            dependencies=['light_absorption', 'calvin_cycle'],
            common_mistakes=['Plants get their food from the soil'],
        ),
        Concept(
            id='calvin_cycle',
            definition='The Calvin Cycle fixes carbon dioxide into sugars inside the Stroma.',
            inputs=['CO2', 'ATP', 'NADPH'],
            outputs=['glucose'],
            process_steps=['Carbon fixation', 'Reduction', 'Regeneration'],
            dependencies=['atp'],
        ),
        Concept(id='atp', definition='ATP is the energy currency of the cell.'),
        Concept(id='chlorophyll', definition='Chlorophyll is a green pigment that absorbs light.'),
    ]


def make_graph(
    concepts: list[Concept], graph_id: str = 'kg_test', owner_id: str = 'user_1'
) -> KnowledgeGraph:
    return KnowledgeGraph(
        id=graph_id,
        owner_id=owner_id,
        source=GraphSource(kind=SourceKind.TEXT, content_hash='hash_test'),
        concepts=concepts,
    )


class FakeExtractor:
    """Concept extractor returning a fixed graph and counting calls"""

    def __init__(self, concepts: list[Concept] | None = None, delay: float = 0.0):
        self.concepts = concepts if concepts is not None else sample_concepts()
        self.delay = delay
        self.calls = 0

    async def extract(self, content: str) -> ExtractedGraph:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return ExtractedGraph(concepts=self.concepts, title='Photosynthesis', emoji='🌱')


class FailingExtractor:
    def __init__(self, error: Exception | None = None):
        self.error = error or ExtractionError('extractor is down')

    async def extract(self, content: str) -> ExtractedGraph:
        raise self.error


def fake_generator(bundle: MaterialBundle | None = None, error: Exception | None = None):
    generator = MagicMock()
    generator.configured = True
    if error is not None:
        generator.generate = AsyncMock(side_effect=error)
    else:
        generator.generate = AsyncMock(return_value=bundle or MaterialBundle())
    return generator


def parsed_response(parsed, refusal: str | None = None):
    """Shape of `client.chat.completions.parse(...)` results"""
    message = SimpleNamespace(parsed=parsed, refusal=refusal)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai_client(responses: dict[type, object]):
    """
    OpenAI client whose structured-output calls answer by `response_format`.

    A value that is an exception instance is raised instead of returned.
    """
    client = MagicMock()

    async def parse(**kwargs):
        answer = responses[kwargs['response_format']]
        if isinstance(answer, Exception):
            raise answer
        return parsed_response(answer)

    client.chat.completions.parse = AsyncMock(side_effect=parse)
    return client


@pytest.fixture
def concepts() -> list[Concept]:
    return sample_concepts()


@pytest.fixture
def graph(concepts) -> KnowledgeGraph:
    return make_graph(concepts)


@pytest.fixture
def backend() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def graph_store(backend) -> GraphStore:
    return GraphStore(backend)


@pytest.fixture
def material_store(backend) -> MaterialStore:
    return MaterialStore(backend)


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def orchestrator(graph_store, material_store, extractor) -> GenerationOrchestrator:
    return GenerationOrchestrator(graph_store, material_store, extractor, model_name='test-model')
