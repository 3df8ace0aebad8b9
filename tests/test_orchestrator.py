import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import (
    PHOTOSYNTHESIS_TEXT,
    FailingExtractor,
    FakeExtractor,
    fake_generator,
    sample_concepts,
)

from studygraph.errors import (
    AIConfigurationError,
    ExtractionError,
    MalformedResponseError,
    MaterialGenerationError,
)
from studygraph.hashing import hash_content
from studygraph.llm_pipelines import ExtractGraphPipeline, GenerateMaterialsPipeline
from studygraph.llm_pipelines.models import (
    Flashcard,
    GenerationMethod,
    MaterialBundle,
    MaterialType,
    SourceKind,
)
from studygraph.logic import HeuristicConceptExtractor
from studygraph.orchestrator import (
    GenerationOrchestrator,
    build_orchestrator,
    merge_materials,
    missing_types,
)
from studygraph.settings import Settings
from studygraph.storage import JsonFileStore

AI_FLASHCARD = Flashcard(id='fc_ai_0', concept_id='atp', front='ATP?', back='Energy.')


def offline_settings(tmp_path, **overrides) -> Settings:
    return Settings(_env_file=None, openai_api_key=None, data_dir=tmp_path, **overrides)


class TestHelpers:
    def test_everything_is_missing_without_a_set(self):
        assert missing_types(None, [MaterialType.QUIZ, MaterialType.NOTES]) == [
            MaterialType.QUIZ,
            MaterialType.NOTES,
        ]

    def test_merge_prefers_non_empty_generated_fields(self):
        base = MaterialBundle(flashcards=[AI_FLASHCARD], notes='old notes')
        merged = merge_materials(base, MaterialBundle(notes='new notes'))

        assert merged['flashcards'] == [AI_FLASHCARD]
        assert merged['notes'] == 'new notes'
        assert merged['quiz_questions'] == []


class TestProcessContent:
    @pytest.mark.asyncio
    async def test_first_call_creates_graph_and_materials(self, orchestrator, extractor):
        result = await orchestrator.process_content(
            'user_1', PHOTOSYNTHESIS_TEXT, SourceKind.LECTURE, metadata={'course': 'bio'}
        )

        graph = result.graph
        assert extractor.calls == 1
        assert len(graph.concepts) >= 1
        assert graph.source.kind == SourceKind.LECTURE
        assert graph.source.content_hash == hash_content(PHOTOSYNTHESIS_TEXT)
        assert graph.source.metadata == {'course': 'bio'}
        assert graph.title == 'Photosynthesis'
        assert graph.emoji == '🌱'

        materials = result.materials
        assert materials.knowledge_graph_id == graph.id
        assert materials.owner_id == 'user_1'
        assert materials.quiz_questions
        assert materials.title == 'Photosynthesis'
        assert await orchestrator.graph_store.get(graph.id) == graph
        assert await orchestrator.material_store.get(materials.id) == materials

    @pytest.mark.asyncio
    async def test_identical_content_reuses_graph(self, orchestrator, extractor):
        first = await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT, use_ai=False)

        with (
            patch.object(orchestrator.material_store, 'save', new=AsyncMock()) as save,
            patch.object(orchestrator.material_store, 'update', new=AsyncMock()) as update,
            patch.object(orchestrator.graph_store, 'save', new=AsyncMock()) as save_graph,
        ):
            second = await orchestrator.process_content(
                'user_1', PHOTOSYNTHESIS_TEXT, use_ai=False
            )

        assert extractor.calls == 1
        assert second.graph.id == first.graph.id
        assert second.materials == first.materials
        save.assert_not_awaited()
        update.assert_not_awaited()
        save_graph.assert_not_awaited()
        assert len(await orchestrator.graph_store.list()) == 1
        assert len(await orchestrator.material_store.list()) == 1

    @pytest.mark.asyncio
    async def test_type_that_cannot_be_derived_does_not_rewrite_the_set(
        self, graph_store, material_store
    ):
        # two concepts leave no room for quiz distractors
        extractor = FakeExtractor(sample_concepts()[3:])
        orchestrator = GenerationOrchestrator(graph_store, material_store, extractor)
        first = await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT, use_ai=False)
        assert first.materials.quiz_questions == []

        with patch.object(material_store, 'update', new=AsyncMock()) as update:
            second = await orchestrator.process_content(
                'user_1', PHOTOSYNTHESIS_TEXT, use_ai=False
            )

        update.assert_not_awaited()
        assert second.materials == first.materials
        assert await material_store.get(first.materials.id) == first.materials

    @pytest.mark.asyncio
    async def test_other_owner_gets_own_graph(self, orchestrator, extractor):
        first = await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT, use_ai=False)
        second = await orchestrator.process_content('user_2', PHOTOSYNTHESIS_TEXT, use_ai=False)

        assert first.graph.id != second.graph.id
        assert extractor.calls == 2

    @pytest.mark.asyncio
    async def test_gap_fill_leaves_present_types_untouched(
        self, graph_store, material_store, extractor
    ):
        generator = fake_generator(MaterialBundle(flashcards=[AI_FLASHCARD]))
        orchestrator = GenerationOrchestrator(
            graph_store, material_store, extractor, generator, model_name='test-model'
        )
        first = await orchestrator.process_content(
            'user_1', PHOTOSYNTHESIS_TEXT, methods=['flashcards']
        )
        assert first.materials.flashcards == [AI_FLASHCARD]
        assert first.materials.quiz_questions == []

        generator.generate.side_effect = MaterialGenerationError('quota exceeded')
        second = await orchestrator.process_content(
            'user_1', PHOTOSYNTHESIS_TEXT, methods=['flashcards', 'quiz']
        )

        generator.generate.assert_awaited_with(first.graph, [MaterialType.QUIZ])
        assert second.materials.id == first.materials.id
        assert second.materials.flashcards == [AI_FLASHCARD]
        assert second.materials.quiz_questions
        assert second.materials.written_questions == []
        assert second.materials.notes == ''
        assert second.materials.generation_method == GenerationMethod.TEMPLATE
        assert second.materials.model is None
        assert second.materials.created_at == first.materials.created_at

    @pytest.mark.asyncio
    async def test_notes_already_present_is_a_no_op(self, graph_store, material_store, extractor):
        generator = fake_generator(MaterialBundle(notes='unused'))
        orchestrator = GenerationOrchestrator(graph_store, material_store, extractor, generator)
        first = await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT, use_ai=False)
        assert first.materials.notes

        with patch('studygraph.orchestrator.derive_all_materials') as derive:
            second = await orchestrator.process_content(
                'user_1', PHOTOSYNTHESIS_TEXT, methods=['notes']
            )

        derive.assert_not_called()
        generator.generate.assert_not_awaited()
        assert second.materials == first.materials

    @pytest.mark.asyncio
    async def test_tutor_is_served_by_notes(self, orchestrator):
        result = await orchestrator.process_content(
            'user_1', PHOTOSYNTHESIS_TEXT, use_ai=False, methods=['tutor']
        )

        assert result.materials.notes.startswith('## 📌 Title')
        assert result.materials.flashcards == []

    @pytest.mark.asyncio
    async def test_template_only_five_concepts(self, orchestrator):
        result = await orchestrator.process_content('user_1', 'five concepts', use_ai=False)
        materials = result.materials

        assert len(result.graph.concepts) == 5
        assert materials.flashcards
        assert materials.quiz_questions
        assert materials.written_questions
        assert materials.fill_in_blank_questions
        assert materials.notes
        assert materials.generation_method == GenerationMethod.TEMPLATE
        assert materials.model is None


class TestAIPath:
    @pytest.mark.asyncio
    async def test_ai_materials_are_stamped(self, graph_store, material_store, extractor):
        bundle = MaterialBundle(flashcards=[AI_FLASHCARD], notes='## 📌 Title\nAI notes')
        generator = fake_generator(bundle)
        orchestrator = GenerationOrchestrator(
            graph_store, material_store, extractor, generator, model_name='gpt-4o-mini'
        )

        result = await orchestrator.process_content(
            'user_1', PHOTOSYNTHESIS_TEXT, methods=['flashcards', 'notes']
        )

        generator.generate.assert_awaited_once_with(
            result.graph, [MaterialType.FLASHCARDS, MaterialType.NOTES]
        )
        assert result.materials.generation_method == GenerationMethod.AI
        assert result.materials.model == 'gpt-4o-mini'
        assert result.materials.flashcards == [AI_FLASHCARD]

    @pytest.mark.parametrize(
        'error',
        [
            AIConfigurationError('no key'),
            MaterialGenerationError('rate limited'),
            MalformedResponseError('bad json'),
        ],
    )
    @pytest.mark.asyncio
    async def test_ai_failure_falls_back_to_templates(
        self, graph_store, material_store, extractor, error
    ):
        orchestrator = GenerationOrchestrator(
            graph_store, material_store, extractor, fake_generator(error=error)
        )

        result = await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT)

        assert result.materials.generation_method == GenerationMethod.TEMPLATE
        assert result.materials.flashcards
        assert result.materials.notes
        assert all(not card.id.startswith('fc_ai') for card in result.materials.flashcards)

    @pytest.mark.asyncio
    async def test_missing_generator_falls_back(self, orchestrator):
        result = await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT, use_ai=True)
        assert result.materials.generation_method == GenerationMethod.TEMPLATE

    @pytest.mark.asyncio
    async def test_no_fallback_propagates(self, graph_store, material_store, extractor):
        orchestrator = GenerationOrchestrator(
            graph_store,
            material_store,
            extractor,
            fake_generator(error=MaterialGenerationError('down')),
        )

        with pytest.raises(MaterialGenerationError):
            await orchestrator.process_content(
                'user_1', PHOTOSYNTHESIS_TEXT, allow_fallback=False
            )
        assert await material_store.list() == []

    @pytest.mark.asyncio
    async def test_no_fallback_without_generator(self, orchestrator):
        with pytest.raises(AIConfigurationError):
            await orchestrator.process_content(
                'user_1', PHOTOSYNTHESIS_TEXT, allow_fallback=False
            )

    @pytest.mark.asyncio
    async def test_timeout_triggers_fallback(self, graph_store, material_store, extractor):
        async def slow_generate(graph, types):
            await asyncio.sleep(5)
            return MaterialBundle(flashcards=[AI_FLASHCARD])

        generator = MagicMock()
        generator.generate = slow_generate
        orchestrator = GenerationOrchestrator(
            graph_store, material_store, extractor, generator, generation_timeout=0.01
        )

        result = await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT)

        assert result.materials.generation_method == GenerationMethod.TEMPLATE
        assert result.materials.flashcards != [AI_FLASHCARD]


class TestExtractionFailure:
    @pytest.mark.asyncio
    async def test_nothing_is_persisted(self, graph_store, material_store):
        orchestrator = GenerationOrchestrator(graph_store, material_store, FailingExtractor())

        with pytest.raises(ExtractionError):
            await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT)

        assert await graph_store.list() == []
        assert await material_store.list() == []

    @pytest.mark.asyncio
    async def test_collaborator_errors_become_extraction_errors(
        self, graph_store, material_store
    ):
        extractor = FailingExtractor(MalformedResponseError('garbage'))
        orchestrator = GenerationOrchestrator(graph_store, material_store, extractor)

        with pytest.raises(ExtractionError, match='garbage'):
            await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT)

    @pytest.mark.asyncio
    async def test_existing_graph_is_not_re_extracted(self, orchestrator, graph_store):
        first = await orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT, use_ai=False)
        orchestrator.extractor = FailingExtractor()

        second = await orchestrator.process_content(
            'user_1', PHOTOSYNTHESIS_TEXT, use_ai=False, methods=['quiz']
        )

        assert second.graph.id == first.graph.id


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_graph(graph_store, material_store):
    extractor = FakeExtractor(sample_concepts(), delay=0.05)
    orchestrator = GenerationOrchestrator(graph_store, material_store, extractor)

    results = await asyncio.gather(
        *(
            orchestrator.process_content('user_1', PHOTOSYNTHESIS_TEXT, use_ai=False)
            for _ in range(3)
        )
    )

    assert extractor.calls == 1
    assert len({result.graph.id for result in results}) == 1
    assert len({result.materials.id for result in results}) == 1
    assert len(await graph_store.list()) == 1
    assert len(await material_store.list()) == 1


class TestBuildOrchestrator:
    def test_offline(self, tmp_path):
        orchestrator = build_orchestrator(offline_settings(tmp_path))

        assert isinstance(orchestrator.extractor, HeuristicConceptExtractor)
        assert orchestrator.generator is None
        assert isinstance(orchestrator.graph_store._backend, JsonFileStore)

    def test_with_client(self, tmp_path):
        settings = offline_settings(tmp_path, quiz_count=3, generation_timeout=30)
        orchestrator = build_orchestrator(settings, client=MagicMock())

        assert isinstance(orchestrator.extractor, ExtractGraphPipeline)
        assert isinstance(orchestrator.generator, GenerateMaterialsPipeline)
        assert orchestrator.generator._counts.quiz == 3
        assert orchestrator.generation_timeout == 30
        assert orchestrator.model_name == 'gpt-4o-mini'

    @pytest.mark.asyncio
    async def test_offline_end_to_end(self, tmp_path):
        orchestrator = build_orchestrator(offline_settings(tmp_path))

        result = await orchestrator.process_content(
            'user_1', PHOTOSYNTHESIS_TEXT, SourceKind.LECTURE
        )
        again = await build_orchestrator(offline_settings(tmp_path)).process_content(
            'user_1', PHOTOSYNTHESIS_TEXT, SourceKind.LECTURE
        )

        assert [c.id for c in result.graph.concepts] == ['photosynthesis', 'chlorophyll']
        assert result.materials.generation_method == GenerationMethod.TEMPLATE
        assert result.materials.notes
        assert again.graph.id == result.graph.id
        assert again.materials == result.materials
