import logging
from typing import Annotated

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studygraph.errors import (
    AIConfigurationError,
    ConversionError,
    ExtractionError,
    MaterialGenerationError,
    StorageError,
    StudyGraphError,
)
from studygraph.llm_pipelines import ReviseNotesPipeline
from studygraph.llm_pipelines.models import KnowledgeGraph, SourceKind, StudyMaterialSet
from studygraph.models import (
    FileGenerationResult,
    GenerateMaterialsRequest,
    ReviseNotesRequest,
    ReviseNotesResponse,
)
from studygraph.orchestrator import (
    DEFAULT_METHODS,
    GenerationOrchestrator,
    GenerationResult,
    build_openai_client,
    build_orchestrator,
)
from studygraph.settings import Settings, settings
from studygraph.utils import content_items_from_uploads, content_to_text, validate_files

logger = logging.getLogger(__name__)

ERROR_STATUS: list[tuple[type[StudyGraphError], int]] = [
    (ExtractionError, status.HTTP_502_BAD_GATEWAY),
    (AIConfigurationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (MaterialGenerationError, status.HTTP_502_BAD_GATEWAY),
    (ConversionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(error: StudyGraphError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    app_settings: Settings = settings,
    orchestrator: GenerationOrchestrator | None = None,
    reviser: ReviseNotesPipeline | None = None,
) -> FastAPI:
    """
    Build the API.

    Collaborators are created from `app_settings` unless given, so tests can pass their own
    orchestrator and reviser.
    """
    logging.basicConfig(level=app_settings.log_level)

    client = build_openai_client(app_settings)
    orchestrator = orchestrator or build_orchestrator(app_settings, client)
    reviser = reviser or ReviseNotesPipeline(
        client, app_settings.model_name, app_settings.language
    )

    app = FastAPI(
        title='StudyGraph API',
        description=(
            'Content to knowledge graph to study materials.\n'
            '1) POST /materials/generate: text => knowledge graph + study materials.\n'
            '2) POST /materials/from-files: up to 5 files (5 MB each) => the same.\n'
            '3) POST /notes/revise: notes + instruction => revised notes.'
        ),
        version='1.0.0',
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=['*'],
        allow_credentials=False,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    @app.exception_handler(StudyGraphError)
    async def study_graph_error_handler(request: Request, exc: StudyGraphError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f'{request.method} {request.url.path} failed: {exc!r}')
        return JSONResponse(status_code=status_code, content={'detail': str(exc)})

    @app.post('/materials/generate', response_model=GenerationResult)
    async def generate_materials(request: GenerateMaterialsRequest):
        """Create or reuse the knowledge graph for the content and fill in missing materials"""
        return await orchestrator.process_content(
            request.owner_id,
            request.content,
            source_kind=request.source_type,
            metadata=request.metadata,
            use_ai=request.use_ai,
            methods=request.methods,
        )

    @app.post('/materials/from-files', response_model=FileGenerationResult)
    async def materials_from_files(
        owner_id: Annotated[str, Form()],
        files: Annotated[list[UploadFile], File(..., description='Up to 5 files, 5 MB each')],
        methods: Annotated[list[str] | None, Form()] = None,
        use_ai: Annotated[bool, Form()] = True,
    ):
        """Convert uploads to text, then generate like /materials/generate"""
        await validate_files(files)
        items = await content_items_from_uploads(files)
        conversion = await content_to_text(
            items,
            client=client,
            vision_model=app_settings.vision_model_name,
            transcription_model=app_settings.transcription_model_name,
        )
        if len(conversion.failures) == len(items):
            names = ', '.join(failure.name for failure in conversion.failures)
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f'None of the files could be converted: {names}',
            )

        result = await orchestrator.process_content(
            owner_id,
            conversion.text,
            source_kind=SourceKind.UPLOAD,
            metadata={'files': [item.name for item in items]},
            use_ai=use_ai,
            methods=methods or DEFAULT_METHODS,
        )
        return FileGenerationResult(
            graph=result.graph, materials=result.materials, failures=conversion.failures
        )

    @app.post('/notes/revise', response_model=ReviseNotesResponse)
    async def revise_notes(request: ReviseNotesRequest):
        """Rewrite notes by instruction, keeping the heading layout"""
        notes = await reviser.revise(request.notes, request.instruction)
        return ReviseNotesResponse(notes=notes)

    @app.get('/graphs', response_model=list[KnowledgeGraph])
    async def list_graphs(owner_id: str | None = None):
        return await orchestrator.graph_store.list(owner_id)

    @app.get('/graphs/{graph_id}', response_model=KnowledgeGraph)
    async def get_graph(graph_id: str):
        graph = await orchestrator.graph_store.get(graph_id)
        if graph is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Graph not found')
        return graph

    @app.delete('/graphs/{graph_id}', status_code=status.HTTP_204_NO_CONTENT)
    async def delete_graph(graph_id: str):
        """Delete the graph together with its material set"""
        graph = await orchestrator.graph_store.get(graph_id)
        if graph is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Graph not found')
        materials = await orchestrator.material_store.get_by_graph_id(graph_id)
        if materials is not None:
            await orchestrator.material_store.delete(materials.id)
        await orchestrator.graph_store.delete(graph_id)

    @app.get('/graphs/{graph_id}/materials', response_model=StudyMaterialSet)
    async def get_graph_materials(graph_id: str):
        materials = await orchestrator.material_store.get_by_graph_id(graph_id)
        if materials is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail='No materials for this graph'
            )
        return materials

    @app.get('/materials/{material_id}', response_model=StudyMaterialSet)
    async def get_materials(material_id: str):
        materials = await orchestrator.material_store.get(material_id)
        if materials is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail='Material set not found'
            )
        return materials

    @app.get('/', include_in_schema=False)
    async def root():
        """Redirect to docs on root"""
        return {'ok': True, 'see': '/docs'}

    return app


app = create_app()
