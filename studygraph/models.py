from inspect import cleandoc
from typing import Any

from pydantic import BaseModel, Field

from studygraph.llm_pipelines.models import SourceKind
from studygraph.orchestrator import DEFAULT_METHODS, GenerationResult
from studygraph.utils import ConversionFailure


class GenerateMaterialsRequest(BaseModel):
    owner_id: str
    content: str = Field(min_length=1)
    source_type: SourceKind = SourceKind.TEXT
    metadata: dict[str, Any] | None = None
    use_ai: bool = True
    methods: list[str] = Field(
        default_factory=lambda: list(DEFAULT_METHODS),
        description=cleandoc(
            """
            Study methods to prepare materials for:
            flashcards, quiz, written, fill, notes or tutor (uses the notes).
            """
        ),
    )


class FileGenerationResult(GenerationResult):
    failures: list[ConversionFailure] = Field(
        default_factory=list, description='Uploads that could not be converted to text'
    )


class ReviseNotesRequest(BaseModel):
    notes: str = Field(min_length=1)
    instruction: str = Field(min_length=1, description='What to change in the notes')


class ReviseNotesResponse(BaseModel):
    notes: str
