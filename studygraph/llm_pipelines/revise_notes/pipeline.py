from openai import AsyncOpenAI

from studygraph.llm_pipelines.response_model import NotesResponse
from studygraph.llm_pipelines.revise_notes.prompts import revise_notes_prompt
from studygraph.llm_pipelines.utils import request_structured, require_client
from studygraph.notes import validate_notes


class ReviseNotesPipeline:
    """Edit existing notes by a free-text instruction, keeping the heading layout"""

    def __init__(self, client: AsyncOpenAI | None, model: str, language: str = 'en'):
        self._client: AsyncOpenAI | None = client
        self._model: str = model
        self._language: str = language

    async def revise(self, notes: str, instruction: str) -> str:
        """Return a full replacement for `notes`"""
        require_client(self._client)
        messages = revise_notes_prompt(
            notes=notes,
            instruction=instruction,
            language=self._language,
            response_model=NotesResponse,
        )
        response = await request_structured(
            self._client,
            model=self._model,
            messages=messages,
            response_model=NotesResponse,
            temperature=0.5,
            max_tokens=4000,
        )
        return validate_notes(response.notes)
