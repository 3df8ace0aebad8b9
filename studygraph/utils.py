import base64
import io
import logging
import mimetypes
import re
from pathlib import Path
from typing import Literal

from fastapi import HTTPException, UploadFile, status
from markitdown import MarkItDown
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field

from studygraph.errors import ConversionError, StudyGraphError
from studygraph.llm_pipelines.utils import require_client

logger = logging.getLogger(__name__)

md = MarkItDown()

MAX_FILES = 5
MAX_FILE_BYTES = 5 * 1024 * 1024  # 5 MB
MAX_TEXT_CHARS = 200_000

TEXT_EXTENSIONS = ('.txt', '.md', '.csv')
IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif', '.webp', '.bmp')
AUDIO_EXTENSIONS = ('.mp3', '.m4a', '.wav', '.webm', '.ogg', '.mpga', '.mpeg', '.flac')

OCR_INSTRUCTION = (
    'Extract all text from this image. Return only the raw text, no markdown or explanation.'
)

_BARE_LINK = re.compile(r'^https?://\S+$')


class ContentItem(BaseModel):
    """One piece of user content waiting to be turned into text"""

    name: str
    kind: Literal['notes', 'audio', 'image', 'file']
    text: str | None = None
    data: bytes | None = None
    uri: str | None = None


class ConversionFailure(BaseModel):
    name: str
    error: str


class ConversionResult(BaseModel):
    text: str
    failures: list[ConversionFailure] = Field(default_factory=list)


async def validate_files(files: list[UploadFile]) -> None:
    if not files:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail='At least one file is required.'
        )
    if len(files) > MAX_FILES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'No more than {MAX_FILES} files are allowed.',
        )

    for f in files:
        content = await f.read()
        if len(content) > MAX_FILE_BYTES:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f'File {f.filename} exceeds the 5 MB limit.',
            )
        await f.seek(0)


async def content_items_from_uploads(files: list[UploadFile]) -> list[ContentItem]:
    """Classify uploads by extension, plain text files are read as notes"""
    items = []
    for f in files:
        name = f.filename or 'upload'
        content = await f.read()
        await f.seek(0)

        lowered = name.lower()
        if lowered.endswith(TEXT_EXTENSIONS):
            text = content.decode('utf-8', errors='ignore')
            items.append(ContentItem(name=name, kind='notes', text=text[:MAX_TEXT_CHARS]))
        elif lowered.endswith(AUDIO_EXTENSIONS):
            items.append(ContentItem(name=name, kind='audio', data=content))
        elif lowered.endswith(IMAGE_EXTENSIONS):
            items.append(ContentItem(name=name, kind='image', data=content))
        else:
            items.append(ContentItem(name=name, kind='file', data=content))
    return items


async def transcribe_audio(
    client: AsyncOpenAI | None, data: bytes, filename: str, model: str = 'whisper-1'
) -> str:
    client = require_client(client)
    try:
        transcription = await client.audio.transcriptions.create(
            model=model, file=(filename, data)
        )
    except OpenAIError as e:
        raise ConversionError(f'Transcription failed: {e}') from e
    return transcription.text.strip()


async def extract_text_from_image(
    client: AsyncOpenAI | None, data: bytes, filename: str, model: str = 'gpt-4o-mini'
) -> str:
    """OCR through a vision chat completion"""
    client = require_client(client)
    mime_type = mimetypes.guess_type(filename)[0] or 'image/jpeg'
    data_url = f'data:{mime_type};base64,{base64.b64encode(data).decode("ascii")}'
    try:
        response = await client.chat.completions.create(
            model=model,
            max_tokens=1024,
            messages=[
                {'role': 'system', 'content': OCR_INSTRUCTION},
                {
                    'role': 'user',
                    'content': [{'type': 'image_url', 'image_url': {'url': data_url}}],
                },
            ],
        )
    except OpenAIError as e:
        raise ConversionError(f'OCR failed: {e}') from e
    return (response.choices[0].message.content or '').strip()


def convert_document(data: bytes, filename: str) -> str:
    """PDF, DOCX, PPTX and friends through MarkItDown"""
    try:
        result = md.convert_stream(io.BytesIO(data), file_extension=Path(filename).suffix)
    except Exception as e:
        raise ConversionError(f'{filename}: {e}') from e
    if not result or not result.text_content:
        raise ConversionError(f'{filename}: no readable content')
    return result.text_content[:MAX_TEXT_CHARS]


async def convert_item(
    item: ContentItem,
    client: AsyncOpenAI | None = None,
    vision_model: str = 'gpt-4o-mini',
    transcription_model: str = 'whisper-1',
) -> str:
    if item.kind == 'notes':
        text = (item.text or '').strip()
        if not text and item.uri and _BARE_LINK.match(item.uri):
            return f'[Link: {item.uri}]'
        if _BARE_LINK.match(text):
            return f'[Link: {text}]'
        return text

    if item.data is None:
        raise ConversionError(f'{item.name} has no data')
    if item.kind == 'audio':
        return await transcribe_audio(client, item.data, item.name, transcription_model)
    if item.kind == 'image' or item.name.lower().endswith(IMAGE_EXTENSIONS):
        return await extract_text_from_image(client, item.data, item.name, vision_model)
    return convert_document(item.data, item.name)


async def content_to_text(
    items: list[ContentItem],
    client: AsyncOpenAI | None = None,
    vision_model: str = 'gpt-4o-mini',
    transcription_model: str = 'whisper-1',
) -> ConversionResult:
    """
    Convert content items into one text for concept extraction.

    Every item converts on its own: a failure adds a `--- <name> (conversion failed) ---`
    marker, is listed in `failures` and the rest of the batch goes on.
    """
    parts: list[str] = []
    failures: list[ConversionFailure] = []
    for item in items:
        try:
            text = await convert_item(item, client, vision_model, transcription_model)
        except StudyGraphError as e:
            logger.warning(f'Failed to convert {item.name}: {e}')
            failures.append(ConversionFailure(name=item.name, error=str(e)))
            parts.append(f'--- {item.name} (conversion failed) ---\n')
            continue
        if text:
            parts.append(f'--- {item.name} ---\n{text}')

    return ConversionResult(text='\n\n'.join(parts), failures=failures)
