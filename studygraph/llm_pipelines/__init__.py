"""LLM pipelines for knowledge graph extraction and study material generation"""

from .extract_graph.pipeline import ExtractGraphPipeline
from .generate_materials.pipeline import GenerateMaterialsPipeline, MaterialCounts
from .revise_notes.pipeline import ReviseNotesPipeline

__all__ = [
    'ExtractGraphPipeline',
    'GenerateMaterialsPipeline',
    'MaterialCounts',
    'ReviseNotesPipeline',
]
