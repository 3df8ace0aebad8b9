"""Prompts for notes revision pipeline"""

import pathlib

from iso639 import Language
from jinja2 import Environment, FileSystemLoader, StrictUndefined
from openai.types.chat import ChatCompletionMessageParam
from pydantic import BaseModel

from studygraph.notes import NOTES_FORMAT

here = pathlib.Path(__file__).parent.resolve()
jinja_env = Environment(loader=FileSystemLoader(str(here)), undefined=StrictUndefined)


def revise_notes_prompt(
    *, notes: str, instruction: str, language: str, response_model: type[BaseModel]
) -> list[ChatCompletionMessageParam]:
    """Creates prompt for editing notes by user instruction"""
    system_template = jinja_env.get_template('system.md.jinja')
    user_template = jinja_env.get_template('revise-notes.md.jinja')
    language_name = Language.match(language).name

    return [
        {
            'role': 'system',
            'content': system_template.render(language=language_name, notes_format=NOTES_FORMAT),
        },
        {
            'role': 'user',
            'content': user_template.render(
                notes=notes,
                instruction=instruction,
                json_schema=response_model.model_json_schema(),
            ),
        },
    ]


__all__ = ['revise_notes_prompt']
