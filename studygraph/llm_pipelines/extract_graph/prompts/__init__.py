"""Prompts for concept extraction pipeline"""

import pathlib

from iso639 import Language
from jinja2 import Environment, FileSystemLoader, StrictUndefined
from openai.types.chat import ChatCompletionMessageParam
from pydantic import BaseModel

here = pathlib.Path(__file__).parent.resolve()
jinja_env = Environment(loader=FileSystemLoader(str(here)), undefined=StrictUndefined)


def extract_concepts_prompt(
    *, content: str, language: str, response_model: type[BaseModel]
) -> list[ChatCompletionMessageParam]:
    """Creates prompt for atomic concepts extraction."""
    system_template = jinja_env.get_template('system.md.jinja')
    user_template = jinja_env.get_template('extract-concepts.md.jinja')
    language_name = Language.match(language).name

    return [
        {
            'role': 'system',
            'content': system_template.render(
                language=language_name, json_schema=response_model.model_json_schema()
            ),
        },
        {'role': 'user', 'content': user_template.render(content=content)},
    ]


__all__ = ['extract_concepts_prompt']
