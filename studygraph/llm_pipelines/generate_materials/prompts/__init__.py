"""Prompts for study material generation pipeline"""

import pathlib

from iso639 import Language
from jinja2 import Environment, FileSystemLoader, StrictUndefined
from openai.types.chat import ChatCompletionMessageParam
from pydantic import BaseModel

from studygraph.notes import NOTES_FORMAT

here = pathlib.Path(__file__).parent.resolve()
jinja_env = Environment(loader=FileSystemLoader(str(here)), undefined=StrictUndefined)


def material_prompt(
    *,
    material: str,
    concepts_json: str,
    count: int | None,
    language: str,
    response_model: type[BaseModel],
) -> list[ChatCompletionMessageParam]:
    """
    Creates prompt for one material type.

    `material` names the template pair `<material>-system.md.jinja` / `<material>.md.jinja`.
    """
    system_template = jinja_env.get_template(f'{material}-system.md.jinja')
    user_template = jinja_env.get_template(f'{material}.md.jinja')
    language_name = Language.match(language).name

    return [
        {
            'role': 'system',
            'content': system_template.render(language=language_name, notes_format=NOTES_FORMAT),
        },
        {
            'role': 'user',
            'content': user_template.render(
                concepts_json=concepts_json,
                count=count,
                json_schema=response_model.model_json_schema(),
            ),
        },
    ]


__all__ = ['material_prompt']
