"""
Structured notes markdown.

Notes produced by both the template and the AI path follow a fixed document layout and a
small markdown subset that the notes renderer parses line by line:

- `## ` top-level heading
- `### ` subheading
- `- ` bullet, with `**bold**` spans
- `  - ` (two-space indented) sub-bullet
- blank line as paragraph break
- any other non-empty line as a paragraph
"""

import re
from dataclasses import dataclass, field
from enum import StrEnum

from studygraph.errors import MalformedResponseError

TITLE_HEADING = '## 📌 Title'
CORE_IDEA_HEADING = '## 🧠 Core Idea'
KEY_SECTIONS_HEADING = '## ⚙️ Key Sections'
EQUATIONS_HEADING = '## 🧮 Equations / Formulas (if applicable)'
SUMMARY_HEADING = '## ✨ Simplified Summary'
WHY_IT_MATTERS_HEADING = '## ⭐ Why This Matters'

NOTES_HEADINGS = [
    TITLE_HEADING,
    CORE_IDEA_HEADING,
    KEY_SECTIONS_HEADING,
    EQUATIONS_HEADING,
    SUMMARY_HEADING,
    WHY_IT_MATTERS_HEADING,
]

NOTES_FORMAT = """\
## 📌 Title
<topic name>

## 🧠 Core Idea
<1-2 paragraph first-principles explanation>

## ⚙️ Key Sections
### <Section Name>
- Explanation:
  <clear explanation>
- Steps / Mechanism:
  - <bullet>
  - <bullet>

## 🧮 Equations / Formulas (if applicable)
<LaTeX or "Not applicable">

## ✨ Simplified Summary
<plain-English takeaway>

## ⭐ Why This Matters
<real-world or exam relevance>"""

DEFAULT_TITLE = 'Study Notes'
NO_EQUATIONS = 'Not applicable'
DEFAULT_SUMMARY = 'Key concepts from the material for quick review.'
DEFAULT_WHY_IT_MATTERS = (
    'Understanding these concepts helps with exams and real-world applications.'
)

_DECORATION = re.compile(r'^[^0-9A-Za-z]+')
_PARENTHETICAL = re.compile(r'\s*\(.*\)\s*$')


@dataclass
class KeySection:
    name: str
    explanation: str
    steps: list[str] = field(default_factory=list)

    def render(self) -> str:
        lines = [f'### {self.name}', '- Explanation:', f'  {self.explanation}']
        if self.steps:
            lines.append('- Steps / Mechanism:')
            lines.extend(f'  - {step}' for step in self.steps)
        return '\n'.join(lines) + '\n'


def render_notes(
    title: str,
    core_idea: str,
    sections: list[KeySection],
    summary: str = DEFAULT_SUMMARY,
    why_it_matters: str = DEFAULT_WHY_IT_MATTERS,
) -> str:
    """Render the six-heading notes document"""
    key_sections = '\n'.join(section.render() for section in sections)
    return (
        f'{TITLE_HEADING}\n{title}\n\n'
        f'{CORE_IDEA_HEADING}\n{core_idea}\n\n'
        f'{KEY_SECTIONS_HEADING}\n{key_sections}\n'
        f'{EQUATIONS_HEADING}\n{NO_EQUATIONS}\n\n'
        f'{SUMMARY_HEADING}\n{summary}\n\n'
        f'{WHY_IT_MATTERS_HEADING}\n{why_it_matters}\n'
    )


class BlockKind(StrEnum):
    HEADING = 'heading'
    SUBHEADING = 'subheading'
    BULLET = 'bullet'
    SUB_BULLET = 'sub_bullet'
    PARAGRAPH = 'paragraph'
    BLANK = 'blank'


@dataclass
class NoteBlock:
    kind: BlockKind
    text: str = ''
    # (text, bold) runs for bullets and paragraphs
    segments: list[tuple[str, bool]] = field(default_factory=list)


def parse_bold(text: str) -> list[tuple[str, bool]]:
    """Split `**bold**` spans out of a line. An unclosed `**` leaves the rest as plain text."""
    segments: list[tuple[str, bool]] = []
    remaining = text
    while remaining:
        start = remaining.find('**')
        if start == -1:
            segments.append((remaining, False))
            break
        if start > 0:
            segments.append((remaining[:start], False))
        end = remaining.find('**', start + 2)
        if end == -1:
            segments.append((remaining[start + 2 :], False))
            break
        segments.append((remaining[start + 2 : end], True))
        remaining = remaining[end + 2 :]
    return segments


def parse_notes(markdown: str) -> list[NoteBlock]:
    """Parse notes into renderer blocks, one block per line"""
    blocks: list[NoteBlock] = []
    for line in markdown.split('\n'):
        stripped = line.strip()
        if line.startswith('  - '):
            text = line[4:].strip()
            blocks.append(NoteBlock(BlockKind.SUB_BULLET, text, parse_bold(text)))
        elif stripped.startswith('### '):
            blocks.append(NoteBlock(BlockKind.SUBHEADING, stripped[4:].strip()))
        elif stripped.startswith('## '):
            blocks.append(NoteBlock(BlockKind.HEADING, stripped[3:].strip()))
        elif stripped.startswith('- '):
            text = stripped[2:].strip()
            blocks.append(NoteBlock(BlockKind.BULLET, text, parse_bold(text)))
        elif stripped:
            blocks.append(NoteBlock(BlockKind.PARAGRAPH, stripped, parse_bold(stripped)))
        else:
            blocks.append(NoteBlock(BlockKind.BLANK))
    return blocks


def heading_text(heading: str) -> str:
    """
    Strip markdown and emoji decoration from a heading.

    `## 🧮 Equations / Formulas (if applicable)` -> `Equations / Formulas`
    """
    text = heading.strip().lstrip('#').strip()
    text = _DECORATION.sub('', text)
    return _PARENTHETICAL.sub('', text).strip()


REQUIRED_HEADING_TEXTS = [heading_text(heading) for heading in NOTES_HEADINGS]


def validate_notes(markdown: str) -> str:
    """
    Check the six-heading contract and return the notes unchanged.

    The first non-blank line must be the Title heading, and the top-level headings must be
    exactly Title, Core Idea, Key Sections, Equations / Formulas, Simplified Summary and
    Why This Matters, in that order. Heading decoration is not checked.
    """
    blocks = [block for block in parse_notes(markdown) if block.kind != BlockKind.BLANK]
    if not blocks or blocks[0].kind != BlockKind.HEADING:
        raise MalformedResponseError('Notes must start with the Title heading')

    headings = [
        heading_text(block.text) for block in blocks if block.kind == BlockKind.HEADING
    ]
    if headings != REQUIRED_HEADING_TEXTS:
        raise MalformedResponseError(
            f'Notes headings {headings} do not match {REQUIRED_HEADING_TEXTS}'
        )
    return markdown
