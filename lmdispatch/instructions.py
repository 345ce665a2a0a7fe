"""
Instruction assembly.

Builds the instruction text sent ahead of the goal, in this order:
  1. the instructions themselves (a string, or the contents of instruction files)
  2. the editor context, if any, under "# === Editor Context ==="
  3. context files, if any, under "# === Context Files ==="

Also discovers `*.instructions.md` files and their frontmatter descriptions
for the instruction selector.

Unreadable files never fail assembly: they contribute empty content.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

INSTRUCTIONS_SUFFIX = ".instructions.md"
EDITOR_CONTEXT_HEADER = "# === Editor Context ==="
CONTEXT_FILES_HEADER = "# === Context Files ==="

_DESCRIPTION_RE = re.compile(r"description:\s*'([^']*)'")
_DOMAIN_RE = re.compile(r"^(.+?)(?:-[^-]+)?\.instructions\.md$")


@dataclass
class EditorContext:
    """What the user had open when they dispatched. Lines are 0-indexed."""
    file_path: str
    full_file_content: str
    selection_start_line: int | None = None
    selection_end_line: int | None = None
    selected_text: str | None = None

    @property
    def has_selection(self) -> bool:
        return bool(
            self.selected_text
            and self.selected_text.strip()
            and self.selection_start_line is not None
            and self.selection_end_line is not None
        )


def read_file_content(path: str | Path) -> str | None:
    """File content as text, or None if it cannot be read."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Could not read %s: %s", path, e)
        return None


def concatenate_instruction_files(paths: list[str]) -> str:
    """
    Each file as "# From: <basename>\\n\\n<content>", joined by blank lines.
    Empty input gives "".
    """
    parts = []
    for p in paths or []:
        content = read_file_content(p)
        if content is None:
            logger.warning("Instruction file unreadable, using empty content: %s", p)
        parts.append(f"# From: {Path(p).name}\n\n{content or ''}")
    return "\n\n".join(parts)


def format_editor_context(ctx: EditorContext | None) -> str:
    """XML-ish block describing the active file and selection. "" without a file."""
    if ctx is None or not ctx.file_path or ctx.full_file_content is None:
        return ""

    filename = Path(ctx.file_path).name
    fence = Path(ctx.file_path).suffix.lstrip(".")
    out = [
        "<editorContext>\n",
        f"The user's current file is {ctx.file_path}. ",
    ]
    if ctx.has_selection:
        out.append(
            f"The current selection is from line {ctx.selection_start_line}"
            f" to line {ctx.selection_end_line}."
        )
    out.append("\n</editorContext>\n\n")

    if ctx.has_selection:
        out.append(
            f'<attachment id="file:{filename}">\n'
            "User's active selection:\n"
            f"Excerpt from {filename}, lines {ctx.selection_start_line}"
            f" to {ctx.selection_end_line}:\n"
            f"```{fence}\n{ctx.selected_text}\n```\n"
            "</attachment>\n\n"
        )

    out.append(
        f'<attachment filePath="{ctx.file_path}">\n'
        "User's active file for additional context:\n"
        f"{ctx.full_file_content}\n"
        "</attachment>"
    )
    return "".join(out)


def assemble_instructions(
    instructions,
    editor_context: EditorContext | None = None,
    context_file_paths: list[str] | None = None,
) -> str:
    """Instructions, then editor context, then context files."""
    if isinstance(instructions, str):
        text = instructions
    elif isinstance(instructions, list):
        text = concatenate_instruction_files(instructions)
    else:
        text = ""

    editor = format_editor_context(editor_context)
    if editor:
        text += f"\n\n{EDITOR_CONTEXT_HEADER}\n\n{editor}"

    context = concatenate_instruction_files(context_file_paths or [])
    if context:
        text += f"\n\n{CONTEXT_FILES_HEADER}\n\n{context}"
    return text


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def list_instruction_files(dir_path: str | Path) -> list[str]:
    """Names of the *.instructions.md files in `dir_path`; [] if it is missing."""
    try:
        return sorted(
            p.name for p in Path(dir_path).iterdir()
            if p.is_file() and p.name.endswith(INSTRUCTIONS_SUFFIX)
        )
    except OSError:
        return []


def extract_description(content: str | None) -> str | None:
    """The single-quoted `description:` value from frontmatter."""
    if not content:
        return None
    m = _DESCRIPTION_RE.search(content)
    return m.group(1) if m else None


def extract_domain(filename: str) -> str | None:
    """
    'clojure-memory.instructions.md' -> 'clojure'
    'joyride.instructions.md'        -> 'joyride'
    'memory.instructions.md'         -> None (reserved)
    """
    m = _DOMAIN_RE.match(filename)
    if not m or m.group(1) == "memory":
        return None
    return m.group(1)


def describe_instruction_files(dir_path: str | Path) -> list[dict]:
    descriptions = []
    for filename in list_instruction_files(dir_path):
        path = Path(dir_path) / filename
        descriptions.append({
            "file": str(path.resolve()),
            "filename": filename,
            "description": extract_description(read_file_content(path)),
            "domain": extract_domain(filename),
        })
    return descriptions


def collect_instruction_descriptions(dirs: list[str]) -> list[dict]:
    """Descriptions from every search dir, in the order the dirs are given."""
    collected = []
    for d in dirs or []:
        collected.extend(describe_instruction_files(Path(d).expanduser()))
    return collected
