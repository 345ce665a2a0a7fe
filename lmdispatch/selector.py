"""
Instruction selector — a small agent that picks instruction files for a goal.

It runs an ordinary engine conversation (title "Selecting Instructions",
no tools) over the descriptions of every discovered *.instructions.md file
and reads absolute paths back out of the final response.
"""

from __future__ import annotations

import json
import logging

from lmdispatch.instructions import collect_instruction_descriptions

logger = logging.getLogger(__name__)

SELECTOR_TITLE = "Selecting Instructions"
RESULTS_BEGIN = "---BEGIN RESULTS---"
RESULTS_END = "---END RESULTS---"


def build_selection_prompt(
    goal: str,
    file_descriptions: list[dict],
    context_content: str | None = None,
) -> str:
    parts = [
        "# Instruction File Selection Task\n\n",
        "You are an expert at analyzing task requirements and selecting the most relevant instruction files.\n\n",
        "## Your Goal\n\n",
        "Select and prioritize instruction files that will help accomplish this task:\n\n",
        f"<TASK-GOAL>\n{goal}\n</TASK-GOAL>\n\n",
    ]
    if context_content:
        parts.append(
            "## Additional Context\n\n"
            "The following context files have been provided for this task:\n\n"
            f"{context_content}\n\n"
        )
    parts += [
        "## Available Instruction Files\n\n",
        "Here are all available instruction files with their descriptions:\n\n",
        f"```json\n{json.dumps(file_descriptions, indent=2, ensure_ascii=False)}\n```\n\n",
        "## Your Task\n\n",
        "0. Do not use tools. You have no tools.\n",
        "1. Use the descriptions as your PRIMARY selection criteria\n",
        "2. Use the context you are provided (language, framework, conventions in use)\n",
        "3. Select relevant instruction files by description match and domain relevance\n",
        "4. Sort your selection with the most important files LAST (they'll be read last)\n",
        "5. Return ONLY absolute file paths, one per line, no other text\n\n",
        "## Selection Guidelines\n\n",
        "- Domain files `<domain>.instructions.md` and their memories "
        "`<domain>-memory.instructions.md` are always selected together\n",
        "- Include testing/quality instructions if the task involves code changes\n",
        "- An empty selection is valid if no instructions match\n\n",
        "## Output Format\n\n",
        f"Wrap the list in `{RESULTS_BEGIN}`/`{RESULTS_END}` markers:\n\n",
        "```\n",
        f"{RESULTS_BEGIN}\n",
        "/absolute/path/to/first-file.instructions.md\n",
        "/absolute/path/to/most-important-file.instructions.md\n",
        f"{RESULTS_END}\n",
        "```\n\n",
        "Include ~~~GOAL-ACHIEVED~~~ in your response containing the results.",
    ]
    return "".join(parts)


def parse_selection_result(final_response) -> list[str]:
    """
    Absolute *.instructions.md paths, one per line, from the final response.
    Only lines between the results markers count when the markers are present.
    """
    text = getattr(final_response, "text", None) if final_response is not None else None
    if not text:
        return []
    begin = text.find(RESULTS_BEGIN)
    if begin != -1:
        text = text[begin + len(RESULTS_BEGIN):]
        end = text.find(RESULTS_END)
        if end != -1:
            text = text[:end]
    return [
        line.strip()
        for line in text.splitlines()
        if line.strip().startswith("/") and line.strip().endswith(".instructions.md")
    ]


class InstructionSelector:
    """Chooses instruction files for a goal by asking the model."""

    def __init__(
        self,
        store,
        engine,
        dirs: list[str] | None = None,
        model: str = "",
        max_turns: int = 10,
        dispatch_log=None,
    ):
        self.store = store
        self.engine = engine
        self.dirs = dirs or []
        self.model = model
        self.max_turns = max_turns
        self.dispatch_log = dispatch_log

    def _log(self, conv_id: int, message: str) -> None:
        if self.dispatch_log:
            self.dispatch_log.log(conv_id, message)

    async def select(
        self,
        goal: str,
        context_content: str | None = None,
        model: str | None = None,
        caller: str | None = None,
    ) -> list[str]:
        """Selected paths, most important last. [] when nothing matches."""
        descriptions = collect_instruction_descriptions(self.dirs)
        prompt = build_selection_prompt(goal, descriptions, context_content)

        conv_id = self.store.register(
            goal=prompt,
            model_id=model or self.model,
            max_turns=self.max_turns,
            caller=caller,
            title=SELECTOR_TITLE,
        )
        self._log(conv_id, "🔍 Starting instruction file selection")
        self._log(conv_id, f"📚 Analyzing {len(descriptions)} available instruction files")

        result = await self.engine.run(conv_id, prompt, "", tool_names=[])
        selected = parse_selection_result(result.final_response)

        if selected:
            listing = "\n".join(f"    {i}. {p}" for i, p in enumerate(selected, 1))
            self._log(conv_id, f"✅ Selected {len(selected)} instruction file(s):\n{listing}")
        else:
            self._log(conv_id, "ℹ️ No instruction files selected")
        logger.info("Instruction selector picked %d file(s)", len(selected))
        return selected
