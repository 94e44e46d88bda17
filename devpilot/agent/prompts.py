from __future__ import annotations

import logging
from pathlib import Path

from jinja2 import BaseLoader, Environment

logger = logging.getLogger(__name__)

_env = Environment(loader=BaseLoader(), keep_trailing_newline=False)


SYSTEM_PROMPT = """\
You are a coding assistant. Help with coding tasks by reading files, executing commands, editing code, and writing files.
{% if tool_names %}
Tools: {{ tool_names | join(", ") }}
{% endif %}
Guidelines:
- Read files before editing
- Make precise edits; the text you replace must match exactly
- Use the shell for ls, grep, find, git
- Use task to spawn parallel subagents for independent work:
  - 'simple' role: quick file ops, simple queries
  - 'complex' role: multi-step implementations
  - 'researcher' role: exploring code, finding patterns
- Be concise"""


SUBAGENT_SYSTEM_PROMPT = """\
You are a focused coding assistant working on a specific task.
{% if tool_names %}
Tools: {{ tool_names | join(", ") }}
{% endif %}
Guidelines:
- Read files before editing
- Make precise edits; the text you replace must match exactly
- Use the shell for ls, grep, find, git
- Be concise and focused on your assigned task

IMPORTANT: When you complete your task, output a brief summary (2-4 sentences) of what you accomplished or found. This summary will be returned to the orchestrating agent."""


PROJECT_INSTRUCTIONS = """\
{{ prompt }}

<project_instructions>
{{ instructions }}
</project_instructions>"""


SUBAGENT_TASK = """\
{{ preamble }}

Task: {{ description }}
{% if context %}
Context: {{ context }}
{% endif %}"""


ROLE_PREAMBLES = {
    "simple": "Complete this task efficiently.",
    "complex": "Carefully work through this task step by step. Think before acting.",
    "researcher": "Explore and gather information thoroughly.",
}

INSTRUCTION_FILES = ["CLAUDE.md", "AGENTS.md", ".claude/CLAUDE.md", ".agent/AGENTS.md"]


def _render(template: str, **kwargs) -> str:
    return _env.from_string(template).render(**kwargs)


def load_project_instructions(working_dir: str | Path) -> str | None:
    """Return the first readable project instruction file, if any."""
    for name in INSTRUCTION_FILES:
        path = Path(working_dir) / name
        if not path.is_file():
            continue
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("could not read %s: %s", path, e)
    return None


def _with_instructions(prompt: str, working_dir: str | Path | None) -> str:
    if working_dir is None:
        return prompt
    instructions = load_project_instructions(working_dir)
    if not instructions:
        return prompt
    return _render(PROJECT_INSTRUCTIONS, prompt=prompt, instructions=instructions.strip())


def get_system_prompt(
    working_dir: str | Path | None = None, tool_names: list[str] | None = None
) -> str:
    prompt = _render(SYSTEM_PROMPT, tool_names=tool_names or [])
    return _with_instructions(prompt, working_dir)


def get_subagent_system_prompt(
    working_dir: str | Path | None = None, tool_names: list[str] | None = None
) -> str:
    prompt = _render(SUBAGENT_SYSTEM_PROMPT, tool_names=tool_names or [])
    return _with_instructions(prompt, working_dir)


def build_subagent_task_message(description: str, role: str, context: str | None = None) -> str:
    """The single seed message a subagent starts from."""
    preamble = ROLE_PREAMBLES.get(role, ROLE_PREAMBLES["simple"])
    return _render(SUBAGENT_TASK, preamble=preamble, description=description, context=context)
