"""Prompt templates for the code actions and prompt size limits."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from .config import PromptConfig


class CodeAction(str, Enum):
    EXPLAIN = "explain"
    IMPROVE = "improve"
    DOCUMENT = "document"
    COMPLETE = "complete"


def truncate_prompt(prompt: str, limit: int) -> str:
    if limit <= 0 or len(prompt) <= limit:
        return prompt
    return (
        prompt[:limit]
        + f"\n\n... [content truncated to {limit} characters for performance] ..."
    )


def language_from_path(path: Optional[Path]) -> str:
    if path is None:
        return "Unknown"
    return path.suffix.lstrip(".") or "Unknown"


def build_code_prompt(
    action: CodeAction,
    code: str,
    language: str = "Unknown",
    prompts: Optional[PromptConfig] = None,
) -> str:
    prompts = prompts or PromptConfig()
    action = CodeAction(action)
    if action is CodeAction.COMPLETE:
        instruction = prompts.complete.format(language=language)
        return f"{instruction}\n\n```{language}\n{code}\n```"
    instruction = getattr(prompts, action.value)
    return f"{instruction}\n\nLanguage: {language or 'Unknown'}\nCode:\n```\n{code}\n```"
