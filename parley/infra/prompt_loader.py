"""
System prompt loader.

The system instruction is either given inline in config.yaml
(``openai.system_prompt``) or kept in a plain-text file referenced by
``openai.system_prompt_file``.  Relative paths resolve against
``data/prompts/``.
"""

import logging
from pathlib import Path
from typing import Optional

from parley.infra.paths import PROMPTS_DIR

logger = logging.getLogger(__name__)


def resolve(name: str) -> Path:
    path = Path(name)
    if not path.is_absolute():
        path = PROMPTS_DIR / path
    return path


def load(name: str) -> str:
    """Read a prompt file.  Raises ``FileNotFoundError`` if it is missing."""
    return resolve(name).read_text(encoding="utf-8").strip()


def load_system_prompt(inline: Optional[str], file_name: Optional[str], default: str) -> str:
    """Pick the system prompt: file beats inline text beats *default*."""
    if file_name:
        text = load(file_name)
        if not text:
            raise ValueError(f"System prompt file {resolve(file_name)} is empty")
        logger.info("Loaded system prompt from %s", resolve(file_name))
        return text
    if inline and inline.strip():
        return inline.strip()
    return default
