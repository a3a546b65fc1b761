# -*- coding: utf-8 -*-
"""
Unified Environment Variable Loader.

This module loads environment variables from a .env file and provides them as
Python constants. It includes a fallback mechanism for aliased variables, which
is mostly used to find provider credentials under their common names.

Example:
    import core.env
    print(core.env.OLLAMA_HOST)
"""
import os
from dotenv import load_dotenv

from core.errors import EnvError

# Load environment variables from .env file located in the project root
# The search path starts from the current working directory and goes up.
load_dotenv()

def _first(*keys: str, default: str | None = None) -> str | None:
    """
    Return the value of the first environment variable that is set and not empty.

    Args:
        *keys: A sequence of environment variable names to check.
        default: The default value to return if no variable is found.

    Returns:
        The value of the first found environment variable, or the default value.
    """
    for key in keys:
        val = os.getenv(key)
        if val:
            return val
    return default

def require(*keys: str) -> str:
    """Like ``_first`` but raises ``EnvError`` when none of the keys is set."""
    value = _first(*keys)
    if value is None:
        raise EnvError(f"Missing required environment variable: {' / '.join(keys)}")
    return value

# --- General & Core ---
LOG_LEVEL: str = _first('LOG_LEVEL', default='INFO')
CODEBRIDGE_CONFIG_DIR: str | None = _first('CODEBRIDGE_CONFIG_DIR')

# --- Provider credentials ---
OPENAI_API_KEY: str | None = _first('OPENAI_API_KEY', 'OPENAI_KEY')
OPENAI_BASE_URL: str = _first('OPENAI_BASE_URL', 'OPENAI_API_BASE', default='https://api.openai.com/v1')
ANTHROPIC_API_KEY: str | None = _first('ANTHROPIC_API_KEY', 'CLAUDE_API_KEY')
ANTHROPIC_BASE_URL: str = _first('ANTHROPIC_BASE_URL', default='https://api.anthropic.com/v1')
ANTHROPIC_VERSION: str = _first('ANTHROPIC_VERSION', default='2023-06-01')

# --- Ollama / Local LLMs ---
OLLAMA_HOST: str = _first('OLLAMA_HOST', 'OLLAMA_BASE_URL', 'OLLAMA_API_URL', default='http://localhost:11434')
