from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

from .errors import ConfigurationError
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Searches the environment first, then falls back to a ``.env`` file at the
    given ``repo_root`` (or cwd if not specified).

    Args:
        repo_root: Optional directory to search for a .env file.

    Returns:
        The API key string.

    Raises:
        ConfigurationError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise ConfigurationError("OPENAI_API_KEY is required to generate plans")
    return key


def get_chat_model(settings: RuntimeSettings, *, repo_root: Path | None = None) -> ChatOpenAI:
    """Construct a ChatOpenAI instance for the configured generation target.

    Args:
        settings: Runtime settings carrying the model name and request limits.
        repo_root: Optional directory for .env file resolution.

    Returns:
        Configured ChatOpenAI instance.

    Raises:
        ConfigurationError: If no model is selected or OPENAI_API_KEY is missing.
    """
    if not settings.has_model:
        raise ConfigurationError("No model selected; set PLAN_REVIEW_MODEL to a chat model name")
    ensure_openai_api_key(repo_root=repo_root)
    logger.debug("Building chat model %s (timeout=%ss)", settings.model_name, settings.request_timeout)
    return ChatOpenAI(
        model=settings.model_name,
        temperature=settings.temperature,
        timeout=settings.request_timeout,
        max_retries=settings.max_retries,
    )


def _content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content.

    Only text parts are kept; reasoning or tool-call parts are dropped.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
                continue
            if isinstance(item, dict):
                if item.get("type", "text") != "text":
                    continue
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                continue
            chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return _content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def extract_response_text(response: Any) -> str:
    """Extract the text content of a chat model response."""
    if isinstance(response, str):
        return response
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)
