"""Chat clients for the LLM billing extractor.

Both factories build clients with client-level retries switched off: a
failed request surfaces immediately as an exception, and the pipeline
coordinator decides whether the unit is retried.
"""

import os
from typing import Optional

from anthropic import Anthropic
from loguru import logger
from openai import OpenAI

from billgraph.utils.config import LLMConfig


def _mask(key: Optional[str]) -> str:
    return f"{key[:4]}...{key[-4:]}" if key and len(key) > 8 else "None"


def create_openai_client(config: LLMConfig, api_key: Optional[str] = None) -> OpenAI:
    """OpenAI (or OpenAI-compatible) client for ``config``.

    The key falls back to ``OPENAI_API_KEY`` and the base URL to
    ``OPENAI_BASE_URL`` when neither the caller nor ``config`` sets one.
    """
    final_api_key = api_key or os.getenv("OPENAI_API_KEY")
    final_base_url = config.base_url or os.getenv("OPENAI_BASE_URL")

    logger.debug(
        "Creating OpenAI client",
        base_url=final_base_url,
        api_key=_mask(final_api_key),
        timeout=config.timeout,
    )
    return OpenAI(
        api_key=final_api_key,
        base_url=final_base_url,
        timeout=config.timeout,
        max_retries=0,
    )


def create_anthropic_client(config: LLMConfig, api_key: Optional[str] = None) -> Anthropic:
    """Anthropic client for ``config``; the key falls back to ``ANTHROPIC_API_KEY``."""
    final_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")

    logger.debug(
        "Creating Anthropic client",
        base_url=config.base_url,
        api_key=_mask(final_api_key),
        timeout=config.timeout,
    )
    if config.base_url:
        return Anthropic(
            api_key=final_api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=0,
        )
    return Anthropic(api_key=final_api_key, timeout=config.timeout, max_retries=0)
