# /knowledgechat/llm.py
"""
Language model client: hosted Groq chat model or a local Ollama model,
driven through LangChain prompt | model | parser chains.
"""
from __future__ import annotations

import re
from typing import Any

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_groq import ChatGroq
from langchain_ollama import OllamaLLM

from .config import (
    API_MODEL_NAME,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_S,
    LOCAL_MODEL_NAME,
    USE_API_LLM,
    console,
    get_api_key,
)
from .errors import RemoteServiceError
from .observability import get_logger

logger = get_logger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)


def initialize_llm():
    """Initializes the LLM based on global configuration. Returns None when unavailable."""
    if USE_API_LLM:
        api_key = get_api_key()
        if not api_key:
            console.print("[yellow]GROQ_API_KEY not set. Using local fallback answers.[/yellow]")
            logger.warning("llm_disabled", reason="missing_api_key")
            return None
        logger.info("llm_initialized", provider="groq", model=API_MODEL_NAME)
        return ChatGroq(
            model_name=API_MODEL_NAME,
            temperature=LLM_TEMPERATURE,
            max_tokens=LLM_MAX_TOKENS,
            timeout=LLM_TIMEOUT_S,
            groq_api_key=api_key,
        )
    logger.info("llm_initialized", provider="ollama", model=LOCAL_MODEL_NAME)
    return OllamaLLM(
        model=LOCAL_MODEL_NAME,
        temperature=LLM_TEMPERATURE,
        num_predict=LLM_MAX_TOKENS,
    )


def strip_reasoning(text: str) -> str:
    """Drops <think>…</think> blocks emitted by reasoning models."""
    return _THINK_RE.sub("", str(text or "")).strip()


def invoke_text(llm, prompt: ChatPromptTemplate, variables: dict[str, Any]) -> str:
    """Runs prompt | llm | StrOutputParser and returns the cleaned text.

    Any failure, including an empty completion, surfaces as RemoteServiceError.
    """
    if llm is None:
        raise RemoteServiceError("language model is not configured")
    chain = prompt | llm | StrOutputParser()
    try:
        raw = chain.invoke(variables)
    except Exception as exc:
        raise RemoteServiceError(f"language model call failed: {exc}") from exc
    text = strip_reasoning(raw)
    if not text:
        raise RemoteServiceError("language model returned an empty completion")
    return text
