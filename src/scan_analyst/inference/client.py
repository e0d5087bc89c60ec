"""Client for the remote text-generation and embedding service.

Neither call ever raises. Transport errors, timeouts and missing
configuration come back as the failure sentinel from `generate` and as an
empty vector from `generate_embedding`; callers check with
`is_unavailable`.
"""

from __future__ import annotations

import logging
from typing import Any

from langchain_core.embeddings import Embeddings

from scan_analyst.config import InferenceConfig
from scan_analyst.inference.embedder import HashingEmbeddings

logger = logging.getLogger(__name__)

UNAVAILABLE_MARKER = "Inference service unavailable"


def is_unavailable(text: str | None) -> bool:
    """True when `text` is empty or carries the failure sentinel."""
    if text is None or not text.strip():
        return True
    return UNAVAILABLE_MARKER.lower() in text.lower()


class InferenceClient:
    """Thin wrapper over a LangChain chat model and embeddings model."""

    def __init__(self, chat_model: Any | None = None, embeddings: Embeddings | None = None) -> None:
        self.chat_model = chat_model
        self.embeddings = embeddings

    @property
    def configured(self) -> bool:
        return self.chat_model is not None

    def generate(self, prompt: str) -> str:
        if self.chat_model is None:
            return f"{UNAVAILABLE_MARKER}: no model configured"
        try:
            response = self.chat_model.invoke(prompt)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Inference call failed: %s", exc)
            return f"{UNAVAILABLE_MARKER}: {exc}"

        content = getattr(response, "content", response)
        if content is None:
            return ""
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        text = str(content).strip()
        logger.debug("Inference call returned %d chars for %d-char prompt", len(text), len(prompt))
        return text

    def generate_embedding(self, text: str) -> list[float]:
        if self.embeddings is None:
            return []
        try:
            vector = self.embeddings.embed_query(text)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Embedding call failed: %s", exc)
            return []
        return [float(value) for value in vector]


def create_inference_client(config: InferenceConfig) -> InferenceClient:
    """Build the production client from configuration."""
    chat_model = None
    if config.enabled:
        from langchain_openai import ChatOpenAI

        chat_model = ChatOpenAI(
            model=config.model,
            base_url=config.base_url,
            api_key=config.api_key or "unused",
            temperature=config.temperature,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    embeddings: Embeddings
    if config.embedding_provider == "openai" and config.enabled:
        from langchain_openai import OpenAIEmbeddings

        embeddings = OpenAIEmbeddings(
            model=config.embedding_model,
            base_url=config.base_url,
            api_key=config.api_key or "unused",
            timeout=config.timeout_seconds,
            max_retries=0,
        )
    else:
        embeddings = HashingEmbeddings()

    logger.info(
        "Inference client ready (chat=%s, embeddings=%s)",
        config.model if chat_model is not None else "disabled",
        type(embeddings).__name__,
    )
    return InferenceClient(chat_model=chat_model, embeddings=embeddings)
