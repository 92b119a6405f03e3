"""LLM gateway backed by a local Ollama server."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import ollama
import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from channeldigest.config import AppConfig
from channeldigest.errors import LLMError
from channeldigest.models.domain import Item
from channeldigest.utils.text import strip_html

log = structlog.get_logger(__name__)

MAX_PROMPT_ITEMS = 12
ITEM_SUMMARY_LIMIT = 300

LANGUAGE_NAMES = {
    "en": "English",
    "ru": "Russian",
    "de": "German",
    "es": "Spanish",
    "fr": "French",
    "it": "Italian",
}

CLUSTER_SUMMARY_PROMPT = """You are writing one entry of a news digest. Several channels reported the same story.

**Reports:**
{items}

**Instructions:**
- Write 1-2 sentences that merge the reports into a single summary
- Keep names, numbers and places that the reports agree on
- Do not mention the channels
- Write in {language}

Respond ONLY with the summary text (no JSON, no markdown, no HTML)."""

CLUSTER_TOPIC_PROMPT = """Give a short topic label (at most 4 words) for this group of news reports.

**Reports:**
{items}

Write the label in {language}. Respond ONLY with the label."""

NARRATIVE_PROMPT = """You are the editor of a news digest. Write a short overview (2-4 sentences) of the period covered by these items, most important first.

**Items:**
{items}

Write in {language}. Respond ONLY with the overview text (no JSON, no markdown, no HTML)."""


def format_items_for_llm(items: Sequence[Item]) -> str:
    """Format items as a numbered list for a prompt."""
    lines = []
    for i, item in enumerate(items[:MAX_PROMPT_ITEMS], 1):
        summary = strip_html(item.summary)[:ITEM_SUMMARY_LIMIT]
        topic = f"[{item.topic}] " if item.topic else ""
        lines.append(f"{i}. {topic}{summary} (importance: {item.importance_score:.2f})")
    return "\n".join(lines)


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get((code or "").strip().lower(), code or "English")


class OllamaGateway:
    """
    Text generation for cluster summaries, cluster topics and the digest overview.

    Transport failures are retried; anything left over is raised as
    :class:`LLMError` so callers can fall back to deterministic text.
    """

    def __init__(self, model: str, host: str | None = None, timeout: float = 60.0, client: Any | None = None) -> None:
        self.model = model
        self.client = client or ollama.Client(host=host, timeout=timeout)
        self._retryer = Retrying(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception_type((httpx.HTTPError, ollama.ResponseError)),
            reraise=True,
        )

    @classmethod
    def from_config(cls, config: AppConfig) -> "OllamaGateway":
        return cls(model=config.llm_model, host=config.llm_host, timeout=config.llm_timeout_seconds)

    def summarize_cluster(self, items: Sequence[Item], language: str) -> str:
        if not items:
            return ""
        prompt = CLUSTER_SUMMARY_PROMPT.format(items=format_items_for_llm(items), language=language_name(language))
        summary = self._chat(prompt, temperature=0.4, num_predict=200)
        log.info("llm.cluster_summarized", items=len(items), length=len(summary))
        return summary

    def generate_cluster_topic(self, items: Sequence[Item], language: str) -> str:
        if not items:
            return ""
        prompt = CLUSTER_TOPIC_PROMPT.format(items=format_items_for_llm(items), language=language_name(language))
        topic = self._chat(prompt, temperature=0.2, num_predict=20)
        lines = topic.strip().splitlines()
        return lines[0].strip().strip("\"'.") if lines else ""

    def compose_narrative(self, items: Sequence[Item], language: str) -> str:
        if not items:
            return ""
        prompt = NARRATIVE_PROMPT.format(items=format_items_for_llm(items), language=language_name(language))
        narrative = self._chat(prompt, temperature=0.7, num_predict=250)
        log.info("llm.narrative_generated", items=len(items), length=len(narrative))
        return narrative

    def _chat(self, prompt: str, temperature: float, num_predict: int) -> str:
        try:
            for attempt in self._retryer:
                with attempt:
                    response = self.client.chat(
                        model=self.model,
                        messages=[{"role": "user", "content": prompt}],
                        options={"temperature": temperature, "num_predict": num_predict},
                    )
        except (httpx.HTTPError, ollama.ResponseError, ConnectionError) as exc:
            log.error("llm.request_failed", model=self.model, error=str(exc))
            raise LLMError(f"LLM request failed: {exc}") from exc

        try:
            return response["message"]["content"].strip()
        except (KeyError, TypeError) as exc:
            raise LLMError("LLM response missing message content") from exc
