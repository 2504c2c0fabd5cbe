"""
Semantic similarity oracle backed by an OpenAI chat model.

The fingerprint engine only needs `await oracle(text_a, text_b) -> float`.
Any failure here surfaces as an exception; the engine treats that as 0.0.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable

import structlog
from openai import AsyncOpenAI

logger = structlog.get_logger(__name__)

SimilarityOracle = Callable[[str, str], Awaitable[float]]

_SCORE_RE = re.compile(r"([0-9]*\.[0-9]+|[0-9]+)")

PROMPT = """Compare the following two webpage contents and determine their semantic similarity:

PAGE 1:
{text_a}

PAGE 2:
{text_b}

On a scale of 0.0 to 1.0, where 0.0 means completely different topics and 1.0 means identical topics, what is the semantic similarity between these pages?
Provide just a single decimal number between 0.0 and 1.0 as your answer."""


def parse_similarity(reply: str | None) -> float:
    """First number in the reply, clamped to [0, 1]; 0.0 if there is none."""
    if not reply:
        return 0.0
    match = _SCORE_RE.search(reply)
    if not match:
        return 0.0
    return min(1.0, max(0.0, float(match.group(0))))


class OpenAISimilarityOracle:
    """Asks a chat model how semantically similar two page excerpts are."""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o", timeout: float = 30.0):
        self.client = client
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> OpenAISimilarityOracle | None:
        if not settings.OPENAI_API_KEY:
            return None
        return cls(
            AsyncOpenAI(api_key=settings.OPENAI_API_KEY),
            model=settings.OPENAI_MODEL,
            timeout=settings.SIMILARITY_ORACLE_TIMEOUT,
        )

    async def __call__(self, text_a: str, text_b: str) -> float:
        response = await asyncio.wait_for(
            self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": "You rate semantic similarity of web pages. Answer with a number only."},
                    {"role": "user", "content": PROMPT.format(text_a=text_a, text_b=text_b)},
                ],
                max_tokens=10,
                temperature=0,
            ),
            timeout=self.timeout,
        )

        if not response.choices:
            logger.warning("Similarity oracle returned no choices", model=self.model)
            return 0.0

        return parse_similarity(response.choices[0].message.content)
