"""
Model inference for OCR, translation, summaries and spread classification.

ChatCompletionsClient talks to any OpenAI-compatible /v1/chat/completions
endpoint. Costs are computed from token usage with a per-model price table.
"""

import base64
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

# USD per 1M tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gemini-2.0-flash": (0.10, 0.40),
    "gemini-1.5-flash": (0.075, 0.30),
    "gemini-1.5-pro": (1.25, 5.00),
    "default": (0.10, 0.40),
}

MAX_CONTEXT_CHARS = 2000

OCR_PROMPT = """Transcribe the text on this scanned book page exactly as printed.
The page is written in {language}.

Rules:
- Preserve line breaks between paragraphs, not within them.
- Keep original spelling, abbreviations and punctuation.
- Mark illegible words as [illegible].
- Output only the transcription, no commentary."""

TRANSLATE_PROMPT = """Translate the following {source_language} text into {target_language}.
Stay faithful to the meaning; keep paragraph breaks. Output only the translation.

Text:
{text}"""

SUMMARY_PROMPT = """Summarize this book page in two or three sentences.
Output only the summary.

Page:
{text}"""

CONTEXT_PREFIX = """For continuity, here is the previous page:
---
{previous}
---

"""

SPREAD_PROMPT = """Look at this photo of a book. Decide whether it shows a single page
or two facing pages (a spread) that should be split into separate pages.

Answer with JSON only:
{"isTwoPageSpread": true/false, "splitPosition": 0-1000, "confidence": "high"|"medium"|"low", "reasoning": "..."}

splitPosition is the x coordinate of the gutter on a 0-1000 scale of the image width."""


@dataclass
class InferenceResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    model: str = ""
    duration_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class SpreadVerdict:
    """A vision model's answer to "is this a two-page spread?"."""

    is_spread: bool
    split_position: int
    confidence: str
    reasoning: str = ""
    cost_usd: float = 0.0


class InferenceClient(Protocol):
    def ocr(
        self, image: bytes, mime_type: str, language: str, previous: str | None = None
    ) -> InferenceResult:
        ...

    def translate(
        self,
        text: str,
        source_language: str,
        target_language: str,
        previous: str | None = None,
    ) -> InferenceResult:
        ...

    def summarize(self, text: str, previous: str | None = None) -> InferenceResult:
        ...

    def classify_spread(self, image: bytes, mime_type: str) -> SpreadVerdict:
        ...


def calculate_cost(input_tokens: int, output_tokens: int, model: str) -> float:
    """Cost in USD of a call, using the default price for unknown models."""
    input_price, output_price = MODEL_PRICING.get(model, MODEL_PRICING["default"])
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


def truncate_context(previous: str | None, limit: int = MAX_CONTEXT_CHARS) -> str | None:
    """Keep the tail of the previous page, which is closest to the next one."""
    if not previous:
        return None
    return previous if len(previous) <= limit else previous[-limit:]


def parse_spread_answer(content: str) -> SpreadVerdict:
    """Parse the JSON verdict from a model answer, tolerating code fences.

    Raises:
        ValueError: If no JSON object can be read
    """
    match = re.search(r"\{.*\}", content, re.DOTALL)
    if not match:
        raise ValueError(f"No JSON object in spread answer: {content[:200]!r}")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in spread answer: {e}") from e

    position = int(data.get("splitPosition", 500))
    confidence = str(data.get("confidence", "low")).lower()
    if confidence not in ("high", "medium", "low"):
        confidence = "low"

    answer = data.get("isTwoPageSpread", False)
    is_spread = answer is True or (isinstance(answer, str) and answer.strip().lower() == "true")

    return SpreadVerdict(
        is_spread=is_spread,
        split_position=min(max(position, 1), 999),
        confidence=confidence,
        reasoning=str(data.get("reasoning", "")),
    )


class ChatCompletionsClient:
    """Inference over an OpenAI-compatible chat completions endpoint.

    Usage:
        with ChatCompletionsClient(api_url, model="gemini-2.0-flash") as client:
            result = client.ocr(image_bytes, "image/jpeg", language="Latin")
    """

    def __init__(
        self,
        api_url: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_url = api_url
        self.model = model
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(timeout=timeout, headers=headers)

    def __enter__(self) -> "ChatCompletionsClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _complete(
        self, messages: list[dict[str, Any]], temperature: float = 0.1, max_tokens: int = 8192
    ) -> InferenceResult:
        """Send one chat completion request.

        Raises:
            httpx.HTTPError: On transport errors or non-2xx responses
            ValueError: If the response has no message content
        """
        start = time.monotonic()
        response = self._client.post(
            self.api_url,
            json={
                "model": self.model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )
        response.raise_for_status()
        result = response.json()

        message = result.get("choices", [{}])[0].get("message", {})
        text = message.get("content")
        if text is None:
            raise ValueError("Inference response has no message content")

        usage = result.get("usage") or {}
        input_tokens = usage.get("prompt_tokens", 0)
        output_tokens = usage.get("completion_tokens", 0)

        return InferenceResult(
            text=text.strip(),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=calculate_cost(input_tokens, output_tokens, self.model),
            model=self.model,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    @staticmethod
    def _with_context(prompt: str, previous: str | None) -> str:
        context = truncate_context(previous)
        return CONTEXT_PREFIX.format(previous=context) + prompt if context else prompt

    @staticmethod
    def _image_part(image: bytes, mime_type: str) -> dict[str, Any]:
        encoded = base64.b64encode(image).decode("ascii")
        return {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}}

    def ocr(
        self, image: bytes, mime_type: str, language: str, previous: str | None = None
    ) -> InferenceResult:
        prompt = self._with_context(OCR_PROMPT.format(language=language), previous)
        messages = [
            {
                "role": "user",
                "content": [self._image_part(image, mime_type), {"type": "text", "text": prompt}],
            }
        ]
        return self._complete(messages)

    def translate(
        self,
        text: str,
        source_language: str,
        target_language: str,
        previous: str | None = None,
    ) -> InferenceResult:
        prompt = TRANSLATE_PROMPT.format(
            source_language=source_language, target_language=target_language, text=text
        )
        messages = [{"role": "user", "content": self._with_context(prompt, previous)}]
        return self._complete(messages, temperature=0.3)

    def summarize(self, text: str, previous: str | None = None) -> InferenceResult:
        prompt = SUMMARY_PROMPT.format(text=text)
        messages = [{"role": "user", "content": self._with_context(prompt, previous)}]
        return self._complete(messages, temperature=0.3, max_tokens=1024)

    def classify_spread(self, image: bytes, mime_type: str) -> SpreadVerdict:
        messages = [
            {
                "role": "user",
                "content": [
                    self._image_part(image, mime_type),
                    {"type": "text", "text": SPREAD_PROMPT},
                ],
            }
        ]
        result = self._complete(messages, temperature=0.0, max_tokens=512)
        verdict = parse_spread_answer(result.text)
        verdict.cost_usd = result.cost_usd
        logger.debug(
            f"Vision split verdict: spread={verdict.is_spread} "
            f"position={verdict.split_position} confidence={verdict.confidence}"
        )
        return verdict
