"""Round arbiter: asks a language model which character wins a fight.

Talks to OpenRouter through the OpenAI SDK, walking a list of fallback
models on rate limits. Any failure degrades to a coin flip, so ``judge``
never raises.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re

from openai import APIError, AsyncOpenAI, RateLimitError
from openai.types.chat import ChatCompletionMessageParam

from cardclash.shared.models.character import Character
from cardclash.shared.models.room import ArbiterOutcome, Judgment

LOGGER: logging.Logger = logging.getLogger("RoundArbiter")

FALLBACK_EXPLANATION = "Unable to determine winner due to API error. Random result generated."

FALLBACK_MODELS: list[str] = [
    "deepseek/deepseek-r1-0528:free",
    "z-ai/glm-4.5-air:free",
    "openai/gpt-oss-120b:free",
    "meta-llama/llama-3.3-70b-instruct:free",
]

_WINNER_ALIASES = {
    "character1": ArbiterOutcome.FIRST,
    "first": ArbiterOutcome.FIRST,
    "character2": ArbiterOutcome.SECOND,
    "second": ArbiterOutcome.SECOND,
    "tie": ArbiterOutcome.TIE,
    "draw": ArbiterOutcome.TIE,
}

_THINK_RE = re.compile(r"<think>[\s\S]*?</think>")
_OPEN_THINK_RE = re.compile(r"<think>[\s\S]*$")
_JSON_RE = re.compile(r"\{[\s\S]*\}")


def build_prompt(first: Character, second: Character) -> str:
    return f"""
Compare these two anime characters and determine who would win in a battle based on their abilities, powers, and characteristics.

Character 1: {first.name}
Description: {first.description}

Character 2: {second.name}
Description: {second.description}

Please respond with ONLY a JSON object in this exact format:
{{
  "winner": "character1" or "character2" or "tie",
  "explanation": "Brief explanation of why this character wins or why it's a tie (max 100 words)"
}}

Consider their powers, abilities, combat experience, and overall strength. If they are very evenly matched, you can declare it a tie.
"""


def parse_verdict(text: str) -> Judgment | None:
    """Extract a judgment from a model reply, or None if unusable."""
    cleaned = _OPEN_THINK_RE.sub("", _THINK_RE.sub("", text)).strip()
    match = _JSON_RE.search(cleaned)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    outcome = _WINNER_ALIASES.get(str(data.get("winner", "")).strip().lower())
    if outcome is None:
        return None
    explanation = str(data.get("explanation") or "").strip()
    return Judgment(outcome=outcome, explanation=explanation)


class RoundArbiter:
    """Judges a pair of cards; ``judge`` degrades to random instead of raising."""

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = "",
        base_url: str = "https://openrouter.ai/api/v1",
        client: AsyncOpenAI | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._rng = rng or random.Random()
        if client is None and api_key.strip():
            client = AsyncOpenAI(base_url=base_url, api_key=api_key)
        self.client = client

        self.models = [model] if model else []
        self.models += [m for m in FALLBACK_MODELS if m != model]

        if self.client is None:
            LOGGER.warning("No OpenRouter API key set, rounds will be decided at random")
        else:
            LOGGER.info(
                f"RoundArbiter initialized: primary={self.models[0]}, "
                f"fallbacks={len(self.models) - 1}"
            )

    def fallback(self) -> Judgment:
        outcome = self._rng.choice([ArbiterOutcome.FIRST, ArbiterOutcome.SECOND])
        return Judgment(outcome=outcome, explanation=FALLBACK_EXPLANATION)

    async def judge(self, first: Character, second: Character) -> Judgment:
        if self.client is None:
            return self.fallback()
        try:
            judgment = await self._ask(first, second)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.error(f"Error comparing characters: {type(e).__name__}: {e}")
            judgment = None
        if judgment is None:
            return self.fallback()
        LOGGER.info(f"{first.name} vs {second.name}: {judgment.outcome.value}")
        return judgment

    async def _ask(self, first: Character, second: Character) -> Judgment | None:
        assert self.client is not None
        messages: list[ChatCompletionMessageParam] = [
            {"role": "user", "content": build_prompt(first, second)},
        ]

        for model in self.models:
            try:
                for attempt in range(2):
                    completion = await self.client.chat.completions.create(
                        model=model,
                        max_tokens=1200,
                        messages=messages,
                    )
                    if not completion.choices:
                        LOGGER.warning(f"Arbiter [{model}] attempt {attempt + 1}: no choices")
                        continue

                    raw = completion.choices[0].message.content or ""
                    judgment = parse_verdict(raw)
                    if judgment is not None:
                        return judgment
                    LOGGER.warning(
                        f"Arbiter [{model}] attempt {attempt + 1}: unusable reply ({len(raw)} chars)"
                    )
            except RateLimitError:
                LOGGER.warning(f"Arbiter rate limit on {model}, trying next model")
                continue
            except APIError as e:
                LOGGER.warning(f"Arbiter [{model}] API error: {e}, trying next model")
                continue
        return None
