"""
healthroute/llm/prompt_builder.py — Prompt construction for health queries.

Builds the text prompt handed to the on-device model from a user query and
an optional mapping of health metrics. The builder is pure: no I/O, no state
retained between calls. The query always appears verbatim and every numeric
value keeps its literal decimal form, so prompts are auditable against the
inputs that produced them.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from healthroute.core.constants import C

logger = logging.getLogger(__name__)

# Safety guidelines included in every prompt
_SAFETY_GUIDELINES: str = (
    "Medical safety notice:\n"
    "- This analysis is based on the user's own health data and is for wellness reference only.\n"
    "- It does not replace a professional diagnosis or treatment.\n"
    "- For severe symptoms or emergencies, tell the user to seek medical care immediately.\n"
    "- Do not recommend medication and do not state a diagnosis."
)

# Display name and unit for well-known metric keys. Unknown keys render as-is.
_METRIC_LABELS: dict[str, tuple[str, str]] = {
    "steps": ("Daily steps", "steps"),
    "heartRate": ("Heart rate", "bpm"),
    "restingHeartRate": ("Resting heart rate", "bpm"),
    "walkingHeartRateAverage": ("Walking heart rate average", "bpm"),
    "heartRateVariability": ("Heart rate variability", "ms"),
    "sleepAnalysis": ("Sleep analysis", ""),
    "activeEnergyBurned": ("Active energy burned", "kcal"),
    "vo2Max": ("VO2 max", "ml/kg/min"),
    "bloodPressure": ("Blood pressure", ""),
    "bodyMass": ("Body mass", "kg"),
    "respiratoryRate": ("Respiratory rate", "breaths/min"),
    "oxygenSaturation": ("Blood oxygen saturation", "%"),
    "bodyTemperature": ("Body temperature", "°C"),
    "walkingSpeed": ("Walking speed", "km/h"),
    "workoutType": ("Workout type", ""),
}


class PromptRequest(BaseModel):
    """
    Pydantic-validated builder input.

    ``query`` is kept byte-for-byte (no stripping). ``context`` accepts any
    mapping or ``None``; keys are converted to strings and insertion order is
    preserved.
    """

    model_config = ConfigDict(frozen=True)

    query: str
    context: dict[str, Any] = {}

    @field_validator("query", mode="before")
    @classmethod
    def query_as_text(cls, v: Any) -> str:
        """Treat ``None`` as the empty query."""
        return "" if v is None else v

    @field_validator("context", mode="before")
    @classmethod
    def context_as_dict(cls, v: Any) -> dict[str, Any]:
        """
        Normalise the health context.

        Raises:
            ValueError: If *v* is neither ``None`` nor a mapping.
        """
        if v is None:
            return {}
        if not isinstance(v, Mapping):
            raise ValueError("health context must be a mapping")
        return {str(key): value for key, value in v.items()}


def render_value(value: Any) -> str:
    """
    Render one health value.

    Numbers keep their literal decimal representation (``8500`` → ``"8500"``),
    strings are verbatim, booleans are ``true``/``false`` and nested
    structures are JSON with non-ASCII characters preserved.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


class PromptBuilder:
    """
    Constructs health-assistant prompts for the on-device model.

    Layout::

        <system preamble>

        <safety guidelines>

        User health data:
        - Daily steps (steps): 8500 steps
        ...

        User question: <query>

        Please provide your analysis and advice:
    """

    _SYSTEM_PROMPT: str = (
        "You are a careful health data assistant. You analyse the user's personal "
        "health metrics and answer their question with accurate, practical insight.\n"
        "Answer requirements:\n"
        "- Reply in the language of the user's question.\n"
        "- Structure the answer as: data analysis, insight, suggestions.\n"
        "- Keep a professional but friendly tone and give concrete, actionable advice.\n"
        "- Point out metrics that look unusual and deserve attention."
    )

    _ANSWER_CUE: str = "Please provide your analysis and advice:"

    def build(self, query: Optional[str], health_context: Optional[Mapping[str, Any]] = None) -> str:
        """
        Build a complete prompt string.

        Args:
            query: The user's question; may be empty.
            health_context: Metric name → value mapping; may be empty or ``None``.

        Returns:
            A non-empty prompt containing *query* verbatim.
        """
        request = PromptRequest(query=query, context=health_context)
        prompt = (
            f"{self._SYSTEM_PROMPT}\n\n"
            f"{_SAFETY_GUIDELINES}\n\n"
            f"User health data:\n{self.format_health_context(request.context)}\n\n"
            f"User question: {request.query}\n\n"
            f"{self._ANSWER_CUE}"
        )
        logger.debug("PromptBuilder: prompt (%d chars, %d metrics)", len(prompt), len(request.context))
        return prompt

    def build_within(
        self,
        query: Optional[str],
        health_context: Optional[Mapping[str, Any]],
        max_tokens: int,
    ) -> tuple[str, int]:
        """
        Build a prompt whose estimated size fits *max_tokens*.

        Metrics are dropped from the end of the context until the prompt fits;
        the query and the answer cue are never cut.

        Returns:
            ``(prompt, dropped_metric_count)``.
        """
        request = PromptRequest(query=query, context=health_context)
        items = list(request.context.items())
        kept = len(items)
        prompt = self.build(request.query, request.context)
        while kept > 0 and self.estimate_tokens(prompt) > max_tokens:
            kept -= 1
            prompt = self.build(request.query, dict(items[:kept]))
        return prompt, len(items) - kept

    def build_chat_messages(
        self,
        query: Optional[str],
        health_context: Optional[Mapping[str, Any]] = None,
    ) -> list[dict[str, str]]:
        """
        Build the prompt as system/user chat messages.

        Used by backends whose tokenizer ships a chat template.
        """
        request = PromptRequest(query=query, context=health_context)
        user_content = (
            f"{_SAFETY_GUIDELINES}\n\n"
            f"User health data:\n{self.format_health_context(request.context)}\n\n"
            f"User question: {request.query}"
        )
        return [
            {"role": "system", "content": self._SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ]

    @staticmethod
    def format_health_context(context: Mapping[str, Any]) -> str:
        """Render one line per metric in insertion order, or the no-data marker."""
        if not context:
            return C.NO_HEALTH_DATA_MARKER
        lines = []
        for key, value in context.items():
            label, unit = _METRIC_LABELS.get(key, (key, ""))
            name = f"{label} ({key})" if label != key else key
            is_number = isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)
            suffix = f" {unit}" if unit and is_number else ""
            lines.append(f"- {name}: {render_value(value)}{suffix}")
        return "\n".join(lines)

    @staticmethod
    def estimate_tokens(prompt: str) -> int:
        """
        Estimate the token count of *prompt* for context budgeting.

        Uses a characters / 4 heuristic (good approximation for
        SentencePiece / BPE tokenisers on mixed text).
        """
        return max(1, len(prompt) // 4)


_DEFAULT_BUILDER = PromptBuilder()


def build_prompt(query: Optional[str], health_context: Optional[Mapping[str, Any]] = None) -> str:
    """Module-level shortcut for :meth:`PromptBuilder.build`."""
    return _DEFAULT_BUILDER.build(query, health_context)
