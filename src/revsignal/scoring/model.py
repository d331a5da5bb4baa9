"""Deal Health Model -- one inference call per deal, validated before use.

DealHealthModel.evaluate() builds the prompt, calls the LLM service with a
JSON-object response format, and validates the output against
AIScoreResponse. Anything short of a fully valid response raises, so a bad
score never reaches storage.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta

import structlog
from pydantic import ValidationError

from src.revsignal.core.errors import InferenceProviderError, ModelValidationError
from src.revsignal.scoring.prompts import (
    DEAL_SCORING_SYSTEM_PROMPT,
    build_deal_scoring_prompt,
)
from src.revsignal.scoring.schemas import AIScoreResponse, DealDataForScoring
from src.revsignal.services.llm import LLMService

logger = structlog.get_logger(__name__)

SCORING_TEMPERATURE = 0.3
SCORING_MAX_TOKENS = 1000
DEFAULT_STALE_AFTER = timedelta(hours=24)


def is_stale(
    scored_at: datetime | None,
    now: datetime,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> bool:
    """A score is stale when missing or strictly older than the threshold."""
    if scored_at is None:
        return True
    return now - scored_at > stale_after


def parse_score_response(content: str | None) -> AIScoreResponse:
    """Validate raw model output.

    Raises:
        ModelValidationError: Empty, non-JSON, or schema-violating output.
    """
    if not content:
        raise ModelValidationError("Empty response from AI")
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ModelValidationError(f"AI response is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ModelValidationError("AI response is not a JSON object")
    try:
        return AIScoreResponse.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise ModelValidationError(f"Invalid score in AI response: {fields}") from exc


class DealHealthModel:
    """Score one deal through the inference provider.

    Args:
        llm: LLM service (LiteLLM Router).
        model_group: Router model group to call.
    """

    def __init__(self, llm: LLMService, model_group: str = "scoring") -> None:
        self._llm = llm
        self._model_group = model_group

    async def evaluate(
        self, deal: DealDataForScoring, now: datetime | None = None
    ) -> AIScoreResponse:
        """Return a validated score for the deal.

        Raises:
            InferenceProviderError: Transport, quota or configuration failure.
            ModelValidationError: The response failed validation.
        """
        messages = [
            {"role": "system", "content": DEAL_SCORING_SYSTEM_PROMPT},
            {"role": "user", "content": build_deal_scoring_prompt(deal, now)},
        ]
        try:
            result = await self._llm.completion(
                messages=messages,
                model=self._model_group,
                max_tokens=SCORING_MAX_TOKENS,
                temperature=SCORING_TEMPERATURE,
                response_format={"type": "json_object"},
                metadata={"deal_id": deal.id, "operation": "deal_scoring"},
            )
        except Exception as exc:
            logger.warning("scoring.inference_failed", deal_id=deal.id, error=str(exc))
            raise InferenceProviderError(f"Inference call failed: {exc}") from exc

        return parse_score_response(result.get("content"))
