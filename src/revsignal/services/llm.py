"""LLM provider abstraction via LiteLLM Router.

Provides a tenant-aware LLM service with:
- GPT-4o as the primary "scoring" model
- Claude Sonnet 4 as fallback when OpenAI is unavailable
- Prompt injection detection and sanitization of user content
- Tenant metadata in every LLM call for cost tracking
- JSON-object response format for structured outputs
"""

from __future__ import annotations

import re

import structlog
from litellm import Router

from src.revsignal.config import get_settings
from src.revsignal.core.monitoring import track_llm_call
from src.revsignal.core.tenant import current_tenant_id

logger = structlog.get_logger(__name__)

# ── Prompt Injection Detection ────────────────────────────────────────────────

# Patterns that indicate prompt injection attempts
_INJECTION_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "instruction_override",
        re.compile(
            r"ignore\s+(all\s+)?previous\s+instructions|"
            r"disregard\s+(all\s+)?(your\s+)?instructions|"
            r"forget\s+(all\s+)?(your\s+)?instructions|"
            r"override\s+(all\s+)?(your\s+)?instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "system_prompt_exfiltration",
        re.compile(
            r"(reveal|show|display|output|print|repeat)\s+(your\s+)?(system\s+prompt|instructions|prompt)|"
            r"system\s+prompt|"
            r"repeat\s+everything\s+above|"
            r"what\s+are\s+your\s+instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "role_hijacking",
        re.compile(
            r"you\s+are\s+now\s+|"
            r"act\s+as\s+(a\s+|an\s+)?|"
            r"pretend\s+(to\s+be|you\s+are)|"
            r"from\s+now\s+on\s+you\s+are|"
            r"assume\s+the\s+role\s+of",
            re.IGNORECASE,
        ),
    ),
    (
        "control_characters",
        re.compile(
            r"[\x00-\x08\x0b\x0c\x0e-\x1f]{3,}",  # 3+ control chars in sequence
        ),
    ),
]


def detect_prompt_injection(text: str) -> tuple[bool, str | None]:
    """Check text for common prompt injection patterns.

    Returns:
        Tuple of (is_injection, pattern_name).
    """
    for pattern_name, pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            logger.warning(
                "llm.prompt_injection_detected",
                pattern=pattern_name,
                text_preview=text[:100],
            )
            return True, pattern_name
    return False, None


def sanitize_messages(messages: list[dict]) -> list[dict]:
    """Strip injection patterns from non-system messages.

    System messages are trusted and never modified. CRM-sourced text (deal
    names, activity subjects) reaches the model inside user messages, so
    that is where the filter applies.
    """
    sanitized = []
    for msg in messages:
        content = msg.get("content", "")
        if msg.get("role") == "system" or not content:
            sanitized.append(msg)
            continue

        is_injection, pattern_name = detect_prompt_injection(content)
        if not is_injection:
            sanitized.append(msg)
            continue

        cleaned = content
        for _, pattern in _INJECTION_PATTERNS:
            cleaned = pattern.sub("[removed]", cleaned)
        logger.warning(
            "llm.prompt_injection_sanitized",
            role=msg.get("role"),
            pattern=pattern_name,
            original_length=len(content),
            cleaned_length=len(cleaned),
        )
        sanitized.append({**msg, "content": cleaned})

    return sanitized


# ── LLM Service ──────────────────────────────────────────────────────────────


class LLMService:
    """LLM provider abstraction with LiteLLM Router.

    The "scoring" group routes to GPT-4o and falls back to Claude Sonnet 4
    ("scoring-fallback") when the primary fails or is not configured.
    """

    def __init__(self) -> None:
        settings = get_settings()

        model_list = []
        if settings.OPENAI_API_KEY:
            model_list.append({
                "model_name": "scoring",
                "litellm_params": {
                    "model": "openai/gpt-4o",
                    "api_key": settings.OPENAI_API_KEY,
                },
            })
        if settings.ANTHROPIC_API_KEY:
            model_list.append({
                "model_name": "scoring" if not settings.OPENAI_API_KEY else "scoring-fallback",
                "litellm_params": {
                    "model": "anthropic/claude-sonnet-4-20250514",
                    "api_key": settings.ANTHROPIC_API_KEY,
                },
            })

        if not model_list:
            logger.warning("llm.unavailable", reason="no LLM API keys configured")
            self.router = None
            return

        fallbacks = (
            [{"scoring": ["scoring-fallback"]}] if len(model_list) > 1 else []
        )
        self.router = Router(
            model_list=model_list,
            fallbacks=fallbacks,
            num_retries=settings.LLM_MAX_RETRIES,
            timeout=settings.LLM_TIMEOUT,
            allowed_fails=3,
            cooldown_time=30,
        )

    async def completion(
        self,
        messages: list[dict],
        model: str = "scoring",
        max_tokens: int = 1000,
        temperature: float = 0.3,
        response_format: dict | None = None,
        metadata: dict | None = None,
    ) -> dict:
        """Execute a completion call through the LiteLLM Router.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model group name.
            max_tokens: Maximum tokens in the response.
            temperature: Sampling temperature (0-2).
            response_format: e.g. {"type": "json_object"}.
            metadata: Additional metadata to include in the call.

        Returns:
            Dict with content, model, usage, and tenant_id.

        Raises:
            RuntimeError: If no LLM API keys are configured.
        """
        if not self.router:
            raise RuntimeError("No LLM API keys configured")

        tenant_id = current_tenant_id()
        tenant_metadata = {"tenant_id": tenant_id} if tenant_id else {}
        call_metadata = {**tenant_metadata, **(metadata or {})}

        safe_messages = sanitize_messages(messages)

        extra: dict = {}
        if response_format is not None:
            extra["response_format"] = response_format

        async with track_llm_call(model) as tracker:
            response = await self.router.acompletion(
                model=model,
                messages=safe_messages,
                max_tokens=max_tokens,
                temperature=temperature,
                metadata=call_metadata,
                **extra,
            )

            usage = {}
            if hasattr(response, "usage") and response.usage:
                usage = {
                    "prompt_tokens": response.usage.prompt_tokens,
                    "completion_tokens": response.usage.completion_tokens,
                    "total_tokens": response.usage.total_tokens,
                }
                tracker["prompt_tokens"] = usage["prompt_tokens"]
                tracker["completion_tokens"] = usage["completion_tokens"]

        return {
            "content": response.choices[0].message.content,
            "model": response.model,
            "usage": usage,
            "tenant_id": tenant_metadata.get("tenant_id", ""),
        }


# ── Singleton ─────────────────────────────────────────────────────────────────

_llm_service: LLMService | None = None


def get_llm_service() -> LLMService:
    """Get or create the LLM service singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
