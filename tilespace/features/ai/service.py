"""
Tile content generation via Groq chat completions.

Generation never raises and never hangs: it makes at most
MAX_GENERATION_ATTEMPTS calls with a linear backoff and, when every attempt
fails, returns a visibly marked fallback instead of content.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import groq

from tilespace.core.config import settings

logger = logging.getLogger("tilespace")

MAX_GENERATION_ATTEMPTS = 3
BACKOFF_SECONDS = 0.3


@dataclass
class GenerationResult:
    content: str
    prompt: str
    model: str
    attempts: int
    total_tokens: Optional[int] = None
    failed: bool = False
    history: List[Dict[str, Any]] = field(default_factory=list)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def history_entry(role: str, content: str) -> Dict[str, Any]:
    return {"id": f"{role}_{uuid4().hex[:12]}", "role": role, "content": content, "createdAt": _now_iso()}


def get_client() -> "groq.Groq":
    return groq.Groq(api_key=settings.GROQ_API_KEY)


def _extract_content(response) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None) if message is not None else None
    return (content or "").strip()


def _total_tokens(response) -> Optional[int]:
    usage = getattr(response, "usage", None)
    tokens = getattr(usage, "total_tokens", None) if usage is not None else None
    return tokens if isinstance(tokens, int) else None


def generate_tile_content(
    client,
    prompt: str,
    *,
    title: str = "Insight",
    model: Optional[str] = None,
    max_tokens: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> GenerationResult:
    """Generate content for a tile prompt with bounded retries."""
    model_name = (model or settings.AI_MODEL).strip()
    history = [history_entry("user", prompt)]
    last_error: Optional[Exception] = None
    attempts = 0

    while attempts < MAX_GENERATION_ATTEMPTS:
        attempts += 1
        try:
            response = client.chat.completions.create(
                model=model_name,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens or settings.AI_MAX_OUTPUT_TOKENS,
                temperature=settings.AI_TEMPERATURE,
            )
            content = _extract_content(response)
            if not content:
                raise ValueError("Empty response from model")
            history.append(history_entry("assistant", content))
            return GenerationResult(
                content=content,
                prompt=prompt,
                model=model_name,
                attempts=attempts,
                total_tokens=_total_tokens(response),
                history=history,
            )
        except Exception as exc:
            last_error = exc
            logger.warning(
                "ai.generation_attempt_failed",
                extra={"attempt": attempts, "tile_title": title, "error_code": type(exc).__name__},
            )
            if attempts < MAX_GENERATION_ATTEMPTS:
                sleep(BACKOFF_SECONDS * attempts)

    message = str(last_error) if last_error else "Unknown error"
    return GenerationResult(
        content=f"⚠️ This insight could not be generated after {attempts} attempts. {message}",
        prompt=prompt,
        model=model_name,
        attempts=attempts,
        failed=True,
        history=history,
    )
