"""Structured LLM calls with schema-validation retries."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Sequence, TypeVar

from mirascope import llm
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .errors import TransientNetworkError
from .logging_utils import debug_enabled, log_error, log_llm

ModelT = TypeVar("ModelT", bound=BaseModel)
LLM_TIMEOUT_SECONDS = 120.0


@dataclass(slots=True)
class ValidationFeedback:
    """Correction text for the model plus the issues it was built from."""

    llm_text: str
    issues: Sequence[str]


def _short_repr(value: Any, *, limit: int = 80) -> str:
    if value is None:
        return "null"
    text = repr(value)
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def inject_validation_feedback(error: ValidationError) -> ValidationFeedback:
    """Turn a pydantic ValidationError into instructions the model can act on.

    Each issue names the field path in dot notation, the message, the error
    type and a preview of the rejected input.
    """

    issues: list[str] = []
    for err in error.errors(include_url=False):
        loc = ".".join(str(part) for part in err.get("loc", [])) or "root"
        details = f"{loc}: {err.get('msg', 'validation error')}"
        if err.get("type"):
            details += f" [type={err['type']}]"
        if "input" in err:
            details += f" | received={_short_repr(err.get('input'))}"
        issues.append(details)

    if not issues:
        issues.append("root: response did not match the expected schema")

    instructions = [
        "Your previous JSON response failed to validate against the required schema.",
        "Produce a corrected response that strictly matches the schema.",
        "Return only valid JSON, without explanations or code fences.",
        "Issues detected:",
    ]
    instructions.extend(f"- {issue}" for issue in issues)
    return ValidationFeedback(llm_text="\n".join(instructions), issues=issues)


async def call_llm_with_retries(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_provider: str,
    llm_model: str,
    response_model: type[ModelT],
    max_attempts: int = 3,
    timeout: float = LLM_TIMEOUT_SECONDS,
    feedback_builder: Callable[[ValidationError], ValidationFeedback] = inject_validation_feedback,
) -> ModelT:
    """Call the model for a response_model instance, retrying on schema violations.

    Validation feedback from a failed attempt is appended to the original
    prompt for the next one. Only ValidationError is retried; after
    max_attempts the last one is re-raised. A timeout is raised as
    TransientNetworkError so callers treat it like any other provider outage.
    """

    system_prompt = system_prompt.strip()
    base_user_prompt = user_prompt.strip()
    feedback: ValidationFeedback | None = None

    def _prompt() -> str:
        sections = [system_prompt, base_user_prompt]
        if feedback is not None:
            sections.append(feedback.llm_text)
        return "\n\n".join(section for section in sections if section)

    @llm.call(provider=llm_provider, model=llm_model, response_model=response_model)
    async def _invoke(prompt: str) -> str:
        return prompt

    attempt_number = 0
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(ValidationError),
        stop=stop_after_attempt(max_attempts),
        reraise=True,
    ):
        with attempt:
            attempt_number += 1
            if attempt_number > 1:
                log_llm(
                    f"Retry {attempt_number}/{max_attempts} for {response_model.__name__}"
                    " with schema correction"
                )
            prompt = _prompt()
            if debug_enabled("DEBUG_LLM"):
                log_llm(f"Prompt for {response_model.__name__}:\n{prompt}")
            try:
                return await asyncio.wait_for(_invoke(prompt), timeout=timeout)
            except ValidationError as exc:
                feedback = feedback_builder(exc)
                log_error(
                    f"LLM schema validation failed for {response_model.__name__} "
                    f"(attempt {attempt_number}/{max_attempts})"
                )
                for issue in feedback.issues:
                    log_error(f"    - {issue}")
                raise
            except asyncio.TimeoutError as exc:
                raise TransientNetworkError(
                    f"LLM call timed out after {int(timeout)}s for {response_model.__name__}"
                ) from exc

    raise RuntimeError("LLM retry loop exited without a result")
