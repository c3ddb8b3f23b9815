"""Flatten OpenAI-style chat messages into Replicate's single-prompt input.

Replicate language models take one ``prompt`` string, an optional
``system_prompt`` and at most one ``image``. ``process_messages`` pulls the
system messages and image references out of the conversation and renders the
rest as ``"<role>: <text>"`` lines; ``build_model_input`` assembles the final
payload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from .config import TokenLimits
from .types import BackendInput, ChatMessage, ContentPart

logger = logging.getLogger(__name__)


@dataclass
class ProcessedMessages:
    conversation: str | None
    system_prompt: str = ""
    image_urls: list[str] = field(default_factory=list)


def _text_parts(parts: Sequence[ContentPart]) -> list[str]:
    return [part.text or "" for part in parts if part.type == "text"]


def extract_system_prompt(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    """Merge every system message, one line each, and return the remaining messages."""
    lines: list[str] = []
    remaining: list[ChatMessage] = []
    for message in messages:
        if message.role != "system":
            remaining.append(message)
            continue
        if isinstance(message.content, str):
            lines.append(message.content)
        elif isinstance(message.content, list):
            lines.extend(text for text in _text_parts(message.content) if text)
    if not lines:
        return "", remaining
    return "\n".join(lines).rstrip(), remaining


def extract_image_urls(messages: list[ChatMessage]) -> tuple[list[ChatMessage], list[str]]:
    image_urls: list[str] = []
    stripped: list[ChatMessage] = []
    for message in messages:
        if message.role != "user" or not isinstance(message.content, list):
            stripped.append(message)
            continue
        text_only: list[ContentPart] = []
        for part in message.content:
            url = part.image_ref()
            if url is not None:
                image_urls.append(url)
            elif part.type == "text":
                text_only.append(part)
        stripped.append(message.model_copy(update={"content": text_only}))
    return stripped, image_urls


def format_conversation(messages: list[ChatMessage]) -> str:
    lines: list[str] = []
    for message in messages:
        content = message.content
        if isinstance(content, list):
            text = " ".join(_text_parts(content))
        elif content:
            text = content
        else:
            continue
        lines.append(f"{message.role}: {text}\n")
    return "".join(lines)


def process_messages(raw_messages: Any) -> ProcessedMessages:
    if not isinstance(raw_messages, list) or not raw_messages:
        return ProcessedMessages(conversation=None)
    try:
        messages = [ChatMessage.model_validate(item) for item in raw_messages]
        system_prompt, remaining = extract_system_prompt(messages)
        remaining, image_urls = extract_image_urls(remaining)
        conversation = format_conversation(remaining)
    except Exception as exc:
        logger.warning(
            "message normalization failed error_type=%s messages=%d",
            type(exc).__name__,
            len(raw_messages),
        )
        return ProcessedMessages(conversation=None)
    logger.debug(
        "messages normalized messages=%d system_prompt_chars=%d images=%d",
        len(messages),
        len(system_prompt),
        len(image_urls),
    )
    return ProcessedMessages(
        conversation=conversation,
        system_prompt=system_prompt,
        image_urls=image_urls,
    )


def clamp_max_tokens(value: int | None, limits: TokenLimits) -> int:
    if not value or value < limits.minimum:
        return limits.default
    if value > limits.maximum:
        return limits.maximum
    return value


def build_model_input(
    conversation: str,
    system_prompt: str,
    image_urls: Sequence[str],
    max_tokens: int | None,
    limits: TokenLimits,
) -> BackendInput:
    resolved_max_tokens = clamp_max_tokens(max_tokens, limits)
    image: str | None = None
    if image_urls:
        # The model has a single image slot; the most recent image wins.
        image = image_urls[-1]
        if len(image_urls) > 1:
            logger.debug("multiple images supplied images=%d using=last", len(image_urls))
    if resolved_max_tokens != max_tokens:
        logger.debug(
            "max_tokens adjusted requested=%s resolved=%d", max_tokens, resolved_max_tokens
        )
    return BackendInput(
        prompt=conversation,
        system_prompt=system_prompt,
        max_tokens=resolved_max_tokens,
        image=image,
    )
