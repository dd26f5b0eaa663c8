"""Hint-generation collaborator contract and its Claude API implementation."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

from loguru import logger

from codecoach.config.settings import Settings
from codecoach.engine.errors import (
    RateLimited,
    UpstreamRejected,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from codecoach.engine.prompts import SYSTEM_PROMPT, build_user_prompt


@dataclass(frozen=True)
class HintRequest:
    language: str
    code_context: str
    error_kind: Optional[str]
    level: int
    history: tuple[str, ...] = ()


@dataclass
class HintResponse:
    content: str
    related_docs: list[str] = field(default_factory=list)
    next_level_available: bool = True


class HintGenerator(Protocol):
    async def generate(self, request: HintRequest) -> HintResponse: ...


_SECRET_PATTERNS = [
    re.compile(r"(?i)\b(api[_-]?key|secret|token|password|passwd)\b(\s*[:=]\s*)(['\"]?)[^'\"\s]+\3"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{16,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
]


def sanitize_code(code: str, max_chars: int) -> str:
    """Redact obvious credentials and keep at most ``max_chars`` of context.

    When truncating, the tail is kept: the cursor is usually near the end of
    the block being edited.
    """
    code = _SECRET_PATTERNS[0].sub(lambda m: f"{m.group(1)}{m.group(2)}{m.group(3)}<redacted>{m.group(3)}", code)
    for pattern in _SECRET_PATTERNS[1:]:
        code = pattern.sub("<redacted>", code)
    if len(code) > max_chars:
        code = code[-max_chars:]
        newline = code.find("\n")
        if 0 <= newline < len(code) - 1:
            code = code[newline + 1 :]
    return code


def parse_hint_payload(text: str) -> HintResponse:
    """Extract the JSON hint object from a model reply."""
    json_match = re.search(r"\{[\s\S]*\}", text)
    if not json_match:
        raise UpstreamRejected("hint service reply contained no JSON")
    try:
        data = json.loads(json_match.group())
    except json.JSONDecodeError as e:
        raise UpstreamRejected(f"hint service reply was not valid JSON: {e}") from e
    content = data.get("content")
    if not isinstance(content, str) or not content.strip():
        raise UpstreamRejected("hint service reply had no content")
    docs = data.get("relatedDocs") or []
    return HintResponse(
        content=content.strip(),
        related_docs=[str(d) for d in docs if d][:5],
        next_level_available=bool(data.get("nextLevelAvailable", True)),
    )


class ClaudeHintGenerator:
    """Generates hints with the Anthropic Messages API."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.load()
        self._client = None

    def _get_client(self):
        if self._client is None:
            api_key = self.settings.claude.get_api_key()
            if api_key:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        return self._client

    async def generate(self, request: HintRequest) -> HintResponse:
        import anthropic

        client = self._get_client()
        if client is None:
            raise UpstreamUnavailable("Claude API not configured. Set ANTHROPIC_API_KEY to enable hints.")

        user_msg = build_user_prompt(
            language=request.language,
            code_context=request.code_context,
            error_kind=request.error_kind,
            level=request.level,
            history=list(request.history),
        )

        try:
            response = await client.messages.create(
                model=self.settings.claude.get_model(),
                max_tokens=self.settings.claude.max_tokens,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": user_msg}],
            )
        except anthropic.RateLimitError as e:
            retry_after = _retry_after(e)
            raise RateLimited("hint service rate limited", retry_after=retry_after) from e
        except anthropic.APITimeoutError as e:
            raise UpstreamTimeout("hint service timed out") from e
        except anthropic.APIConnectionError as e:
            raise UpstreamUnavailable(f"hint service unreachable: {e}") from e
        except anthropic.APIStatusError as e:
            if 400 <= e.status_code < 500:
                raise UpstreamRejected(f"hint service rejected request ({e.status_code})") from e
            raise UpstreamUnavailable(f"hint service error ({e.status_code})") from e

        text = "".join(getattr(block, "text", "") for block in response.content)
        hint = parse_hint_payload(text)
        logger.debug("generated level {} hint ({} chars)", request.level, len(hint.content))
        return hint


def _retry_after(error) -> Optional[float]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None
