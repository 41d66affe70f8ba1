"""Research brief planning: conversation in, seven-field brief out."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from research_copilot import llm_client
from research_copilot.config import settings
from research_copilot.errors import InvalidBriefFormat
from research_copilot.models.research import REQUIRED_BRIEF_FIELDS, ChatTurn, ResearchBrief
from research_copilot.services import logger as log_service
from research_copilot.services.chat import history_to_turns
from research_copilot.services.prompt_store import render_prompt

_FENCE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$")


@dataclass(slots=True)
class BriefDecodeResult:
    brief: ResearchBrief | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.brief is not None


def strip_code_fence(text: str) -> str:
    stripped = text.strip()
    match = _FENCE.match(stripped)
    return match.group(1) if match else stripped


def decode_brief(text: str) -> BriefDecodeResult:
    """Decode model output as a brief; a surrounding code fence is the only repair."""
    try:
        payload: Any = json.loads(strip_code_fence(text))
    except json.JSONDecodeError as e:
        return BriefDecodeResult(error=f"Response is not valid JSON: {e.msg}")

    if not isinstance(payload, dict):
        return BriefDecodeResult(error="Response is not a JSON object")

    missing = [name for name in REQUIRED_BRIEF_FIELDS if name not in payload]
    if missing:
        return BriefDecodeResult(error=f"Missing required fields: {', '.join(missing)}")

    try:
        brief = ResearchBrief.model_validate(payload, strict=True)
    except PydanticValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        return BriefDecodeResult(error=f"Invalid field types: {', '.join(fields)}")
    return BriefDecodeResult(brief=brief)


async def build_brief(history: list[dict[str, Any]]) -> ResearchBrief:
    turns = history_to_turns(history)
    turns.append(ChatTurn(role="user", text=render_prompt("brief.planning_prompt")))

    reply = await llm_client.client().generate(
        turns,
        caller="brief_builder",
        temperature=settings.planning_temperature,
        max_output_tokens=settings.planning_max_output_tokens,
    )
    result = decode_brief(reply.content)
    if not result.ok:
        log_service.log_event(
            event_type="brief_invalid",
            message="Planning response rejected",
            reason=result.error,
            preview=reply.content[:200],
        )
        raise InvalidBriefFormat(f"Invalid research brief format: {result.error}")
    return result.brief
