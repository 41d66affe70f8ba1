from __future__ import annotations

from typing import Any

from research_copilot import llm_client
from research_copilot.config import settings
from research_copilot.models.research import CONVERSATIONAL_ROLES, ChatReply, ChatTurn, MessageRole


def history_to_turns(messages: list[dict[str, Any]]) -> list[ChatTurn]:
    """Map stored user/assistant messages onto the provider's two-party roles."""
    turns: list[ChatTurn] = []
    for message in messages:
        role = message.get("role")
        if role not in CONVERSATIONAL_ROLES:
            continue
        turns.append(ChatTurn(role="model" if role == MessageRole.ASSISTANT else "user", text=message["content"]))
    return turns


async def respond(history: list[dict[str, Any]], message: str) -> ChatReply:
    """Send the conversation plus the new user message and return the reply."""
    turns = history_to_turns(history)
    turns.append(ChatTurn(role="user", text=message))
    return await llm_client.client().generate(
        turns,
        caller="chat_responder",
        temperature=settings.chat_temperature,
        max_output_tokens=settings.chat_max_output_tokens,
        top_k=settings.chat_top_k,
        top_p=settings.chat_top_p,
    )
