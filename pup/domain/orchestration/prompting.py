from typing import List, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from domain.context.context_manager import ResponseContext
from domain.models import BufferedMessage, InboundMessage, MemoryKind

SYSTEM_PROMPT = """You are pup, a direct and helpful Slack assistant with a dry sense of humor.
Keep responses concise unless detail is needed. Use what you remember about people
naturally, without announcing that you remember it. Match the energy of the conversation."""

CLASSIFICATION_PROMPT = f"""Decide how to handle the newest Slack message.
Return a JSON object with:
- shouldFormMemory: true if the message is worth remembering long term
- shouldRespond: true if a reply would be welcome without being asked
- memoryType: one of {", ".join(kind.value for kind in MemoryKind)}; required when shouldFormMemory is true
- significance: 0-1, how memorable the message is
- extractedEntities: array of people, projects or topics mentioned"""


def _transcript(history: Sequence[BufferedMessage], limit: int = 10) -> str:
    # history is newest first
    return "\n".join(f"<@{m.user}>: {m.text}" for m in reversed(list(history)[:limit]))


def build_classification_messages(message: InboundMessage, history: Sequence[BufferedMessage]) -> List[BaseMessage]:
    recent = _transcript([m for m in history if m.timestamp != message.timestamp])
    content = f"Recent conversation:\n{recent}\n\nNewest message from <@{message.user}>:\n{message.text}"
    return [SystemMessage(content=CLASSIFICATION_PROMPT), HumanMessage(content=content)]


def build_response_messages(context: ResponseContext, bot_user_id: str) -> List[BaseMessage]:
    vibe = context.vibe
    system = (
        f"{SYSTEM_PROMPT}\n\nChannel vibe: {vibe.vibe_description} "
        f"(formality {vibe.formality_level:.1f}, humor {vibe.humor_tolerance:.1f})."
    )

    if context.memories:
        facts = "\n".join(f"- {memory.content}" for memory in context.memories)
        system += f"\n\nThings you remember:\n{facts}"

    if context.participants:
        people = "\n".join(
            f"- <@{profile.slack_id}> ({profile.display_name}): {profile.relationship_summary}"
            for profile in context.participants
        )
        system += f"\n\nPeople in this conversation:\n{people}"

    messages: List[BaseMessage] = [SystemMessage(content=system)]
    for buffered in reversed(context.history):
        if buffered.timestamp == context.message.timestamp:
            continue
        if bot_user_id and buffered.user == bot_user_id:
            messages.append(AIMessage(content=buffered.text))
        else:
            messages.append(HumanMessage(content=f"<@{buffered.user}>: {buffered.text}"))

    messages.append(HumanMessage(content=f"<@{context.message.user}>: {context.message.text}"))
    return messages
