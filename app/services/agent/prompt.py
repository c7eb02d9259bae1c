"""System prompt construction for voice agents."""
from typing import List

from app.services.agent.models import AgentConfig

VOICE_GUIDELINES = [
    "Keep responses SHORT (1-2 sentences max for phone)",
    'Speak naturally with conversational fillers like "Sure", "Let me check", "Got it"',
    "Use simple, clear language",
    "Ask one question at a time",
    "Confirm understanding before moving on",
    "If user is silent, politely check if they're still there",
]


def get_rule_lines(agent: AgentConfig) -> List[str]:
    """Return the enabled safety rules as prompt lines."""
    rules = []
    if agent.rules.no_legal:
        rules.append("Never provide legal advice")
    if agent.rules.no_medical:
        rules.append("Never provide medical advice")
    if agent.rules.confirm_bookings:
        rules.append("Always confirm booking details before finalizing")
    if agent.rules.handoff_on_confusion:
        rules.append(
            "If confused for more than 2 exchanges, offer to connect to a human"
        )
    return rules


def build_system_prompt(agent: AgentConfig) -> str:
    """
    Build the system prompt for an agent.

    Args:
        agent: Agent configuration snapshot

    Returns:
        System prompt text used as the first dialogue turn
    """
    rules = get_rule_lines(agent)
    rules_text = "\n".join(f"- {rule}" for rule in rules) if rules else "- None"
    guidelines_text = "\n".join(
        f"{i}. {line}" for i, line in enumerate(VOICE_GUIDELINES, start=1)
    )

    return f"""You are {agent.name}, an AI voice assistant on a phone call.

INSTRUCTIONS:
{agent.instructions}

RULES:
{rules_text}

IMPORTANT VOICE GUIDELINES:
{guidelines_text}

When unsure, use this fallback: "{agent.fallback_message}"

Start the conversation with a warm greeting."""
