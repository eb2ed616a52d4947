import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Tuple, Union

from dotenv import load_dotenv
from openai import OpenAI

load_dotenv()

CHAT_MODEL  = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini")
TEMPERATURE = 0.7
MAX_TOKENS  = 500
HISTORY_TURNS = 5

SYSTEM_PROMPT = (
    "You are AI-Do, a friendly and practical wedding planning assistant. "
    "Help couples with venues, budgets, guest lists, vendors, timelines and etiquette. "
    "Ask a short follow-up question when you need details such as season, location, "
    "guest count or budget. Keep answers concise and concrete."
)

# static few-shot exchanges placed before the real conversation
FEW_SHOT: List[Tuple[str, str]] = [
    (
        "Hi! I'm looking for help with choosing a wedding venue.",
        "I'd be happy to help you find the perfect venue! What season are you planning "
        "to get married, and do you have a preference for indoor or outdoor settings?",
    ),
    (
        "We're thinking spring, and we'd love an outdoor venue if possible.",
        "I'd recommend looking at outdoor venues for spring. Consider gardens, vineyards, "
        "or estates with blooming flowers. Make sure they have a backup indoor option in "
        "case of rain. What's your guest count and location preference?",
    ),
]


@dataclass
class Reply:
    text: str


@dataclass
class UpstreamError:
    reason: str


CompletionResult = Union[Reply, UpstreamError]


@lru_cache(maxsize=1)
def get_client() -> OpenAI:
    # no retries: a failed call fails that one request
    return OpenAI(max_retries=0)


def build_messages(history: List[Tuple[Optional[str], Optional[str]]], text: str) -> List[dict]:
    """System preamble, few-shot pairs, the last exchanges (oldest first), then the new turn."""
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    for q, a in FEW_SHOT:
        messages.append({"role": "user", "content": q})
        messages.append({"role": "assistant", "content": a})
    for q, a in history[-HISTORY_TURNS:]:
        if q:
            messages.append({"role": "user", "content": q})
        if a:
            messages.append({"role": "assistant", "content": a})
    messages.append({"role": "user", "content": text})
    return messages


def complete(history, text: str, client: Optional[OpenAI] = None) -> CompletionResult:
    try:
        client = client or get_client()
        comp = client.chat.completions.create(
            model=CHAT_MODEL,
            messages=build_messages(history, text),
            temperature=TEMPERATURE,
            max_tokens=MAX_TOKENS,
        )
    except Exception as e:
        return UpstreamError(reason=f"{type(e).__name__}: {e}")

    choices = getattr(comp, "choices", None) or []
    answer = choices[0].message.content if choices else None
    if not answer or not answer.strip():
        return UpstreamError(reason="empty completion")
    return Reply(text=answer.strip())
