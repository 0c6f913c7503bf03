from typing import Tuple

# Lower-case substrings; chat messages containing any of these are refused.
INJECTION_PATTERNS = [
    "ignore previous instructions",
    "ignore all previous instructions",
    "disregard the above",
    "system prompt",
    "developer message",
    "you are chatgpt",
    "act as the system",
    "reveal your instructions",
    "exfiltrate",
    "api key",
]


def detect_prompt_injection(text: str) -> Tuple[bool, str]:
    """Heuristic check of a chat message: returns (True, pattern) on the first typical injection phrase, else (False, "").
    Why available: Chat forwards user text to the LLM alongside the transcript; obvious jailbreak phrasing is rejected with 400 before any call."""
    t = (text or "").lower()
    for p in INJECTION_PATTERNS:
        if p in t:
            return True, p
    return False, ""
