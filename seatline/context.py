"""
Bounded profile context and statement cleanup for AI backend requests.
"""

import json
import re
from typing import Any, List, Optional

TRUNCATION_MARKER = "... [truncated]"

NAME_MAX = 100
SHOW_MAX = 120
GOALS_MAX = 200
SLEEP_MAX = 200
FOOD_MAX = 300
INJURIES_MAX = 300
FOOD_ITEMS_MAX = 5

_HSPACE_RE = re.compile(r"[ \t\f\v]+")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")

_FOOD_LISTS = (
    ("allergies", "allergies"),
    ("intolerances", "intolerances"),
    ("dietary_preferences", "preferences"),
)


def _clip(value: Any, limit: int) -> str:
    text = "" if value is None else str(value)
    return _HSPACE_RE.sub(" ", text.replace("\r\n", "\n").replace("\n", " ")).strip()[:limit].strip()


def _goals_text(goals: Any) -> str:
    if isinstance(goals, dict):
        goals = goals.get("goals", goals)
    if isinstance(goals, (list, tuple)):
        return ", ".join(str(item) for item in goals if item)
    if isinstance(goals, dict):
        return ", ".join(f"{key}: {value}" for key, value in goals.items() if value)
    if isinstance(goals, str):
        text = goals.strip()
        if text.lower().startswith("goals:"):
            text = text[len("goals:"):]
        return text
    return json.dumps(goals) if goals else ""


def _sleep_text(sleep_env: Any) -> str:
    if isinstance(sleep_env, dict):
        parts = [f"{sleep_env.get('environment') or 'unknown'} environment"]
        if sleep_env.get("noise_level"):
            parts.append(f"{sleep_env['noise_level']} noise")
        if sleep_env.get("light_control"):
            parts.append(f"{sleep_env['light_control']} light control")
        return ", ".join(parts)
    return str(sleep_env) if sleep_env else ""


def _food_text(food: Any) -> str:
    if not isinstance(food, dict):
        return str(food) if food else ""
    constraints = []
    for key, label in _FOOD_LISTS:
        items = food.get(key)
        if isinstance(items, (list, tuple)) and items:
            constraints.append(f"{label}: {', '.join(str(i) for i in items[:FOOD_ITEMS_MAX])}")
    return "; ".join(constraints)


def build_context(profile: Optional[Any], show_name: Optional[str], channel: str = "whatsapp",
                  max_length: int = 3000) -> str:
    """
    Build the per-user context block sent alongside every statement.

    Each profile field is capped on its own and the whole block is capped to
    max_length, truncation marker included.
    """
    name = getattr(profile, "name", None) or "Unknown"
    role = getattr(profile, "role", None) or "performer"
    show = show_name or getattr(profile, "show_name", None) or "N/A"
    kind = getattr(profile, "tour_or_resident", None) or ""
    performer_type = "Touring performer" if kind.lower().startswith("tour") else "Resident performer"

    lines: List[str] = [
        f"User: {_clip(name, NAME_MAX)} ({_clip(role, NAME_MAX)})",
        f"Show: {_clip(show, SHOW_MAX)}",
        f"Type: {performer_type}",
        f"Channel: {channel}",
    ]

    goals = _clip(_goals_text(getattr(profile, "goals", None)), GOALS_MAX)
    if goals:
        lines.append(f"Goals: {goals}")
    sleep = _clip(_sleep_text(getattr(profile, "sleep_env", None)), SLEEP_MAX)
    if sleep:
        lines.append(f"Sleep: {sleep}")
    food = _clip(_food_text(getattr(profile, "food_constraints", None)), FOOD_MAX)
    if food:
        lines.append(f"Food: {food}")
    injuries = _clip(getattr(profile, "injuries_notes", None), INJURIES_MAX)
    if injuries:
        lines.append(f"Past injuries: {injuries}")

    context = "\n".join(line for line in lines if line.strip())
    if len(context) > max_length:
        context = context[: max(max_length - len(TRUNCATION_MARKER), 0)].rstrip() + TRUNCATION_MARKER
        context = context[:max_length]
    return context


def sanitize_statement(text: Optional[str], max_length: int = 1000) -> str:
    """Drop control characters, collapse whitespace and cap the user's message."""
    if not text:
        return ""
    cleaned = _CONTROL_RE.sub("", text)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return cleaned[:max_length].rstrip()
