"""Centralized defaults for progressive summarization.

Non-secret, stable values live here with environment overrides. Secrets
(API keys, the Discord token) must remain in .env.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


# --------------------- Controller defaults ---------------------

def default_token_threshold() -> int:
    return _env_int("SUMMARY_TOKEN_THRESHOLD", 1000)


def default_enabled() -> bool:
    return _env_bool("SUMMARY_ENABLED", False)


def preview_chars() -> int:
    """Max characters of each message body sent in a summarization request."""
    return _env_int("SUMMARY_PREVIEW_CHARS", 200)


def backend_timeout() -> float:
    return float(_env_int("SUMMARY_BACKEND_TIMEOUT", 120))


def history_limit() -> int:
    """How many channel messages form the live list handed to the controller."""
    return _env_int("SUMMARY_HISTORY_LIMIT", 200)


def summary_backend() -> tuple[str, str]:
    """Return the (api, model) pair used for summary generation."""
    api = os.getenv("SUMMARY_API", "anthropic").strip().lower() or "anthropic"
    default_model = "claude-sonnet-4-5" if api == "anthropic" else "gpt-4o-mini"
    model = os.getenv("SUMMARY_MODEL", "").strip() or default_model
    return api, model


# --------------------- Summarization prompt ---------------------

SUMMARY_SYSTEM_INSTRUCTION: str = "You are a helpful assistant that creates concise summaries."

# Fallback default (used if no file is provided or readable).
_FALLBACK_PROMPT_INSTRUCTIONS: str = (
    "Continue the running summary of this conversation.\n"
    "Cover only the new messages; the previous summaries are there for context.\n"
    "Keep names, decisions, open questions and anything a participant would need later.\n"
    "Do not invent events that did not happen, and do not pad the summary."
)

_PROMPT_CACHE: Optional[str] = None
_PROMPT_MTIME: Optional[float] = None
_PROMPT_PATH: Optional[Path] = None


def _project_root() -> Path:
    """Return the repository root (settings.py lives at src/progsum/settings.py)."""
    return Path(__file__).resolve().parents[2]


def _candidate_prompt_paths() -> list[Path]:
    """Return possible paths for the summary prompt instructions.

    Priority order:
    1) SUMMARY_PROMPT_FILE (as-is); if relative, also try as repo-root-relative.
    2) config/summary_prompt.txt (repo-root-relative).
    """
    env_val = os.getenv("SUMMARY_PROMPT_FILE", "").strip()
    candidates: list[Path] = []
    if env_val:
        p = Path(env_val).expanduser()
        candidates.append(p)
        if not p.is_absolute():
            candidates.append(_project_root() / p)
    candidates.append(_project_root() / "config" / "summary_prompt.txt")
    return candidates


def get_summary_prompt_instructions() -> str:
    """Load the summary prompt instructions from a file if available.

    Uses a simple mtime cache to avoid re-reading unchanged files, and falls
    back to the built-in instructions when no candidate is readable.
    """
    global _PROMPT_CACHE, _PROMPT_MTIME, _PROMPT_PATH  # noqa: PLW0603

    for path in _candidate_prompt_paths():
        try:
            if path.exists() and path.is_file():
                mtime = path.stat().st_mtime
                if _PROMPT_PATH == path and _PROMPT_CACHE is not None and _PROMPT_MTIME == mtime:
                    return _PROMPT_CACHE
                text = path.read_text(encoding="utf-8").strip()
                _PROMPT_CACHE = text
                _PROMPT_MTIME = mtime
                _PROMPT_PATH = path
                return text
        except OSError:
            continue
    return _FALLBACK_PROMPT_INSTRUCTIONS


def clear_prompt_cache() -> None:
    global _PROMPT_CACHE, _PROMPT_MTIME, _PROMPT_PATH  # noqa: PLW0603
    _PROMPT_CACHE = None
    _PROMPT_MTIME = None
    _PROMPT_PATH = None
