"""ANSI stripping and chat-oriented cleanup of raw terminal output.

Pure functions, no state.
"""
from __future__ import annotations

import re

_CURSOR_MOVEMENT = re.compile(r"\x1b\[\d*[CDABGdEF]")
_CURSOR_POSITION = re.compile(r"\x1b\[\d*(?:;\d+)?[Hf]")
_ERASE = re.compile(r"\x1b\[\d*[JK]")
_OSC = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_ALL_ANSI = re.compile(r"\x1b(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# SGR fragments left behind when a chunk boundary split "\x1b[...m".
_ORPHAN_SGR = re.compile(r"\[[\d;]*m")
_SPLIT_SGR = re.compile(r"(\[[\d;]*)\r?\n([\d;]*m)")
_LONG_SPACES = re.compile(r" {3,}")

# Spinner, box-drawing and other decorative glyphs used by agent TUIs.
_TUI_DECORATIVE = re.compile(
    "[│╭╰╮╯─═╌║╔╗╚╝╠╣╦╩╬┌┐└┘├┤┬┴┼●○❮❯▶◀⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏⣾⣽⣻⢿⡿⣟⣯⣷"
    "✽✻✶✳✢⏺←→↑↓⬆⬇◆▪▫■□▲△▼▽◈⟨⟩⌘⏎⏏⌫⌦⇧⇪⌥·⎿✔◼]"
)

_LOADING_LINE = re.compile(
    r"^\s*(?:thinking|Forging|Shenaniganing|Inferring|Cooking|Brewing|Loading|"
    r"Scheming|Pondering|Conjuring|Manifesting|Reflecting|Synthesizing|Vibing|"
    r"Summoning|Compiling|processing|Elucidating|Cogitat\w+|Bak\w+)"
    r"(?:…|\.{3})?(?:\s*\(.*\))?\s*$",
    re.IGNORECASE,
)

_STATUS_LINE = re.compile(
    r"^\s*(?:\d+[smh]\s+\d+s?\s*·|↓\s*[\d.]+k?\s*tokens|·\s*↓|esc\s+to\s+interrupt|"
    r"[Uu]pdate available|ate available|Run:\s+brew|brew\s+upgrade|"
    r"\d+\s+files?\s+\+\d+\s+-\d+|ctrl\+\w|\+\d+\s+lines|Wrote\s+\d+\s+lines\s+to|"
    r"\?\s+for\s+shortcuts|Cooked for|Baked for|Cogitated for)",
    re.IGNORECASE,
)

_ALNUM = re.compile(r"[a-zA-Z0-9]")

_PR_URL = re.compile(r"https?://github\.com/[\w.-]+/[\w.-]+/pull/\d+")
_PR_CREATED = re.compile(
    r"(?:Created|Opened)\s+pull\s+request\s+#\d+[^\n]*", re.IGNORECASE,
)
_COMMIT = re.compile(r"(?:committed|commit)\s+[a-f0-9]{7,40}", re.IGNORECASE)
_DIFFSTAT = re.compile(
    r"\d+\s+files?\s+changed.*?(?:insertion|deletion)[^\n]*", re.IGNORECASE,
)

_DEV_SERVER_URL = re.compile(
    r"https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1?\])(?::\d{2,5})?(?:/[^\s'\"<>)]*)?",
    re.IGNORECASE,
)


def strip_ansi(raw: str) -> str:
    """Remove escape sequences and control characters.

    Cursor-forward/position codes become a single space since TUIs
    use them in place of literal spaces.
    """
    text = _SPLIT_SGR.sub(r"\1\2", raw)
    text = _CURSOR_MOVEMENT.sub(" ", text)
    text = _CURSOR_POSITION.sub(" ", text)
    text = _ERASE.sub("", text)
    text = _OSC.sub("", text)
    text = _ALL_ANSI.sub("", text)
    text = _CONTROL_CHARS.sub("", text)
    text = _ORPHAN_SGR.sub("", text)
    text = _LONG_SPACES.sub(" ", text)
    return text.strip()


def clean_for_chat(raw: str) -> str:
    """Strip ANSI plus TUI decoration, spinner lines and status-bar noise."""
    stripped = _TUI_DECORATIVE.sub(" ", strip_ansi(raw)).replace("\xa0", " ")
    kept: list[str] = []
    for line in stripped.split("\n"):
        trimmed = line.strip()
        if not trimmed:
            continue
        if _LOADING_LINE.search(trimmed) or _STATUS_LINE.search(trimmed):
            continue
        if not _ALNUM.search(trimmed):
            continue
        collapsed = re.sub(r" {2,}", " ", line).strip()
        if collapsed:
            kept.append(collapsed)
    return re.sub(r"\n{3,}", "\n\n", "\n".join(kept)).strip()


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def extract_completion_summary(raw: str) -> str:
    """Pull PR links, commit hashes and diffstats out of raw output."""
    stripped = strip_ansi(raw)
    lines: list[str] = []

    pr_urls = _PR_URL.findall(stripped)
    lines.extend(_unique(pr_urls))
    if not pr_urls:
        lines.extend(m.strip() for m in _PR_CREATED.findall(stripped))

    lines.extend(m.strip() for m in _unique(_COMMIT.findall(stripped)))
    lines.extend(m.strip() for m in _DIFFSTAT.findall(stripped))
    return "\n".join(lines)


def extract_dev_server_url(raw: str) -> str | None:
    """Return the last local dev-server URL printed, if any.

    ``0.0.0.0`` is rewritten to ``localhost`` so the link is clickable.
    """
    matches = _DEV_SERVER_URL.findall(strip_ansi(raw))
    if not matches:
        return None
    url = matches[-1].rstrip(".,;:")
    return url.replace("0.0.0.0", "localhost", 1)


def mentions_pull_request(raw: str) -> bool:
    """True when the output shows a pull request URL or a "Created pull request" line."""
    stripped = strip_ansi(raw)
    return bool(_PR_URL.search(stripped) or _PR_CREATED.search(stripped))
