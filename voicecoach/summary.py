"""
Two-block session summary format.

Stored text looks like::

    ===PUBLIC_BEGIN===
    ...client-visible markdown...
    ===PUBLIC_END===

    ===COACH_BEGIN===
    ...coach-only notes...
    ===COACH_END===

The markers are read back by ``decode_summary``; summaries written before
the markers existed decode with the whole text as the public block.
"""

from dataclasses import dataclass
from typing import Optional
import html
import re

PUBLIC_BEGIN = "===PUBLIC_BEGIN==="
PUBLIC_END = "===PUBLIC_END==="
COACH_BEGIN = "===COACH_BEGIN==="
COACH_END = "===COACH_END==="

_BLOCK_RE = {
    label: re.compile(rf"==={label}_BEGIN===\s*([\s\S]*?)\s*==={label}_END===", re.IGNORECASE)
    for label in ("PUBLIC", "COACH")
}

NONE_SENTINELS = {"tr": "Yok", "en": "None"}

_HTML_RULES = [
    (re.compile(r"^### (.*)$", re.MULTILINE), r"<h3>\1</h3>"),
    (re.compile(r"^## (.*)$", re.MULTILINE), r"<h2>\1</h2>"),
    (re.compile(r"^# (.*)$", re.MULTILINE), r"<h1>\1</h1>"),
    (re.compile(r"\*\*(.*?)\*\*"), r"<strong>\1</strong>"),
    (re.compile(r"\*(.*?)\*"), r"<em>\1</em>"),
    (re.compile(r"^[ \t]*\d+\.[ \t]+(.*)$", re.MULTILINE), r"<li>\1</li>"),
    (re.compile(r"^[ \t]*-[ \t]+(.*)$", re.MULTILINE), r"<li>\1</li>"),
    (re.compile(r"\n{2,}"), "</p><p>"),
    (re.compile(r"\n"), "<br/>"),
]
_LIST_RUN_RE = re.compile(r"<li>.*?</li>(?:(?:<br/>)?<li>.*?</li>)*")


@dataclass(frozen=True)
class Summary:
    public_text: str
    coach_text: Optional[str] = None

    def combined(self, include_coach: bool = False) -> str:
        if include_coach and self.coach_text:
            return f"{self.public_text}\n\n---\n\n<!-- Coach Only -->\n\n{self.coach_text}"
        return self.public_text


def none_sentinel(language: str) -> str:
    return NONE_SENTINELS.get(language, NONE_SENTINELS["en"])


def encode_summary(summary: Summary) -> str:
    coach = summary.coach_text or ""
    return (
        f"{PUBLIC_BEGIN}\n{summary.public_text.strip()}\n{PUBLIC_END}\n\n"
        f"{COACH_BEGIN}\n{coach.strip()}\n{COACH_END}"
    )


def has_markers(text: str) -> bool:
    return bool(_BLOCK_RE["PUBLIC"].search(text or ""))


def decode_summary(text: Optional[str]) -> Optional[Summary]:
    if not text or not text.strip():
        return None
    public = _BLOCK_RE["PUBLIC"].search(text)
    coach = _BLOCK_RE["COACH"].search(text)
    public_text = public.group(1).strip() if public and public.group(1).strip() else text.strip()
    coach_text = coach.group(1).strip() if coach and coach.group(1).strip() else None
    return Summary(public_text=public_text, coach_text=coach_text)


def minimal_summary(language: str) -> Summary:
    """Fixed summary for sessions that ended without any messages."""
    if language == "tr":
        return Summary(
            public_text=(
                "# Seans Özeti\n"
                "- Bu seansta yeni bir içerik paylaşılmadı. Hazır olduğunda kaldığımız yerden devam edebiliriz.\n\n"
                "# Ödev (varsa)\n"
                "Yok"
            ),
            coach_text="- No new data in this session.",
        )
    return Summary(
        public_text=(
            "# Session Summary\n"
            "- No new content was shared in this session. We can pick up where we left off whenever you are ready.\n\n"
            "# Homework (if any)\n"
            "None"
        ),
        coach_text="- No new data in this session.",
    )


def render_summary_html(markdown: str) -> str:
    """Minimal markdown to HTML: headings, emphasis, list items, breaks."""
    text = html.escape(markdown, quote=False)
    for pattern, replacement in _HTML_RULES:
        text = pattern.sub(replacement, text)
    text = _LIST_RUN_RE.sub(lambda m: f"<ul>{m.group(0)}</ul>", text)
    return f'<article class="summary">{text}</article>'
