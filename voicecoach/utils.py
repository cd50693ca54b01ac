from typing import Any, Iterable, Optional
from datetime import datetime, timezone
import random


GENDER_CODES = {"unknown": 0, "male": 1, "female": 2}
GENDER_LABELS = {0: "unknown", 1: "male", 2: "female"}

_FALLBACK_UTTERANCES = {
    "tr": [
        "Seni duyamadım gibi oldu, bir daha söyleyebilir misin?",
        "Sanırım ses gelmedi. Tekrar denemeni rica edebilir miyim?",
        "Kayıt sessiz olabilir. Dilersen bir kez daha söyle.",
        "Üzgünüm, anlayamadım. Bir kere daha anlatır mısın?",
    ],
    "en": [
        "I couldn't quite hear that. Could you please repeat?",
        "It seems the audio was silent. Could you try again?",
        "Sorry, I didn't catch that. Mind saying it once more?",
        "I might have missed it, please repeat when you're ready.",
    ],
}


def normalize_language(value: Any) -> Optional[str]:
    """'tr-TR' -> 'tr', ' EN ' -> 'en'; empty input -> None"""
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    return text.replace("_", "-").split("-")[0]


def determine_language(candidates: Iterable[Any], default: str = "tr") -> str:
    """Return the first non-empty normalized language from candidates."""
    for candidate in candidates:
        lang = normalize_language(candidate)
        if lang:
            return lang
    return normalize_language(default) or "tr"


def fallback_pool(language: Optional[str]) -> list:
    lang = normalize_language(language) or "tr"
    return _FALLBACK_UTTERANCES["tr" if lang == "tr" else "en"]


def fallback_utterance(language: Optional[str]) -> str:
    """Canned 'please repeat' line for turns whose audio could not be transcribed"""
    return random.choice(fallback_pool(language))


def clamp_text(value: Optional[str], limit: int) -> str:
    if not value:
        return ""
    if len(value) <= limit:
        return value
    return value[:limit].strip() + "…"


def gender_label(code: Any) -> str:
    try:
        return GENDER_LABELS.get(int(code), "unknown")
    except (TypeError, ValueError):
        return "unknown"


def parse_gender(value: Any) -> Optional[int]:
    """Accept 0/1/2 or unknown/male/female; None when unrecognized"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value in GENDER_LABELS else None
    if isinstance(value, str):
        text = value.strip().lower()
        if text.isdigit():
            return parse_gender(int(text))
        return GENDER_CODES.get(text)
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (with optional Z) into aware UTC datetimes."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
