# -*- coding: utf-8 -*-
from typing import Dict, NamedTuple


class LanguageInfo(NamedTuple):
    name: str
    code: str
    is_dub: bool


LANGUAGE_MAP: Dict[str, LanguageInfo] = {
    "hindi": LanguageInfo("Hindi", "hi", True),
    "tamil": LanguageInfo("Tamil", "ta", True),
    "telugu": LanguageInfo("Telugu", "te", True),
    "malayalam": LanguageInfo("Malayalam", "ml", True),
    "bengali": LanguageInfo("Bengali", "bn", True),
    "marathi": LanguageInfo("Marathi", "mr", True),
    "kannada": LanguageInfo("Kannada", "kn", True),
    "english": LanguageInfo("English", "en", True),
    "japanese": LanguageInfo("Japanese", "ja", False),
    "korean": LanguageInfo("Korean", "ko", True),
    "und": LanguageInfo("Unknown", "und", False),
}


def normalize_language(raw: str) -> LanguageInfo:
    """Free-text server label -> canonical name/code; anything not Japanese counts as a dub."""
    normalized = (raw or "").lower().strip()
    found = LANGUAGE_MAP.get(normalized)
    if found:
        return found
    return LanguageInfo(raw, "und", normalized != "japanese")
