"""
Таблица поддерживаемых языков: код -> (название, самоназвание).
"""
from typing import Dict, List, Tuple

SUPPORTED_LANGUAGES: Dict[str, Tuple[str, str]] = {
    "en": ("English", "English"),
    "es": ("Spanish", "Español"),
    "fr": ("French", "Français"),
    "de": ("German", "Deutsch"),
    "it": ("Italian", "Italiano"),
    "pt": ("Portuguese", "Português"),
    "ru": ("Russian", "Русский"),
    "zh": ("Chinese (Simplified)", "中文"),
    "ja": ("Japanese", "日本語"),
    "ko": ("Korean", "한국어"),
    "ar": ("Arabic", "العربية"),
    "hi": ("Hindi", "हिन्दी"),
    "tr": ("Turkish", "Türkçe"),
    "nl": ("Dutch", "Nederlands"),
    "sv": ("Swedish", "Svenska"),
    "da": ("Danish", "Dansk"),
    "no": ("Norwegian", "Norsk"),
    "fi": ("Finnish", "Suomi"),
    "pl": ("Polish", "Polski"),
    "cs": ("Czech", "Čeština"),
    "hu": ("Hungarian", "Magyar"),
    "ro": ("Romanian", "Română"),
    "bg": ("Bulgarian", "Български"),
    "el": ("Greek", "Ελληνικά"),
    "he": ("Hebrew", "עברית"),
    "th": ("Thai", "ไทย"),
    "vi": ("Vietnamese", "Tiếng Việt"),
    "id": ("Indonesian", "Bahasa Indonesia"),
    "uk": ("Ukrainian", "Українська"),
    "fa": ("Persian", "فارسی"),
    "ur": ("Urdu", "اردو"),
    "bn": ("Bengali", "বাংলা"),
    "sw": ("Swahili", "Kiswahili"),
}

# Языки, которые показываются кнопками в выборе языка
PICKER_LANGUAGES = ("en", "es", "fr", "de", "it", "pt", "ru", "zh", "ar", "hi")


def normalize_language(code: str) -> str:
    return (code or "").strip().lower()


def is_supported(code: str) -> bool:
    return normalize_language(code) in SUPPORTED_LANGUAGES


def get_language_name(code: str) -> str:
    """Английское название языка или сам код, если язык неизвестен."""
    entry = SUPPORTED_LANGUAGES.get(normalize_language(code))
    return entry[0] if entry else code


def get_native_language_name(code: str) -> str:
    entry = SUPPORTED_LANGUAGES.get(normalize_language(code))
    return entry[1] if entry else code


def picker_options() -> List[Tuple[str, str]]:
    return [(code, SUPPORTED_LANGUAGES[code][1]) for code in PICKER_LANGUAGES]
