"""Supported languages, provider language codes and synthesis voices."""

AUTO_DETECT = "Auto-Detect"

DEFAULT_VOICE = "Puck"

# Display name -> BCP-47 code
LANGUAGE_CODES: dict[str, str] = {
    AUTO_DETECT: "multi",
    "English (United States)": "en-US",
    "English (United Kingdom)": "en-GB",
    "English (Australia)": "en-AU",
    "English (India)": "en-IN",
    "Spanish (Spain)": "es-ES",
    "Spanish (Mexico)": "es-MX",
    "Spanish (United States)": "es-US",
    "French (France)": "fr-FR",
    "French (Canada)": "fr-CA",
    "German (Germany)": "de-DE",
    "Italian": "it-IT",
    "Portuguese (Brazil)": "pt-BR",
    "Portuguese (Portugal)": "pt-PT",
    "Dutch (Netherlands)": "nl-NL",
    "Chinese (Mandarin Simplified)": "zh-CN",
    "Chinese (Mandarin Traditional)": "zh-TW",
    "Japanese": "ja-JP",
    "Korean": "ko-KR",
    "Russian": "ru-RU",
    "Arabic (General)": "ar-SA",
    "Hindi": "hi-IN",
    "Turkish": "tr-TR",
    "Polish": "pl-PL",
    "Swedish": "sv-SE",
    "Ukrainian": "uk-UA",
}

VOICES: dict[str, str] = {
    "English (United States)": "Puck",
    "English (United Kingdom)": "Charon",
    "Spanish (Spain)": "Kore",
    "Spanish (Mexico)": "Kore",
    "French (France)": "Fenrir",
    "German (Germany)": "Aoede",
    "Italian": "Kore",
    "Portuguese (Brazil)": "Kore",
    "Japanese": "Puck",
    "Korean": "Puck",
    "Chinese (Mandarin Simplified)": "Puck",
    "Hindi": "Puck",
}


def language_code(language: str) -> str:
    """Map a language name (or a raw code) to the code sent to providers.

    Unknown names are assumed to already be provider codes.
    """
    return LANGUAGE_CODES.get(language, language)


def voice_for_language(language: str) -> str:
    """Select a synthesis voice for a target language, falling back to the default."""
    return VOICES.get(language, DEFAULT_VOICE)


def is_auto_detect(language: str) -> bool:
    return language in (AUTO_DETECT, "auto", "multi")


def describe_source(language: str) -> str:
    """Phrase a source language for translation prompts."""
    if is_auto_detect(language):
        return "the detected language"
    return language
