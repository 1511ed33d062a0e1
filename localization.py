"""
Caption languages supported by the planner and the instruction sent with each plan request.
"""

from functools import lru_cache
from typing import Dict

LANGUAGE_CONFIGS = {
    "en": {"name": "English", "rtl": False},
    "zh": {"name": "Chinese (Simplified)", "rtl": False},
    "zh-tw": {"name": "Chinese (Traditional)", "rtl": False},
    "es": {"name": "Spanish", "rtl": False},
    "fr": {"name": "French", "rtl": False},
    "de": {"name": "German", "rtl": False},
    "ja": {"name": "Japanese", "rtl": False},
    "ko": {"name": "Korean", "rtl": False},
    "it": {"name": "Italian", "rtl": False},
    "pt": {"name": "Portuguese", "rtl": False},
    "ru": {"name": "Russian", "rtl": False},
    "ar": {"name": "Arabic", "rtl": True},
    "hi": {"name": "Hindi", "rtl": False},
}


def get_supported_languages() -> Dict[str, str]:
    """Get all supported languages with their display names"""
    return {code: config["name"] for code, config in LANGUAGE_CONFIGS.items()}


def is_rtl(language_code: str) -> bool:
    return LANGUAGE_CONFIGS.get(language_code, {}).get("rtl", False)


@lru_cache(maxsize=32)
def get_caption_instruction(language_code: str) -> str:
    """Instruction telling the planner which language the captions must use"""
    if language_code == "en" or language_code not in LANGUAGE_CONFIGS:
        return "Write every caption, the title and the story arc in English."

    name = LANGUAGE_CONFIGS[language_code]["name"]
    instruction = (
        f"Write every caption, the title and the story arc in {name}. "
        "Keep character names as they appear in the source text. "
        "Illustration prompts, character descriptions and camera angles stay in English."
    )
    if is_rtl(language_code):
        instruction += " Captions will be typeset right-to-left."
    return instruction
