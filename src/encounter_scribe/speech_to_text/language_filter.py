"""Post-filter that keeps only words written in the session language's script."""

import re
from dataclasses import dataclass

from .logging_utils import get_logger

logger = get_logger(__name__)

# Punctuation allowed around words in every supported language
_PUNCTUATION = r".,;:!¡?¿\-()'\""

LANGUAGE_CHARSETS: dict[str, str] = {
    "es": rf"^[a-z0-9áéíóúñü{_PUNCTUATION}]+$",
    "en": rf"^[a-z0-9{_PUNCTUATION}]+$",
    "pt": rf"^[a-z0-9áàâãéêíóôõúüç{_PUNCTUATION}]+$",
    "fr": rf"^[a-z0-9àâæçéèêëîïôœùûüÿ{_PUNCTUATION}]+$",
}


@dataclass
class LanguageFilter:
    """
    Drops transcribed words containing characters outside the language's
    alphabet.

    Whisper sometimes hallucinates tokens in another script on noisy or
    silent audio; this policy removes them. It is explicit and optional:
    disabled filters, and languages without a registered charset, pass text
    through unchanged.
    """

    language: str
    enabled: bool = True

    def __post_init__(self) -> None:
        pattern = LANGUAGE_CHARSETS.get(self.language.split("-")[0].lower())
        self._pattern = re.compile(pattern, re.IGNORECASE) if pattern else None

    @property
    def active(self) -> bool:
        return self.enabled and self._pattern is not None

    def apply(self, text: str) -> str:
        """
        Filter text according to the policy.

        Args:
            text: Raw transcribed text

        Returns:
            Text with out-of-alphabet words removed
        """
        if not text or not self.active:
            return text.strip() if text else ""

        words = text.split()
        kept = [word for word in words if self._pattern.match(word)]

        if len(kept) != len(words):
            logger.debug(
                f"Language filter ({self.language}) applied: "
                f"{len(words)} -> {len(kept)} words"
            )

        return " ".join(kept).strip()
