"""
Keyword scoring for memory recall.

Each keyword is scored against a record with a layered fallback; the first
layer that scores wins for that keyword:

1. Substring hit (case-insensitive): ``len(keyword) * 4``
2. Fuzzy token match: for each keyword token, the best content token within
   edit distance 2 (and closer than the token is long) scores
   ``2 * (len(token) - distance)``
3. Synonym match: ``len(token)`` for each keyword token whose synonyms appear
   among the content tokens
4. Character overlap: one point per distinct keyword character found anywhere
   in the content

A keyword that tokenizes to nothing goes straight to character overlap.
Scores are summed over keywords.
"""

import unicodedata
from collections.abc import Iterable
from pathlib import Path

import yaml

from cogitap.config.schema import MemorySettings
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_STOP_CHARACTERS = "；;:,，。.!?？、\"'()[]{}"

MAX_EDIT_DISTANCE = 2


def levenshtein(lhs: str, rhs: str) -> int:
    """Edit distance over code points; insert, delete and substitute cost 1."""
    if not lhs:
        return len(rhs)
    if not rhs:
        return len(lhs)

    previous = list(range(len(rhs) + 1))
    for i, left in enumerate(lhs, start=1):
        current = [i] + [0] * len(rhs)
        for j, right in enumerate(rhs, start=1):
            if left == right:
                current[j] = previous[j - 1]
            else:
                current[j] = min(current[j - 1], previous[j], previous[j - 1]) + 1
        previous = current
    return previous[-1]


def build_synonym_map(groups: Iterable[Iterable[str]]) -> dict[str, set[str]]:
    """Turn synonym groups into a symmetric lookup, lowercased."""
    synonyms: dict[str, set[str]] = {}
    for group in groups:
        words = [w.strip().lower() for w in group if w and w.strip()]
        for word in words:
            targets = synonyms.setdefault(word, set())
            targets.update(other for other in words if other != word)
    return synonyms


def load_matching_file(path: Path) -> dict:
    """Read extra stop words, stop characters and synonyms from YAML or JSON.

    Keys accepted in either snake or camel case (``stop_words`` or
    ``stopWords``). A missing or unreadable file yields an empty dict.
    """
    path = Path(path).expanduser()
    if not path.exists():
        logger.warning(f"Memory matching file not found: {path}")
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to read memory matching file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Memory matching file {path} is not a mapping")
        return {}

    def pick(snake: str, camel: str) -> list:
        value = data.get(snake, data.get(camel, []))
        return value if isinstance(value, list) else []

    return {
        "stop_words": pick("stop_words", "stopWords"),
        "stop_characters": pick("stop_characters", "stopCharacters"),
        "synonym_groups": pick("synonym_groups", "synonymGroups"),
    }


class TextMatcher:
    """Tokenizer and scorer configured with stop lists and synonyms."""

    def __init__(
        self,
        stop_words: Iterable[str] = (),
        stop_characters: Iterable[str] = (),
        synonym_groups: Iterable[Iterable[str]] = (),
    ):
        self.stop_words = {w.lower() for w in stop_words}
        self.extra_stop_characters = set(DEFAULT_STOP_CHARACTERS)
        for item in stop_characters:
            self.extra_stop_characters.update(item)
        self.synonyms = build_synonym_map(synonym_groups)

    @classmethod
    def from_settings(cls, settings: MemorySettings | None = None) -> "TextMatcher":
        settings = settings or MemorySettings()
        stop_words = list(settings.stop_words)
        stop_characters = list(settings.stop_characters)
        synonym_groups = [list(g) for g in settings.synonym_groups]

        if settings.matching_file:
            extra = load_matching_file(settings.matching_file)
            stop_words.extend(extra.get("stop_words", []))
            stop_characters.extend(extra.get("stop_characters", []))
            synonym_groups.extend(extra.get("synonym_groups", []))

        return cls(stop_words, stop_characters, synonym_groups)

    def is_stop_character(self, char: str) -> bool:
        return (
            char.isspace()
            or unicodedata.category(char).startswith("P")
            or char in self.extra_stop_characters
        )

    def tokenize(self, text: str) -> list[str]:
        tokens = []
        current: list[str] = []
        for char in text.lower():
            if self.is_stop_character(char):
                if current:
                    tokens.append("".join(current))
                    current = []
            else:
                current.append(char)
        if current:
            tokens.append("".join(current))
        return [t for t in tokens if t not in self.stop_words]

    # Scoring layers

    @staticmethod
    def fuzzy_token_score(keyword_tokens: list[str], content_tokens: list[str]) -> int:
        total = 0
        for token in keyword_tokens:
            best = 0
            for candidate in content_tokens:
                if abs(len(token) - len(candidate)) > MAX_EDIT_DISTANCE:
                    continue
                distance = levenshtein(token, candidate)
                if distance > MAX_EDIT_DISTANCE or distance >= len(token):
                    continue
                best = max(best, 2 * max(0, len(token) - distance))
            total += best
        return total

    def synonym_score(self, keyword_tokens: list[str], content_tokens: list[str]) -> int:
        content_set = set(content_tokens)
        total = 0
        for token in keyword_tokens:
            if self.synonyms.get(token, set()) & content_set:
                total += len(token)
        return total

    def character_overlap_score(self, keyword: str, content: str) -> int:
        seen = set()
        score = 0
        for char in keyword.lower():
            if self.is_stop_character(char) or char in seen:
                continue
            seen.add(char)
            if char in content:
                score += 1
        return score

    def score_keyword(self, keyword: str, content: str, content_tokens: list[str]) -> int:
        if keyword in content:
            return len(keyword) * 4

        keyword_tokens = self.tokenize(keyword)
        if not keyword_tokens:
            return self.character_overlap_score(keyword, content)

        if content_tokens:
            fuzzy = self.fuzzy_token_score(keyword_tokens, content_tokens)
            if fuzzy > 0:
                return fuzzy
            synonym = self.synonym_score(keyword_tokens, content_tokens)
            if synonym > 0:
                return synonym

        return self.character_overlap_score(keyword, content)

    def score(self, content: str, keywords: Iterable[str]) -> int:
        """Total score of ``content`` against lowercased ``keywords``."""
        content = content.lower()
        content_tokens = self.tokenize(content)
        return sum(self.score_keyword(k, content, content_tokens) for k in keywords)
