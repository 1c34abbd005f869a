import re
import logging
from collections import namedtuple
from typing import List

logger = logging.getLogger(__name__)


TextStats = namedtuple(
    "TextStats",
    ["items", "words", "characters", "sentences", "flesch_reading_ease", "flesch_kincaid_grade"],
)

# $25, €10, 3.14, -5, 1,000.50 and "- 5" with a spaced minus
NUMBER_PATTERN = re.compile(
    r"[\$€£¥]?\s*(-\s*\d{1,3}(?:,\d{3})+(?:\.\d+)?|-\s*\d+(?:\.\d+)?|\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"
)
WORD_PATTERN = re.compile(r"\b[a-zA-ZğüşöçıİĞÜŞÖÇ]+\b")
SENTENCE_PATTERN = re.compile(r"[.!?]+")
CURRENCY_CHARS = ("$", "€", "£", "¥")
ANALYSIS_KINDS = ("sum", "avg", "count")

VOWELS = "aeiouy"


def count_syllables(word: str) -> int:
    w = word.lower()
    count = 0
    prev_vowel = False
    for ch in w:
        is_vowel = ch in VOWELS
        if is_vowel and not prev_vowel:
            count += 1
        prev_vowel = is_vowel

    # Silent e
    if w.endswith("e") and count > 1:
        count -= 1
    return max(1, count)


class TextAnalyzer:
    """Statistics over a whole note, backing the sum / avg / count commands."""

    def extract_numbers(self, text: str) -> List[float]:
        numbers = []
        for match in NUMBER_PATTERN.finditer(text):
            num_str = match.group(1).replace(",", "").replace(" ", "")
            try:
                numbers.append(float(num_str))
            except ValueError:
                logger.debug(f"Skipping unparsable number '{num_str}'")
        return numbers

    def sum(self, text: str) -> float:
        return sum(self.extract_numbers(text))

    def avg(self, text: str) -> float:
        nums = self.extract_numbers(text)
        if not nums:
            return 0.0
        return sum(nums) / len(nums)

    def min(self, text: str) -> float:
        nums = self.extract_numbers(text)
        return min(nums) if nums else 0.0

    def max(self, text: str) -> float:
        nums = self.extract_numbers(text)
        return max(nums) if nums else 0.0

    def analyze(self, text: str) -> TextStats:
        items = sum(1 for line in text.split("\n") if line.strip())

        words = 0
        syllables = 0
        for match in WORD_PATTERN.finditer(text):
            words += 1
            syllables += count_syllables(match.group(0))

        characters = sum(1 for ch in text if not ch.isspace())

        sentences = len(SENTENCE_PATTERN.findall(text))
        if sentences == 0 and words > 0:
            sentences = 1

        reading_ease = 0.0
        grade = 0.0
        if words > 0 and sentences > 0:
            words_per_sentence = words / sentences
            syllables_per_word = syllables / words
            reading_ease = 206.835 - 1.015 * words_per_sentence - 84.6 * syllables_per_word
            reading_ease = min(100.0, max(0.0, reading_ease))
            grade = 0.39 * words_per_sentence + 11.8 * syllables_per_word - 15.59
            grade = max(0.0, grade)

        return TextStats(items, words, characters, sentences, reading_ease, grade)

    @staticmethod
    def _has_currency(text: str) -> bool:
        return any(ch in text for ch in CURRENCY_CHARS)

    def format_sum(self, text: str) -> str:
        if not self.extract_numbers(text):
            return "\nTotal: 0"
        prefix = "$" if self._has_currency(text) else ""
        return f"\nTotal: {prefix}{self.sum(text):.2f}"

    def format_avg(self, text: str) -> str:
        if not self.extract_numbers(text):
            return "\nAvg: 0"
        prefix = "$" if self._has_currency(text) else ""
        return f"\nAvg: {prefix}{self.avg(text):.2f}"

    def format_count(self, text: str) -> str:
        s = self.analyze(text)
        return (
            f"\nItems: {s.items}"
            f"\nWords: {s.words}"
            f"\nCharacters: {s.characters}"
            f"\nSentences: {s.sentences}"
            f"\nFlesch Reading Ease Score: {s.flesch_reading_ease:.2f}"
            f"\nFlesch-Kincaid Grade Level: {s.flesch_kincaid_grade:.2f}"
        )

    def analyze_note(self, text: str, kind: str) -> str:
        """Runs one of the analysis commands over a note.

        A first line that is the command itself ('sum' or '/sum') is left out.
        """
        kind = kind.lower()
        if kind not in ANALYSIS_KINDS:
            raise ValueError(f"Unknown analysis '{kind}', expected one of {', '.join(ANALYSIS_KINDS)}")

        lines = text.split("\n")
        if lines and lines[0].strip().lower() in (kind, "/" + kind):
            text = "\n".join(lines[1:])

        if kind == "sum":
            return self.format_sum(text)
        if kind == "avg":
            return self.format_avg(text)
        return self.format_count(text)
