"""Heuristic English syllable counter used to validate script segments."""

import re

_VOWELS = "aeiouy"


def count_syllables(word: str) -> int:
    word = re.sub(r"[^a-z]", "", word.lower())
    if len(word) <= 3:
        return 1
    count = 0
    prev_vowel = False
    for ch in word:
        is_vowel = ch in _VOWELS
        if is_vowel and not prev_vowel:
            count += 1
        prev_vowel = is_vowel
    if word.endswith("e") and count > 1:
        count -= 1
    if word.endswith("le") and word[-3] not in _VOWELS:
        count += 1
    return max(1, count)


def count_text_syllables(text: str) -> int:
    words = re.sub(r"[^a-zA-Z\s]", "", text or "").split()
    return sum(count_syllables(w) for w in words)
