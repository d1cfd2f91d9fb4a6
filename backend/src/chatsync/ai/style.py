"""Heuristic analysis of how a user writes, used to shape smart replies."""

import re
from collections import Counter

from models import EmojiUsage, Tone, UserCommunicationStyle

EMOJI_PATTERN = re.compile(
    "["
    "\U0001F300-\U0001FAFF"  # symbols, pictographs, emoticons, transport, supplemental
    "\u2600-\u27BF"  # misc symbols, dingbats
    "\U0001F1E6-\U0001F1FF"  # flags
    "\u2B50\u2B55\u200D"
    "]"
)

CONTRACTION_PATTERN = re.compile(
    r"\b(can't|won't|don't|didn't|isn't|aren't|wasn't|weren't|haven't|hasn't|hadn't|"
    r"wouldn't|shouldn't|couldn't|I'm|you're|he's|she's|it's|we're|they're|I've|you've|"
    r"we've|they've|I'll|you'll|he'll|she'll|we'll|they'll)\b",
    re.IGNORECASE,
)

MULTI_PUNCTUATION_PATTERN = re.compile(r"[!?]{2,}|\.{3,}")

MAX_COMMON_PHRASES = 5
MIN_PHRASE_COUNT = 3


def analyze_user_style(texts: list[str]) -> UserCommunicationStyle:
    """Derive a communication style from the user's own recent messages."""
    if not texts:
        return UserCommunicationStyle()

    count = len(texts)
    total_words = sum(len(text.split()) for text in texts)
    avg_length = int(total_words / count + 0.5)

    emojis_per_message = sum(len(EMOJI_PATTERN.findall(text)) for text in texts) / count
    if emojis_per_message > 2:
        emoji_usage = EmojiUsage.FREQUENT
    elif emojis_per_message > 0.5:
        emoji_usage = EmojiUsage.OCCASIONAL
    else:
        emoji_usage = EmojiUsage.RARE

    contractions = sum(len(CONTRACTION_PATTERN.findall(text)) for text in texts)
    uses_contractions = contractions > count * 0.2

    marks = sum(text.count("!") + text.count("?") for text in texts)
    multi = sum(len(MULTI_PUNCTUATION_PATTERN.findall(text)) for text in texts)
    if multi > count * 0.3:
        punctuation = "expressive"
    elif marks < count * 0.1:
        punctuation = "minimal"
    else:
        punctuation = "standard"

    if not uses_contractions and punctuation == "standard" and emoji_usage == EmojiUsage.RARE:
        tone = Tone.FORMAL
    elif uses_contractions and (avg_length < 8 or emoji_usage == EmojiUsage.FREQUENT):
        tone = Tone.CASUAL
    else:
        tone = Tone.CONVERSATIONAL

    # repeated two-word sequences
    phrases: Counter[str] = Counter()
    for text in texts:
        words = text.lower().split()
        phrases.update(f"{a} {b}" for a, b in zip(words, words[1:]))
    common = [
        phrase
        for phrase, n in phrases.most_common()
        if n >= MIN_PHRASE_COUNT
    ][:MAX_COMMON_PHRASES]

    return UserCommunicationStyle(
        avg_message_length=avg_length,
        emoji_usage=emoji_usage,
        tone=tone,
        common_phrases=common,
        uses_contractions=uses_contractions,
        punctuation_style=punctuation,
    )
