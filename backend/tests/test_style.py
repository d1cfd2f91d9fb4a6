"""Tests for communication style analysis."""

from models import EmojiUsage, Tone

from chatsync.ai.style import analyze_user_style


class TestAnalyzeUserStyle:
    """Test style heuristics."""

    def test_no_messages_gives_defaults(self):
        style = analyze_user_style([])
        assert style.tone == Tone.CONVERSATIONAL
        assert style.emoji_usage == EmojiUsage.OCCASIONAL

    def test_casual_writer(self):
        """Short messages with contractions and lots of emoji read as casual."""
        style = analyze_user_style(["can't wait 😂😂😂", "I'm here 🎉🎉🎉", "don't care lol 😅😅😅"])

        assert style.emoji_usage == EmojiUsage.FREQUENT
        assert style.uses_contractions is True
        assert style.tone == Tone.CASUAL

    def test_formal_writer(self):
        style = analyze_user_style(
            [
                "Thank you for the update. I will review the document tomorrow.",
                "Could you please confirm the meeting time?",
                "I have attached the report for your review.",
            ]
        )

        assert style.emoji_usage == EmojiUsage.RARE
        assert style.uses_contractions is False
        assert style.punctuation_style == "standard"
        assert style.tone == Tone.FORMAL

    def test_expressive_punctuation(self):
        style = analyze_user_style(["what?!", "no way!!", "wow..."])
        assert style.punctuation_style == "expressive"

    def test_common_phrases(self):
        texts = ["sounds good to me", "ok sounds good", "sounds good then", "see you soon"]

        style = analyze_user_style(texts)

        assert style.common_phrases == ["sounds good"]
        assert style.avg_message_length == 3
