"""
Preloaded fallback questions
预置兜底题库 - AI 生成失败时按模式抽取
"""

from typing import Dict, List

from truthdare.models.room import GameMode, Question, QuestionOrigin, QuestionType


MINIMAL_CONTENT: Dict[str, List[str]] = {
    "truths": [
        "What's a secret turn-on you have that might surprise people?",
        "Describe your ideal first kiss in three words.",
        "Who was your very first celebrity crush?",
        "What's the most embarrassing thing you've done to impress someone?",
        "What's something you find attractive that most people might not?",
        "Have you ever sent a text to the wrong person? What did it say?",
        "What's the cheesiest pickup line you've ever used or heard?",
        "What song instantly puts you in a romantic mood?",
        "What's the boldest thing you've ever done on a date?",
        "If you could go on a date with anyone in history, who would it be?",
    ],
    "dares": [
        "Send a winking emoji to the third contact in your phone without context.",
        "Describe your 'type' using only three adjectives.",
        "Whisper a compliment to the person on your right.",
        "Do your best runway walk across the room and back.",
        "Serenade the group with one line of a love song.",
        "Give a 10-second dramatic movie-star look to someone in the room.",
        "Show how you'd flirt at a bar using only eye contact and a smile.",
        "Talk in a fake accent until your next turn.",
        "Strike your most glamorous pose and hold it for 10 seconds.",
        "Let the group pick an emoji for you to set as your status for an hour.",
    ],
}

MODERATE_CONTENT: Dict[str, List[str]] = {
    "truths": [
        "What's the most unexpected place you've ever had a crush on someone?",
        "Have you ever used a dating app just out of curiosity? How did it go?",
        "What's your go-to move when you want someone to notice you?",
        "What's a romantic fantasy you've never told anyone?",
        "What's the most awkward moment you've had on a date?",
        "Who in this room do you think is the biggest flirt, and why?",
        "What's a small detail about someone that instantly wins you over?",
        "Have you ever had a crush on a friend's partner?",
        "How far is too far for public displays of affection?",
        "What's a dating habit you think is overrated?",
    ],
    "dares": [
        "Give someone of your choice a 20-second shoulder rub.",
        "Take a dramatic selfie and show it to the group.",
        "Describe your ideal date night in vivid detail.",
        "Write a short 'missed connection' ad for someone in the room and read it aloud.",
        "End every sentence with a purr until your next turn.",
        "Hold eye contact with a player of your choice for a full minute without laughing.",
        "Re-enact a famous romantic movie scene with a pillow as your partner.",
        "Give a sincere compliment to three different players.",
        "Hand a player a 'favor coupon' they can redeem from you later tonight.",
        "Let the player on your left write a one-line bio for your dating profile.",
    ],
}


def _content_for(mode: GameMode) -> Dict[str, List[str]]:
    if mode == GameMode.MODERATE:
        return MODERATE_CONTENT
    return MINIMAL_CONTENT


def get_fallback_pool(mode: GameMode, question_type: QuestionType) -> List[Question]:
    """Return the preloaded questions of one type for a mode"""
    content = _content_for(mode)
    texts = content["truths"] if question_type == QuestionType.TRUTH else content["dares"]
    return [
        Question(
            id=f"{question_type.value}-preloaded-{mode.value}-{i}",
            text=text,
            type=question_type,
            origin=QuestionOrigin.PRELOADED,
        )
        for i, text in enumerate(texts)
    ]
