"""
Deterministic substitute content for when a live call cannot produce a result.

Resolution order for ``get_fallback(content_type, context)``:
1. content type + context match (risk category, mood level, list rotation)
2. the content type's default
3. a generic message for the content category

``get_fallback`` never raises. List items are picked by rotating from
``context["rotation"]`` so the same context always yields the same content.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from healthsync.logging_config import get_logger
from healthsync.utils import Clock

logger = get_logger(__name__)


class ContentTypes:
    RISK_EXPLANATION = "ai_risk_explanation"
    MOOD_SUPPORT = "ai_mood_support"
    NUTRITION_TIPS = "ai_nutrition_tips"
    COPING_STRATEGIES = "ai_coping_strategies"
    AI_CONTENT = "ai_content"
    DATABASE_CONTENT = "database_content"
    NETWORK_CONTENT = "network_content"


RISK_EXPLANATIONS = {
    "Low": (
        "Your risk assessment indicates a low likelihood of developing diabetes. "
        "Continue maintaining healthy lifestyle habits."
    ),
    "Increased": (
        "Your assessment shows increased diabetes risk. Focus on regular exercise, "
        "healthy eating, and weight management."
    ),
    "High": (
        "Your risk score indicates high diabetes likelihood. Consider immediate "
        "lifestyle changes and consult a healthcare provider."
    ),
    "Possible Diabetes": (
        "Your assessment suggests possible diabetes. Please consult a healthcare "
        "provider for proper testing and guidance."
    ),
}

MOOD_SUPPORT = {
    1: "It's okay to have difficult days. Taking care of your health is an act of self-love.",
    2: "You're showing strength by staying engaged with your health journey.",
    3: "You're doing well maintaining health awareness. Small consistent actions lead to big changes.",
    4: "Your positive attitude is a powerful tool for health. Keep up the great work!",
    5: "Wonderful! Your positive energy and health commitment are inspiring.",
}

NUTRITION_TIPS = [
    "Focus on vegetables, lean proteins, and whole grains",
    "Limit processed foods and added sugars",
    "Stay hydrated with water throughout the day",
    "Practice portion control at meals",
    "Include healthy fats like nuts and olive oil",
]

COPING_STRATEGIES = [
    "Practice deep breathing exercises for 5 minutes",
    "Take a short walk outdoors if possible",
    "Write down three things you're grateful for",
    "Listen to calming music or nature sounds",
    "Reach out to a trusted friend or family member",
]

GENERIC_FALLBACKS = {
    ContentTypes.AI_CONTENT: (
        "We're experiencing technical difficulties with our AI service. "
        "Please try again later."
    ),
    ContentTypes.DATABASE_CONTENT: (
        "Unable to retrieve data at this time. Please check your connection and try again."
    ),
    ContentTypes.NETWORK_CONTENT: (
        "You appear to be offline. Some features may be limited until connection is restored."
    ),
}

DEFAULT_MESSAGE = "Service temporarily unavailable. Please try again later."

# (path markers, payload) checked in order; the last entry is the catch-all
_API_FALLBACKS: list[tuple[tuple[str, ...], dict[str, Any]]] = [
    (
        ("risk", "assessment"),
        {
            "error": "AI risk analysis unavailable",
            "message": "AI-powered risk insights are temporarily unavailable while offline.",
            "suggestions": [
                "Your risk assessment has been saved locally",
                "Review your previous risk assessments",
                "Continue logging health data for future analysis",
                "AI insights will be available when you're back online",
            ],
            "offline_capabilities": [
                "View assessment history",
                "Complete new assessments",
                "Access saved recommendations",
            ],
        },
    ),
    (
        ("nutrition", "meal"),
        {
            "error": "AI nutrition planning unavailable",
            "message": "AI-powered meal planning is temporarily unavailable while offline.",
            "suggestions": [
                "View your existing meal plans",
                "Log meal adherence for current plans",
                "Review nutrition guidelines",
                "New AI meal plans will be available when online",
            ],
            "offline_capabilities": [
                "View saved meal plans",
                "Track meal adherence",
                "Access nutrition tips",
            ],
        },
    ),
    (
        ("mood", "mental"),
        {
            "error": "AI mental health support unavailable",
            "message": "AI-powered mental health insights are temporarily unavailable while offline.",
            "suggestions": [
                "Continue logging your daily mood",
                "Review your mood history and patterns",
                "Practice self-care techniques",
                "AI support will resume when you're back online",
            ],
            "offline_capabilities": [
                "Log daily mood",
                "View mood trends",
                "Access coping strategies",
            ],
        },
    ),
    (
        (),
        {
            "error": "AI service unavailable",
            "message": "AI insights are temporarily unavailable while offline.",
            "suggestions": [
                "Continue using available app features",
                "Your data is safely stored locally",
                "AI features will resume when connection is restored",
            ],
            "offline_capabilities": [
                "View previous data",
                "Log new entries",
                "Access saved content",
            ],
        },
    ),
]


def _rotate(items: list[str], count: int, start: int) -> list[str]:
    start %= len(items)
    return [items[(start + i) % len(items)] for i in range(min(count, len(items)))]


class FallbackResolver:
    """
    Substitute content by content type and context.

    Example:
        resolver = FallbackResolver()
        resolver.get_fallback("ai_mood_support", {"mood": 2})
        resolver.get_fallback("ai_nutrition_tips", {"rotation": 1})
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock

    def _timestamp(self) -> str:
        if self._clock is not None:
            return datetime.fromtimestamp(self._clock() / 1000.0, tz=UTC).isoformat()
        return datetime.now(UTC).isoformat()

    def get_fallback(self, content_type: str, context: dict[str, Any] | None = None) -> Any:
        """
        Resolve substitute content.

        Args:
            content_type: One of ContentTypes (unknown types get a generic message)
            context: category / mood / rotation hints

        Returns:
            A string, or a list of strings for coping strategies
        """
        if not isinstance(context, dict):
            context = {}
        try:
            rotation = int(context.get("rotation", 0))
        except (TypeError, ValueError, OverflowError):
            rotation = 0

        if content_type == ContentTypes.RISK_EXPLANATION:
            category = context.get("category", "Low")
            if not isinstance(category, str):
                category = "Low"
            return RISK_EXPLANATIONS.get(category, RISK_EXPLANATIONS["Low"])

        if content_type == ContentTypes.MOOD_SUPPORT:
            try:
                mood = int(context.get("mood", 3))
            except (TypeError, ValueError, OverflowError):
                mood = 3
            return MOOD_SUPPORT.get(mood, MOOD_SUPPORT[3])

        if content_type == ContentTypes.NUTRITION_TIPS:
            return "\n• ".join(_rotate(NUTRITION_TIPS, 3, rotation))

        if content_type == ContentTypes.COPING_STRATEGIES:
            return _rotate(COPING_STRATEGIES, 2, rotation)

        if content_type not in GENERIC_FALLBACKS:
            logger.debug("fallback_generic", content_type=content_type)
        return GENERIC_FALLBACKS.get(content_type, DEFAULT_MESSAGE)

    def content_type_for(self, hint: str | None) -> str:
        """Map a free-form hint ("mood check-in", "risk") to a content type."""
        hint = (hint or "").lower()
        if "risk" in hint:
            return ContentTypes.RISK_EXPLANATION
        if "mood" in hint:
            return ContentTypes.MOOD_SUPPORT
        if "nutrition" in hint:
            return ContentTypes.NUTRITION_TIPS
        if "coping" in hint:
            return ContentTypes.COPING_STRATEGIES
        return ContentTypes.AI_CONTENT

    def api_fallback(self, path: str) -> dict[str, Any]:
        """Contextual "AI unavailable" payload for an API route."""
        path = path.lower()
        payload = next(
            p for markers, p in _API_FALLBACKS
            if not markers or any(m in path for m in markers)
        )
        return {**payload, "fallback": True, "timestamp": self._timestamp()}

    def degraded_payload(self) -> dict[str, Any]:
        """Structured "this feature is degraded, here is what still works" payload."""
        return {
            "error": "Service unavailable",
            "offline": True,
            "message": (
                "You are currently offline. Your data is safely stored locally and "
                "will sync automatically when connection is restored."
            ),
            "timestamp": self._timestamp(),
            "capabilities": {
                "available": [
                    "View previous assessments",
                    "Log mood entries",
                    "View nutrition plans",
                    "Access progress dashboard",
                ],
                "unavailable": [
                    "AI-powered insights",
                    "Generate new meal plans",
                    "Doctor report generation",
                    "Real-time data synchronization",
                ],
            },
            "actions": [
                "Continue using available features",
                "Your data will sync when online",
                "Check offline status in the app",
            ],
        }

    def unavailable_payload(self) -> dict[str, Any]:
        """Payload for a resource with neither a cached copy nor network."""
        return {
            "error": "Resource unavailable offline",
            "message": (
                "This content is not available while offline. "
                "Please check your connection and try again."
            ),
            "offline_mode": True,
            "suggestions": [
                "Check your internet connection",
                "Try refreshing the page when online",
                "Use available offline features",
            ],
            "timestamp": self._timestamp(),
        }
