"""
Priority scoring for aggregated content (social posts, citizen reports)

This is the single place a numeric priority is computed. Every caller that
ranks items uses calculate_priority().
"""
from typing import Dict, Optional, Union

PRIORITY_BASE = 5
PRIORITY_MIN = 1
PRIORITY_MAX = 10

URGENCY_WEIGHTS = {
    'critical': 4,
    'high': 3,
    'medium': 2,
    'low': 1,
}

CONTENT_TYPE_WEIGHTS = {
    'help_request': 2,
    'emergency_alert': 3,
}

URGENT_KEYWORDS = ['sos', 'urgent', 'emergency', 'help', 'rescue', 'trapped']


def total_engagement(engagement: Union[int, float, Dict, None]) -> int:
    """
    Sum engagement counters.

    Accepts a plain number or a dict such as
    {'likes': 15, 'retweets': 8, 'replies': 3}.
    """
    if not engagement:
        return 0
    if isinstance(engagement, dict):
        total = 0
        for value in engagement.values():
            try:
                total += int(value or 0)
            except (TypeError, ValueError):
                continue
        return total
    try:
        return int(engagement)
    except (TypeError, ValueError):
        return 0


def calculate_priority(content: str, analysis: Optional[Dict], engagement=None) -> int:
    """
    Score content priority on a 1-10 scale.

    Base 5, plus urgency weight, plus content-type weight, plus one per
    urgent keyword found, plus one each for engagement above 50 and 100.

    Args:
        content: Raw post or report text
        analysis: Classification dict with 'urgency' and 'content_type'
        engagement: Number or dict of engagement counters

    Returns:
        Integer priority clamped to [PRIORITY_MIN, PRIORITY_MAX]

    Examples:
        >>> calculate_priority('Need rescue, trapped!', {'urgency': 'critical', 'content_type': 'help_request'})
        10
        >>> calculate_priority('Road reopened', {'urgency': 'low', 'content_type': 'information'})
        6
    """
    analysis = analysis or {}
    priority = PRIORITY_BASE

    priority += URGENCY_WEIGHTS.get(str(analysis.get('urgency', '')).lower(), 0)
    priority += CONTENT_TYPE_WEIGHTS.get(analysis.get('content_type'), 0)

    text = (content or '').lower()
    priority += sum(1 for keyword in URGENT_KEYWORDS if keyword in text)

    engagement_total = total_engagement(engagement)
    if engagement_total > 50:
        priority += 1
    if engagement_total > 100:
        priority += 1

    return max(PRIORITY_MIN, min(priority, PRIORITY_MAX))
