"""
Regex helpers for pulling structured hints out of free text.

Used as the deterministic fallback when AI extraction is unavailable and
for key-information extraction from official updates.
"""
import re
from typing import List, Optional

# "Lower East Side, NYC", "Brooklyn Heights, NY"
PLACE_WITH_REGION = re.compile(r'\b((?:[A-Z][a-z]+ ){0,3}[A-Z][a-z]+, [A-Z]{2,3})\b')
# "New York", "Madison Square Garden"
CAPITALIZED_PHRASE = re.compile(r'\b([A-Z][a-z]+(?: [A-Z][a-z]+)+)\b')
HASHTAG = re.compile(r'#([A-Za-z][A-Za-z0-9]*)')

PHONE_NUMBER = re.compile(r'\b\d{3}-\d{3}-\d{4}\b|\(\d{3}\)\s*\d{3}-\d{4}\b')
URL = re.compile(r'https?://[^\s]+')
DEADLINE = re.compile(r'\b(?:until|by|before)\s+\d{1,2}(?::\d{2})?\s*(?:AM|PM|am|pm)?', re.IGNORECASE)
ACTION = re.compile(r'\b(?:avoid|evacuate|stay|call|seek|move|boil)\b[^.!?]*', re.IGNORECASE)


def _unique(items: List[str]) -> List[str]:
    seen = []
    for item in items:
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


def extract_location_mentions(content: str) -> List[str]:
    """
    Find likely location mentions, most specific first.

    Examples:
        >>> extract_location_mentions('Flooding near Brooklyn Heights, NY #NYCFlood')
        ['Brooklyn Heights, NY', 'Brooklyn Heights', '#NYCFlood']
    """
    if not content:
        return []

    mentions = PLACE_WITH_REGION.findall(content)
    mentions += CAPITALIZED_PHRASE.findall(content)
    mentions += [f"#{tag}" for tag in HASHTAG.findall(content)]
    return _unique(mentions)


def best_location_guess(content: str) -> Optional[str]:
    """Return the most specific place mention, or None."""
    if not content:
        return None
    match = PLACE_WITH_REGION.search(content)
    if match:
        return match.group(1)
    match = CAPITALIZED_PHRASE.search(content)
    return match.group(1) if match else None


def extract_phone_numbers(content: str) -> List[str]:
    return _unique(PHONE_NUMBER.findall(content or ''))


def extract_urls(content: str) -> List[str]:
    return _unique(URL.findall(content or ''))


def extract_deadlines(content: str) -> List[str]:
    return _unique(DEADLINE.findall(content or ''))


def extract_actions(content: str) -> List[str]:
    return _unique(ACTION.findall(content or ''))
