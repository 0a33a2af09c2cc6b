"""String similarity and geographic distance primitives."""

import math
import re

EARTH_RADIUS_METERS = 6371000.0

_NON_WORD = re.compile(r"[^\w\s]")
_AMPERSAND = re.compile(r"&")
_WHITESPACE = re.compile(r"\s+")


def levenshtein_distance(s1: str, s2: str) -> int:
    """
    Calculate the Levenshtein distance between two strings.

    Counts the minimum number of single-character insertions,
    deletions and substitutions needed to turn one string into the other.

    Args:
        s1: First string
        s2: Second string

    Returns:
        Edit distance
    """
    if len(s1) < len(s2):
        s1, s2 = s2, s1

    if len(s2) == 0:
        return len(s1)

    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def normalize_text(value: str) -> str:
    """
    Lowercase, strip punctuation and trim a string for comparison.

    "&" is read as "and" and runs of whitespace collapse to one space, so
    "Joe's Bar & Grill" and "Joes Bar and Grill" normalize identically.
    """
    value = _AMPERSAND.sub(" and ", value.lower())
    value = _NON_WORD.sub("", value)
    return _WHITESPACE.sub(" ", value).strip()


def name_similarity(name1: str, name2: str) -> float:
    """
    Calculate similarity percentage between two strings.

    Both strings are normalized first. Identical normalized strings
    score 100; otherwise the score is (maxLen - distance) / maxLen * 100,
    rounded to two decimal places.

    Args:
        name1: First string
        name2: Second string

    Returns:
        Similarity between 0 and 100
    """
    normalized1 = normalize_text(name1 or "")
    normalized2 = normalize_text(name2 or "")

    if normalized1 == normalized2:
        return 100.0

    max_len = max(len(normalized1), len(normalized2))
    if max_len == 0:
        return 0.0

    distance = levenshtein_distance(normalized1, normalized2)
    return round((max_len - distance) / max_len * 100, 2)


def fuzzy_ratio(s1: str, s2: str) -> float:
    """
    Loose 0.0-1.0 similarity used when checking geocoder output.

    Containment of one string in the other scores the length ratio,
    everything else falls back to normalized edit distance.
    """
    s1 = s1.lower().strip()
    s2 = s2.lower().strip()

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    if s1 in s2 or s2 in s1:
        return min(len(s1), len(s2)) / max(len(s1), len(s2))

    distance = levenshtein_distance(s1, s2)
    return 1.0 - distance / max(len(s1), len(s2))


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two coordinates.

    Args:
        lat1: Latitude of the first point in degrees
        lon1: Longitude of the first point in degrees
        lat2: Latitude of the second point in degrees
        lon2: Longitude of the second point in degrees

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c
