"""
Log Column Resolution Module

Maps a logical channel (e.g. "target lambda") to the physical column name a
particular logger wrote into the CSV header. Loggers disagree on names and
units, so matching runs through progressively looser stages and stops at the
first hit. No stage ever raises; an unresolved channel is reported as None.
"""

import re

# Keyword sets used by the last-resort keyword stage.
TARGET_KEYWORDS = ['fuel', 'ratio', 'target', 'commanded', 'desired', 'power', 'mode']
MEASURED_KEYWORDS = ['fuel', 'sensor', 'measured', 'actual', 'lambda', 'o2', 'afr']
TARGET_ROLE_MARKERS = ('target', 'commanded', 'desired', 'setpoint')

MIN_KEYWORD_HITS = 2


def normalize_header(header_name):
    """Normalizes a log file header for case-insensitive and unit-agnostic comparison."""
    normalized = re.sub(r'\s*\([^)]*\)\s*$', '', str(header_name))
    return normalized.lower().strip()


def _normalize_words(name):
    """Lowercases, drops unit suffixes and turns punctuation into word breaks."""
    text = normalize_header(name)
    text = re.sub(r'[^0-9a-z]+', ' ', text)
    return text.split()


def _significant_words(name):
    return [w for w in _normalize_words(name) if len(w) > 2]


def _match_exact(available_columns, candidate_names):
    for name in candidate_names:
        if name in available_columns:
            return name
    return None


def _match_case_insensitive(available_columns, candidate_names):
    lowered = {}
    for col in available_columns:
        lowered.setdefault(str(col).lower(), col)
    for name in candidate_names:
        hit = lowered.get(str(name).lower())
        if hit is not None:
            return hit
    return None


def _match_normalized(available_columns, candidate_names):
    normalized_columns = [(col, ' '.join(_normalize_words(col))) for col in available_columns]
    for name in candidate_names:
        words = _significant_words(name)
        if not words:
            continue
        for col, normalized in normalized_columns:
            if all(word in normalized for word in words):
                return col
    return None


def infer_keywords(candidate_names):
    """Picks the target or measured keyword set based on the candidate names."""
    for name in candidate_names:
        lowered = str(name).lower()
        if any(marker in lowered for marker in TARGET_ROLE_MARKERS):
            return TARGET_KEYWORDS
    return MEASURED_KEYWORDS


def _match_keywords(available_columns, keywords):
    for col in available_columns:
        lowered = str(col).lower()
        hits = sum(1 for keyword in keywords if keyword in lowered)
        if hits >= MIN_KEYWORD_HITS:
            return col
    return None


def resolve_column(available_columns, candidate_names, keywords=None, allow_keywords=True):
    """
    Finds the log column that best matches a list of candidate names.

    Args:
        available_columns (list[str]): Column headers present in the log.
        candidate_names (list[str]): Known names for the channel, in priority order.
        keywords (list[str], optional): Keyword set for the final stage. When
            omitted, a target or measured set is inferred from the candidates.
        allow_keywords (bool): Set False to stop after the normalized stage.

    Returns:
        str or None: The matching column header, or None if nothing matched.
    """
    available_columns = list(available_columns)
    if not available_columns or not candidate_names:
        return None

    match = _match_exact(available_columns, candidate_names)
    if match is None:
        match = _match_case_insensitive(available_columns, candidate_names)
    if match is None:
        match = _match_normalized(available_columns, candidate_names)
    if match is None and allow_keywords:
        match = _match_keywords(available_columns, keywords or infer_keywords(candidate_names))
    return match
