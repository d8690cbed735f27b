"""
Confidence scoring for candidate company-profile URLs.

A candidate's confidence is the sum of a few independent signals:

    base      0.60  URL is a company-profile URL
    name      0.25  display name and search term agree
    position  0.10  provider ranked it first
    slug      0.05  slug contains the squashed search term

The total is capped at 0.95 (nothing found by search is ever certain)
and rounded to two decimals.
"""

from typing import List

from .models import Candidate, SearchHit
from .normalize import (
    clean_description,
    extract_display_name,
    extract_slug,
    is_company_profile_url,
    strip_whitespace,
)

BASE_SCORE = 0.60
NAME_BONUS = 0.25
TOP_POSITION_BONUS = 0.10
SLUG_BONUS = 0.05
MAX_CONFIDENCE = 0.95

AUTO_SELECT_THRESHOLD = 0.90


def score(hit: SearchHit, search_term: str, position: int) -> float:
    """
    Score one provider hit against the term that found it.

    Pure and deterministic. Never raises; a URL that is not a company
    profile scores 0.0.
    """
    url = hit.url or ""
    if not is_company_profile_url(url):
        return 0.0

    total = BASE_SCORE
    term = (search_term or "").strip().lower()
    name = extract_display_name(hit.title or "", hit.description or "").lower()

    if name and term:
        first_token = name.split()[0]
        if term in name or first_token in term:
            total += NAME_BONUS

    if position == 0:
        total += TOP_POSITION_BONUS

    squashed = strip_whitespace(term)
    if squashed and squashed in extract_slug(url).lower():
        total += SLUG_BONUS

    return round(min(total, MAX_CONFIDENCE), 2)


def build_candidate(hit: SearchHit, search_term: str, position: int) -> Candidate:
    """Turn a provider hit into a scored Candidate."""
    return Candidate(
        url=hit.url,
        display_name=extract_display_name(hit.title, hit.description),
        normalized_slug=extract_slug(hit.url),
        description=clean_description(hit.description),
        confidence=score(hit, search_term, position),
    )


def rank_candidates(hits: List[SearchHit], search_term: str, max_results: int = 3) -> List[Candidate]:
    """
    Score the company-profile hits among the first max_results.

    Each candidate keeps its original provider rank as position. The
    result is stably sorted by confidence, highest first.
    """
    candidates = [
        build_candidate(hit, search_term, position)
        for position, hit in enumerate(hits[:max_results])
        if is_company_profile_url(hit.url)
    ]
    return sorted(candidates, key=lambda c: c.confidence, reverse=True)


def should_auto_select(candidates: List[Candidate], threshold: float = AUTO_SELECT_THRESHOLD) -> bool:
    """True only for a single candidate at or above the threshold."""
    return len(candidates) == 1 and candidates[0].confidence >= threshold
