"""
Entity resolution for incoming venue sightings.

Resolves a raw venue record against the canonical registry:
  1. Normalize the name into a comparison key (never stored)
  2. Ask the store for canonical venues within MATCH_RADIUS_M of the
     sighting, ordered by distance
  3. Select the nearest candidate; ties on distance prefer an equal
     normalized name

No match means the orchestrator inserts a new canonical venue; a match
means it merges into that venue.

Known trade-off: the nearest-candidate rule does not disambiguate between
distinct venues that share a radius (two stages in one complex). Category
and secondary name similarity are deliberately not consulted.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from services.registry.pipeline.models import CandidateVenue, CanonicalVenue, RawVenueRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Name normalization
# ---------------------------------------------------------------------------

# Legal-entity suffixes removed as whole tokens. Periods are already gone
# by the time this runs, so "e.V." arrives as "ev" or "e v".
_LEGAL_SUFFIX_RE = re.compile(
    r"\b(?:e\s?v|e\s?k|gmbh|ug|ag|inc|llc|ltd|corp|co)\b"
)

_PUNCT_RE = re.compile(r"[.,'\"‘’“”`]")
_WS_RE = re.compile(r"\s+")


def normalize_name(raw_name: Optional[str]) -> str:
    """
    Reduce a venue name to a comparison key.

    Steps:
      1. Lowercase
      2. Collapse whitespace
      3. Strip quote, comma and period punctuation
      4. Strip legal-entity suffixes (gmbh, ug, e.v., inc, llc, ltd, corp, co, ...)
      5. " - " becomes a single space
      6. Collapse whitespace again and trim

    "Hirsch GmbH", "hirsch  gmbh." and "Hirsch" all normalize to "hirsch".
    """
    if not raw_name:
        return ""

    text = raw_name.lower()
    text = _WS_RE.sub(" ", text)
    text = _PUNCT_RE.sub("", text)
    text = _LEGAL_SUFFIX_RE.sub("", text)
    text = text.replace(" - ", " ")
    text = _WS_RE.sub(" ", text).strip()
    # A trailing or leading dash left behind by a removed suffix ("Foo - GmbH")
    return text.strip(" -")


# ---------------------------------------------------------------------------
# Candidate matching
# ---------------------------------------------------------------------------

class MatchType(str, Enum):
    NONE = "none"
    NEAREST = "nearest"


@dataclass
class MatchResult:
    match_type: MatchType
    venue: Optional[CanonicalVenue] = None
    distance_m: Optional[float] = None
    candidates_found: int = 0


class CandidateMatcher:
    """
    Finds the canonical venue a raw sighting belongs to.

    Usage:
        matcher = CandidateMatcher(store, radius_m=80)
        result = await matcher.match(raw_venue)
        if result.venue is None: insert
        else: merge into result.venue
    """

    DEFAULT_RADIUS_M = 80

    def __init__(self, store, radius_m: float = DEFAULT_RADIUS_M):
        self.store = store
        self.radius_m = radius_m

    async def find_candidates(self, raw: RawVenueRecord) -> list[CandidateVenue]:
        """All canonical venues within the radius, nearest first."""
        candidates = await self.store.find_candidates(
            raw.name, raw.lat, raw.lng, self.radius_m,
        )
        key = normalize_name(raw.name)
        return sorted(
            candidates,
            key=lambda c: (c.distance_m, normalize_name(c.venue.name) != key),
        )

    async def match(self, raw: RawVenueRecord) -> MatchResult:
        candidates = await self.find_candidates(raw)
        if not candidates:
            return MatchResult(match_type=MatchType.NONE)

        best = candidates[0]
        if len(candidates) > 1:
            logger.debug(
                "%d candidates for %r within %sm, taking nearest %r (%.1fm)",
                len(candidates), raw.name, self.radius_m,
                best.venue.name, best.distance_m,
            )
        return MatchResult(
            match_type=MatchType.NEAREST,
            venue=best.venue,
            distance_m=best.distance_m,
            candidates_found=len(candidates),
        )
