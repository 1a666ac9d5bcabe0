"""
Place resolution with a human-in-the-loop disambiguation boundary.

A free-text place query is geocoded into scored candidates. One confident
candidate resolves directly; several confident (or only weak) candidates are
turned into a question with options and handed to a DisambiguationCollaborator,
whose answer may be "pending" while the conversation waits for the user.
"""
import logging
import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from errors import InvalidCoordinate, InvalidSelection, LocationNotFound, ProviderFailure
from geo_math import distance
from google_maps import GoogleMapsService, get_google_maps_service
from schemas import (
    Coordinate,
    DisambiguationOption,
    DisambiguationRequest,
    DisambiguationResponse,
    GeocodingCandidate,
    PlaceResolution,
)

load_dotenv()

logger = logging.getLogger(__name__)

DISAMBIGUATION_THRESHOLD = float(os.getenv("DISAMBIGUATION_THRESHOLD", "0.7"))
MAX_CANDIDATES = 5
PROXIMITY_RADIUS_M = 5000.0


def _mentions(address: str, term: Optional[str]) -> bool:
    return bool(term and term.strip()) and term.strip().lower() in address.lower()


def score_candidates(
    results: List[Dict[str, Any]],
    bias: Optional[Coordinate] = None,
    country: Optional[str] = None,
    city: Optional[str] = None,
) -> List[GeocodingCandidate]:
    """
    Convert raw place results into candidates sorted by descending confidence.

    confidence = 0.8 + 0.2 * (n - i) / n, plus 0.1 each when the address names
    the requested country or city, plus up to 0.1 when within 5 km of the
    bias point. Capped at 1.0.
    """
    results = results[:MAX_CANDIDATES]
    n = len(results)
    candidates = []
    for index, item in enumerate(results):
        try:
            loc = item["geometry"]["location"]
            coordinates = Coordinate(latitude=loc["lat"], longitude=loc["lng"])
        except (KeyError, TypeError, ValueError, InvalidCoordinate):
            logger.warning(f"Skipping place result without usable geometry: {item.get('name')}")
            continue

        address = item.get("formatted_address") or item.get("name") or ""
        confidence = min(1.0, 0.8 + (n - index) / n * 0.2)
        if _mentions(address, country):
            confidence = min(1.0, confidence + 0.1)
        if _mentions(address, city):
            confidence = min(1.0, confidence + 0.1)
        if bias is not None:
            meters = distance(bias, coordinates)
            if meters < PROXIMITY_RADIUS_M:
                confidence = min(1.0, confidence + 0.1 * (1 - meters / PROXIMITY_RADIUS_M))

        candidates.append(GeocodingCandidate(
            name=item.get("name") or address.split(",")[0],
            address=address,
            coordinates=coordinates,
            place_id=item.get("place_id"),
            confidence=round(confidence, 2),
        ))

    candidates.sort(key=lambda c: c.confidence, reverse=True)
    return candidates


def confident_candidates(candidates: List[GeocodingCandidate], threshold: float = DISAMBIGUATION_THRESHOLD) -> List[GeocodingCandidate]:
    return [c for c in candidates if c.confidence >= threshold]


def needs_disambiguation(candidates: List[GeocodingCandidate], threshold: float = DISAMBIGUATION_THRESHOLD) -> bool:
    """True unless exactly one candidate clears the threshold."""
    if not candidates:
        return False
    return len(confident_candidates(candidates, threshold)) != 1


def build_request(query: str, candidates: List[GeocodingCandidate], context: Optional[str] = None) -> DisambiguationRequest:
    options = [
        DisambiguationOption(id=str(index + 1), label=c.name, description=c.address)
        for index, c in enumerate(candidates)
    ]
    return DisambiguationRequest(
        question=f"I found several places matching \"{query}\". Which one did you mean?",
        options=options,
        context=context,
    )


def format_prompt(request: DisambiguationRequest) -> str:
    """Render a request as the message shown (or spoken) to the user."""
    message = request.question
    if request.options:
        message += "\n\nOptions:\n"
        for index, option in enumerate(request.options):
            message += f"{index + 1}. {option.label}"
            if option.description:
                message += f" - {option.description}"
            message += "\n"
    if request.context:
        message += f"\nContext: {request.context}"
    return message


def select_candidate(
    response: DisambiguationResponse,
    request: DisambiguationRequest,
    candidates: List[GeocodingCandidate],
) -> GeocodingCandidate:
    for option, candidate in zip(request.options, candidates):
        if option.id == response.selected_option_id:
            return candidate
    raise InvalidSelection(
        f"Selected option '{response.selected_option_id}' is not one of the offered options",
        context={"offered": [o.id for o in request.options]},
    )


class DisambiguationCollaborator:
    """Asks the user to choose. Returns a selected option id, or pending."""

    async def ask(self, request: DisambiguationRequest) -> DisambiguationResponse:
        raise NotImplementedError


class PendingDisambiguation(DisambiguationCollaborator):
    """Default collaborator: the question goes back to the conversation, answer arrives on a later turn."""

    async def ask(self, request: DisambiguationRequest) -> DisambiguationResponse:
        return DisambiguationResponse(pending=True)


async def resolve_place(
    query: str,
    maps: Optional[GoogleMapsService] = None,
    disambiguator: Optional[DisambiguationCollaborator] = None,
    bias: Optional[Coordinate] = None,
    country: Optional[str] = None,
    city: Optional[str] = None,
    threshold: float = DISAMBIGUATION_THRESHOLD,
) -> PlaceResolution:
    """
    Resolve a free-text place into a Location, asking the user when ambiguous.
    country and city raise the confidence of candidates whose address names them.

    Raises:
        LocationNotFound: no candidates (or place search unavailable)
        InvalidSelection: collaborator answered with an unknown option id
        ProviderError: unrecoverable place search failure
    """
    maps = maps or get_google_maps_service()
    disambiguator = disambiguator or PendingDisambiguation()

    try:
        results = await maps.fetchPlaces(query, bias=bias)
    except ProviderFailure as error:
        if not error.recoverable:
            raise
        # No local fallback exists for place search
        raise LocationNotFound(
            f"Could not search for '{query}': {error.message}",
            context={"query": query, "status": error.status},
        ) from error

    candidates = score_candidates(results, bias, country=country, city=city)
    if not candidates:
        raise LocationNotFound(f"Could not find place '{query}'", context={"query": query})

    if not needs_disambiguation(candidates, threshold):
        chosen = confident_candidates(candidates, threshold)[0]
        return PlaceResolution(status="resolved", location=chosen.to_location(), candidates=candidates)

    # Weak-only matches are offered as well rather than silently picked
    offered = confident_candidates(candidates, threshold) or candidates
    request = build_request(query, offered)
    response = await disambiguator.ask(request)

    if response.pending or response.selected_option_id is None:
        logger.info(f"Disambiguation pending for {query!r} ({len(offered)} options)")
        return PlaceResolution(
            status="pending",
            request=request,
            prompt=format_prompt(request),
            candidates=offered,
        )

    chosen = select_candidate(response, request, offered)
    return PlaceResolution(status="resolved", location=chosen.to_location(), candidates=offered)
