import logging
from core.models import Coordinate, MediaUnit
from dataclasses import dataclass
from datetime import datetime
from geopy.distance import geodesic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkCandidate:
    unit: MediaUnit
    coordinate: Coordinate
    captured_at: datetime


@dataclass(frozen=True)
class LinkedUnit:
    unit: MediaUnit
    sequence_index: int
    coordinate: Coordinate
    distance_from_previous_m: float


@dataclass(frozen=True)
class LinkResult:
    tour_id: str
    entries: list[LinkedUnit]
    route_length_m: float

    def __len__(self):
        return len(self.entries)


class SequenceLinker:
    """Order extracted units into a route by capture time"""

    def sort_key(self, candidate: LinkCandidate) -> tuple:
        # submission position breaks timestamp ties
        return (candidate.captured_at, candidate.unit.position)

    def calculate_distance_m(self, start: Coordinate, end: Coordinate) -> float:
        """Geodesic distance in metres between two coordinates"""
        return geodesic(start.as_tuple(), end.as_tuple()).meters

    def link(self, tour_id: str, candidates) -> LinkResult:
        """Sort candidates and assign contiguous sequence indices from 0

        Never fails: an empty or single-element input yields an equally short
        sequence. Candidates from another tour are a programming error.
        """
        ordered = sorted(candidates, key=self.sort_key)

        entries = []
        route_length_m = 0.0
        previous = None
        for index, candidate in enumerate(ordered):
            if candidate.unit.tour_id != tour_id:
                raise ValueError(f"Unit {candidate.unit.id} belongs to tour {candidate.unit.tour_id}, not {tour_id}")
            coordinate = candidate.coordinate.rounded()
            distance = self.calculate_distance_m(previous, coordinate) if previous is not None else 0.0
            route_length_m += distance
            entries.append(
                LinkedUnit(
                    unit=candidate.unit,
                    sequence_index=index,
                    coordinate=coordinate,
                    distance_from_previous_m=distance,
                )
            )
            previous = coordinate

        logger.info(f"Linked {len(entries)} stops for tour {tour_id} ({route_length_m:.1f} m route)")
        return LinkResult(tour_id=tour_id, entries=entries, route_length_m=round(route_length_m, 2))
