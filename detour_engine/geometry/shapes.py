"""
Geographic Shapes Module
========================

Pure geographic representations - NO state, NO side effects.

Design:
- Immutable points (frozen dataclass pattern)
- Polylines are plain sequences of GeoPoint (ordered path, not closed)
- Polygons keep the GeoJSON [lon, lat] ring convention untouched
- Thread-safe (immutable)
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np


@dataclass(frozen=True)
class GeoPoint:
    """
    Immutable WGS84 coordinate.

    Attributes:
        latitude: Degrees north
        longitude: Degrees east

    Example:
        >>> stop = GeoPoint(latitude=21.3069, longitude=-157.8583)
        >>> stop.to_dict()
        {'latitude': 21.3069, 'longitude': -157.8583}
    """

    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        """Serialize to JSON-compatible dict."""
        return {'latitude': self.latitude, 'longitude': self.longitude}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GeoPoint':
        """
        Deserialize from dict.

        Accepts both ``latitude/longitude`` and the short ``lat/lon`` keys
        used by most realtime feeds.

        Raises:
            ValueError: If coordinates are missing or not numeric
        """
        try:
            lat = data['latitude'] if 'latitude' in data else data['lat']
            lon = data['longitude'] if 'longitude' in data else data['lon']
            return cls(latitude=float(lat), longitude=float(lon))
        except KeyError as e:
            raise ValueError(f"Missing required GeoPoint field: {e}")
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid GeoPoint data: {e}")


# Type aliases (documentation only)
Polyline = Sequence[GeoPoint]
Ring = Sequence[Sequence[float]]        # [[lon, lat], ...]
Polygon = Sequence[Ring]                # [outer, hole, hole, ...]


def polyline_to_array(polyline: Optional[Polyline]) -> np.ndarray:
    """
    Convert a polyline to an Nx2 float array of (lat, lon).

    Returns an empty (0, 2) array for None/empty input.
    """
    if not polyline:
        return np.empty((0, 2), dtype=float)
    return np.array(
        [(p.latitude, p.longitude) for p in polyline],
        dtype=float
    )


def polyline_to_list(polyline: Optional[Polyline]) -> List[Dict[str, float]]:
    """Serialize a polyline as a list of point dicts."""
    return [p.to_dict() for p in polyline or []]


def polyline_from_list(data: Optional[Sequence[Dict[str, Any]]]) -> List[GeoPoint]:
    """Deserialize a polyline from a list of point dicts."""
    return [GeoPoint.from_dict(p) for p in data or []]
