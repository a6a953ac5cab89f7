import math
import re
from typing import Any, Dict, Optional, Tuple

from cxs_data_model.condition import Condition
from cxs_data_model.item import Item
from cxs_exception_model.exception import MalformedConditionException
from cxs_persistence.conditions.property_accessor import item_source, get_property_values

EARTH_RADIUS_KM = 6371.0088

_DISTANCE_UNITS_KM = {"km": 1.0, "m": 0.001, "mi": 1.609344, "yd": 0.0009144, "ft": 0.0003048}
_DISTANCE_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(km|m|mi|yd|ft)?\s*$')


def parse_distance_km(value: Any) -> float:
    """``10km``, ``500m`` or a bare number of kilometers."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _DISTANCE_RE.match(str(value)) if value is not None else None
    if not match:
        raise ValueError(f"Invalid distance: {value}")
    return float(match.group(1)) * _DISTANCE_UNITS_KM[match.group(2) or "km"]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def to_lat_lon(value: Any) -> Optional[Tuple[float, float]]:
    """
    Read a stored geo point: ``{"lat": .., "lon": ..}``, ``"lat,lon"`` or the
    GeoJSON order ``[lon, lat]``.
    """
    try:
        if isinstance(value, dict):
            return float(value["lat"]), float(value["lon"])
        if isinstance(value, str):
            lat, lon = value.split(",")
            return float(lat), float(lon)
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return float(value[1]), float(value[0])
    except (KeyError, TypeError, ValueError):
        return None
    return None


def _float_parameter(condition: Condition, name: str) -> float:
    value = condition.get_parameter(name)
    if value is None:
        raise MalformedConditionException(f"{name} must be provided", condition.condition_type_id, name)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedConditionException(f"{name} must be a number", condition.condition_type_id, name)


def _shape(condition: Condition) -> Tuple[str, str]:
    name = condition.get_parameter("propertyName")
    if name is None:
        raise MalformedConditionException("propertyName must be provided",
                                          condition.condition_type_id, "propertyName")
    shape = condition.get_parameter("type", "circle")
    if shape not in ("circle", "rectangle"):
        raise MalformedConditionException(f"Unknown geo shape {shape}", condition.condition_type_id, "type")
    return name, shape


def _circle(condition: Condition) -> Tuple[float, float, float]:
    try:
        distance = parse_distance_km(condition.get_parameter("distance"))
    except ValueError as e:
        raise MalformedConditionException(str(e), condition.condition_type_id, "distance")
    return (_float_parameter(condition, "circleLatitude"),
            _float_parameter(condition, "circleLongitude"),
            distance)


def _rectangle(condition: Condition) -> Tuple[float, float, float, float]:
    return (_float_parameter(condition, "rectLatitudeNE"), _float_parameter(condition, "rectLongitudeNE"),
            _float_parameter(condition, "rectLatitudeSW"), _float_parameter(condition, "rectLongitudeSW"))


class GeoDistanceConditionEvaluator:

    def eval(self, condition: Condition, item: Item, context: Dict[str, Any], dispatcher: Any) -> bool:
        name, shape = _shape(condition)
        source = item_source(item)
        # a [lon, lat] pair must not be flattened into two scalars
        raw = _raw_value(source, name)
        points = [raw] if isinstance(raw, (list, tuple)) and len(raw) == 2 and all(
            isinstance(v, (int, float)) for v in raw) else get_property_values(source, name)

        if shape == "circle":
            lat, lon, distance = _circle(condition)
            for point in points:
                lat_lon = to_lat_lon(point)
                if lat_lon is not None and haversine_km(lat, lon, lat_lon[0], lat_lon[1]) <= distance:
                    return True
            return False

        north, east, south, west = _rectangle(condition)
        for point in points:
            lat_lon = to_lat_lon(point)
            if lat_lon is not None and south <= lat_lon[0] <= north and west <= lat_lon[1] <= east:
                return True
        return False


class GeoDistanceConditionQueryBuilder:

    def build_query(self, condition: Condition, context: Dict[str, Any], dispatcher: Any) -> Dict[str, Any]:
        name, shape = _shape(condition)
        if shape == "circle":
            lat, lon, distance = _circle(condition)
            return {"geo_distance": {"distance": f"{distance}km", name: {"lat": lat, "lon": lon}}}
        north, east, south, west = _rectangle(condition)
        return {"geo_bounding_box": {name: {"top_left": {"lat": north, "lon": west},
                                            "bottom_right": {"lat": south, "lon": east}}}}


def _raw_value(source: Dict[str, Any], name: str) -> Any:
    current: Any = source
    for part in name.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current
