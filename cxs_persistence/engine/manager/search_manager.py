"""
Request shaping and response parsing for searches: paging, sort syntax,
bucket aggregations and single-value metrics.
"""
import logging
from typing import Any, Dict, List, Optional

from cxs_data_model.aggregate import BaseAggregate, DateAggregate, NumericRangeAggregate, DateRangeAggregate, \
    IpRangeAggregate

logger = logging.getLogger(__name__)

# Size sentinel asking for the configured default page size.
MIN_SENTINEL = -(2 ** 31)
UNBOUNDED = -1

# Upper bound of the terms aggregation size, the engine rejects larger values.
MAX_BUCKETS = 65535

SUPPORTED_METRICS = ("sum", "avg", "min", "max")


def resolve_size(size: Optional[int], default_limit: int) -> int:
    """Page size to request; ``UNBOUNDED`` is returned unchanged for the caller to scroll."""
    if size is None or size == MIN_SENTINEL:
        return default_limit
    if size < 0:
        return UNBOUNDED
    return size


def parse_sort(sort_by: Optional[str]) -> List[Dict[str, Any]]:
    """
    ``"field[:asc|:desc],..."``; ``geo:<field>:<lat>:<lon>[:desc]`` sorts by
    distance in kilometers from the point.
    """
    if not sort_by:
        return []
    sort = []
    for element in sort_by.split(","):
        element = element.strip()
        if not element:
            continue
        parts = element.split(":")
        if parts[0] == "geo":
            if len(parts) < 4:
                raise ValueError(f"Invalid geo sort element: {element}")
            order = "desc" if len(parts) > 4 and parts[4] == "desc" else "asc"
            sort.append({"_geo_distance": {
                parts[1]: {"lat": float(parts[2]), "lon": float(parts[3])},
                "order": order,
                "unit": "km",
            }})
        else:
            order = "desc" if len(parts) > 1 and parts[1] == "desc" else "asc"
            sort.append({parts[0]: {"order": order, "unmapped_type": "keyword"}})
    return sort


def bucket_aggregation(aggregate: Optional[BaseAggregate]) -> Optional[Dict[str, Any]]:
    """Bucket aggregation clause for ``aggregate``; plain terms grouping by default."""
    if aggregate is None:
        return None
    field = aggregate.field
    if isinstance(aggregate, DateAggregate):
        clause: Dict[str, Any] = {"field": field, "calendar_interval": aggregate.interval}
        if aggregate.format:
            clause["format"] = aggregate.format
        return {"date_histogram": clause}
    if isinstance(aggregate, NumericRangeAggregate):
        return {"range": {"field": field, "keyed": True, "ranges": [
            _range_clause(r.key, r.from_value, r.to_value) for r in aggregate.ranges]}}
    if isinstance(aggregate, DateRangeAggregate):
        clause = {"field": field, "keyed": True, "ranges": [
            _range_clause(r.key, r.from_value, r.to_value) for r in aggregate.date_ranges]}
        if aggregate.format:
            clause["format"] = aggregate.format
        return {"date_range": clause}
    if isinstance(aggregate, IpRangeAggregate):
        return {"ip_range": {"field": field, "keyed": True, "ranges": [
            _range_clause(r.key, r.from_value, r.to_value) for r in aggregate.ranges]}}
    return {"terms": {"field": field, "size": MAX_BUCKETS}}


def _range_clause(key, low, high) -> Dict[str, Any]:
    clause: Dict[str, Any] = {}
    if key is not None:
        clause["key"] = key
    if low is not None:
        clause["from"] = low
    if high is not None:
        clause["to"] = high
    return clause


def aggregation_request(filter_query: Optional[Dict[str, Any]],
                        aggregate: Optional[BaseAggregate]) -> Dict[str, Any]:
    """
    Aggregations of a search already restricted to one kind: an optional
    ``filtered`` aggregation and, under it, the buckets plus a ``missing`` count.
    The search hit total gives the unfiltered count.
    """
    inner: Dict[str, Any] = {}
    buckets = bucket_aggregation(aggregate)
    if buckets is not None:
        inner["buckets"] = buckets
        inner["missing"] = {"missing": {"field": aggregate.field}}

    if filter_query is None:
        return inner
    filtered: Dict[str, Any] = {"filter": filter_query}
    if inner:
        filtered["aggs"] = inner
    return {"filtered": filtered}


def parse_aggregation_response(aggregations: Dict[str, Any], total: int) -> Dict[str, int]:
    """Flatten the response of ``aggregation_request`` into ``{_all, _filtered, <bucket keys>, _missing}``."""
    result: Dict[str, int] = {"_all": total}
    scope = aggregations or {}
    if "filtered" in scope:
        scope = scope["filtered"]
        result["_filtered"] = scope.get("doc_count", 0)

    buckets = scope.get("buckets", {}).get("buckets")
    if isinstance(buckets, dict):
        for key, bucket in buckets.items():
            result[str(key)] = bucket.get("doc_count", 0)
    elif isinstance(buckets, list):
        for bucket in buckets:
            key = bucket.get("key_as_string", bucket.get("key"))
            result[str(key)] = bucket.get("doc_count", 0)

    missing = scope.get("missing", {}).get("doc_count", 0)
    if missing > 0:
        result["_missing"] = missing
    return result


def metrics_request(filter_query: Dict[str, Any], metrics: List[str], field: str) -> Dict[str, Any]:
    unknown = [m for m in metrics if m not in SUPPORTED_METRICS]
    if unknown:
        logger.warning(f"Ignoring unsupported metrics {unknown} on {field}")
    return {"metrics": {"filter": filter_query,
                        "aggs": {m: {m: {"field": field}} for m in metrics if m in SUPPORTED_METRICS}}}


def parse_metrics_response(aggregations: Dict[str, Any], metrics: List[str]) -> Dict[str, Optional[float]]:
    scope = aggregations.get("metrics", {})
    return {f"_{m}": scope.get(m, {}).get("value") for m in metrics if m in SUPPORTED_METRICS}
