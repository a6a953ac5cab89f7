from typing import Any, Dict, List, Union

from cxs_data_model.item import Item


def item_source(item: Union[Item, Dict[str, Any]]) -> Dict[str, Any]:
    """Stored (JSON) form of an item, so local evaluation sees the same field names as the engine."""
    if isinstance(item, dict):
        return item
    return item.to_dict()


def get_property_values(source: Dict[str, Any], name: str) -> List[Any]:
    """
    All values found at the dotted path ``name``. Lists are flattened at every
    level, the way the engine indexes arrays of values and arrays of objects.
    ``None`` values are dropped.
    """
    current: List[Any] = [source]
    for part in name.split("."):
        following: List[Any] = []
        for node in current:
            if isinstance(node, dict) and part in node:
                following.extend(_flatten(node[part]))
        current = following
        if not current:
            break
    return [v for v in current if v is not None]


def _flatten(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        result = []
        for v in value:
            result.extend(_flatten(v))
        return result
    return [value]
