import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

MAPPINGS_PATH = "META-INF/cxs/mappings"


def load_mappings(resource_root: Optional[Path]) -> Dict[str, Dict[str, Any]]:
    """
    Read ``<resource_root>/META-INF/cxs/mappings/<itemType>.json``; the file stem
    is the item kind. A bundle without the folder contributes nothing.
    """
    if resource_root is None:
        return {}
    folder = Path(resource_root) / MAPPINGS_PATH
    if not folder.is_dir():
        return {}
    mappings = {}
    for path in sorted(folder.glob("*.json")):
        with open(path, encoding="utf-8") as f:
            mappings[path.stem] = json.load(f)
        logger.debug(f"Loaded mapping for {path.stem} from {path}")
    return mappings


def merge_mappings(mappings: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Combine per-kind mappings into the single mapping of an index shared by those
    kinds: properties are merged recursively, dynamic templates concatenated
    without duplicate names.
    """
    result: Dict[str, Any] = {"properties": {}}
    templates: List[Dict[str, Any]] = []
    template_names = set()
    for mapping in mappings:
        _merge_properties(result["properties"], mapping.get("properties", {}))
        for template in mapping.get("dynamic_templates", []):
            name = next(iter(template))
            if name not in template_names:
                template_names.add(name)
                templates.append(template)
        for key, value in mapping.items():
            if key not in ("properties", "dynamic_templates"):
                result[key] = value
    if templates:
        result["dynamic_templates"] = templates
    return result


def _merge_properties(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for name, definition in source.items():
        existing = target.get(name)
        if isinstance(existing, dict) and "properties" in existing and "properties" in definition:
            merged = dict(existing)
            merged_props = dict(existing["properties"])
            _merge_properties(merged_props, definition["properties"])
            merged.update({k: v for k, v in definition.items() if k != "properties"})
            merged["properties"] = merged_props
            target[name] = merged
        else:
            target[name] = definition
