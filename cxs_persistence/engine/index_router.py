"""
Maps an item kind to the physical index holding it.

    ┌──────────────────────────┐
    │ item_type                │
    └────────────┬─────────────┘
                 ▼
    ┌──────────────────────────┐  yes   ┌───────────────────────────────┐
    │ index_names[item_type]?  │──────► │ dedicated index               │
    └────────────┬─────────────┘        └───────────────────────────────┘
                 │ no
                 ▼
    ┌──────────────────────────┐  yes   ┌───────────────────────────────┐
    │ in items_monthly_indexed?│──────► │ write / dated read:           │
    └────────────┬─────────────┘        │   <base>-YYYY-MM              │
                 │ no                   │ read spanning time:           │
                 ▼                      │   <base>-*                    │
    ┌──────────────────────────┐        └───────────────────────────────┘
    │ shared index <base>      │
    └──────────────────────────┘

Kinds share the base and monthly indices, so a document id there is
``<itemType>_<itemId>``. A dedicated index holds one kind and keys its documents
by the plain item id. Every document carries its kind in the ``itemType`` field.
"""
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from cxs_data_model.item import Item
from cxs_persistence.conditions.property_accessor import item_source, get_property_values

PERCOLATOR_TYPE = ".percolator"


class IndexRouter:

    def __init__(self, index_name: str,
                 index_names: Optional[Dict[str, str]] = None,
                 items_monthly_indexed: Optional[Iterable[str]] = None,
                 routing_by_type: Optional[Dict[str, str]] = None):
        self.index_name = index_name
        self.index_names = dict(index_names or {})
        self.items_monthly_indexed = frozenset(items_monthly_indexed or ())
        self.routing_by_type = dict(routing_by_type or {})
        self._monthly_re = re.compile(r'^' + re.escape(index_name) + r'-(\d{4})-(\d{2})$')

    @staticmethod
    def from_settings(settings) -> "IndexRouter":
        return IndexRouter(settings.index_name, settings.index_names,
                           settings.items_monthly_indexed, settings.routing_by_type)

    def is_dedicated(self, item_type: str) -> bool:
        return item_type in self.index_names

    def is_monthly(self, item_type: str) -> bool:
        return not self.is_dedicated(item_type) and item_type in self.items_monthly_indexed

    def monthly_index_name(self, date: datetime) -> str:
        if date.tzinfo is not None:
            date = date.astimezone(timezone.utc)
        return f"{self.index_name}-{date.year:04d}-{date.month:02d}"

    def monthly_pattern(self) -> str:
        return f"{self.index_name}-*"

    def all_indices_pattern(self) -> str:
        return f"{self.index_name}*"

    def index_for_write(self, item_type: str, date: Optional[datetime] = None) -> str:
        """Index an item of ``item_type`` dated ``date`` is written to (current month when undated)."""
        if self.is_dedicated(item_type):
            return self.index_names[item_type]
        if self.is_monthly(item_type):
            return self.monthly_index_name(date or datetime.now(timezone.utc))
        return self.index_name

    def index_for_item(self, item: Item) -> str:
        return self.index_for_write(item.item_type, getattr(item, "time_stamp", None))

    def index_for_read(self, item_type: str, date_hint: Optional[datetime] = None) -> str:
        """Index (or pattern) to search for ``item_type``; undated monthly reads span every month."""
        if self.is_dedicated(item_type):
            return self.index_names[item_type]
        if self.is_monthly(item_type):
            if date_hint is not None:
                return self.monthly_index_name(date_hint)
            return self.monthly_pattern()
        return self.index_name

    def indices_for_kinds(self, item_types: Iterable[str]) -> List[str]:
        return sorted({self.index_for_read(t) for t in item_types})

    def month_of_index(self, index_name: str) -> Optional[datetime]:
        """First instant of the month encoded in a monthly index name."""
        match = self._monthly_re.match(index_name)
        if not match:
            return None
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            return None
        return datetime(year, month, 1, tzinfo=timezone.utc)

    def document_id(self, item_type: str, item_id: str) -> str:
        if self.is_dedicated(item_type):
            return item_id
        return f"{item_type}_{item_id}"

    def routing_field(self, item_type: str) -> Optional[str]:
        return self.routing_by_type.get(item_type)

    def routing(self, item_type: str, item: Any) -> Optional[str]:
        """Shard routing value drawn from the configured field of ``item``, if any."""
        field = self.routing_field(item_type)
        if field is None or item is None:
            return None
        values = get_property_values(item_source(item), field)
        return str(values[0]) if values else None
