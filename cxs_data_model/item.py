"""
Item kinds stored by the persistence core.

Every concrete kind is a dataclass registered under its kind string with the
``item_type`` decorator. The registry replaces any reflective lookup of a class
constant: ``Item.kind()`` gives the discriminator, ``resolve_item_class(kind)``
gives the class to deserialize a stored document into.

    ┌───────────────┐  to_dict()   ┌──────────────────────────────────────┐
    │  Profile(...) │ ───────────► │ {"itemId": "p1", "itemType":         │
    │               │ ◄─────────── │  "profile", "properties": {...}}     │
    └───────────────┘  from_dict() └──────────────────────────────────────┘

JSON keys are the camelCase form of the field names. Dates are written in
ISO-8601 UTC with millisecond precision. ``None`` values are omitted and unknown
keys are ignored on load. Fields flagged ``transient`` never reach the store.
"""
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Set, Type

from cxs_data_model.condition import Condition
from cxs_data_model.data_model_utils import to_camel, format_date, parse_date, truncate_millis
from cxs_exception_model.exception import UnknownItemTypeException, ItemDeserializationException

_ITEM_CLASSES: Dict[str, Type["Item"]] = {}


def item_type(kind: str):
    """Class decorator registering an item class under its kind."""
    def register(cls):
        cls.ITEM_TYPE = kind
        _ITEM_CLASSES[kind] = cls
        return cls
    return register


def resolve_item_class(kind: Optional[str]) -> Type["Item"]:
    """Class registered for ``kind``, falling back to CustomItem for unknown kinds."""
    if kind is None:
        raise UnknownItemTypeException("Stored document carries no itemType")
    return _ITEM_CLASSES.get(kind, CustomItem)


def date_field():
    return field(default=None, metadata={"codec": "date"})


def condition_field():
    return field(default=None, metadata={"codec": "condition"})


def transient_field():
    return field(default=None, compare=False, repr=False, metadata={"transient": True})


@dataclass
class Metadata:
    """Descriptive metadata carried by definition items (segments, property types)."""
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    scope: Optional[str] = None
    tags: Set[str] = field(default_factory=set)
    system_tags: Set[str] = field(default_factory=set)
    enabled: bool = True
    hidden: bool = False
    read_only: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            result[to_camel(f.name)] = sorted(value) if isinstance(value, set) else value
        return result

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Metadata":
        kwargs = {}
        for f in fields(Metadata):
            key = to_camel(f.name)
            if key in data and data[key] is not None:
                value = data[key]
                kwargs[f.name] = set(value) if f.name in ("tags", "system_tags") else value
        return Metadata(**kwargs)


@dataclass
class Item:
    """
    Base of all persisted objects.

    Attributes:
        item_id (Optional[str]): Unique id within the kind.
        scope (Optional[str]): Logical tenant tag.
        version (Optional[int]): Engine-assigned version, not part of equality.
    """
    ITEM_TYPE: ClassVar[Optional[str]] = None

    item_id: Optional[str] = None
    scope: Optional[str] = None
    version: Optional[int] = field(default=None, compare=False, metadata={"transient": True})

    @classmethod
    def kind(cls) -> str:
        if cls.ITEM_TYPE is None:
            raise UnknownItemTypeException("Item class declares no kind", cls.__name__)
        return cls.ITEM_TYPE

    @property
    def item_type(self) -> str:
        return type(self).kind()

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for f in fields(self):
            if f.metadata.get("transient"):
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            result[to_camel(f.name)] = _encode_field(f.metadata.get("codec"), value)
        result["itemType"] = self.item_type
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        """
        Build an item from its stored form. When called on ``Item`` itself the
        concrete class is resolved from ``itemType``.
        """
        target = cls
        if cls is Item:
            target = resolve_item_class(data.get("itemType"))
        try:
            return target._from_source(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise ItemDeserializationException("Cannot deserialize item", data.get("itemId"),
                                               data.get("itemType"), e)

    @classmethod
    def _from_source(cls, data: Dict[str, Any]) -> "Item":
        kwargs = {}
        for f in fields(cls):
            if not f.init or f.metadata.get("transient"):
                continue
            key = to_camel(f.name)
            if key in data and data[key] is not None:
                kwargs[f.name] = _decode_field(f.metadata.get("codec"), data[key])
        return cls(**kwargs)


@dataclass
class TimestampedItem(Item):
    """An item carrying the instant it happened at; monthly indices partition on it."""
    time_stamp: Optional[datetime] = date_field()

    def __post_init__(self):
        if isinstance(self.time_stamp, (str, int, float)):
            self.time_stamp = parse_date(self.time_stamp)
        self.time_stamp = truncate_millis(self.time_stamp)


@item_type("profile")
@dataclass
class Profile(Item):
    properties: Dict[str, Any] = field(default_factory=dict)
    system_properties: Dict[str, Any] = field(default_factory=dict)
    segments: Set[str] = field(default_factory=set, metadata={"codec": "set"})
    scores: Dict[str, int] = field(default_factory=dict)
    merged_with: Optional[str] = None

    def get_property(self, name: str) -> Any:
        return self.properties.get(name)

    def set_property(self, name: str, value: Any) -> None:
        self.properties[name] = value

    def is_anonymous_profile(self) -> bool:
        return bool(self.system_properties.get("isAnonymousProfile", False))


@item_type("session")
@dataclass
class Session(TimestampedItem):
    profile_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    system_properties: Dict[str, Any] = field(default_factory=dict)
    last_event_date: Optional[datetime] = date_field()
    size: int = 0
    duration: int = 0
    profile: Optional[Profile] = transient_field()

    def __post_init__(self):
        super().__post_init__()
        if isinstance(self.last_event_date, (str, int, float)):
            self.last_event_date = parse_date(self.last_event_date)
        self.last_event_date = truncate_millis(self.last_event_date)


@item_type("event")
@dataclass
class Event(TimestampedItem):
    event_type: Optional[str] = None
    session_id: Optional[str] = None
    profile_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    source: Optional[Item] = field(default=None, metadata={"codec": "item"})
    target: Optional[Item] = field(default=None, metadata={"codec": "item"})
    persistent: bool = True
    profile: Optional[Profile] = transient_field()
    session: Optional[Session] = transient_field()


@item_type("segment")
@dataclass
class Segment(Item):
    metadata: Optional[Metadata] = field(default=None, metadata={"codec": "metadata"})
    condition: Optional[Condition] = condition_field()


@item_type("propertyType")
@dataclass
class PropertyType(Item):
    """Descriptor of a user-visible property."""
    metadata: Optional[Metadata] = field(default=None, metadata={"codec": "metadata"})
    target: Optional[str] = None
    value_type_id: Optional[str] = None
    multivalued: bool = False
    default_value: Optional[str] = None
    rank: Optional[float] = None

    @property
    def system_tags(self) -> Set[str]:
        return self.metadata.system_tags if self.metadata is not None else set()


@dataclass
class CustomItem(Item):
    """
    Item of a kind without a registered class. The kind travels with the
    instance and every other stored key is kept in ``source``.
    """
    custom_item_type: Optional[str] = None
    source: Dict[str, Any] = field(default_factory=dict)

    @property
    def item_type(self) -> str:
        if self.custom_item_type is None:
            raise UnknownItemTypeException("Custom item declares no kind", type(self).__name__)
        return self.custom_item_type

    @property
    def properties(self) -> Dict[str, Any]:
        return self.source.setdefault("properties", {})

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.source)
        if self.item_id is not None:
            result["itemId"] = self.item_id
        if self.scope is not None:
            result["scope"] = self.scope
        result["itemType"] = self.item_type
        return result

    @classmethod
    def _from_source(cls, data: Dict[str, Any]) -> "CustomItem":
        source = {k: v for k, v in data.items() if k not in ("itemId", "itemType", "scope")}
        return cls(item_id=data.get("itemId"), scope=data.get("scope"),
                   custom_item_type=data.get("itemType"), source=source)


def _encode_field(codec: Optional[str], value: Any) -> Any:
    if codec == "date":
        return format_date(value)
    if codec in ("condition", "metadata", "item"):
        return value.to_dict()
    if codec == "set":
        return sorted(value)
    return value


def _decode_field(codec: Optional[str], value: Any) -> Any:
    if codec == "date":
        return parse_date(value)
    if codec == "condition":
        return value if isinstance(value, Condition) else Condition.from_dict(value)
    if codec == "metadata":
        return value if isinstance(value, Metadata) else Metadata.from_dict(value)
    if codec == "item":
        return value if isinstance(value, Item) else Item.from_dict(value)
    if codec == "set":
        return set(value)
    return value


def kind_of(item_class: Type[Item]) -> Optional[str]:
    """Kind of an item class, or None when it declares none."""
    try:
        return item_class.kind()
    except UnknownItemTypeException:
        return None
