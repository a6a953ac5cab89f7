from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass
class BaseAggregate:
    """Groups documents by the values of ``field``; plain terms grouping."""
    field: str


@dataclass
class TermsAggregate(BaseAggregate):
    pass


@dataclass
class DateAggregate(BaseAggregate):
    interval: str = "1M"
    format: Optional[str] = None


@dataclass
class NumericRange:
    key: Optional[str] = None
    from_value: Optional[float] = None
    to_value: Optional[float] = None


@dataclass
class NumericRangeAggregate(BaseAggregate):
    ranges: List[NumericRange] = field(default_factory=list)


@dataclass
class DateRange:
    key: Optional[str] = None
    from_value: Optional[Union[str, int]] = None
    to_value: Optional[Union[str, int]] = None


@dataclass
class DateRangeAggregate(BaseAggregate):
    format: Optional[str] = None
    date_ranges: List[DateRange] = field(default_factory=list)


@dataclass
class IpRange:
    key: Optional[str] = None
    from_value: Optional[str] = None
    to_value: Optional[str] = None


@dataclass
class IpRangeAggregate(BaseAggregate):
    ranges: List[IpRange] = field(default_factory=list)
