from dataclasses import dataclass, field
from typing import Generic, Iterator, List, TypeVar

T = TypeVar("T")


@dataclass
class PartialList(Generic[T]):
    """
    One page of a larger result set.

    Attributes:
        items (List[T]): The page content.
        offset (int): Position of the first element in the full result set.
        page_size (int): Requested page size (-1 for unbounded).
        total_size (int): Number of hits in the full result set.
    """
    items: List[T] = field(default_factory=list)
    offset: int = 0
    page_size: int = 0
    total_size: int = 0

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __getitem__(self, index: int) -> T:
        return self.items[index]
