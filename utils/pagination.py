"""Paginated list envelopes and query parameters"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a list endpoint; limit/offset are None when the backend sent a bare array"""
    items: List[T] = field(default_factory=list)
    total: int = 0
    limit: Optional[int] = None
    offset: Optional[int] = None

    @property
    def has_more(self) -> bool:
        if self.limit is None or self.offset is None:
            return False
        return self.offset + len(self.items) < self.total

    @classmethod
    def from_payload(cls, data: Any, item_factory: Optional[Callable[[Any], T]] = None) -> "Page[T]":
        """Normalise either {items, total, limit, offset} or a bare array"""
        if isinstance(data, list):
            raw_items, total, limit, offset = data, None, None, None
        elif isinstance(data, Mapping):
            raw_items = data.get("items") if isinstance(data.get("items"), list) else []
            total = data.get("total")
            limit = data.get("limit")
            offset = data.get("offset")
        else:
            raw_items, total, limit, offset = [], None, None, None

        items = [item_factory(item) for item in raw_items] if item_factory else list(raw_items)
        return cls(
            items=items,
            total=total if isinstance(total, int) and not isinstance(total, bool) else len(items),
            limit=limit if isinstance(limit, int) and not isinstance(limit, bool) else None,
            offset=offset if isinstance(offset, int) and not isinstance(offset, bool) else None,
        )


def build_query_params(params: Mapping[str, Any]) -> Dict[str, str]:
    """Drop empty values and stringify the rest for a query string"""
    query = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            query[key] = "true" if value else "false"
        else:
            query[key] = str(value)
    return query
