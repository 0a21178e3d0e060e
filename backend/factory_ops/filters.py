"""Filter composition for order and linked-order listings."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Literal

# purpose: build query-ready filters from loose client selections with cascading resets
# inputs: raw selector values (ints, numeric strings, sentinels such as "all" or -1)
# outputs: immutable OrderFilter values consumed by services.order_queries
# status: active

SearchType = Literal["id", "date"]

HIERARCHY_FIELDS: tuple[str, ...] = ("factory_id", "factory_section_id", "machine_id")

_UNSET_MARKERS = {"", "all", "none", "null", "undefined"}


def coerce_id(value: Any) -> int | None:
    """Turn a selector value into a positive id, or None when it is not one."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value > 0 else None
    if isinstance(value, str):
        text = value.strip()
        if text.lower() in _UNSET_MARKERS:
            return None
        try:
            number = int(text)
        except ValueError:
            return None
        return number if number > 0 else None
    return None


def coerce_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class HierarchySelection:
    """Factory → section → machine selection.

    Selecting a level clears every level below it, whatever the previous
    values were, so a child is never left pointing outside its parent.
    """

    factory_id: int | None = None
    factory_section_id: int | None = None
    machine_id: int | None = None

    def select(self, level: str, value: Any) -> "HierarchySelection":
        if level not in HIERARCHY_FIELDS:
            raise ValueError(f"Unknown hierarchy level: {level}")
        depth = HIERARCHY_FIELDS.index(level)
        values = {name: getattr(self, name) for name in HIERARCHY_FIELDS[:depth]}
        values[level] = coerce_id(value)
        for name in HIERARCHY_FIELDS[depth + 1 :]:
            values[name] = None
        return HierarchySelection(**values)

    def select_factory(self, value: Any) -> "HierarchySelection":
        return self.select("factory_id", value)

    def select_section(self, value: Any) -> "HierarchySelection":
        return self.select("factory_section_id", value)

    def select_machine(self, value: Any) -> "HierarchySelection":
        return self.select("machine_id", value)


@dataclass(frozen=True)
class OrderFilter:
    search_type: SearchType = "id"
    search_query: str = ""
    search_date: date | None = None
    hierarchy: HierarchySelection = field(default_factory=HierarchySelection)
    department_id: int | None = None
    status_id: int | None = None

    @property
    def factory_id(self) -> int | None:
        return self.hierarchy.factory_id

    @property
    def factory_section_id(self) -> int | None:
        return self.hierarchy.factory_section_id

    @property
    def machine_id(self) -> int | None:
        return self.hierarchy.machine_id

    @property
    def order_id(self) -> int | None:
        """The id searched for; only meaningful in "id" mode."""
        if self.search_type != "id":
            return None
        return coerce_id(self.search_query)

    @property
    def created_on(self) -> date | None:
        if self.search_type != "date":
            return None
        return self.search_date

    @property
    def is_empty(self) -> bool:
        return (
            self.order_id is None
            and self.created_on is None
            and self.hierarchy == HierarchySelection()
            and self.department_id is None
            and self.status_id is None
        )

    @classmethod
    def from_params(
        cls,
        *,
        search_type: str | None = None,
        query: str | None = None,
        search_date: Any = None,
        factory_id: Any = None,
        factory_section_id: Any = None,
        machine_id: Any = None,
        department_id: Any = None,
        status_id: Any = None,
    ) -> "OrderFilter":
        """Build a filter from loose request parameters.

        The search type defaults to "date" only when a date is given without a
        query; ids that do not parse are dropped instead of rejected.
        """

        parsed_date = coerce_date(search_date)
        if search_type not in ("id", "date"):
            search_type = "date" if parsed_date is not None and not query else "id"
        hierarchy = (
            HierarchySelection()
            .select_factory(factory_id)
            .select_section(factory_section_id)
            .select_machine(machine_id)
        )
        return cls(
            search_type=search_type,
            search_query=(query or "").strip() if search_type == "id" else "",
            search_date=parsed_date if search_type == "date" else None,
            hierarchy=hierarchy,
            department_id=coerce_id(department_id),
            status_id=coerce_id(status_id),
        )


class FilterComposer:
    """In-progress filter selection plus the filter currently applied.

    Selections edit ``pending``; ``apply`` promotes it to ``active`` and
    ``reset`` clears both. Both return to page 1.
    """

    def __init__(self) -> None:
        self.pending = OrderFilter()
        self.active = OrderFilter()
        self.page = 1

    def set_search_type(self, search_type: SearchType) -> OrderFilter:
        if search_type not in ("id", "date"):
            raise ValueError(f"Unknown search type: {search_type}")
        self.pending = replace(
            self.pending, search_type=search_type, search_query="", search_date=None
        )
        return self.pending

    def set_search_query(self, query: str) -> OrderFilter:
        self.pending = replace(
            self.pending, search_type="id", search_query=query or "", search_date=None
        )
        return self.pending

    def set_search_date(self, value: Any) -> OrderFilter:
        self.pending = replace(
            self.pending, search_type="date", search_query="", search_date=coerce_date(value)
        )
        return self.pending

    def select_factory(self, value: Any) -> OrderFilter:
        return self._select("factory_id", value)

    def select_section(self, value: Any) -> OrderFilter:
        return self._select("factory_section_id", value)

    def select_machine(self, value: Any) -> OrderFilter:
        return self._select("machine_id", value)

    def select_department(self, value: Any) -> OrderFilter:
        self.pending = replace(self.pending, department_id=coerce_id(value))
        return self.pending

    def select_status(self, value: Any) -> OrderFilter:
        self.pending = replace(self.pending, status_id=coerce_id(value))
        return self.pending

    def _select(self, level: str, value: Any) -> OrderFilter:
        self.pending = replace(
            self.pending, hierarchy=self.pending.hierarchy.select(level, value)
        )
        return self.pending

    def apply(self) -> OrderFilter:
        self.active = self.pending
        self.page = 1
        return self.active

    def reset(self) -> OrderFilter:
        self.pending = OrderFilter()
        self.active = OrderFilter()
        self.page = 1
        return self.active

    def go_to_page(self, page: int) -> int:
        self.page = max(int(page), 1)
        return self.page
