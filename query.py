"""
Translate listing query strings into MongoDB filter, projection, sort and
pagination arguments.

Filters accept a comparison either as a suffix (``createdAt_gte=...``) or in
bracket form (``createdAt[gte]=...``). ``in`` takes a comma separated list.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pymongo import ASCENDING, DESCENDING

from errors import ValidationError

RESERVED_PARAMS = ("select", "sort", "page", "limit")
OPERATORS = ("gte", "gt", "lte", "lt", "in")
DATE_FIELDS = ("createdAt",)

DEFAULT_SORT = "-createdAt"
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 25
MAX_LIMIT = 100

_BRACKET = re.compile(r"^(?P<field>[^\[\]]+)\[(?P<op>[a-z]+)\]$")
_SUFFIX = re.compile(r"^(?P<field>.+)_(?P<op>gte|gt|lte|lt|in)$")


@dataclass
class ListQuery:
    filter: Dict[str, Any] = field(default_factory=dict)
    projection: Optional[Dict[str, int]] = None
    selected: Optional[List[str]] = None
    sort: List[Tuple[str, int]] = field(default_factory=list)
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    def wants(self, name: str) -> bool:
        return self.selected is None or name in self.selected


def _store_field(name: str) -> str:
    if not name or name.startswith("$"):
        raise ValidationError(f"Invalid field name: {name}")
    return "_id" if name == "id" else name


def _split_key(key: str) -> Tuple[str, Optional[str]]:
    m = _BRACKET.match(key)
    if m:
        if m.group("op") not in OPERATORS:
            raise ValidationError(f"Unsupported filter operator: {m.group('op')}")
        return m.group("field"), m.group("op")
    m = _SUFFIX.match(key)
    if m:
        return m.group("field"), m.group("op")
    return key, None


def _coerce(field_name: str, value: str) -> Any:
    if field_name in DATE_FIELDS:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid date for {field_name}: {value}")
        if parsed.tzinfo is not None:
            # stored dates are naive UTC
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return value


def build_filter(params: Mapping[str, str]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for key, raw in params.items():
        if key in RESERVED_PARAMS:
            continue
        name, op = _split_key(key)
        if op is None:
            query[name] = _coerce(name, raw)
            continue
        if op == "in":
            value: Any = [_coerce(name, v.strip()) for v in raw.split(",") if v.strip()]
        else:
            value = _coerce(name, raw)
        clause = query.get(name)
        if not isinstance(clause, dict):
            clause = {}
        clause[f"${op}"] = value
        query[name] = clause
    return query


def parse_fields(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    fields = [f.strip() for f in raw.split(",") if f.strip()]
    return fields or None


def build_projection(selected: Optional[List[str]], virtual: Tuple[str, ...] = ()) -> Optional[Dict[str, int]]:
    if not selected:
        return None
    stored = [_store_field(f) for f in selected if f not in virtual and f != "id"]
    projection = {f: 1 for f in stored}
    # _id is always fetched so joins can run; callers drop it when unselected
    projection["_id"] = 1
    return projection


def parse_sort(raw: Optional[str]) -> List[Tuple[str, int]]:
    keys = parse_fields(raw) or [DEFAULT_SORT]
    out = []
    for f in keys:
        if f.startswith("-"):
            out.append((_store_field(f[1:]), DESCENDING))
        else:
            out.append((_store_field(f.lstrip("+")), ASCENDING))
    return out


def _positive_int(raw: Optional[str], default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def parse_list_query(params: Mapping[str, str], virtual: Tuple[str, ...] = ()) -> ListQuery:
    selected = parse_fields(params.get("select"))
    return ListQuery(
        filter=build_filter(params),
        projection=build_projection(selected, virtual),
        selected=selected,
        sort=parse_sort(params.get("sort")),
        page=_positive_int(params.get("page"), DEFAULT_PAGE),
        limit=min(_positive_int(params.get("limit"), DEFAULT_LIMIT), MAX_LIMIT),
    )


def pagination(page: int, limit: int, total: int) -> Dict[str, Dict[str, int]]:
    result: Dict[str, Dict[str, int]] = {}
    start = (page - 1) * limit
    end = page * limit
    if end < total:
        result["next"] = {"page": page + 1, "limit": limit}
    if start > 0:
        result["prev"] = {"page": page - 1, "limit": limit}
    return result
