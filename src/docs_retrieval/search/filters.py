"""Structural filters compiled into a document predicate.

The builder validates every filter of a request together and reports all
problems in one ``ValidationError``. A compiled ``FilterPredicate`` is
callable on a ``Document`` (used by in-memory stores) and also exposes
``as_query()``, a store-neutral clause tree that persistent stores
translate into their own query language.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
import logging
import re
from typing import TYPE_CHECKING, Any

from ..domain.search import SUPPORTED_FILE_TYPES, DateRange
from ..errors import ValidationError


if TYPE_CHECKING:
    from ..domain.model import Document
    from ..domain.search import SearchOptions


logger = logging.getLogger(__name__)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
_SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_DASH_DATE = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$")
DATE_FORMATS_HELP = "YYYY-MM-DD, MM/DD/YYYY, MM-DD-YYYY, ISO 8601"


@dataclass(frozen=True)
class FilterSet:
    """Structural filters of one request."""

    file_types: tuple[str, ...] = ()
    date_range: DateRange | Mapping[str, Any] | None = None
    tags: tuple[str, ...] = ()
    include_public: bool = False
    custom_filters: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_options(cls, options: SearchOptions) -> FilterSet:
        return cls(
            file_types=options.file_types,
            date_range=options.date_range,
            tags=options.tags,
            include_public=options.include_public,
            custom_filters=options.custom_filters,
        )

    @property
    def active_count(self) -> int:
        count = int(bool(self.file_types)) + int(self.date_range is not None) + int(bool(self.tags))
        return count + len(self.custom_filters or {})


@dataclass(frozen=True)
class ParsedDateRange:
    start: datetime | None = None
    end: datetime | None = None

    def contains(self, moment: datetime) -> bool:
        moment = _aware(moment)
        if self.start is not None and moment < self.start:
            return False
        return not (self.end is not None and moment > self.end)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def lookup_field(document: Any, path: str) -> Any:
    """Resolve a dotted path over attributes and mappings.

    Paths whose first segment is not a document attribute are looked up in
    ``document.attributes`` so free-form fields need no prefix.
    """
    parts = path.split(".")
    current: Any = document
    if not hasattr(document, parts[0]) and isinstance(getattr(document, "attributes", None), Mapping):
        current = document.attributes
    for part in parts:
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def _collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _matches_value(actual: Any, expected: Any) -> bool:
    if _collection(expected):
        if _collection(actual):
            return bool(set(actual) & set(expected))
        return actual in expected
    if _collection(actual):
        return expected in actual
    return actual == expected


@dataclass(frozen=True)
class FilterClause:
    """One conjunctive condition on a document field."""

    field: str
    op: str
    value: Any

    def matches(self, document: Document) -> bool:
        if self.op == "in":
            return lookup_field(document, self.field) in self.value
        if self.op == "any":
            values = lookup_field(document, self.field) or ()
            return bool(set(values) & set(self.value))
        if self.op == "range":
            moment = lookup_field(document, self.field)
            return moment is not None and self.value.contains(moment)
        return _matches_value(lookup_field(document, self.field), self.value)

    def as_query(self) -> dict[str, Any]:
        if self.op == "range":
            bounds: dict[str, Any] = {}
            if self.value.start is not None:
                bounds["$gte"] = self.value.start
            if self.value.end is not None:
                bounds["$lte"] = self.value.end
            return {self.field: bounds}
        if self.op == "in":
            return {self.field: {"$in": list(self.value)}}
        if self.op == "any":
            return {self.field: {"$in": list(self.value)}}
        if _collection(self.value):
            return {self.field: {"$in": list(self.value)}}
        return {self.field: self.value}


@dataclass(frozen=True)
class FilterPredicate:
    """Owner-or-public access rule AND every active filter clause."""

    owner_id: str
    include_public: bool = False
    clauses: tuple[FilterClause, ...] = ()
    summary: dict[str, Any] = field(default_factory=dict)

    def allows(self, document: Document) -> bool:
        return document.owner_id == self.owner_id or (self.include_public and document.is_public)

    def __call__(self, document: Document) -> bool:
        return self.allows(document) and all(clause.matches(document) for clause in self.clauses)

    def as_query(self) -> dict[str, Any]:
        access: list[dict[str, Any]] = [{"owner_id": self.owner_id}]
        if self.include_public:
            access.append({"is_public": True})
        return {"$and": [{"$or": access}, *(clause.as_query() for clause in self.clauses)]}


class FilterPredicateBuilder:
    """Validates filters and compiles them into a ``FilterPredicate``."""

    def __init__(self, supported_file_types: Iterable[str] = SUPPORTED_FILE_TYPES):
        self.supported_file_types = tuple(supported_file_types)

    def validate_file_types(self, file_types: Iterable[str]) -> tuple[str, ...]:
        if isinstance(file_types, str) or not isinstance(file_types, Iterable):
            raise ValidationError("File types must be provided as a list", field="file_types", value=file_types)
        normalized = tuple(str(item).strip().lower() for item in file_types)
        unsupported = [item for item in normalized if item not in self.supported_file_types]
        if unsupported:
            raise ValidationError(
                f"Unsupported file types: {', '.join(unsupported)}. "
                f"Supported types: {', '.join(self.supported_file_types)}",
                field="file_types",
                value=unsupported,
            )
        return normalized

    def parse_date(self, value: Any, bound: str = "date") -> datetime:
        """Parse one date bound into an aware datetime (UTC when no zone is given)."""
        if isinstance(value, datetime):
            return _aware(value)
        if isinstance(value, date):
            return datetime.combine(value, time.min, tzinfo=timezone.utc)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            try:
                return datetime.fromtimestamp(value, tz=timezone.utc)
            except (OverflowError, OSError, ValueError) as exc:
                raise ValidationError(
                    f"Invalid {bound} date: timestamp {value} is invalid", field=f"date_range.{bound}", value=value
                ) from exc
        if isinstance(value, str):
            text = value.strip()
            try:
                if _ISO_DATE.match(text):
                    return datetime.combine(date.fromisoformat(text), time.min, tzinfo=timezone.utc)
                if _ISO_DATETIME.match(text):
                    return _aware(datetime.fromisoformat(text.replace("Z", "+00:00")))
                parts = _SLASH_DATE.match(text) or _DASH_DATE.match(text)
                if parts:
                    month, day, year = (int(group) for group in parts.groups())
                    return datetime(year, month, day, tzinfo=timezone.utc)
            except ValueError as exc:
                raise ValidationError(
                    f'Invalid {bound} date: "{value}" cannot be parsed as a valid date',
                    field=f"date_range.{bound}",
                    value=value,
                ) from exc
            raise ValidationError(
                f"Invalid {bound} date format. Supported formats: {DATE_FORMATS_HELP}",
                field=f"date_range.{bound}",
                value=value,
            )
        raise ValidationError(
            f"Invalid {bound} date type. Expected a date, datetime, string or timestamp",
            field=f"date_range.{bound}",
            value=value,
        )

    def validate_date_range(self, date_range: DateRange | Mapping[str, Any] | None) -> ParsedDateRange:
        if isinstance(date_range, DateRange):
            start, end = date_range.start, date_range.end
        elif isinstance(date_range, Mapping):
            start, end = date_range.get("start"), date_range.get("end")
        else:
            raise ValidationError(
                "Date range must be an object with start and end properties", field="date_range", value=date_range
            )

        if start in (None, "") and end in (None, ""):
            raise ValidationError("Date range must have at least start or end date", field="date_range")

        parsed_start = self.parse_date(start, "start") if start not in (None, "") else None
        parsed_end = self.parse_date(end, "end") if end not in (None, "") else None

        # A bare end date covers the whole day
        if parsed_end is not None and parsed_end.timetz().replace(tzinfo=None) == time.min:
            parsed_end = parsed_end.replace(hour=23, minute=59, second=59, microsecond=999999)

        if parsed_start is not None and parsed_end is not None and parsed_start > parsed_end:
            raise ValidationError("Start date must be before or equal to end date", field="date_range")

        return ParsedDateRange(start=parsed_start, end=parsed_end)

    def validate_filters(self, filters: FilterSet) -> None:
        """Check every filter and raise once with all problems found."""
        errors: list[str] = []
        first_field: str | None = None

        def _record(prefix: str, exc: ValidationError) -> None:
            nonlocal first_field
            errors.append(f"{prefix}: {exc.message}")
            first_field = first_field or exc.field

        if filters.file_types:
            try:
                self.validate_file_types(filters.file_types)
            except ValidationError as exc:
                _record("File type filter error", exc)

        if filters.date_range is not None:
            try:
                self.validate_date_range(filters.date_range)
            except ValidationError as exc:
                _record("Date range filter error", exc)

        if filters.tags and (isinstance(filters.tags, str) or not isinstance(filters.tags, Iterable)):
            errors.append("Tags filter must be a list")
            first_field = first_field or "tags"

        if not isinstance(filters.custom_filters, Mapping):
            errors.append("Custom filters must be a mapping")
            first_field = first_field or "custom_filters"
        else:
            for key in filters.custom_filters:
                if not isinstance(key, str) or not key.strip():
                    errors.append(f"Custom filter keys must be non-empty strings, got {key!r}")
                    first_field = first_field or "custom_filters"

        if errors:
            raise ValidationError(f"Filter validation failed: {'; '.join(errors)}", field=first_field, errors=errors)

    def build(self, owner_id: str, filters: FilterSet | None = None) -> FilterPredicate:
        filters = filters or FilterSet()
        self.validate_filters(filters)

        clauses: list[FilterClause] = []
        if filters.file_types:
            clauses.append(FilterClause("file_type", "in", self.validate_file_types(filters.file_types)))
        if filters.date_range is not None:
            clauses.append(FilterClause("created_at", "range", self.validate_date_range(filters.date_range)))
        if filters.tags:
            clauses.append(FilterClause("tags", "any", tuple(filters.tags)))
        for key, value in (filters.custom_filters or {}).items():
            clauses.append(FilterClause(key, "eq", value))

        predicate = FilterPredicate(
            owner_id=owner_id,
            include_public=filters.include_public,
            clauses=tuple(clauses),
            summary=self.summarize(filters),
        )
        logger.debug("Built filter predicate for %s: %s", owner_id, predicate.summary)
        return predicate

    def apply(self, owner_id: str, documents: Iterable[Document], filters: FilterSet | None = None) -> list[Document]:
        predicate = self.build(owner_id, filters)
        return [document for document in documents if predicate(document)]

    def summarize(self, filters: FilterSet) -> dict[str, Any]:
        """Human readable description of the active filters, for logs and responses."""
        active: list[str] = []
        if filters.file_types:
            active.append(f"File types: {', '.join(filters.file_types)}")
        if filters.date_range is not None:
            if isinstance(filters.date_range, DateRange):
                start, end = filters.date_range.start, filters.date_range.end
            else:
                start, end = filters.date_range.get("start"), filters.date_range.get("end")
            bounds = [text for text in (f"from {start}" if start else "", f"to {end}" if end else "") if text]
            active.append(f"Date range: {' '.join(bounds)}")
        if filters.tags:
            active.append(f"Tags: {', '.join(filters.tags)}")
        if filters.custom_filters:
            active.append(f"Custom filters: {len(filters.custom_filters)}")
        return {"total_filters": filters.active_count, "active_filters": active}
