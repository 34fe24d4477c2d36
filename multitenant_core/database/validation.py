"""
Input validation applied before any payload reaches a backend.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from .exceptions import ValidationError
from .models import RESERVED_FIELDS, QueryOptions, Record


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def validate_identifier(name: Any, kind: str = "identifier") -> str:
    """Reject collection/field names that are not plain identifiers."""
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise ValidationError(f"Invalid {kind} name: {name!r}")
    return name


def validate_payload(data: Any, collection: Optional[str] = None) -> Record:
    """Check a create payload is a mapping with identifier keys and return a copy without reserved fields."""
    if not isinstance(data, Mapping):
        raise ValidationError("Record payload must be a mapping",
                              details={"collection": collection} if collection else None)
    errors = []
    for key in data.keys():
        if not isinstance(key, str) or not IDENTIFIER_PATTERN.match(key):
            errors.append(f"Invalid field name: {key!r}")
    if errors:
        raise ValidationError("Invalid record payload", errors=errors)
    return {key: value for key, value in data.items() if key not in RESERVED_FIELDS}


def validate_patch(patch: Any) -> Record:
    """Check an update patch. Reserved fields cannot be changed by callers."""
    if not isinstance(patch, Mapping):
        raise ValidationError("Update patch must be a mapping")
    errors = []
    for key in patch.keys():
        if not isinstance(key, str) or not IDENTIFIER_PATTERN.match(key):
            errors.append(f"Invalid field name: {key!r}")
        elif key in RESERVED_FIELDS:
            errors.append(f"Field '{key}' cannot be updated")
    if errors:
        raise ValidationError("Invalid update patch", errors=errors)
    if not patch:
        raise ValidationError("Update patch is empty")
    return dict(patch)


def validate_record_id(record_id: Any) -> str:
    if not isinstance(record_id, str) or not record_id.strip() or len(record_id) > 128:
        raise ValidationError(f"Invalid record id: {record_id!r}")
    return record_id


def validate_query_options(options: QueryOptions) -> QueryOptions:
    """Check every identifier and bound used by a read."""
    errors = []
    for name in options.select or ():
        if not IDENTIFIER_PATTERN.match(str(name)):
            errors.append(f"Invalid select field: {name!r}")
    for name in options.filters:
        if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
            errors.append(f"Invalid filter field: {name!r}")
    if options.order is not None and not IDENTIFIER_PATTERN.match(str(options.order.field)):
        errors.append(f"Invalid order field: {options.order.field!r}")
    if options.limit is not None and (not isinstance(options.limit, int) or options.limit <= 0):
        errors.append("limit must be a positive integer")
    if options.offset is not None and (not isinstance(options.offset, int) or options.offset < 0):
        errors.append("offset must be a non-negative integer")
    if errors:
        raise ValidationError("Invalid query options", errors=errors)
    return options


@dataclass
class CollectionSchema:
    """
    Declared field set for one collection.

    Payloads are schema-less maps; a schema restricts which keys may appear
    and which must be present on create.
    """
    fields: FrozenSet[str]
    required: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        self.fields = frozenset(self.fields)
        self.required = frozenset(self.required)
        missing = self.required - self.fields
        if missing:
            raise ValueError(f"Required fields not declared: {sorted(missing)}")

    @classmethod
    def of(cls, fields: Iterable[str], required: Iterable[str] = ()) -> "CollectionSchema":
        return cls(fields=frozenset(fields), required=frozenset(required))

    def check(self, data: Mapping[str, Any], partial: bool = False) -> List[str]:
        errors = []
        for key in data:
            if key not in self.fields and key not in RESERVED_FIELDS:
                errors.append(f"Unknown field: {key}")
        if not partial:
            for key in sorted(self.required):
                if data.get(key) is None:
                    errors.append(f"Missing required field: {key}")
        return errors

    def validate(self, data: Mapping[str, Any], partial: bool = False) -> None:
        errors = self.check(data, partial=partial)
        if errors:
            raise ValidationError("Record does not match collection schema", errors=errors)


def validate_against(schemas: Dict[str, CollectionSchema], collection: str,
                     data: Mapping[str, Any], partial: bool = False) -> None:
    """Validate ``data`` against the schema declared for ``collection``, if any."""
    schema = schemas.get(collection)
    if schema is not None:
        schema.validate(data, partial=partial)
