from __future__ import annotations

import types
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Dict, Mapping, Optional, Union, get_args, get_origin

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The SQL/NoSQL DDL is produced offline by the schema generator from this
    description; nothing here touches the database at runtime.
    """

    # Logical collection / table name; subclasses override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    # Fields that get a secondary index in the generated schema
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Decimals and datetimes are kept as native objects; DB adapters
        translate them to backend types (e.g. Decimal128 for MongoDB).
        """
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type, nullable = cls._map_type(field.annotation)
            default = field.get_default(call_default_factory=False)

            properties[name] = {
                "type": field_type,
                "nullable": nullable,
                "default": default if isinstance(default, (int, str, bool, Decimal)) else None,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [list(index) for index in cls.indexes],
        }

    @staticmethod
    def _map_type(annotation: Any) -> tuple[str, bool]:
        """
        Map a Python / Pydantic type annotation to a generic logical type and
        whether the column is nullable.
        """
        nullable = False
        origin = get_origin(annotation)
        if origin is Union or origin is getattr(types, "UnionType", None):
            args = [a for a in get_args(annotation) if a is not type(None)]
            nullable = len(args) != len(get_args(annotation))
            annotation = args[0] if len(args) == 1 else object
            origin = get_origin(annotation)

        if origin in (list, tuple, set):
            return "array", nullable
        if origin is dict:
            return "object", nullable

        if annotation is bool:
            return "boolean", nullable
        if annotation is int:
            return "integer", nullable
        if annotation is float:
            return "number", nullable
        if annotation is Decimal:
            return "decimal", nullable
        if annotation is str:
            return "string", nullable
        if annotation is datetime:
            return "datetime", nullable

        # Enums and anything else: the generator falls back to text
        name = getattr(annotation, "__name__", "object")
        return name.lower(), nullable
