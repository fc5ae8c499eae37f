from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from .models.account import Account
from .models.base import DBSerializableModel
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.purchase import Purchase
from .models.session import UsageSession
from .models.transaction import Transaction


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    Account,
    UsageSession,
    Purchase,
    Transaction,
    NotificationEvent,
    LedgerEntry,
]

_SQL_TYPES: Dict[str, str] = {
    "integer": "INTEGER",
    "number": "DOUBLE PRECISION",
    # credits always carry two fraction digits
    "decimal": "NUMERIC(12, 2)",
    "boolean": "BOOLEAN",
    "datetime": "TIMESTAMP",
    "object": "TEXT",
}

_POSTGRES_OVERRIDES: Dict[str, str] = {
    "datetime": "TIMESTAMP WITH TIME ZONE",
    "object": "JSONB",
}


def generate_logical_schema() -> Dict[str, Any]:
    """Schema of every persisted model keyed by collection name."""
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def sql_type_for(logical_type: str, dialect: str = "postgres") -> str:
    logical_type = logical_type.lower()
    if dialect == "postgres" and logical_type in _POSTGRES_OVERRIDES:
        return _POSTGRES_OVERRIDES[logical_type]
    return _SQL_TYPES.get(logical_type, "TEXT")


def _column_sql(name: str, meta: Dict[str, Any], is_pk: bool, dialect: str) -> str:
    null_sql = "NULL" if meta.get("nullable") and not is_pk else "NOT NULL"
    return f'    "{name}" {sql_type_for(meta["type"], dialect)} {null_sql}'


def _index_sql(table: str, columns: List[str]) -> str:
    index_name = "ix_{}_{}".format(table, "_".join(columns))
    column_list = ", ".join(f'"{c}"' for c in columns)
    return f'CREATE INDEX IF NOT EXISTS "{index_name}" ON "{table}" ({column_list});'


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    statements: List[str] = []
    for table, table_schema in schema.items():
        pk = table_schema.get("primary_key") or "id"
        body = [
            _column_sql(name, meta, name == pk, dialect)
            for name, meta in table_schema["properties"].items()
        ]
        body.append(f'    PRIMARY KEY ("{pk}")')
        statements.append(
            f'CREATE TABLE IF NOT EXISTS "{table}" (\n' + ",\n".join(body) + "\n);"
        )
        statements.extend(_index_sql(table, list(cols)) for cols in table_schema["indexes"])
    return "\n\n".join(statements) + "\n"


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    return json.dumps(schema, indent=2, default=str)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Print the storage schema of the usage metering models."
    )
    parser.add_argument("--backend", choices=["sql", "nosql"], required=True)
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (postgres, mysql, sqlite).",
    )
    parser.add_argument("--output", type=Path, help="Write to this file instead of stdout.")
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.backend == "sql":
        rendered = render_sql_ddl(schema, dialect=args.dialect)
    else:
        rendered = render_nosql_schema(schema)

    if args.output is not None:
        args.output.write_text(rendered, encoding="utf-8")
    else:
        print(rendered)


if __name__ == "__main__":
    main()
