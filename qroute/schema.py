"""Helpers over the caller's database schema.

A schema maps table name to `{"columns": [...], "description": ...}`, each
column being `{"name", "type", "is_primary"?, "references"?: {"table",
"column"}}`. A plain `{column: type}` mapping is accepted for a table too.
"""

from collections.abc import Iterable, Mapping
from typing import Any


def table_columns(info: Any) -> list[dict[str, Any]]:
    if not isinstance(info, Mapping):
        return []
    columns = info.get("columns")
    if columns is None:
        return [{"name": name, "type": str(kind)} for name, kind in info.items() if name != "description"]
    if isinstance(columns, Mapping):
        return [{"name": name, "type": str(kind)} for name, kind in columns.items()]
    return [dict(c) for c in columns if isinstance(c, Mapping) and "name" in c]


def summarize_schema(schema: Mapping[str, Any]) -> str:
    lines = []
    for table, info in schema.items():
        cols = ", ".join(f"{c['name']} {c.get('type', '')}".strip() for c in table_columns(info))
        description = info.get("description") if isinstance(info, Mapping) else None
        line = f"{table}({cols})"
        if isinstance(description, str) and description:
            line += f" -- {description}"
        lines.append(line)
    return "\n".join(lines)


def filter_schema(schema: Mapping[str, Any], tables: Iterable[str]) -> dict[str, Any]:
    """Requested tables plus the tables their foreign keys point at."""
    included: dict[str, Any] = {}
    pending = [t for t in tables if t in schema]
    while pending:
        table = pending.pop(0)
        if table in included:
            continue
        included[table] = schema[table]
        for column in table_columns(schema[table]):
            ref = column.get("references")
            if isinstance(ref, Mapping) and ref.get("table") in schema and ref["table"] not in included:
                pending.append(ref["table"])
    return included


def slim_schema(schema: Mapping[str, Any], selected: Mapping[str, Iterable[str]]) -> dict[str, Any]:
    """Keep only the selected columns (and primary keys) of the selected tables."""
    slim: dict[str, Any] = {}
    for table, fields in selected.items():
        if table not in schema:
            continue
        wanted = set(fields)
        columns = [c for c in table_columns(schema[table]) if c["name"] in wanted or c.get("is_primary")]
        slim[table] = {"columns": columns}
    return slim
