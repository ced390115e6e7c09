import uuid
from contextlib import contextmanager
from typing import Any, Generator

from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import SimpleConnectionPool

from codepods.config import database_url


# ============================================================================
# Database Wrapper
# ============================================================================


class PostgresDatabase:
    """Thin wrapper around a pooled psycopg2 connection."""

    def __init__(self, conn):
        self.conn = conn

    def cursor(self, **kwargs):
        """Get a cursor with RealDictCursor by default."""
        return self.conn.cursor(cursor_factory=RealDictCursor, **kwargs)


# ============================================================================
# Connection Pool
# ============================================================================

_pool: SimpleConnectionPool | None = None


def get_pool() -> SimpleConnectionPool:
    """Get or create connection pool."""
    global _pool
    if _pool is None:
        _pool = SimpleConnectionPool(1, 20, database_url())
    return _pool


def close_pool():
    """Close the connection pool."""
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


@contextmanager
def get_db() -> Generator[PostgresDatabase, None, None]:
    """Context manager for database operations."""
    pool = get_pool()
    conn = pool.getconn()
    try:
        db = PostgresDatabase(conn)
        yield db
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def get_db_dependency() -> Generator[PostgresDatabase, None, None]:
    """Get database instance for FastAPI dependency injection.

    Each request gets its own connection from the pool.
    """
    with get_db() as db:
        yield db


# ============================================================================
# Table Schema Definitions
# ============================================================================

# Define which columns belong to each table
TABLE_COLUMNS = {
    "users": [
        "id", "email", "password", "name", "role", "github_id", "github_username",
        "github_token", "tech_stack", "inferred_role", "role_analysis",
        "reliability_score", "dynamics_metrics", "created_at",
    ],
    "pods": ["id", "name", "description", "repo_owner", "repo_name", "created_at"],
    "pod_members": ["id", "user_id", "pod_id", "role", "status", "created_at"],
    "tasks": [
        "id", "pod_id", "title", "description", "assigned_to", "status",
        "due_at", "completed_at", "created_at",
    ],
    "activities": ["id", "user_id", "pod_id", "type", "meta", "value", "created_at"],
    "rewards": ["id", "user_id", "points", "reason", "badges", "created_at"],
    "badges": ["id", "slug", "name", "description", "created_at"],
    "notifications": [
        "id", "user_id", "type", "title", "message", "link", "read", "created_at",
    ],
}

# JSONB columns need wrapping before psycopg2 can adapt them
JSON_COLUMNS = {
    "users": {"role_analysis", "dynamics_metrics"},
    "activities": {"meta"},
}


# ============================================================================
# Helper Functions
# ============================================================================


def _columns(table: str) -> list[str]:
    columns = TABLE_COLUMNS.get(table)
    if not columns:
        raise ValueError(f"Unknown table: {table}")
    return columns


def _check_column(table: str, column: str) -> None:
    if column not in _columns(table):
        raise ValueError(f"Unknown column '{column}' for table {table}")


def _adapt(table: str, column: str, value: Any) -> Any:
    if column in JSON_COLUMNS.get(table, ()) and value is not None:
        return Json(value)
    return value


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _build_condition(table: str, key: str, value: Any) -> tuple[str, list[Any]]:
    _check_column(table, key)

    if isinstance(value, dict):
        if "$in" in value:
            return f"{key} = ANY(%s)", [list(value["$in"])]
        if "$ne" in value:
            if value["$ne"] is None:
                return f"{key} IS NOT NULL", []
            return f"{key} IS DISTINCT FROM %s", [value["$ne"]]
        if "$ilike" in value:
            return f"{key} ILIKE %s ESCAPE '\\'", [f"%{_escape_like(value['$ilike'])}%"]

        comparisons = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}
        parts = []
        params = []
        for op, sql_op in comparisons.items():
            if op in value:
                parts.append(f"{key} {sql_op} %s")
                params.append(value[op])
        if not parts or len(parts) != len(value):
            raise ValueError(f"Unsupported operator in filter: {value}")
        return " AND ".join(parts), params

    if value is None:
        return f"{key} IS NULL", []
    return f"{key} = %s", [value]


def _build_where_clause(table: str, filters: dict) -> tuple[str, list[Any]]:
    """
    Build SQL WHERE clause from dict-style filters.

    Supports:
    - {"field": value} -> WHERE field = value (None -> IS NULL)
    - {"field": {"$in": [...]}} -> WHERE field = ANY(ARRAY[...])
    - {"field": {"$ne": value}} -> WHERE field IS DISTINCT FROM value
    - {"field": {"$gt"|"$gte"|"$lt"|"$lte": value}}, combinable for ranges
    - {"field": {"$ilike": text}} -> case-insensitive literal substring match
    - {"$or": [filters, ...]} -> OR of the nested filters
    - Multiple conditions are combined with AND

    Returns:
        Tuple of (where_clause, params)
    """
    if not filters:
        return "", []

    conditions = []
    params = []

    for key, value in filters.items():
        if key == "$or":
            alternatives = []
            for sub_filter in value:
                clause, sub_params = _build_where_clause(table, sub_filter)
                alternatives.append(f"({clause})")
                params.extend(sub_params)
            conditions.append(f"({' OR '.join(alternatives)})")
            continue

        clause, clause_params = _build_condition(table, key, value)
        conditions.append(clause)
        params.extend(clause_params)

    return " AND ".join(conditions), params


def _order_clause(table: str, order_by: str | None) -> str:
    """Translate '-created_at' style ordering into SQL."""
    if not order_by:
        return ""
    direction = "DESC" if order_by.startswith("-") else "ASC"
    column = order_by.lstrip("-")
    _check_column(table, column)
    return f" ORDER BY {column} {direction}"


# ============================================================================
# CRUD Operations
# ============================================================================


def add_item(db: PostgresDatabase, table: str, item: dict) -> dict:
    """Insert a row and return it as stored."""
    columns = _columns(table)
    insert_data = {"id": item.get("id") or str(uuid.uuid4())}

    for col in columns:
        if col == "id":
            continue
        if col in item:
            insert_data[col] = _adapt(table, col, item[col])

    cols = list(insert_data.keys())
    placeholders = ["%s"] * len(cols)
    query = f"""
        INSERT INTO {table} ({', '.join(cols)})
        VALUES ({', '.join(placeholders)})
        RETURNING *
    """

    with db.cursor() as cur:
        cur.execute(query, list(insert_data.values()))
        return dict(cur.fetchone())


def get_item_by_id(db: PostgresDatabase, table: str, item_id: str | uuid.UUID) -> dict | None:
    """Get a single row by its id."""
    if not isinstance(item_id, str):
        item_id = str(item_id)

    query = f"SELECT * FROM {table} WHERE id = %s"

    with db.cursor() as cur:
        cur.execute(query, (item_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def get_items_by_filter(
    db: PostgresDatabase,
    table: str,
    filters: dict | None = None,
    order_by: str | None = None,
    limit: int | None = None,
) -> list[dict]:
    """Get all rows matching the given filters.

    Args:
        db: The database instance.
        table: Name of the table.
        filters: Dict filters, see _build_where_clause.
        order_by: Column name, prefixed with '-' for descending order.
        limit: Maximum number of rows.
    """
    where_clause, params = _build_where_clause(table, filters or {})

    query = f"SELECT * FROM {table}"
    if where_clause:
        query += f" WHERE {where_clause}"
    query += _order_clause(table, order_by)
    if limit is not None:
        query += " LIMIT %s"
        params.append(limit)

    with db.cursor() as cur:
        cur.execute(query, params)
        return [dict(row) for row in cur.fetchall()]


def get_item_by_filter(db: PostgresDatabase, table: str, filters: dict) -> dict | None:
    """Get the first row matching the given filters."""
    items = get_items_by_filter(db, table, filters, limit=1)
    return items[0] if items else None


def count_items(db: PostgresDatabase, table: str, filters: dict | None = None) -> int:
    """Count rows matching the given filters."""
    where_clause, params = _build_where_clause(table, filters or {})

    query = f"SELECT COUNT(*) AS count FROM {table}"
    if where_clause:
        query += f" WHERE {where_clause}"

    with db.cursor() as cur:
        cur.execute(query, params)
        return cur.fetchone()["count"]


def update_item(
    db: PostgresDatabase, table: str, item_id: str | uuid.UUID, updates: dict
) -> dict | None:
    """Update a single row by its id.

    Args:
        db: The database instance.
        table: Name of the table.
        item_id: The id of the row to update.
        updates: Dictionary of column:value pairs to update.

    Returns:
        The updated row, or None if no row matched.
    """
    if not isinstance(item_id, str):
        item_id = str(item_id)

    set_parts = []
    params = []
    for key, value in updates.items():
        _check_column(table, key)
        set_parts.append(f"{key} = %s")
        params.append(_adapt(table, key, value))

    params.append(item_id)  # For WHERE clause

    query = f"""
        UPDATE {table}
        SET {', '.join(set_parts)}
        WHERE id = %s
        RETURNING *
    """

    with db.cursor() as cur:
        cur.execute(query, params)
        row = cur.fetchone()
        return dict(row) if row else None


def update_items_by_filter(
    db: PostgresDatabase, table: str, filters: dict, updates: dict
) -> int:
    """Update all rows matching the given filters and return how many changed."""
    where_clause, where_params = _build_where_clause(table, filters)

    if not where_clause:
        raise ValueError("Filters required for update_items_by_filter")

    set_parts = []
    params = []
    for key, value in updates.items():
        _check_column(table, key)
        set_parts.append(f"{key} = %s")
        params.append(_adapt(table, key, value))

    query = f"UPDATE {table} SET {', '.join(set_parts)} WHERE {where_clause}"

    with db.cursor() as cur:
        cur.execute(query, params + where_params)
        return cur.rowcount
