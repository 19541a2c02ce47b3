from __future__ import annotations

import os
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Optional

import psycopg2
import psycopg2.extras

from flask import g

# SQLite fallback (local/dev)
DB_NAME = os.environ.get("FARMMARKET_DB", "farmmarket.db")

# Postgres
DATABASE_URL = os.environ.get("DATABASE_URL", "").strip()
USE_POSTGRES = bool(DATABASE_URL)

logger = logging.getLogger("farmmarket")

DB_ERRORS = (sqlite3.Error, psycopg2.Error)

ORDER_STATUSES = (
    (1, "Pending", "Order placed, awaiting confirmation"),
    (2, "Confirmed", "Order confirmed by the seller"),
    (3, "Shipped", "Order is on its way"),
    (4, "Delivered", "Order delivered to the buyer"),
    (5, "Cancelled", "Order cancelled"),
)

DEFAULT_CATEGORIES = (
    ("Vegetables", "Fresh vegetables"),
    ("Fruits", "Seasonal fruits"),
    ("Grains", "Cereals, rice and pulses"),
    ("Dairy", "Milk, cheese and eggs"),
    ("Livestock", "Poultry, meat and live animals"),
)


def now_str(days_ago: int = 0) -> str:
    return (datetime.now() - timedelta(days=days_ago)).strftime("%Y-%m-%d %H:%M:%S")


def _ph() -> str:
    """Return the placeholder token for the active DB driver."""
    return "%s" if USE_POSTGRES else "?"


def _ph_list(n: int) -> str:
    """Return comma-separated placeholders for IN (...) clauses."""
    if n <= 0:
        return ""
    return ",".join([_ph()] * n)


def connect_db():
    if USE_POSTGRES:
        return psycopg2.connect(DATABASE_URL)
    conn = sqlite3.connect(DB_NAME)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def get_db():
    if "db" not in g:
        g.db = connect_db()
    return g.db


def close_db(exception: Exception | None = None):
    conn = g.pop("db", None)
    if conn is not None:
        try:
            conn.close()
        except DB_ERRORS:
            logger.warning("db_close_failed")


def _row_to_dict(r) -> Optional[dict]:
    if r is None:
        return None
    if isinstance(r, dict):
        return dict(r)
    return {k: r[k] for k in r.keys()}


def db_fetchone(sql: str, params: tuple = ()) -> Optional[dict]:
    conn = get_db()
    if USE_POSTGRES:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            return _row_to_dict(cur.fetchone())
    return _row_to_dict(conn.execute(sql, params).fetchone())


def db_fetchall(sql: str, params: tuple = ()) -> list[dict]:
    conn = get_db()
    if USE_POSTGRES:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            return [dict(r) for r in cur.fetchall()]
    return [_row_to_dict(r) for r in conn.execute(sql, params).fetchall()]


def db_execute(sql: str, params: tuple = ()) -> int:
    """Run a statement and return the number of affected rows."""
    conn = get_db()
    if USE_POSTGRES:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount
    return conn.execute(sql, params).rowcount


def db_insert(sql: str, params: tuple, pk: str) -> Any:
    """Run an INSERT and return the generated primary key."""
    conn = get_db()
    if USE_POSTGRES:
        with conn.cursor() as cur:
            cur.execute(f"{sql} RETURNING {pk}", params)
            return cur.fetchone()[0]
    return conn.execute(sql, params).lastrowid


def db_commit():
    get_db().commit()


def db_rollback():
    get_db().rollback()


def db_scalar(sql: str, params: tuple = (), default: Any = 0) -> Any:
    row = db_fetchone(sql, params)
    if not row:
        return default
    value = next(iter(row.values()))
    return default if value is None else value


def table_counts(*tables: str) -> dict:
    """Row counts for fixed, code-supplied table names."""
    return {t: int(db_scalar(f"SELECT COUNT(*) AS c FROM {t}")) for t in tables}


# -----------------------------
# Schema
# -----------------------------

def _schema_statements(postgres: bool) -> list[str]:
    pk = "SERIAL PRIMARY KEY" if postgres else "INTEGER PRIMARY KEY AUTOINCREMENT"
    money = "NUMERIC(12,2)" if postgres else "REAL"
    return [
        """
        CREATE TABLE IF NOT EXISTS profiles(
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            role TEXT NOT NULL, -- Farmer|Buyer|Admin
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS categories(
            category_id {pk},
            name TEXT UNIQUE NOT NULL,
            description TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS products(
            product_id {pk},
            farmer_id TEXT NOT NULL REFERENCES profiles(id),
            category_id INTEGER REFERENCES categories(category_id),
            name TEXT NOT NULL,
            description TEXT,
            image_url TEXT,
            price {money} NOT NULL,
            stock INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
            status TEXT NOT NULL DEFAULT 'Pending', -- Pending|Approved|Rejected
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS order_status(
            status_id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS orders(
            order_id {pk},
            buyer_id TEXT NOT NULL REFERENCES profiles(id),
            total_price {money} NOT NULL,
            status_id INTEGER NOT NULL DEFAULT 1 REFERENCES order_status(status_id),
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS order_items(
            item_id {pk},
            order_id INTEGER NOT NULL REFERENCES orders(order_id),
            product_id INTEGER NOT NULL REFERENCES products(product_id),
            quantity INTEGER NOT NULL,
            price_per_unit {money} NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS ratings(
            rating_id {pk},
            buyer_id TEXT NOT NULL REFERENCES profiles(id),
            product_id INTEGER NOT NULL REFERENCES products(product_id) ON DELETE CASCADE,
            rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS reviews(
            review_id {pk},
            buyer_id TEXT NOT NULL REFERENCES profiles(id),
            product_id INTEGER NOT NULL REFERENCES products(product_id) ON DELETE CASCADE,
            comment TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS log_activity(
            log_id {pk},
            user_id TEXT,
            action TEXT NOT NULL,
            details TEXT,
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS notifications(
            id {pk},
            user_id TEXT NOT NULL REFERENCES profiles(id),
            kind TEXT NOT NULL,
            message TEXT NOT NULL,
            link TEXT,
            created_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS change_events(
            id {pk},
            table_name TEXT NOT NULL,
            event TEXT NOT NULL, -- INSERT|UPDATE|DELETE
            row_id TEXT NOT NULL,
            buyer_id TEXT,
            created_at TEXT NOT NULL
        )
        """,
    ]


def _seed_statements() -> list[tuple[str, tuple]]:
    ph = _ph()
    out = []
    for status_id, name, description in ORDER_STATUSES:
        out.append((
            f"INSERT INTO order_status(status_id, name, description) VALUES({ph}, {ph}, {ph}) "
            "ON CONFLICT(status_id) DO NOTHING",
            (status_id, name, description),
        ))
    for name, description in DEFAULT_CATEGORIES:
        out.append((
            f"INSERT INTO categories(name, description) VALUES({ph}, {ph}) "
            "ON CONFLICT(name) DO NOTHING",
            (name, description),
        ))
    return out


def ensure_schema_sqlite() -> None:
    conn = sqlite3.connect(DB_NAME)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")

    def colnames(table: str) -> set[str]:
        rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return {r["name"] for r in rows}

    try:
        for ddl in _schema_statements(postgres=False):
            conn.execute(ddl)

        # Lightweight migrations for older dbs
        if "image_url" not in colnames("products"):
            conn.execute("ALTER TABLE products ADD COLUMN image_url TEXT")

        for sql, params in _seed_statements():
            conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def ensure_schema_postgres() -> None:
    conn = psycopg2.connect(DATABASE_URL)
    try:
        with conn.cursor() as cur:
            for ddl in _schema_statements(postgres=True):
                cur.execute(ddl + ";")
            cur.execute("ALTER TABLE products ADD COLUMN IF NOT EXISTS image_url TEXT;")
            for sql, params in _seed_statements():
                cur.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def ensure_schema() -> None:
    if USE_POSTGRES:
        ensure_schema_postgres()
    else:
        ensure_schema_sqlite()
    logger.info("schema_ready db=%s", "postgres" if USE_POSTGRES else DB_NAME)
