"""
Database access for the asset register.

Single place for:
- Connection factory
- Schema declaration (hierarchy, compliance facts, aggregate records)
- Identifier validation for dynamic SQL
"""

import logging
import re
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from compliance_engine import paths

logger = logging.getLogger(__name__)

# ============================================================
# SQL IDENTIFIER VALIDATION
# ============================================================

_SAFE_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_identifier(name: str) -> str:
    """Validate that *name* is a safe SQL identifier (table or column name).

    Returns the name unchanged if valid; raises ``ValueError`` otherwise.
    """
    if not _SAFE_IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


# ============================================================
# CONNECTION FACTORY
# ============================================================


@contextmanager
def get_connection(
    db_path: Path | str | None = None,
    row_factory: bool = True,
) -> Generator[sqlite3.Connection, None, None]:
    """
    Get a database connection with proper setup.

    Usage:
        with get_connection() as conn:
            conn.execute(...)
    """
    if db_path is None:
        db_path = paths.db_path()
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path), timeout=10)
    if row_factory:
        conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ============================================================
# SCHEMA
# ============================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS organisations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schemes (
    id TEXT PRIMARY KEY,
    organisation_id TEXT REFERENCES organisations(id),
    name TEXT NOT NULL,
    reference TEXT,
    compliance_status TEXT
);

CREATE TABLE IF NOT EXISTS blocks (
    id TEXT PRIMARY KEY,
    scheme_id TEXT NOT NULL REFERENCES schemes(id),
    name TEXT NOT NULL,
    reference TEXT,
    is_hrb INTEGER NOT NULL DEFAULT 0,
    floors INTEGER,
    compliance_status TEXT
);

CREATE TABLE IF NOT EXISTS properties (
    id TEXT PRIMARY KEY,
    block_id TEXT NOT NULL REFERENCES blocks(id),
    name TEXT NOT NULL,
    uprn TEXT
);

CREATE TABLE IF NOT EXISTS spaces (
    id TEXT PRIMARY KEY,
    scheme_id TEXT REFERENCES schemes(id),
    block_id TEXT REFERENCES blocks(id),
    property_id TEXT REFERENCES properties(id),
    name TEXT NOT NULL,
    reference TEXT,
    space_type TEXT
);

CREATE TABLE IF NOT EXISTS components (
    id TEXT PRIMARY KEY,
    block_id TEXT REFERENCES blocks(id),
    property_id TEXT REFERENCES properties(id),
    space_id TEXT REFERENCES spaces(id),
    name TEXT NOT NULL,
    asset_tag TEXT,
    condition TEXT,
    needs_verification INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS certificates (
    id TEXT PRIMARY KEY,
    attached_kind TEXT NOT NULL,
    attached_id TEXT NOT NULL,
    certificate_type TEXT NOT NULL,
    status TEXT NOT NULL,
    outcome TEXT,
    issue_date TEXT,
    expiry_date TEXT
);

CREATE TABLE IF NOT EXISTS remedial_actions (
    id TEXT PRIMARY KEY,
    certificate_id TEXT REFERENCES certificates(id),
    attached_kind TEXT NOT NULL,
    attached_id TEXT NOT NULL,
    severity TEXT NOT NULL,
    status TEXT NOT NULL,
    due_date TEXT
);

CREATE TABLE IF NOT EXISTS aggregate_records (
    node_id TEXT NOT NULL,
    node_kind TEXT NOT NULL,
    status TEXT NOT NULL,
    risk_score REAL NOT NULL,
    computed_at TEXT NOT NULL,
    ttl_seconds INTEGER NOT NULL,
    child_total INTEGER NOT NULL DEFAULT 0,
    child_compliant INTEGER NOT NULL DEFAULT 0,
    child_non_compliant INTEGER NOT NULL DEFAULT 0,
    child_expiring INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (node_id, node_kind)
);

CREATE INDEX IF NOT EXISTS idx_blocks_scheme ON blocks(scheme_id, name);
CREATE INDEX IF NOT EXISTS idx_properties_block ON properties(block_id, name);
CREATE INDEX IF NOT EXISTS idx_spaces_scheme ON spaces(scheme_id);
CREATE INDEX IF NOT EXISTS idx_spaces_block ON spaces(block_id);
CREATE INDEX IF NOT EXISTS idx_spaces_property ON spaces(property_id);
CREATE INDEX IF NOT EXISTS idx_components_space ON components(space_id);
CREATE INDEX IF NOT EXISTS idx_components_property ON components(property_id);
CREATE INDEX IF NOT EXISTS idx_components_block ON components(block_id);
CREATE INDEX IF NOT EXISTS idx_certificates_attached ON certificates(attached_kind, attached_id);
CREATE INDEX IF NOT EXISTS idx_actions_attached ON remedial_actions(attached_kind, attached_id);

-- v_hierarchy_edges: one row per child -> parent edge, used for subtree queries.
-- Spaces/components resolve their parent the same way the store does.
CREATE VIEW IF NOT EXISTS v_hierarchy_edges AS
SELECT 'block' AS child_kind, id AS child_id, 'scheme' AS parent_kind, scheme_id AS parent_id
FROM blocks
UNION ALL
SELECT 'property', id, 'block', block_id FROM properties
UNION ALL
SELECT 'space', id,
    CASE WHEN property_id IS NOT NULL THEN 'property'
         WHEN block_id IS NOT NULL THEN 'block'
         ELSE 'scheme' END,
    COALESCE(property_id, block_id, scheme_id)
FROM spaces
UNION ALL
SELECT 'component', id,
    CASE WHEN space_id IS NOT NULL THEN 'space'
         WHEN property_id IS NOT NULL THEN 'property'
         ELSE 'block' END,
    COALESCE(space_id, property_id, block_id)
FROM components;
"""


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create tables, indexes and views if they do not exist."""
    conn.executescript(SCHEMA)


def init_db(db_path: Path | str | None = None) -> Path:
    """Create the schema at *db_path* (default: paths.db_path())."""
    resolved = Path(db_path) if db_path is not None else paths.db_path()
    with get_connection(resolved) as conn:
        ensure_schema(conn)
    logger.info(f"Schema ensured at {resolved}")
    return resolved
