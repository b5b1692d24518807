from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Iterable, Iterator
from uuid import uuid4

from app.config import settings


REGISTRY_SOURCE = "registry_feed"
NEWSROOM_SOURCE = "agency_newsroom_feed"
DOCUMENT_SOURCES = (REGISTRY_SOURCE, NEWSROOM_SOURCE)

# Statuses a row may leave when a worker claims it. `processing` is the soft lock.
CLAIMABLE_STATUSES = ("pending", "awaiting_approval", "skipped")
RESETTABLE_STATUSES = ("failed", "skipped", "awaiting_approval", "complete")

_ARTIFACT_TABLES = {"base_outputs", "client_outputs"}
_MONITOR_SETTINGS_ID = "default"


def _database_path() -> Path:
    prefix = "sqlite:///"
    if not settings.database_url.startswith(prefix):
        raise RuntimeError("Only sqlite:/// DATABASE_URL is supported.")
    return Path(settings.database_url[len(prefix) :])


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db() -> None:
    db_path = _database_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS agencies (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                registry_slug TEXT NOT NULL UNIQUE,
                document_types_json TEXT NOT NULL,
                newsroom_feed_url TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tenants (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                output_type TEXT NOT NULL,
                has_client_roster INTEGER NOT NULL DEFAULT 0,
                auto_process INTEGER NOT NULL DEFAULT 1,
                branding_json TEXT NOT NULL,
                model_config_json TEXT NOT NULL,
                deck_instructions TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tenant_agency_subscriptions (
                tenant_id TEXT NOT NULL,
                agency_id TEXT NOT NULL,
                registry_feed_enabled INTEGER NOT NULL DEFAULT 1,
                newsroom_feed_enabled INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                PRIMARY KEY(tenant_id, agency_id),
                FOREIGN KEY(tenant_id) REFERENCES tenants(id),
                FOREIGN KEY(agency_id) REFERENCES agencies(id)
            );

            CREATE INDEX IF NOT EXISTS idx_subscriptions_agency ON tenant_agency_subscriptions(agency_id);

            CREATE TABLE IF NOT EXISTS clients (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                name TEXT NOT NULL,
                context TEXT NOT NULL DEFAULT '',
                industry TEXT,
                focus_areas_json TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                FOREIGN KEY(tenant_id) REFERENCES tenants(id)
            );

            CREATE INDEX IF NOT EXISTS idx_clients_tenant ON clients(tenant_id, is_active);

            CREATE TABLE IF NOT EXISTS regulatory_documents (
                id TEXT PRIMARY KEY,
                source TEXT NOT NULL,
                external_id TEXT NOT NULL,
                agency_id TEXT,
                title TEXT NOT NULL,
                abstract TEXT,
                publication_date TEXT,
                source_pdf_url TEXT,
                source_html_url TEXT,
                citation TEXT,
                document_type TEXT,
                is_significant INTEGER NOT NULL DEFAULT 0,
                detected_at TEXT NOT NULL,
                FOREIGN KEY(agency_id) REFERENCES agencies(id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_regulatory_documents_source_external
                ON regulatory_documents(source, external_id);
            CREATE INDEX IF NOT EXISTS idx_regulatory_documents_agency
                ON regulatory_documents(agency_id, detected_at DESC);

            CREATE TABLE IF NOT EXISTS base_outputs (
                id TEXT PRIMARY KEY,
                regulatory_document_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                output_type TEXT NOT NULL,
                status TEXT NOT NULL,
                output_path TEXT,
                source_text TEXT,
                model_used TEXT,
                tokens_input INTEGER,
                tokens_output INTEGER,
                processing_started_at TEXT,
                processing_completed_at TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(regulatory_document_id) REFERENCES regulatory_documents(id),
                FOREIGN KEY(tenant_id) REFERENCES tenants(id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_base_outputs_document_tenant
                ON base_outputs(regulatory_document_id, tenant_id);
            CREATE INDEX IF NOT EXISTS idx_base_outputs_status ON base_outputs(status, created_at ASC);

            CREATE TABLE IF NOT EXISTS client_outputs (
                id TEXT PRIMARY KEY,
                base_output_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                status TEXT NOT NULL,
                output_path TEXT,
                source_text TEXT,
                model_used TEXT,
                tokens_input INTEGER,
                tokens_output INTEGER,
                selected_for_generation INTEGER NOT NULL DEFAULT 0,
                selected_by TEXT,
                selected_at TEXT,
                processing_started_at TEXT,
                processing_completed_at TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(base_output_id) REFERENCES base_outputs(id),
                FOREIGN KEY(client_id) REFERENCES clients(id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_client_outputs_base_client
                ON client_outputs(base_output_id, client_id);

            CREATE TABLE IF NOT EXISTS conversion_jobs (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input_filename TEXT NOT NULL,
                input_path TEXT NOT NULL,
                input_size_bytes INTEGER NOT NULL,
                extracted_text TEXT,
                page_count INTEGER,
                output_filename TEXT,
                output_path TEXT,
                output_size_bytes INTEGER,
                processing_started_at TEXT,
                processing_completed_at TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversion_jobs_status ON conversion_jobs(status, created_at ASC);
            CREATE INDEX IF NOT EXISTS idx_conversion_jobs_owner ON conversion_jobs(owner_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS monitor_settings (
                id TEXT PRIMARY KEY,
                is_enabled INTEGER NOT NULL DEFAULT 1,
                agency_slugs_json TEXT NOT NULL,
                document_types_json TEXT NOT NULL,
                only_significant INTEGER NOT NULL DEFAULT 0,
                auto_process_new INTEGER NOT NULL DEFAULT 1,
                initial_document_count INTEGER NOT NULL,
                poll_document_count INTEGER NOT NULL,
                initialized INTEGER NOT NULL DEFAULT 0,
                last_poll_at TEXT,
                last_poll_status TEXT,
                last_poll_documents_found INTEGER,
                updated_at TEXT NOT NULL
            );
            """
        )
        _ensure_column(conn, "agencies", "newsroom_feed_url", "TEXT")
        _ensure_column(conn, "base_outputs", "source_text", "TEXT")
        _ensure_column(conn, "client_outputs", "source_text", "TEXT")

        conn.execute(
            """
            INSERT OR IGNORE INTO monitor_settings (
                id, is_enabled, agency_slugs_json, document_types_json, only_significant, auto_process_new,
                initial_document_count, poll_document_count, initialized, updated_at
            )
            VALUES (?, 1, '[]', ?, 0, 1, ?, ?, 0, ?)
            """,
            (
                _MONITOR_SETTINGS_ID,
                json.dumps(["RULE", "PRORULE"]),
                settings.monitor_initial_document_count,
                settings.monitor_poll_document_count,
                _utc_now_iso(),
            ),
        )


def _ensure_column(conn: sqlite3.Connection, table_name: str, column_name: str, column_def: str) -> None:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    existing_columns = {str(row[1]) for row in rows}
    if column_name in existing_columns:
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_def}")


@contextmanager
def get_conn() -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(_database_path(), timeout=30.0)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        yield conn
        conn.commit()
    finally:
        conn.close()


_JSON_COLUMNS = {
    "document_types_json": "document_types",
    "branding_json": "branding",
    "model_config_json": "model_config",
    "focus_areas_json": "focus_areas",
    "agency_slugs_json": "agency_slugs",
}
_BOOL_COLUMNS = {
    "is_active",
    "has_client_roster",
    "auto_process",
    "registry_feed_enabled",
    "newsroom_feed_enabled",
    "is_significant",
    "selected_for_generation",
    "is_enabled",
    "only_significant",
    "auto_process_new",
    "initialized",
}


def _decode_row(row: sqlite3.Row | None) -> dict[str, object] | None:
    if row is None:
        return None
    item = dict(row)
    for column, key in _JSON_COLUMNS.items():
        if column in item:
            raw = item.pop(column)
            item[key] = json.loads(raw) if raw else None
    for column in _BOOL_COLUMNS:
        if column in item and item[column] is not None:
            item[column] = bool(item[column])
    return item


def _decode_rows(rows: Iterable[sqlite3.Row]) -> list[dict[str, object]]:
    return [item for item in (_decode_row(row) for row in rows) if item is not None]


def _placeholders(values: Iterable[object]) -> str:
    return ", ".join("?" for _ in values)


# --- agencies, tenants, subscriptions, clients ---------------------------------------------------


def create_agency(
    name: str,
    registry_slug: str,
    *,
    document_types: list[str] | None = None,
    newsroom_feed_url: str | None = None,
    is_active: bool = True,
) -> dict[str, object]:
    agency_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO agencies (id, name, registry_slug, document_types_json, newsroom_feed_url, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                agency_id,
                name,
                registry_slug,
                json.dumps(document_types or []),
                newsroom_feed_url,
                int(is_active),
                _utc_now_iso(),
            ),
        )
    agency = get_agency(agency_id)
    assert agency is not None
    return agency


def get_agency(agency_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM agencies WHERE id = ?", (agency_id,)).fetchone()
    return _decode_row(row)


def list_active_agencies(registry_slugs: list[str] | None = None) -> list[dict[str, object]]:
    query = "SELECT * FROM agencies WHERE is_active = 1"
    params: list[object] = []
    if registry_slugs:
        query += f" AND registry_slug IN ({_placeholders(registry_slugs)})"
        params.extend(registry_slugs)
    query += " ORDER BY name ASC"
    with get_conn() as conn:
        rows = conn.execute(query, tuple(params)).fetchall()
    return _decode_rows(rows)


def create_tenant(
    name: str,
    output_type: str,
    *,
    has_client_roster: bool = False,
    auto_process: bool = True,
    branding: dict[str, object] | None = None,
    model_config: dict[str, object] | None = None,
    deck_instructions: str | None = None,
) -> dict[str, object]:
    tenant_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO tenants (
                id, name, output_type, has_client_roster, auto_process, branding_json, model_config_json,
                deck_instructions, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id,
                name,
                output_type,
                int(has_client_roster),
                int(auto_process),
                json.dumps(branding or {}),
                json.dumps(model_config or {}),
                deck_instructions,
                _utc_now_iso(),
            ),
        )
    tenant = get_tenant(tenant_id)
    assert tenant is not None
    return tenant


def get_tenant(tenant_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM tenants WHERE id = ?", (tenant_id,)).fetchone()
    return _decode_row(row)


def subscribe_tenant_to_agency(
    tenant_id: str,
    agency_id: str,
    *,
    registry_feed_enabled: bool = True,
    newsroom_feed_enabled: bool = False,
) -> None:
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO tenant_agency_subscriptions (
                tenant_id, agency_id, registry_feed_enabled, newsroom_feed_enabled, created_at
            )
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(tenant_id, agency_id) DO UPDATE SET
                registry_feed_enabled = excluded.registry_feed_enabled,
                newsroom_feed_enabled = excluded.newsroom_feed_enabled
            """,
            (tenant_id, agency_id, int(registry_feed_enabled), int(newsroom_feed_enabled), _utc_now_iso()),
        )


def list_subscribed_tenants(agency_id: str, source: str) -> list[dict[str, object]]:
    flag_column = "registry_feed_enabled" if source == REGISTRY_SOURCE else "newsroom_feed_enabled"
    with get_conn() as conn:
        rows = conn.execute(
            f"""
            SELECT t.*
            FROM tenants t
            JOIN tenant_agency_subscriptions s ON s.tenant_id = t.id
            WHERE s.agency_id = ? AND s.{flag_column} = 1
            ORDER BY t.created_at ASC
            """,
            (agency_id,),
        ).fetchall()
    return _decode_rows(rows)


def tenant_is_subscribed(tenant_id: str, agency_id: str) -> bool:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT 1 FROM tenant_agency_subscriptions WHERE tenant_id = ? AND agency_id = ? LIMIT 1",
            (tenant_id, agency_id),
        ).fetchone()
    return row is not None


def create_client(
    tenant_id: str,
    name: str,
    *,
    context: str = "",
    industry: str | None = None,
    focus_areas: list[str] | None = None,
    is_active: bool = True,
) -> dict[str, object]:
    client_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO clients (id, tenant_id, name, context, industry, focus_areas_json, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                client_id,
                tenant_id,
                name,
                context,
                industry,
                json.dumps(focus_areas or []),
                int(is_active),
                _utc_now_iso(),
            ),
        )
    client = get_client(client_id)
    assert client is not None
    return client


def get_client(client_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
    return _decode_row(row)


def list_active_clients(tenant_id: str, client_ids: list[str] | None = None) -> list[dict[str, object]]:
    query = "SELECT * FROM clients WHERE tenant_id = ? AND is_active = 1"
    params: list[object] = [tenant_id]
    if client_ids is not None:
        if not client_ids:
            return []
        query += f" AND id IN ({_placeholders(client_ids)})"
        params.extend(client_ids)
    query += " ORDER BY name ASC"
    with get_conn() as conn:
        rows = conn.execute(query, tuple(params)).fetchall()
    return _decode_rows(rows)


# --- regulatory documents ------------------------------------------------------------------------

_DOCUMENT_FIELDS = (
    "agency_id",
    "title",
    "abstract",
    "publication_date",
    "source_pdf_url",
    "source_html_url",
    "citation",
    "document_type",
)


def get_regulatory_document(document_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM regulatory_documents WHERE id = ?", (document_id,)).fetchone()
    return _decode_row(row)


def find_regulatory_document(source: str, external_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM regulatory_documents WHERE source = ? AND external_id = ?",
            (source, external_id),
        ).fetchone()
    return _decode_row(row)


def insert_regulatory_document(source: str, external_id: str, fields: dict[str, object]) -> dict[str, object] | None:
    """Insert a newly detected document.

    Returns None when the (source, external_id) pair already exists.
    """
    if source not in DOCUMENT_SOURCES:
        raise ValueError(f"Unsupported document source '{source}'.")
    document_id = str(uuid4())
    values = {name: fields.get(name) for name in _DOCUMENT_FIELDS}
    try:
        with get_conn() as conn:
            conn.execute(
                """
                INSERT INTO regulatory_documents (
                    id, source, external_id, agency_id, title, abstract, publication_date, source_pdf_url,
                    source_html_url, citation, document_type, is_significant, detected_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document_id,
                    source,
                    external_id,
                    values["agency_id"],
                    str(values["title"] or external_id),
                    values["abstract"],
                    values["publication_date"],
                    values["source_pdf_url"],
                    values["source_html_url"],
                    values["citation"],
                    values["document_type"],
                    int(bool(fields.get("is_significant"))),
                    _utc_now_iso(),
                ),
            )
    except sqlite3.IntegrityError:
        return None
    return get_regulatory_document(document_id)


def backfill_regulatory_document(document_id: str, fields: dict[str, object]) -> dict[str, object] | None:
    """Fill columns that are still empty. Populated columns are never overwritten."""
    assignments: list[str] = []
    params: list[object] = []
    for name in _DOCUMENT_FIELDS:
        value = fields.get(name)
        if value is None or value == "":
            continue
        assignments.append(f"{name} = CASE WHEN {name} IS NULL OR {name} = '' THEN ? ELSE {name} END")
        params.append(value)
    if assignments:
        params.append(document_id)
        with get_conn() as conn:
            conn.execute(f"UPDATE regulatory_documents SET {', '.join(assignments)} WHERE id = ?", tuple(params))
    return get_regulatory_document(document_id)


def list_recent_regulatory_documents(limit: int = 10) -> list[dict[str, object]]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT d.*, a.name AS agency_name
            FROM regulatory_documents d
            LEFT JOIN agencies a ON a.id = d.agency_id
            ORDER BY d.detected_at DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    return _decode_rows(rows)


def count_regulatory_documents(*, detected_since: str | None = None) -> int:
    query = "SELECT COUNT(*) FROM regulatory_documents"
    params: tuple[object, ...] = ()
    if detected_since is not None:
        query += " WHERE detected_at >= ?"
        params = (detected_since,)
    with get_conn() as conn:
        row = conn.execute(query, params).fetchone()
    return int(row[0]) if row is not None else 0


def list_tenant_documents(
    tenant_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    status: str | None = None,
) -> list[dict[str, object]]:
    query = """
            SELECT
                d.*,
                a.name AS agency_name,
                b.id AS base_output_id,
                b.status AS base_output_status,
                b.output_type AS base_output_type
            FROM regulatory_documents d
            JOIN tenant_agency_subscriptions s ON s.agency_id = d.agency_id AND s.tenant_id = ?
            LEFT JOIN agencies a ON a.id = d.agency_id
            LEFT JOIN base_outputs b ON b.regulatory_document_id = d.id AND b.tenant_id = s.tenant_id
    """
    params: list[object] = [tenant_id]
    if status is not None:
        query += " WHERE b.status = ?"
        params.append(status)
    query += " ORDER BY d.publication_date DESC, d.detected_at DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    with get_conn() as conn:
        rows = conn.execute(query, tuple(params)).fetchall()
    return _decode_rows(rows)


# --- base and client outputs ---------------------------------------------------------------------


def get_base_output(base_output_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM base_outputs WHERE id = ?", (base_output_id,)).fetchone()
    return _decode_row(row)


def find_base_output(document_id: str, tenant_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM base_outputs WHERE regulatory_document_id = ? AND tenant_id = ?",
            (document_id, tenant_id),
        ).fetchone()
    return _decode_row(row)


def insert_base_output(document_id: str, tenant_id: str, output_type: str, status: str) -> dict[str, object] | None:
    """Create the (document, tenant) artifact. Returns None when it already exists."""
    base_output_id = str(uuid4())
    try:
        with get_conn() as conn:
            conn.execute(
                """
                INSERT INTO base_outputs (id, regulatory_document_id, tenant_id, output_type, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (base_output_id, document_id, tenant_id, output_type, status, _utc_now_iso()),
            )
    except sqlite3.IntegrityError:
        return None
    return get_base_output(base_output_id)


def list_pending_base_output_ids(limit: int) -> list[str]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT b.id
            FROM base_outputs b
            JOIN tenants t ON t.id = b.tenant_id
            WHERE b.status = 'pending' AND t.auto_process = 1
            ORDER BY b.created_at ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    return [str(row["id"]) for row in rows]


def get_client_output(client_output_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM client_outputs WHERE id = ?", (client_output_id,)).fetchone()
    return _decode_row(row)


def find_client_output(base_output_id: str, client_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM client_outputs WHERE base_output_id = ? AND client_id = ?",
            (base_output_id, client_id),
        ).fetchone()
    return _decode_row(row)


def list_client_outputs(base_output_id: str) -> list[dict[str, object]]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT o.*, c.name AS client_name
            FROM client_outputs o
            JOIN clients c ON c.id = o.client_id
            WHERE o.base_output_id = ?
            ORDER BY c.name ASC
            """,
            (base_output_id,),
        ).fetchall()
    return _decode_rows(rows)


def insert_client_output_placeholders(base_output_id: str, client_ids: list[str]) -> int:
    """Create unselected pending rows, skipping clients that already have one."""
    if not client_ids:
        return 0
    now = _utc_now_iso()
    rows = [(str(uuid4()), base_output_id, client_id, now) for client_id in client_ids]
    with get_conn() as conn:
        before = conn.total_changes
        conn.executemany(
            """
            INSERT OR IGNORE INTO client_outputs (id, base_output_id, client_id, status, created_at)
            VALUES (?, ?, ?, 'pending', ?)
            """,
            rows,
        )
        return conn.total_changes - before


def select_client_output(base_output_id: str, client_id: str, selected_by: str | None) -> dict[str, object]:
    insert_client_output_placeholders(base_output_id, [client_id])
    with get_conn() as conn:
        conn.execute(
            """
            UPDATE client_outputs
            SET selected_for_generation = 1, selected_by = ?, selected_at = ?
            WHERE base_output_id = ? AND client_id = ?
            """,
            (selected_by, _utc_now_iso(), base_output_id, client_id),
        )
    row = find_client_output(base_output_id, client_id)
    assert row is not None
    return row


def _require_artifact_table(table: str) -> str:
    if table not in _ARTIFACT_TABLES:
        raise ValueError(f"Unsupported artifact table '{table}'.")
    return table


def claim_artifact(table: str, artifact_id: str) -> bool:
    """Compare-and-set into `processing`. False means another worker holds it or the row is terminal."""
    table = _require_artifact_table(table)
    with get_conn() as conn:
        cursor = conn.execute(
            f"""
            UPDATE {table}
            SET status = 'processing', processing_started_at = ?, processing_completed_at = NULL, error_message = NULL
            WHERE id = ? AND status IN ({_placeholders(CLAIMABLE_STATUSES)})
            """,
            (_utc_now_iso(), artifact_id, *CLAIMABLE_STATUSES),
        )
        return cursor.rowcount == 1


def complete_artifact(
    table: str,
    artifact_id: str,
    *,
    output_path: str,
    source_text: str,
    model_used: str | None,
    tokens_input: int | None,
    tokens_output: int | None,
) -> bool:
    table = _require_artifact_table(table)
    with get_conn() as conn:
        cursor = conn.execute(
            f"""
            UPDATE {table}
            SET status = 'complete', output_path = ?, source_text = ?, model_used = ?, tokens_input = ?,
                tokens_output = ?, processing_completed_at = ?, error_message = NULL
            WHERE id = ? AND status = 'processing'
            """,
            (output_path, source_text, model_used, tokens_input, tokens_output, _utc_now_iso(), artifact_id),
        )
        return cursor.rowcount == 1


def fail_artifact(table: str, artifact_id: str, error_message: str) -> bool:
    table = _require_artifact_table(table)
    with get_conn() as conn:
        cursor = conn.execute(
            f"""
            UPDATE {table}
            SET status = 'failed', error_message = ?, processing_completed_at = ?
            WHERE id = ? AND status = 'processing'
            """,
            (error_message, _utc_now_iso(), artifact_id),
        )
        return cursor.rowcount == 1


def reset_artifact(table: str, artifact_id: str, *, from_statuses: tuple[str, ...] = RESETTABLE_STATUSES) -> bool:
    table = _require_artifact_table(table)
    with get_conn() as conn:
        cursor = conn.execute(
            f"""
            UPDATE {table}
            SET status = 'pending', output_path = NULL, error_message = NULL,
                processing_started_at = NULL, processing_completed_at = NULL
            WHERE id = ? AND status IN ({_placeholders(from_statuses)})
            """,
            (artifact_id, *from_statuses),
        )
        return cursor.rowcount == 1


# --- conversion jobs -----------------------------------------------------------------------------


def create_conversion_job(owner_id: str, input_filename: str, input_path: str, input_size_bytes: int) -> dict[str, object]:
    job_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO conversion_jobs (id, owner_id, status, input_filename, input_path, input_size_bytes, created_at)
            VALUES (?, ?, 'pending', ?, ?, ?, ?)
            """,
            (job_id, owner_id, input_filename, input_path, input_size_bytes, _utc_now_iso()),
        )
    job = get_conversion_job(job_id)
    assert job is not None
    return job


def get_conversion_job(job_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM conversion_jobs WHERE id = ?", (job_id,)).fetchone()
    return _decode_row(row)


def list_conversion_jobs(owner_id: str | None = None, *, limit: int = 50) -> list[dict[str, object]]:
    query = "SELECT * FROM conversion_jobs"
    params: list[object] = []
    if owner_id is not None:
        query += " WHERE owner_id = ?"
        params.append(owner_id)
    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)
    with get_conn() as conn:
        rows = conn.execute(query, tuple(params)).fetchall()
    return _decode_rows(rows)


def oldest_pending_conversion_job_id() -> str | None:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT id FROM conversion_jobs WHERE status = 'pending' ORDER BY created_at ASC LIMIT 1"
        ).fetchone()
    return str(row["id"]) if row is not None else None


def claim_conversion_job(job_id: str) -> bool:
    with get_conn() as conn:
        cursor = conn.execute(
            """
            UPDATE conversion_jobs
            SET status = 'processing', processing_started_at = ?, error_message = NULL
            WHERE id = ? AND status = 'pending'
            """,
            (_utc_now_iso(), job_id),
        )
        return cursor.rowcount == 1


def store_conversion_job_text(job_id: str, extracted_text: str, page_count: int) -> None:
    with get_conn() as conn:
        conn.execute(
            "UPDATE conversion_jobs SET extracted_text = ?, page_count = ? WHERE id = ?",
            (extracted_text, page_count, job_id),
        )


def complete_conversion_job(job_id: str, *, output_filename: str, output_path: str, output_size_bytes: int) -> None:
    with get_conn() as conn:
        conn.execute(
            """
            UPDATE conversion_jobs
            SET status = 'complete', output_filename = ?, output_path = ?, output_size_bytes = ?,
                processing_completed_at = ?
            WHERE id = ?
            """,
            (output_filename, output_path, output_size_bytes, _utc_now_iso(), job_id),
        )


def fail_conversion_job(job_id: str, error_message: str) -> None:
    with get_conn() as conn:
        conn.execute(
            """
            UPDATE conversion_jobs
            SET status = 'failed', error_message = ?, processing_completed_at = ?
            WHERE id = ?
            """,
            (error_message, _utc_now_iso(), job_id),
        )


# --- monitor settings ----------------------------------------------------------------------------

_MONITOR_UPDATABLE = {
    "is_enabled": "is_enabled",
    "agency_slugs": "agency_slugs_json",
    "document_types": "document_types_json",
    "only_significant": "only_significant",
    "auto_process_new": "auto_process_new",
    "initial_document_count": "initial_document_count",
    "poll_document_count": "poll_document_count",
}


def get_monitor_settings() -> dict[str, object]:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM monitor_settings WHERE id = ?", (_MONITOR_SETTINGS_ID,)).fetchone()
    decoded = _decode_row(row)
    if decoded is None:
        raise RuntimeError("Monitor settings row is missing; run init_db().")
    return decoded


def update_monitor_settings(changes: dict[str, object]) -> dict[str, object]:
    assignments: list[str] = []
    params: list[object] = []
    for key, value in changes.items():
        column = _MONITOR_UPDATABLE.get(key)
        if column is None:
            raise ValueError(f"Unknown monitor setting '{key}'.")
        if column.endswith("_json"):
            value = json.dumps(list(value or []))
        elif isinstance(value, bool):
            value = int(value)
        assignments.append(f"{column} = ?")
        params.append(value)
    assignments.append("updated_at = ?")
    params.append(_utc_now_iso())
    params.append(_MONITOR_SETTINGS_ID)
    with get_conn() as conn:
        conn.execute(f"UPDATE monitor_settings SET {', '.join(assignments)} WHERE id = ?", tuple(params))
    return get_monitor_settings()


def record_poll_result(*, status: str, documents_found: int | None, mark_initialized: bool) -> None:
    with get_conn() as conn:
        conn.execute(
            """
            UPDATE monitor_settings
            SET last_poll_at = ?, last_poll_status = ?, last_poll_documents_found = COALESCE(?, last_poll_documents_found),
                initialized = CASE WHEN ? THEN 1 ELSE initialized END, updated_at = ?
            WHERE id = ?
            """,
            (
                _utc_now_iso(),
                status,
                documents_found,
                int(mark_initialized),
                _utc_now_iso(),
                _MONITOR_SETTINGS_ID,
            ),
        )
