from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from tenantplane.core.errors import ConfigError, InvalidIdentifierError
from tenantplane.persistence.clients import DatabaseClientFactory
from tenantplane.persistence.db import DbHandle
from tenantplane.services.state import SchemaAppliedSet


logger = logging.getLogger(__name__)


# Minimal tenant-scoped tables every routed database needs before handlers touch it.
TENANT_TABLES: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        username TEXT,
        avatar_url TEXT,
        tenant_id INTEGER DEFAULT 0,
        points INTEGER DEFAULT 0,
        created_at TEXT,
        uid TEXT,
        invite_code TEXT,
        virtual_currency INTEGER DEFAULT 0,
        invitation_points INTEGER DEFAULT 0,
        free_posts_count INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS posts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL DEFAULT 0,
        author_id TEXT NOT NULL,
        content TEXT,
        images TEXT,
        is_ad INTEGER DEFAULT 0,
        is_pinned INTEGER DEFAULT 0,
        status TEXT DEFAULT 'approved',
        rejection_reason TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        post_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        content TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS likes (
        post_id INTEGER NOT NULL,
        user_id TEXT NOT NULL
    )
    """,
)

# Remaining tables a freshly provisioned instance carries so it is never half-built.
PROVISION_TABLES: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        content TEXT,
        is_read INTEGER DEFAULT 0,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        tenant_id INTEGER NOT NULL,
        key TEXT NOT NULL,
        value TEXT,
        name TEXT,
        description TEXT,
        type TEXT,
        PRIMARY KEY (tenant_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS page_content (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL DEFAULT 0,
        page TEXT NOT NULL,
        section TEXT NOT NULL,
        position INTEGER DEFAULT 0,
        content TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS points_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        change_amount INTEGER NOT NULL,
        reason TEXT NOT NULL,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shop_products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL DEFAULT 0,
        name TEXT,
        description TEXT,
        image_url TEXT,
        price INTEGER NOT NULL DEFAULT 0,
        stock INTEGER NOT NULL DEFAULT -1,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shop_redemptions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL,
        product_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        points_spent INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        notes TEXT,
        product_name TEXT,
        product_image_url TEXT,
        product_price INTEGER,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invitations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id INTEGER NOT NULL DEFAULT 0,
        invitee_id TEXT NOT NULL,
        inviter_id TEXT NOT NULL,
        created_at TEXT
    )
    """,
)

PROVISION_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS ix_posts_tenant_created ON posts(tenant_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS ix_posts_author ON posts(author_id)",
    "CREATE INDEX IF NOT EXISTS ix_comments_post ON comments(post_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_likes_post_user ON likes(post_id, user_id)",
    "CREATE INDEX IF NOT EXISTS ix_notifications_user_read ON notifications(user_id, is_read)",
    "CREATE INDEX IF NOT EXISTS ix_page_content_page ON page_content(tenant_id, page, section)",
    "CREATE INDEX IF NOT EXISTS ix_points_history_user ON points_history(user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS ix_invitations_inviter ON invitations(inviter_id)",
)


@dataclass(frozen=True)
class ColumnMigration:
    # Additive only: columns introduced by later features on databases created before them.
    table: str
    column: str
    type: str
    default: Any = None


COLUMN_MIGRATIONS: tuple[ColumnMigration, ...] = (
    ColumnMigration("profiles", "uid", "TEXT"),
    ColumnMigration("profiles", "invite_code", "TEXT"),
    ColumnMigration("profiles", "virtual_currency", "INTEGER", 0),
    ColumnMigration("profiles", "invitation_points", "INTEGER", 0),
    ColumnMigration("profiles", "free_posts_count", "INTEGER", 0),
    ColumnMigration("posts", "is_ad", "INTEGER", 0),
    ColumnMigration("posts", "is_pinned", "INTEGER", 0),
    ColumnMigration("posts", "status", "TEXT", "approved"),
    ColumnMigration("posts", "rejection_reason", "TEXT"),
    ColumnMigration("posts", "updated_at", "TEXT"),
)


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_COLUMN_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_ ]*(\(\d+(,\s*\d+)?\))?$")
_IGNORABLE_MARKERS = ("already exists", "duplicate column")


def is_ignorable_schema_error(exc: BaseException) -> bool:
    # Repeated or concurrent migrations surface as "already exists" style failures.
    message = str(exc).lower()
    return any(marker in message for marker in _IGNORABLE_MARKERS)


def _identifier(value: str) -> str:
    if not _IDENTIFIER_RE.match(value or ""):
        raise InvalidIdentifierError(f"invalid SQL identifier: {value!r}")
    return value


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


def add_column_sql(table: str, column: str, column_type: str, default: Any = None) -> str:
    if not _COLUMN_TYPE_RE.match(column_type or ""):
        raise InvalidIdentifierError(f"invalid column type: {column_type!r}")
    sql = f"ALTER TABLE {_identifier(table)} ADD COLUMN {_identifier(column)} {column_type}"
    if default is not None:
        sql += f" DEFAULT {_literal(default)}"
    return sql


@dataclass
class BootstrapReport:
    applied: int = 0
    ignored: int = 0
    failed: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.applied + self.ignored + len(self.failed)


async def _run_statement(handle: DbHandle, sql: str, report: BootstrapReport) -> None:
    # Each statement stands alone; one failure never aborts the rest of the list.
    try:
        await handle.execute(sql)
    except Exception as exc:  # noqa: BLE001 - ignorable or logged schema drift
        if is_ignorable_schema_error(exc):
            report.ignored += 1
            logger.debug("schema_statement_ignored sql=%s error=%s", _head(sql), exc)
        else:
            report.failed.append(_head(sql))
            logger.warning("schema_statement_failed sql=%s error=%s", _head(sql), exc)
        return
    report.applied += 1


def _head(sql: str) -> str:
    return " ".join(sql.split())[:80]


async def ensure_column(
    handle: DbHandle,
    table: str,
    column: str,
    column_type: str,
    default: Any = None,
) -> bool:
    """Best-effort additive column; returns True only when the column was actually added."""
    sql = add_column_sql(table, column, column_type, default)
    report = BootstrapReport()
    await _run_statement(handle, sql, report)
    return report.applied == 1


class SchemaProvisioner:
    """Idempotent, additive schema bootstrap for whichever database a tenant resolves to."""

    def __init__(self, clients: DatabaseClientFactory, applied: SchemaAppliedSet) -> None:
        self._clients = clients
        self._applied = applied

    async def ensure_tenant_schema(self, tenant_id: int) -> None:
        if tenant_id in self._applied:
            return
        async with self._applied.lock_for(tenant_id):
            # A concurrent request may have finished the bootstrap while we waited.
            if tenant_id in self._applied:
                return
            try:
                handle = await self._clients.client_for(tenant_id)
            except ConfigError:
                raise
            except Exception as exc:  # noqa: BLE001 - retried on the next request
                logger.warning("tenant_schema_handle_failed tenant_id=%s error=%s", tenant_id, exc)
                return
            report = await self.apply(handle, TENANT_TABLES, migrations=COLUMN_MIGRATIONS)
            # Mark regardless of outcome; statements are safe to re-run after a restart.
            self._applied.mark(tenant_id)
            logger.info(
                "tenant_schema_ensured tenant_id=%s applied=%s ignored=%s failed=%s",
                tenant_id,
                report.applied,
                report.ignored,
                len(report.failed),
            )

    async def apply(
        self,
        handle: DbHandle,
        statements: tuple[str, ...],
        *,
        migrations: tuple[ColumnMigration, ...] = (),
    ) -> BootstrapReport:
        report = BootstrapReport()
        for sql in statements:
            await _run_statement(handle, sql, report)
        for migration in migrations:
            sql = add_column_sql(migration.table, migration.column, migration.type, migration.default)
            await _run_statement(handle, sql, report)
        return report

    async def bootstrap(self, handle: DbHandle) -> BootstrapReport:
        # Full provisioning bootstrap: every tenant table and index, then the column backfills.
        return await self.apply(
            handle,
            TENANT_TABLES + PROVISION_TABLES + PROVISION_INDEXES,
            migrations=COLUMN_MIGRATIONS,
        )

    async def ensure_column(
        self,
        tenant_id: int,
        table: str,
        column: str,
        column_type: str,
        default: Any = None,
    ) -> bool:
        # Opportunistic backfill from handlers; failures never reach the caller.
        # Invalid identifiers are caller bugs and still raise.
        add_column_sql(table, column, column_type, default)
        try:
            handle = await self._clients.client_for(tenant_id)
            return await ensure_column(handle, table, column, column_type, default)
        except ConfigError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("ensure_column_skipped tenant_id=%s table=%s column=%s error=%s", tenant_id, table, column, exc)
            return False

    def forget(self, tenant_id: int) -> None:
        self._applied.forget(tenant_id)
