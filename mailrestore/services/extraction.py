from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
import logging
from typing import Any, Callable, Iterable, Literal, Protocol, Sequence

from sqlalchemy import Table, func, or_, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

from mailrestore.core.errors import ExtractionError, ScopeNotFoundError
from mailrestore.domain import schema
from mailrestore.domain.scope import Scope


logger = logging.getLogger(__name__)

Flavor = Literal["mysql", "sqlite"]
StatementMode = Literal["upsert", "ignore", "replace"]
MatchOperator = Literal["=", "LIKE"]


def flavor_for(engine: Engine) -> Flavor:
    # Statements target the live dialect; MariaDB reports itself as mysql.
    return "sqlite" if engine.dialect.name == "sqlite" else "mysql"


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def quote_literal(value: Any, flavor: Flavor = "mysql") -> str:
    """Render a Python value as a SQL literal.

    The mysql flavor follows QUOTE() escaping (backslash, quote, NUL and ^Z);
    the sqlite flavor only doubles single quotes.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "X'" + bytes(value).hex() + "'"
    if isinstance(value, datetime):
        value = value.isoformat(sep=" ")
    elif isinstance(value, (date, time)):
        value = value.isoformat()
    elif isinstance(value, timedelta):
        # MySQL TIME columns come back from PyMySQL as timedelta.
        total = int(value.total_seconds())
        sign = "-" if total < 0 else ""
        hours, remainder = divmod(abs(total), 3600)
        minutes, seconds = divmod(remainder, 60)
        value = f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"
    text = str(value)
    if flavor == "mysql":
        text = (
            text.replace("\\", "\\\\")
            .replace("'", "\\'")
            .replace("\x00", "\\0")
            .replace("\x1a", "\\Z")
        )
    else:
        text = text.replace("'", "''")
    return f"'{text}'"


class ScopeFilter(Protocol):
    # A row filter that both queries (SQLAlchemy) and renders (SQL text) identically.
    def clause(self, table: Table) -> ColumnElement[bool]:
        ...

    def render(self, flavor: Flavor) -> str:
        ...


@dataclass(frozen=True)
class Match:
    column: str
    operator: MatchOperator
    value: str

    def clause(self, table: Table) -> ColumnElement[bool]:
        column = table.c[self.column]
        if self.operator == "LIKE":
            return column.like(self.value)
        return column == self.value

    def render(self, flavor: Flavor) -> str:
        return f"{quote_identifier(self.column)} {self.operator} {quote_literal(self.value, flavor)}"


@dataclass(frozen=True)
class AnyOf:
    filters: tuple[ScopeFilter, ...]

    def clause(self, table: Table) -> ColumnElement[bool]:
        return or_(*(item.clause(table) for item in self.filters))

    def render(self, flavor: Flavor) -> str:
        return "(" + " OR ".join(item.render(flavor) for item in self.filters) + ")"


@dataclass(frozen=True)
class InFolders:
    # SOGo child rows belong to a scope through the folder registry.
    folders: ScopeFilter

    def clause(self, table: Table) -> ColumnElement[bool]:
        folder_ids = select(schema.sogo_folder_info.c.c_folder_id).where(
            self.folders.clause(schema.sogo_folder_info)
        )
        return table.c.c_folder_id.in_(folder_ids)

    def render(self, flavor: Flavor) -> str:
        return (
            f"{quote_identifier('c_folder_id')} IN (SELECT {quote_identifier('c_folder_id')} "
            f"FROM {quote_identifier(schema.sogo_folder_info.name)} WHERE {self.folders.render(flavor)})"
        )


@dataclass(frozen=True)
class TablePlan:
    """How one table's in-scope rows become restore statements.

    upsert keys on the table's natural unique key, ignore is for pure
    association rows, and replace clears the scope's live rows first because
    the rows have no identity that is stable across backups.
    """

    table: Table
    mode: StatementMode
    where: Callable[[Scope], ScopeFilter]
    update_columns: tuple[str, ...] = ()


def _eq(column: str) -> Callable[[Scope], ScopeFilter]:
    return lambda scope: Match(column, "=", scope.identifier)


def _in_domain(column: str) -> Callable[[Scope], ScopeFilter]:
    return lambda scope: Match(column, "LIKE", f"%@{scope.domain}")


def _address(column: str) -> Callable[[Scope], ScopeFilter]:
    # Domain scope matches every address of the domain, mailbox scope the address itself.
    def build(scope: Scope) -> ScopeFilter:
        if scope.is_mailbox:
            return Match(column, "=", scope.identifier)
        return Match(column, "LIKE", f"%@{scope.domain}")

    return build


def _mailbox_aliases(scope: Scope) -> ScopeFilter:
    # A mailbox is one recipient among many in the comma-joined goto list, so
    # containment is tested on the whole string. This also catches addresses that
    # merely contain the mailbox as a substring; kept deliberately.
    return AnyOf((Match("address", "=", scope.identifier), Match("goto", "LIKE", f"%{scope.identifier}%")))


def _domain_aliases(scope: Scope) -> ScopeFilter:
    return AnyOf((Match("target_domain", "=", scope.domain), Match("alias_domain", "=", scope.domain)))


_DOMAIN_UPDATES = (
    "description",
    "aliases",
    "mailboxes",
    "defquota",
    "maxquota",
    "quota",
    "relayhost",
    "backupmx",
    "gal",
    "relay_all_recipients",
    "relay_unknown_only",
    "active",
)
_MAILBOX_UPDATES = (
    "password",
    "name",
    "description",
    "mailbox_path_prefix",
    "quota",
    "attributes",
    "custom_attributes",
    "kind",
    "multiple_bookings",
    "authsource",
    "active",
)
_ALIAS_UPDATES = (
    "goto",
    "modified",
    "private_comment",
    "public_comment",
    "sogo_visible",
    "sender_allowed",
    "active",
)
_USER_ACL_UPDATES = tuple(
    column.name for column in schema.user_acl.columns if column.name != "username"
)


def _sogo_plans(path: Callable[[Scope], ScopeFilter], uid: Callable[[Scope], ScopeFilter]) -> list[TablePlan]:
    # Folder registry first; deletes run in reverse so children go before their folders.
    def in_folders(scope: Scope) -> ScopeFilter:
        return InFolders(path(scope))

    return [
        TablePlan(
            schema.sogo_folder_info,
            "replace",
            path,
            ("c_foldername", "c_location", "c_quick_location", "c_acl_location", "c_folder_type"),
        ),
        TablePlan(schema.sogo_user_profile, "replace", uid, ("c_defaults", "c_settings")),
        TablePlan(schema.sogo_alarms_folder, "replace", uid),
        TablePlan(schema.sogo_acl, "replace", in_folders),
        TablePlan(
            schema.sogo_quick_contact,
            "replace",
            in_folders,
            ("c_givenname", "c_cn", "c_sn", "c_mail", "c_o", "c_telephonenumber", "c_component"),
        ),
        TablePlan(
            schema.sogo_quick_appointment,
            "replace",
            in_folders,
            ("c_startdate", "c_enddate", "c_title", "c_participants", "c_status", "c_component"),
        ),
        TablePlan(
            schema.sogo_store,
            "replace",
            in_folders,
            ("c_content", "c_lastmodified", "c_version", "c_deleted"),
        ),
    ]


DOMAIN_PLANS: tuple[TablePlan, ...] = (
    TablePlan(schema.domain, "upsert", _eq("domain"), _DOMAIN_UPDATES),
    TablePlan(schema.mailbox, "upsert", lambda scope: Match("domain", "=", scope.domain), _MAILBOX_UPDATES),
    TablePlan(schema.alias, "upsert", lambda scope: Match("domain", "=", scope.domain), _ALIAS_UPDATES),
    TablePlan(schema.alias_domain, "upsert", _domain_aliases, ("target_domain", "active")),
    TablePlan(schema.sender_acl, "replace", _in_domain("logged_in_as")),
    TablePlan(schema.tls_policy_override, "upsert", _eq("dest"), ("policy", "parameters", "active")),
    TablePlan(schema.bcc_maps, "replace", lambda scope: Match("domain", "=", scope.domain)),
    TablePlan(
        schema.domain_wide_footer,
        "upsert",
        _eq("domain"),
        ("html", "plain", "mbox_exclude", "alias_domain_exclude", "skip_replies"),
    ),
    TablePlan(schema.tags_domain, "ignore", _eq("domain")),
    TablePlan(schema.tags_mailbox, "ignore", _in_domain("username")),
    *_sogo_plans(_address("c_path2"), _address("c_uid")),
)

MAILBOX_PLANS: tuple[TablePlan, ...] = (
    TablePlan(schema.mailbox, "upsert", _eq("username"), _MAILBOX_UPDATES),
    TablePlan(schema.alias, "upsert", _mailbox_aliases, _ALIAS_UPDATES),
    TablePlan(schema.sender_acl, "replace", _eq("logged_in_as")),
    TablePlan(schema.user_acl, "upsert", _eq("username"), _USER_ACL_UPDATES),
    TablePlan(schema.app_passwd, "replace", _eq("mailbox")),
    TablePlan(schema.sieve_filters, "replace", _eq("username")),
    TablePlan(schema.tags_mailbox, "ignore", _eq("username")),
    *_sogo_plans(_address("c_path2"), _address("c_uid")),
)

# Pre-restore snapshots cover the primary entity and its direct aliases.
DOMAIN_SNAPSHOT_PLANS: tuple[TablePlan, ...] = DOMAIN_PLANS[:3]
MAILBOX_SNAPSHOT_PLANS: tuple[TablePlan, ...] = (
    MAILBOX_PLANS[0],
    TablePlan(schema.alias, "upsert", _eq("address"), _ALIAS_UPDATES),
)


def plans_for(scope: Scope) -> tuple[TablePlan, ...]:
    return MAILBOX_PLANS if scope.is_mailbox else DOMAIN_PLANS


def snapshot_plans_for(scope: Scope) -> tuple[TablePlan, ...]:
    return MAILBOX_SNAPSHOT_PLANS if scope.is_mailbox else DOMAIN_SNAPSHOT_PLANS


def primary_table(scope: Scope) -> Table:
    return schema.mailbox if scope.is_mailbox else schema.domain


def primary_filter(scope: Scope) -> ScopeFilter:
    return plans_for(scope)[0].where(scope)


@dataclass(frozen=True)
class ExtractionResult:
    # Ordered, idempotent statements for a scope plus per-table row counts.
    scope: Scope
    statements: list[str]
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def primary_found(self) -> bool:
        return self.counts.get(primary_table(self.scope).name, 0) > 0

    def count(self, table: Table) -> int:
        return self.counts.get(table.name, 0)


def render_delete(plan: TablePlan, scope: Scope, flavor: Flavor) -> str:
    return f"DELETE FROM {quote_identifier(plan.table.name)} WHERE {plan.where(scope).render(flavor)}"


def render_insert(plan: TablePlan, row: dict[str, Any], flavor: Flavor) -> str:
    # One row, one statement; keyed on the natural key so replays converge.
    columns = [column.name for column in schema.restorable_columns(plan.table)]
    column_sql = ", ".join(quote_identifier(name) for name in columns)
    values_sql = ", ".join(quote_literal(row[name], flavor) for name in columns)
    table_sql = quote_identifier(plan.table.name)
    if plan.mode == "ignore":
        verb = "INSERT IGNORE INTO" if flavor == "mysql" else "INSERT OR IGNORE INTO"
        return f"{verb} {table_sql} ({column_sql}) VALUES ({values_sql})"
    statement = f"INSERT INTO {table_sql} ({column_sql}) VALUES ({values_sql})"
    if not plan.update_columns:
        return statement
    if flavor == "mysql":
        updates = ", ".join(
            f"{quote_identifier(name)}=VALUES({quote_identifier(name)})" for name in plan.update_columns
        )
        return f"{statement} ON DUPLICATE KEY UPDATE {updates}"
    keys = ", ".join(quote_identifier(column.name) for column in schema.identity_columns(plan.table))
    updates = ", ".join(
        f"{quote_identifier(name)}=excluded.{quote_identifier(name)}" for name in plan.update_columns
    )
    return f"{statement} ON CONFLICT ({keys}) DO UPDATE SET {updates}"


def _fetch_rows(connection: Connection, plan: TablePlan, scope: Scope) -> list[dict[str, Any]]:
    columns = schema.restorable_columns(plan.table)
    query = (
        select(*columns)
        .where(plan.where(scope).clause(plan.table))
        .order_by(*schema.ordering_columns(plan.table))
    )
    return [dict(row._mapping) for row in connection.execute(query)]


def render_plans(
    engine: Engine,
    scope: Scope,
    plans: Sequence[TablePlan],
    *,
    flavor: Flavor,
) -> ExtractionResult:
    # Read every plan's rows in one read-only pass and render them in plan order.
    deletes: list[str] = []
    inserts: list[str] = []
    counts: dict[str, int] = {}
    try:
        with engine.connect() as connection:
            for plan in plans:
                rows = _fetch_rows(connection, plan, scope)
                counts[plan.table.name] = counts.get(plan.table.name, 0) + len(rows)
                inserts.extend(render_insert(plan, row, flavor) for row in rows)
    except SQLAlchemyError as exc:
        raise ExtractionError(
            f"scope query failed for {scope.label} {scope.identifier}: {exc}",
            remediation="Check that the backup matches the mailcow schema of the live installation.",
        ) from exc
    for plan in reversed(plans):
        if plan.mode == "replace":
            deletes.append(render_delete(plan, scope, flavor))
    return ExtractionResult(scope=scope, statements=deletes + inserts, counts=counts)


def discover_identifiers(engine: Engine, scope: Scope) -> list[str]:
    # List every primary entity present so a mistyped scope can be corrected.
    column = schema.mailbox.c.username if scope.is_mailbox else schema.domain.c.domain
    try:
        with engine.connect() as connection:
            return [str(value) for value in connection.execute(select(column).order_by(column)).scalars()]
    except SQLAlchemyError as exc:
        logger.warning("scope_discovery_failed scope=%s error=%s", scope.identifier, exc)
        return []


def extract_scope(engine: Engine, scope: Scope, *, flavor: Flavor) -> ExtractionResult:
    """Compute the restore statements for a scope from the staged instance.

    Raises ScopeNotFoundError, listing what the backup does contain, when the
    primary entity is missing.
    """
    result = render_plans(engine, scope, plans_for(scope), flavor=flavor)
    if not result.primary_found:
        alternatives = discover_identifiers(engine, scope)
        kind = "mailboxes" if scope.is_mailbox else "domains"
        raise ScopeNotFoundError(
            f"{scope.label} {scope.identifier} not found in backup",
            remediation=f"Check the address; the backup contains {len(alternatives)} {kind}.",
            alternatives=alternatives,
        )
    logger.info(
        "scope_extracted scope=%s statements=%s tables=%s",
        scope.identifier,
        len(result.statements),
        {name: count for name, count in result.counts.items() if count},
    )
    return result


def count_rows(engine: Engine, table: Table, scope_filter: ScopeFilter) -> int:
    with engine.connect() as connection:
        query = select(func.count()).select_from(table).where(scope_filter.clause(table))
        return int(connection.execute(query).scalar_one())


def statements_text(statements: Iterable[str]) -> str:
    return "".join(f"{statement};\n" for statement in statements)
