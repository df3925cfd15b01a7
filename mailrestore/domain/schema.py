from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    MetaData,
    SmallInteger,
    String,
    Table,
    Text,
    UniqueConstraint,
)


# Read-side view of the mailcow tables a scoped restore touches. The live schema is
# owned by mailcow itself; these definitions only name the columns we copy.
metadata = MetaData()


def _surrogate_id() -> Column:
    # Auto-increment ids differ between backup and live, so they are never copied.
    return Column("id", Integer, primary_key=True, autoincrement=True, info={"skip_restore": True})


domain = Table(
    "domain",
    metadata,
    Column("domain", String(255), primary_key=True),
    Column("description", String(255)),
    Column("aliases", Integer),
    Column("mailboxes", Integer),
    Column("defquota", BigInteger),
    Column("maxquota", BigInteger),
    Column("quota", BigInteger),
    Column("relayhost", String(255)),
    Column("backupmx", SmallInteger),
    Column("gal", SmallInteger),
    Column("relay_all_recipients", SmallInteger),
    Column("relay_unknown_only", SmallInteger),
    Column("created", DateTime),
    Column("modified", DateTime),
    Column("active", SmallInteger),
)

mailbox = Table(
    "mailbox",
    metadata,
    Column("username", String(255), primary_key=True),
    Column("password", String(255)),
    Column("name", String(255)),
    Column("description", String(255)),
    Column("mailbox_path_prefix", String(150)),
    Column("quota", BigInteger),
    Column("local_part", String(255)),
    Column("domain", String(255)),
    Column("attributes", Text),
    Column("custom_attributes", Text),
    Column("kind", String(100)),
    Column("multiple_bookings", Integer),
    Column("authsource", String(255)),
    Column("created", DateTime),
    Column("modified", DateTime),
    Column("active", SmallInteger),
)

alias = Table(
    "alias",
    metadata,
    _surrogate_id(),
    Column("address", String(255), nullable=False),
    Column("goto", Text),
    Column("domain", String(255)),
    Column("created", DateTime),
    Column("modified", DateTime),
    Column("private_comment", Text),
    Column("public_comment", Text),
    Column("sogo_visible", SmallInteger),
    Column("internal", SmallInteger),
    Column("sender_allowed", SmallInteger),
    Column("active", SmallInteger),
    UniqueConstraint("address"),
)

alias_domain = Table(
    "alias_domain",
    metadata,
    Column("alias_domain", String(255), primary_key=True),
    Column("target_domain", String(255)),
    Column("created", DateTime),
    Column("modified", DateTime),
    Column("active", SmallInteger),
)

sender_acl = Table(
    "sender_acl",
    metadata,
    _surrogate_id(),
    Column("logged_in_as", String(255)),
    Column("send_as", String(255)),
    Column("external", SmallInteger),
)

tls_policy_override = Table(
    "tls_policy_override",
    metadata,
    _surrogate_id(),
    Column("dest", String(255), nullable=False),
    Column("policy", String(40)),
    Column("parameters", String(255)),
    Column("created", DateTime),
    Column("modified", DateTime),
    Column("active", SmallInteger),
    UniqueConstraint("dest"),
)

bcc_maps = Table(
    "bcc_maps",
    metadata,
    _surrogate_id(),
    Column("local_dest", String(255)),
    Column("bcc_dest", String(255)),
    Column("domain", String(255)),
    Column("type", String(20)),
    Column("created", DateTime),
    Column("modified", DateTime),
    Column("active", SmallInteger),
)

domain_wide_footer = Table(
    "domain_wide_footer",
    metadata,
    Column("domain", String(255), primary_key=True),
    Column("html", Text),
    Column("plain", Text),
    Column("mbox_exclude", Text),
    Column("alias_domain_exclude", Text),
    Column("skip_replies", SmallInteger),
)

tags_domain = Table(
    "tags_domain",
    metadata,
    Column("tag_name", String(255), primary_key=True),
    Column("domain", String(255), primary_key=True),
)

tags_mailbox = Table(
    "tags_mailbox",
    metadata,
    Column("tag_name", String(255), primary_key=True),
    Column("username", String(255), primary_key=True),
)

user_acl = Table(
    "user_acl",
    metadata,
    Column("username", String(255), primary_key=True),
    Column("spam_alias", SmallInteger),
    Column("tls_policy", SmallInteger),
    Column("spam_score", SmallInteger),
    Column("spam_policy", SmallInteger),
    Column("delimiter_action", SmallInteger),
    Column("syncjobs", SmallInteger),
    Column("eas_reset", SmallInteger),
    Column("sogo_profile_reset", SmallInteger),
    Column("pushover", SmallInteger),
    Column("quarantine", SmallInteger),
    Column("quarantine_attachments", SmallInteger),
    Column("quarantine_notification", SmallInteger),
    Column("quarantine_category", SmallInteger),
    Column("app_passwds", SmallInteger),
    Column("pw_reset", SmallInteger),
)

app_passwd = Table(
    "app_passwd",
    metadata,
    _surrogate_id(),
    Column("mailbox", String(255)),
    Column("name", String(255)),
    Column("domain", String(255)),
    Column("password", String(255)),
    Column("created", DateTime),
    Column("modified", DateTime),
    Column("imap_access", SmallInteger),
    Column("smtp_access", SmallInteger),
    Column("dav_access", SmallInteger),
    Column("eas_access", SmallInteger),
    Column("pop3_access", SmallInteger),
    Column("sieve_access", SmallInteger),
    Column("active", SmallInteger),
)

sieve_filters = Table(
    "sieve_filters",
    metadata,
    _surrogate_id(),
    Column("username", String(255)),
    Column("script_desc", String(255)),
    Column("script_name", String(20)),
    Column("script_data", Text),
    Column("filter_type", String(10)),
    Column("created", DateTime),
    Column("modified", DateTime),
)

sogo_folder_info = Table(
    "sogo_folder_info",
    metadata,
    Column("c_folder_id", Integer, primary_key=True, autoincrement=False),
    Column("c_path", String(255)),
    Column("c_path1", String(255)),
    Column("c_path2", String(255)),
    Column("c_path3", String(255)),
    Column("c_path4", String(255)),
    Column("c_foldername", String(255)),
    Column("c_location", String(2048)),
    Column("c_quick_location", String(2048)),
    Column("c_acl_location", String(2048)),
    Column("c_folder_type", String(255)),
)

sogo_store = Table(
    "sogo_store",
    metadata,
    Column("c_folder_id", Integer, primary_key=True, autoincrement=False),
    Column("c_name", String(255), primary_key=True),
    Column("c_content", Text),
    Column("c_creationdate", Integer),
    Column("c_lastmodified", Integer),
    Column("c_version", Integer),
    Column("c_deleted", Integer),
)

sogo_quick_appointment = Table(
    "sogo_quick_appointment",
    metadata,
    Column("c_folder_id", Integer, primary_key=True, autoincrement=False),
    Column("c_name", String(255), primary_key=True),
    Column("c_uid", String(1000)),
    Column("c_startdate", Integer),
    Column("c_enddate", Integer),
    Column("c_cycleenddate", Integer),
    Column("c_title", String(1000)),
    Column("c_participants", Text),
    Column("c_isallday", Integer),
    Column("c_iscycle", Integer),
    Column("c_cycleinfo", Text),
    Column("c_classification", Integer),
    Column("c_isopaque", Integer),
    Column("c_status", Integer),
    Column("c_priority", Integer),
    Column("c_location", String(255)),
    Column("c_orgmail", String(255)),
    Column("c_partmails", Text),
    Column("c_partstates", Text),
    Column("c_category", String(255)),
    Column("c_sequence", Integer),
    Column("c_component", String(10)),
    Column("c_nextalarm", Integer),
    Column("c_description", Text),
)

sogo_quick_contact = Table(
    "sogo_quick_contact",
    metadata,
    Column("c_folder_id", Integer, primary_key=True, autoincrement=False),
    Column("c_name", String(255), primary_key=True),
    Column("c_givenname", String(255)),
    Column("c_cn", String(255)),
    Column("c_sn", String(255)),
    Column("c_screenname", String(255)),
    Column("c_l", String(255)),
    Column("c_mail", Text),
    Column("c_o", String(255)),
    Column("c_ou", String(255)),
    Column("c_telephonenumber", String(255)),
    Column("c_categories", String(255)),
    Column("c_component", String(10)),
    Column("c_hascertificate", Integer),
)

sogo_acl = Table(
    "sogo_acl",
    metadata,
    Column("c_folder_id", Integer),
    Column("c_object", String(255)),
    Column("c_uid", String(255)),
    Column("c_role", String(80)),
)

sogo_alarms_folder = Table(
    "sogo_alarms_folder",
    metadata,
    Column("c_path", String(255)),
    Column("c_name", String(255)),
    Column("c_uid", String(255)),
    Column("c_recurrence_id", Integer),
    Column("c_alarm_number", Integer),
    Column("c_alarm_date", Integer),
)

sogo_user_profile = Table(
    "sogo_user_profile",
    metadata,
    Column("c_uid", String(255), primary_key=True),
    Column("c_defaults", Text),
    Column("c_settings", Text),
)

quota2 = Table(
    "quota2",
    metadata,
    Column("username", String(255), primary_key=True),
    Column("bytes", BigInteger),
    Column("messages", BigInteger),
)

quota2replica = Table(
    "quota2replica",
    metadata,
    Column("username", String(255), primary_key=True),
    Column("bytes", BigInteger),
    Column("messages", BigInteger),
)

sogo_static_view = Table(
    "_sogo_static_view",
    metadata,
    Column("c_uid", String(255), primary_key=True),
    Column("domain", String(255)),
    Column("c_name", String(255)),
    Column("c_password", String(255)),
    Column("c_cn", String(255)),
    Column("mail", String(255)),
    Column("aliases", Text),
    Column("ad_aliases", Text),
    Column("ext_acl", Text),
    Column("kind", String(100)),
    Column("multiple_bookings", Integer),
)


def restorable_columns(table: Table) -> list[Column]:
    # Columns carried into restore statements, in table order.
    return [column for column in table.columns if not column.info.get("skip_restore")]


def identity_columns(table: Table) -> list[Column]:
    # Natural key for upserts: unique constraint when the primary key is a surrogate.
    primary = [column for column in table.primary_key.columns if not column.info.get("skip_restore")]
    if primary:
        return primary
    for constraint in table.constraints:
        if isinstance(constraint, UniqueConstraint):
            return list(constraint.columns)
    return []


def ordering_columns(table: Table) -> list[Column]:
    # Deterministic row order: primary key when present, otherwise every column.
    primary = list(table.primary_key.columns)
    return primary or list(table.columns)
