from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, func, insert, select
from sqlalchemy.engine import Engine

from mailrestore.domain import schema


def create_store(path: Path) -> Engine:
    # File-backed SQLite carrying the mailcow tables a restore touches.
    engine = create_engine(f"sqlite:///{path}")
    schema.metadata.create_all(engine)
    return engine


def seed_domain(
    engine: Engine,
    domain: str,
    *,
    mailboxes: tuple[str, ...] = (),
    description: str = "",
) -> None:
    # Domain row plus, per mailbox, its self alias and one SOGo calendar with an event.
    with engine.begin() as connection:
        connection.execute(
            insert(schema.domain).values(domain=domain, description=description, quota=10240, active=1)
        )
        for local_part in mailboxes:
            username = f"{local_part}@{domain}"
            connection.execute(
                insert(schema.mailbox).values(
                    username=username,
                    password="{BLF-CRYPT}hash",
                    name=local_part.title(),
                    local_part=local_part,
                    domain=domain,
                    quota=1024,
                    kind="",
                    multiple_bookings=-1,
                    active=1,
                )
            )
            connection.execute(
                insert(schema.alias).values(address=username, goto=username, domain=domain, active=1)
            )
            folder_id = connection.execute(
                select(func.coalesce(func.max(schema.sogo_folder_info.c.c_folder_id), 0))
            ).scalar_one() + 1
            connection.execute(
                insert(schema.sogo_folder_info).values(
                    c_folder_id=folder_id,
                    c_path=f"/Users/{username}/Calendar/personal",
                    c_path1="Users",
                    c_path2=username,
                    c_path3="Calendar",
                    c_path4="personal",
                    c_foldername="Personal Calendar",
                    c_folder_type="Appointment",
                )
            )
            connection.execute(
                insert(schema.sogo_store).values(
                    c_folder_id=folder_id,
                    c_name=f"{local_part}-event.ics",
                    c_content="BEGIN:VCALENDAR\nEND:VCALENDAR",
                    c_version=0,
                    c_deleted=0,
                )
            )
            connection.execute(
                insert(schema.sogo_user_profile).values(c_uid=username, c_defaults="{}", c_settings="{}")
            )


def add_alias(engine: Engine, address: str, goto: str) -> None:
    with engine.begin() as connection:
        connection.execute(
            insert(schema.alias).values(address=address, goto=goto, domain=address.split("@", 1)[1], active=1)
        )


def rows(engine: Engine, table) -> list[dict]:
    # Restorable columns only, in a stable order, for state comparisons.
    columns = schema.restorable_columns(table)
    with engine.connect() as connection:
        result = connection.execute(select(*columns).order_by(*columns))
        return [dict(row._mapping) for row in result]


def count(engine: Engine, table) -> int:
    with engine.connect() as connection:
        return int(connection.execute(select(func.count()).select_from(table)).scalar_one())


def write_backup(root: Path, *, dbname: str = "mailcow", assets: tuple[str, ...] = ()) -> Path:
    # Minimal native backup layout: manifest, SQL directory and named archive files.
    root.mkdir(parents=True, exist_ok=True)
    (root / "mailcow.conf").write_text(f"DBNAME={dbname}\nDBUSER=mailcow\nDBPASS=secret\n", encoding="utf-8")
    (root / "mysql").mkdir(exist_ok=True)
    for name in assets:
        (root / name).write_bytes(b"")
    return root
