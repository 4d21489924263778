import re
from typing import Dict

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

from .config import settings
from .tables import metadata


_VERSION_RE = re.compile(r"^(\d+\.\d+)")

engine = create_engine(settings.database_url, pool_pre_ping=True)


def _parse_pg_version(raw: str) -> str:
    match = _VERSION_RE.match(raw.strip())
    return match.group(1) if match else raw.strip()


def fetch_db_info(bind: Engine = None) -> Dict[str, object]:
    bind = bind or engine
    with bind.connect() as conn:
        if bind.dialect.name == "postgresql":
            raw = conn.execute(text("SHOW server_version")).scalar()
        else:
            raw = str(conn.execute(text("SELECT sqlite_version()")).scalar())
        tables = set(inspect(conn).get_table_names())

    return {
        "dialect": bind.dialect.name,
        "server_version_raw": raw,
        "server_version": _parse_pg_version(raw),
        "tables": {name: name in tables for name in sorted(metadata.tables)},
    }


def missing_tables(bind: Engine = None) -> list:
    info = fetch_db_info(bind)
    return [name for name, present in info["tables"].items() if not present]
