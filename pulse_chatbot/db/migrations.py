"""
Schema migrations for the local store.

Each entry in ``MIGRATIONS`` upgrades the schema by one version. Pending
migrations are applied in order at start-up; a migration and the
``schema_version`` row recording it are committed together, so a failed
migration never advances the ledger.
"""
import logging
import time
from typing import Callable, Dict

from sqlalchemy import Connection, Engine, func, insert, inspect, select

from pulse_chatbot.models.base import Base
from pulse_chatbot.models.chat import Conversation, Message, Setting, SchemaVersion

logger = logging.getLogger(__name__)

Migration = Callable[[Connection], None]


class MigrationError(RuntimeError):
    def __init__(self, version: int, cause: Exception) -> None:
        super().__init__(f"Migration {version} failed: {cause}")
        self.version = version
        self.cause = cause


def _create_initial_tables(connection: Connection) -> None:
    Base.metadata.create_all(
        connection,
        tables=[Conversation.__table__, Message.__table__, Setting.__table__],
    )


MIGRATIONS: Dict[int, Migration] = {
    1: _create_initial_tables,
}

SCHEMA_VERSION = max(MIGRATIONS)


def get_schema_version(engine: Engine) -> int:
    """Highest applied version, 0 for a fresh database."""
    if not inspect(engine).has_table(SchemaVersion.__tablename__):
        return 0
    with engine.connect() as connection:
        version = connection.execute(select(func.max(SchemaVersion.version))).scalar()
    return version or 0


def run_migrations(engine: Engine, migrations: Dict[int, Migration] | None = None) -> int:
    """
    Apply pending migrations and return the resulting schema version.

    Raises:
        MigrationError: if a migration throws; start-up should abort.
    """
    migrations = MIGRATIONS if migrations is None else migrations

    with engine.begin() as connection:
        SchemaVersion.__table__.create(connection, checkfirst=True)

    current_version = get_schema_version(engine)
    logger.info(f"Current schema version: {current_version}")

    for version in sorted(v for v in migrations if v > current_version):
        logger.info(f"Applying migration {version}...")
        try:
            with engine.begin() as connection:
                migrations[version](connection)
                connection.execute(
                    insert(SchemaVersion).values(
                        version=version, applied_at=int(time.time() * 1000)
                    )
                )
        except Exception as e:
            logger.error(f"Migration {version} failed", exc_info=True)
            raise MigrationError(version, e) from e
        current_version = version
        logger.info(f"Migration {version} applied")

    return current_version
