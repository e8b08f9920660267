# Recidiviz - a data platform for criminal justice reform
# Copyright (C) 2026 Recidiviz, Inc.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
# =============================================================================
"""A class to manage all SQLAlchemy Engines for our database instances."""
import logging
from typing import Any, Dict, Optional

import sqlalchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta


class SQLAlchemyEngineManager:
    """Caches one Engine per declarative base."""

    _engine_for_schema_base: Dict[DeclarativeMeta, Engine] = {}

    @classmethod
    def init_engine_for_db_instance(
        cls,
        db_url: str,
        schema_base: DeclarativeMeta,
        **dialect_specific_kwargs: Any,
    ) -> Engine:
        """Initializes a sqlalchemy Engine object for the given database / schema and
        caches it for future use."""
        if schema_base in cls._engine_for_schema_base:
            raise ValueError(f"Already initialized database for [{schema_base}]")

        try:
            engine = sqlalchemy.create_engine(db_url, **dialect_specific_kwargs)
        except BaseException as e:
            logging.error(
                "Unable to connect to database instance for [%s]: %s",
                schema_base,
                str(e),
            )
            raise e

        if engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(engine)

        cls._engine_for_schema_base[schema_base] = engine
        return engine

    @classmethod
    def get_engine_for_schema_base(cls, schema_base: DeclarativeMeta) -> Optional[Engine]:
        return cls._engine_for_schema_base.get(schema_base)

    @classmethod
    def teardown_engine_for_schema_base(cls, schema_base: DeclarativeMeta) -> None:
        cls._engine_for_schema_base.pop(schema_base).dispose()

    @classmethod
    def teardown_engines(cls) -> None:
        for engine in cls._engine_for_schema_base.values():
            engine.dispose()
        cls._engine_for_schema_base.clear()


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """The pysqlite driver manages transactions itself and breaks SAVEPOINT, which
    every history write relies on. Hands transaction control back to SQLAlchemy.

    See https://docs.sqlalchemy.org/en/20/dialects/sqlite.html#serializable-isolation-savepoints-transactional-ddl
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

        # Configures SQLite to enforce foreign key constraints
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON;")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection) -> None:
        connection.exec_driver_sql("BEGIN")
