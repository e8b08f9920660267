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
"""
Class for generating SQLAlchemy Sessions objects for the appropriate schema.
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import DeclarativeMeta, Session

from chronicler.persistence.database.session_listener import history_session_listener
from chronicler.persistence.database.sqlalchemy_engine_manager import (
    SQLAlchemyEngineManager,
)


class SessionFactory:
    """Creates SQLAlchemy sessions for the given database schema"""

    @classmethod
    def for_schema_base(cls, schema_base: DeclarativeMeta) -> Session:
        engine = SQLAlchemyEngineManager.get_engine_for_schema_base(schema_base)
        if engine is None:
            raise ValueError(f"No engine set for base [{schema_base.__name__}]")

        session = Session(bind=engine)
        cls._apply_session_listener(session)
        return session

    @classmethod
    @contextmanager
    def using_schema_base(
        cls, schema_base: DeclarativeMeta, *, autocommit: bool = True
    ) -> Iterator[Session]:
        """Yields a session for |schema_base|, committing it on exit if |autocommit|
        is set and rolling it back if the block raises."""
        session = None
        try:
            session = cls.for_schema_base(schema_base)
            yield session
            if autocommit:
                try:
                    session.commit()
                except Exception as e:
                    session.rollback()
                    raise e
        except Exception as e:
            if session:
                session.rollback()
            raise e
        finally:
            if session:
                session.close()

    @classmethod
    def _apply_session_listener(cls, session: Session) -> None:
        history_session_listener(session)
