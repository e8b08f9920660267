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
"""Appends history rows for individual live records.

Recording history for a live record means, within the caller's transaction:
1) inserting a history row holding a copy of all of the record's business columns,
    open from |now|,
2) closing the record's previously open history row at |now|.

Concurrent writers are serialized by the unique constraint on
(foreign id, history_started_at) of each history table. A writer that loses the
race finds the winner's row and returns it instead of failing.
"""
import datetime
import logging
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chronicler.common.constants.history_mode import ActorPolicy
from chronicler.common.date import as_naive_utc, current_datetime_utc
from chronicler.persistence.database.history_entity import (
    HISTORY_ENDED_AT,
    HISTORY_STARTED_AT,
    HISTORY_USER_ID,
    SNAPSHOT_ID,
    HistoriedEntity,
    HistoryEntity,
)
from chronicler.persistence.errors import (
    HistoryInsertionError,
    MissingActorError,
    PersistenceError,
)
from chronicler.persistence.history import type_hierarchy
from chronicler.persistence.history.history_configuration import (
    HistoryConfiguration,
)


def record_history(
    session: Session,
    record: HistoriedEntity,
    history_user_id: Optional[int],
    *,
    config: HistoryConfiguration,
    snapshot_id: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> HistoryEntity:
    """Appends a history row capturing the current state of |record| and closes the
    record's previously open history row, returning the newly open row.

    If |snapshot_id| is None and the record's type records histories, the mutation
    must be attributed to |history_user_id|; see check_history_user_id.

    If the insert is rejected by the database, the row with the same foreign id and
    history_started_at written by a concurrent caller is returned instead. If no
    such row exists, or if |snapshot_id| is given and that row was captured under a
    different snapshot, raises (HistoryInsertionError).
    """
    live_class = type(record)
    if record.get_primary_key() is None:
        raise PersistenceError(
            f"Cannot record history for [{live_class.__name__}] without a primary "
            f"key, flush the record first"
        )

    if snapshot_id is None and config.records_histories(live_class):
        check_history_user_id(live_class, history_user_id, config)

    return append_history_row(
        session, record, history_user_id, snapshot_id=snapshot_id, now=now
    )


def append_history_row(
    session: Session,
    record: HistoriedEntity,
    history_user_id: Optional[int],
    *,
    snapshot_id: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> HistoryEntity:
    """Does the work of record_history once the actor has been checked by the
    caller."""
    live_class = type(record)
    now = as_naive_utc(now) if now else current_datetime_utc()
    history_class = type_hierarchy.history_class_for_record(record)
    history_base_class = history_class.get_base_entity_class()
    values = history_values_for_record(
        record,
        history_class,
        now=now,
        history_user_id=history_user_id,
        snapshot_id=snapshot_id,
    )

    current_history = find_current_history_row(session, record)

    insertion_error: Optional[SQLAlchemyError] = None
    try:
        history_row_id = _insert_history_row(session, history_class, values)
    except SQLAlchemyError as e:
        insertion_error = e
        history_row_id = None

    if history_row_id is not None:
        new_history = session.get(history_base_class, history_row_id)
    else:
        new_history = _find_history_row_started_at(
            session, history_base_class, record.get_primary_key(), now
        )
        if new_history is None:
            raise HistoryInsertionError(
                history_class.__name__,
                record.get_primary_key(),
                str(insertion_error)
                if insertion_error
                else "insert returned no rows and no existing row was found",
            ) from insertion_error
        if snapshot_id is not None and new_history.snapshot_id != snapshot_id:
            raise HistoryInsertionError(
                history_class.__name__,
                record.get_primary_key(),
                f"existing row [{new_history.history_id}] started at [{now}] belongs "
                f"to snapshot [{new_history.snapshot_id}], not [{snapshot_id}]",
            ) from insertion_error
        logging.warning(
            "Duplicate history detected for [%s] with id [%s] at [%s], using "
            "existing row [%s]",
            live_class.__name__,
            record.get_primary_key(),
            now,
            new_history.history_id,
        )

    if (
        current_history is not None
        and current_history.history_id != new_history.history_id
    ):
        close_history_rows(session, history_base_class, [current_history.history_id], now)

    return new_history


def check_history_user_id(
    live_class: Type[HistoriedEntity],
    history_user_id: Any,
    config: HistoryConfiguration,
) -> None:
    """Applies the actor policy of |live_class| when |history_user_id| is not a
    valid user id.

    Raises (MissingActorError) under ActorPolicy.REQUIRED. Logs a warning under
    ActorPolicy.WARN_ONLY. Does nothing under ActorPolicy.SILENT.
    """
    if is_valid_history_user_id(history_user_id):
        return

    actor_policy = config.actor_policy_for(live_class)
    if actor_policy is ActorPolicy.REQUIRED:
        raise MissingActorError(live_class.__name__, history_user_id)
    if actor_policy is ActorPolicy.WARN_ONLY:
        logging.warning(
            "history_user_id must be passed in order to save [%s] with histories, "
            "found [%r]. Recording history without a user.",
            live_class.__name__,
            history_user_id,
        )


def is_valid_history_user_id(history_user_id: Any) -> bool:
    return isinstance(history_user_id, int) and not isinstance(history_user_id, bool)


def history_values_for_record(
    record: HistoriedEntity,
    history_class: Type[HistoryEntity],
    *,
    now: datetime.datetime,
    history_user_id: Optional[int],
    snapshot_id: Optional[str],
) -> Dict[str, Any]:
    """Returns the column values of a new history row for |record|, keyed by
    history table column name.

    All business columns present on both tables are copied, including the
    discriminator of polymorphic records. The foreign id column is set to the
    record's primary key.
    """
    live_class = type(record)
    values: Dict[str, Any] = {}
    for column_name in type_hierarchy.get_shared_column_names(
        live_class, history_class
    ):
        values[column_name] = getattr(
            record, live_class.get_property_name_by_column_name(column_name)
        )

    discriminator_column_name = live_class.get_discriminator_column_name()
    if discriminator_column_name in values:
        identity = live_class.get_polymorphic_identity()
        if identity is not None:
            values[discriminator_column_name] = identity

    values[type_hierarchy.history_foreign_key_name(live_class)] = (
        record.get_primary_key()
    )
    values[HISTORY_STARTED_AT] = now
    values[HISTORY_USER_ID] = history_user_id
    values[SNAPSHOT_ID] = snapshot_id
    return values


def record_matches_history_row(
    record: HistoriedEntity, history_row: HistoryEntity
) -> bool:
    """Returns (True) if all business columns on |record| are equal to the
    corresponding columns on |history_row|.

    NOTE: This method *only* compares columns which are present on both the live
    and history tables. Any column that is only present on one table is ignored.
    """
    live_class = type(record)
    history_class = type(history_row)
    for column_name in type_hierarchy.get_shared_column_names(
        live_class, history_class
    ):
        record_value = getattr(
            record, live_class.get_property_name_by_column_name(column_name)
        )
        history_value = getattr(
            history_row, history_class.get_property_name_by_column_name(column_name)
        )
        if record_value != history_value:
            return False
    return True


def find_current_history_row(
    session: Session, record: HistoriedEntity
) -> Optional[HistoryEntity]:
    """Returns the open history row of |record| with the highest history_id, or None
    if the record has no open history row."""
    history_class = type_hierarchy.history_class_for_record(record)
    history_base_class = history_class.get_base_entity_class()
    foreign_key_column = history_base_class.__table__.c[
        type_hierarchy.history_foreign_key_name(type(record))
    ]
    return session.scalars(
        select(history_base_class)
        .where(foreign_key_column == record.get_primary_key())
        .where(history_base_class.history_ended_at.is_(None))
        .order_by(history_base_class.history_id.desc())
        .limit(1)
    ).first()


def close_history_rows(
    session: Session,
    history_class: Type[HistoryEntity],
    history_row_ids: List[int],
    now: datetime.datetime,
) -> None:
    """Sets history_ended_at to |now| on each of the listed rows that is still open.

    Rows already closed by another caller are left untouched.
    """
    if not history_row_ids:
        return
    session.execute(
        update(history_class)
        .where(history_class.history_id.in_(history_row_ids))
        .where(history_class.history_ended_at.is_(None))
        .values({HISTORY_ENDED_AT: now})
        .execution_options(synchronize_session="fetch")
    )


def _insert_history_row(
    session: Session, history_class: Type[HistoryEntity], values: Dict[str, Any]
) -> Optional[int]:
    """Inserts a single history row inside a SAVEPOINT, so a rejected insert leaves
    the enclosing transaction usable. Returns the new row's history_id, or None if
    the database reported no inserted row.
    """
    with session.begin_nested():
        result = session.execute(insert(history_class.__table__).values(**values))
    inserted_primary_key = result.inserted_primary_key
    if not inserted_primary_key:
        return None
    return inserted_primary_key[0]


def _find_history_row_started_at(
    session: Session,
    history_class: Type[HistoryEntity],
    foreign_id: int,
    history_started_at: datetime.datetime,
) -> Optional[HistoryEntity]:
    foreign_key_column = history_class.__table__.c[history_class.history_foreign_key_name()]
    return session.scalars(
        select(history_class)
        .where(foreign_key_column == foreign_id)
        .where(history_class.history_started_at == history_started_at)
        .order_by(history_class.history_id.desc())
        .limit(1)
    ).first()
