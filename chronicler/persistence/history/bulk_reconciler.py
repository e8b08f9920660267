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
"""Applies a single update or delete to a set of live records while keeping the
history timeline of every affected record correct.

Each operation issues one statement against the live table and, for the records
whose state actually changed, one statement closing their open history rows and
one multi-row insert of their new history rows. All statements of an operation run
in one SAVEPOINT, so the live rows and their history are written together or not
at all.
"""
import datetime
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from chronicler.common.date import as_naive_utc, current_datetime_utc
from chronicler.persistence.database.history_entity import (
    HISTORY_ENDED_AT,
    HistoriedEntity,
    HistoryEntity,
)
from chronicler.persistence.errors import HistoryInsertionError, PersistenceError
from chronicler.persistence.history import type_hierarchy
from chronicler.persistence.history.history_configuration import (
    HistoryConfiguration,
)
from chronicler.persistence.history.history_recorder import (
    check_history_user_id,
    history_values_for_record,
)

Criteria = Sequence[ColumnElement]


def bulk_update(
    session: Session,
    live_class: Type[HistoriedEntity],
    criteria: Criteria,
    changes: Dict[str, Any],
    *,
    history_user_id: Optional[int],
    config: HistoryConfiguration,
    now: Optional[datetime.datetime] = None,
) -> List[HistoryEntity]:
    """Sets |changes| (attribute name -> literal value) on every |live_class| record
    matching |criteria| and returns the history rows appended for the records whose
    state changed.

    Records for which |changes| would not alter any value get no new history row.
    If |live_class| records histories and |history_user_id| is missing, the actor
    policy is applied before anything is written.
    """
    _, new_histories = _reconcile_update(
        session,
        live_class,
        criteria,
        changes,
        history_user_id=history_user_id,
        config=config,
        now=as_naive_utc(now) if now else current_datetime_utc(),
    )
    return new_histories


def bulk_update_without_history(
    session: Session,
    live_class: Type[HistoriedEntity],
    criteria: Criteria,
    changes: Dict[str, Any],
) -> int:
    """Sets |changes| on every |live_class| record matching |criteria| without
    recording any history. Intended for migrations and backfills only.

    Returns the number of live rows matched.
    """
    result = session.execute(
        update(live_class)
        .where(*criteria)
        .values(changes)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


def bulk_delete(
    session: Session,
    live_class: Type[HistoriedEntity],
    criteria: Criteria,
    *,
    history_user_id: Optional[int],
    config: HistoryConfiguration,
    now: Optional[datetime.datetime] = None,
) -> int:
    """Deletes every |live_class| record matching |criteria|, returning the number of
    records deleted.

    If |live_class| declares a soft-delete column, the column is set to |now| on
    every matched record and the change is recorded like any other bulk update, so
    each record's new history row carries the deleted marker.

    Otherwise the open history row of every matched record is closed at |now| and
    the live rows are removed. No terminal history row is appended: the end of the
    record's timeline is the close of its last row.
    """
    now = as_naive_utc(now) if now else current_datetime_utc()

    soft_delete_column_name = live_class.get_soft_delete_column_name()
    if soft_delete_column_name is not None:
        property_name = live_class.get_property_name_by_column_name(
            soft_delete_column_name
        )
        deleted_count, _ = _reconcile_update(
            session,
            live_class,
            criteria,
            {property_name: now},
            history_user_id=history_user_id,
            config=config,
            now=now,
        )
        return deleted_count

    if config.records_histories(live_class):
        check_history_user_id(live_class, history_user_id, config)

    with session.begin_nested():
        session.flush()
        record_ids = _select_primary_keys(session, live_class, criteria)
        history_class = _history_base_class(live_class)
        _close_open_history_rows(session, live_class, history_class, record_ids, now)
        deleted_count = bulk_delete_without_history(session, live_class, criteria)

    logging.info(
        "Deleted %s [%s] record(s) and closed their open histories",
        deleted_count,
        live_class.__name__,
    )
    return deleted_count


def bulk_delete_without_history(
    session: Session,
    live_class: Type[HistoriedEntity],
    criteria: Criteria,
) -> int:
    """Removes every |live_class| record matching |criteria| without touching any
    history rows. Intended for migrations and backfills only.

    Returns the number of live rows removed.
    """
    result = session.execute(
        delete(live_class)
        .where(*criteria)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


def bulk_record_history(
    session: Session,
    records: Sequence[HistoriedEntity],
    history_user_id: Optional[int],
    now: datetime.datetime,
) -> List[HistoryEntity]:
    """Closes the open history row of each of |records| and appends a new open row
    for each, using one UPDATE and one multi-row INSERT.

    All |records| must belong to the same live hierarchy. Returns the new rows,
    ordered by foreign id.
    """
    if not records:
        return []

    live_class = type(records[0])
    history_class = _history_base_class(live_class)
    if any(_history_base_class(type(record)) is not history_class for record in records):
        raise PersistenceError(
            "Cannot bulk record history for records of different live hierarchies"
        )

    rows = [
        history_values_for_record(
            record,
            type_hierarchy.history_class_for_record(record),
            now=now,
            history_user_id=history_user_id,
            snapshot_id=None,
        )
        for record in records
    ]
    # Subclasses of a polymorphic hierarchy may map different columns, but every
    # row of a multi-row insert must name the same columns.
    column_names = {column_name for row in rows for column_name in row}
    rows = [{name: row.get(name) for name in column_names} for row in rows]

    record_ids = [record.get_primary_key() for record in records]
    _close_open_history_rows(session, live_class, history_class, record_ids, now)

    try:
        session.execute(insert(history_class.__table__), rows)
    except SQLAlchemyError as e:
        raise HistoryInsertionError(history_class.__name__, record_ids, str(e)) from e

    foreign_key_column = _foreign_key_column(live_class, history_class)
    return list(
        session.scalars(
            select(history_class)
            .where(foreign_key_column.in_(record_ids))
            .where(history_class.history_started_at == now)
            .order_by(foreign_key_column, history_class.history_id)
        ).all()
    )


def _reconcile_update(
    session: Session,
    live_class: Type[HistoriedEntity],
    criteria: Criteria,
    changes: Dict[str, Any],
    *,
    history_user_id: Optional[int],
    config: HistoryConfiguration,
    now: datetime.datetime,
) -> Tuple[int, List[HistoryEntity]]:
    """Applies |changes| to the matched records and records history for the ones
    that changed. Returns the number of matched records and the new history rows.
    """
    if not config.records_histories(live_class):
        return bulk_update_without_history(session, live_class, criteria, changes), []

    check_history_user_id(live_class, history_user_id, config)

    with session.begin_nested():
        session.flush()
        records = _select_records(session, live_class, criteria)
        changed_records = [
            record for record in records if _changes_record(record, changes)
        ]
        bulk_update_without_history(session, live_class, criteria, changes)
        new_histories = bulk_record_history(
            session, changed_records, history_user_id, now
        )

    logging.info(
        "Bulk updated %s [%s] record(s), %s of which changed and received new "
        "histories",
        len(records),
        live_class.__name__,
        len(changed_records),
    )
    return len(records), new_histories


def _changes_record(record: HistoriedEntity, changes: Dict[str, Any]) -> bool:
    return any(
        getattr(record, property_name) != value
        for property_name, value in changes.items()
    )


def _select_records(
    session: Session, live_class: Type[HistoriedEntity], criteria: Criteria
) -> List[HistoriedEntity]:
    primary_key_column = inspect(live_class).primary_key[0]
    return list(
        session.scalars(
            select(live_class)
            .where(*criteria)
            .order_by(primary_key_column)
            .execution_options(populate_existing=True)
        ).all()
    )


def _select_primary_keys(
    session: Session, live_class: Type[HistoriedEntity], criteria: Criteria
) -> List[int]:
    primary_key_column = inspect(live_class).primary_key[0]
    return list(
        session.scalars(
            select(primary_key_column)
            .select_from(live_class)
            .where(*criteria)
            .order_by(primary_key_column)
        ).all()
    )


def _close_open_history_rows(
    session: Session,
    live_class: Type[HistoriedEntity],
    history_class: Type[HistoryEntity],
    record_ids: List[int],
    now: datetime.datetime,
) -> None:
    if not record_ids:
        return
    foreign_key_column = _foreign_key_column(live_class, history_class)
    session.execute(
        update(history_class)
        .where(foreign_key_column.in_(record_ids))
        .where(history_class.history_ended_at.is_(None))
        .values({HISTORY_ENDED_AT: now})
        .execution_options(synchronize_session="fetch")
    )


def _history_base_class(live_class: Type[HistoriedEntity]) -> Type[HistoryEntity]:
    history_class = type_hierarchy.history_class_for(live_class)
    if history_class is None:
        raise PersistenceError(
            f"No history class found for live class [{live_class.__name__}]"
        )
    return history_class.get_base_entity_class()


def _foreign_key_column(
    live_class: Type[HistoriedEntity], history_class: Type[HistoryEntity]
) -> ColumnElement:
    return history_class.__table__.c[type_hierarchy.history_foreign_key_name(live_class)]
