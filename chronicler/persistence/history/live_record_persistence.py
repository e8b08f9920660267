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
"""Saves and destroys individual live records, recording history for each change."""
import datetime
import logging
from typing import Any, Dict, Optional

from sqlalchemy.inspection import inspect
from sqlalchemy.orm import Session

from chronicler.common.date import as_naive_utc, current_datetime_utc
from chronicler.persistence.database.history_entity import (
    HistoriedEntity,
    HistoryEntity,
)
from chronicler.persistence.errors import MissingActorError
from chronicler.persistence.history import bulk_reconciler
from chronicler.persistence.history.history_configuration import (
    HistoryConfiguration,
)
from chronicler.persistence.history.history_recorder import (
    append_history_row,
    check_history_user_id,
    find_current_history_row,
    record_matches_history_row,
)


def save(
    session: Session,
    record: HistoriedEntity,
    *,
    history_user_id: Optional[int],
    config: HistoryConfiguration,
    now: Optional[datetime.datetime] = None,
) -> Optional[HistoryEntity]:
    """Writes |record| to the live table and, if its business columns differ from
    its current history row (or it has none), appends a new history row.

    Returns the new history row, or None if nothing was recorded.

    The live write and the history write share one SAVEPOINT, so if recording
    history fails the record's changes are rolled back with it. If the actor check
    fails, nothing is written and the record's unflushed changes are discarded, so
    a later flush of the session can not write them without history.
    """
    live_class = type(record)
    records_histories = config.records_histories(live_class)
    if records_histories:
        try:
            check_history_user_id(live_class, history_user_id, config)
        except MissingActorError:
            _discard_pending_changes(session, record)
            raise

    pending_changes = _take_pending_changes(session, record)
    with session.begin_nested():
        for property_name, value in pending_changes.items():
            setattr(record, property_name, value)
        session.add(record)
        session.flush()
        if not records_histories:
            return None

        current_history = find_current_history_row(session, record)
        if current_history is not None and record_matches_history_row(
            record, current_history
        ):
            logging.debug(
                "[%s] with id [%s] matches its current history, nothing to record",
                live_class.__name__,
                record.get_primary_key(),
            )
            return None

        return append_history_row(session, record, history_user_id, now=now)


def save_without_history(session: Session, record: HistoriedEntity) -> None:
    """Writes |record| to the live table without recording history."""
    session.add(record)
    session.flush()


def destroy(
    session: Session,
    record: HistoriedEntity,
    *,
    history_user_id: Optional[int],
    config: HistoryConfiguration,
    now: Optional[datetime.datetime] = None,
) -> int:
    """Deletes |record|, soft or hard depending on its type, closing or appending
    history the same way as bulk_reconciler.bulk_delete. Returns the number of
    records deleted."""
    return bulk_reconciler.bulk_delete(
        session,
        type(record),
        [_primary_key_criterion(record)],
        history_user_id=history_user_id,
        config=config,
        now=now,
    )


def destroy_without_history(
    session: Session,
    record: HistoriedEntity,
    now: Optional[datetime.datetime] = None,
) -> int:
    """Deletes |record| without touching its history. Soft-delete types get their
    deleted marker set, other types lose the live row."""
    live_class = type(record)
    soft_delete_column_name = live_class.get_soft_delete_column_name()
    if soft_delete_column_name is None:
        return bulk_reconciler.bulk_delete_without_history(
            session, live_class, [_primary_key_criterion(record)]
        )

    now = as_naive_utc(now) if now else current_datetime_utc()
    return bulk_reconciler.bulk_update_without_history(
        session,
        live_class,
        [_primary_key_criterion(record)],
        {live_class.get_property_name_by_column_name(soft_delete_column_name): now},
    )


def _primary_key_criterion(record: HistoriedEntity):
    primary_key_column = inspect(type(record)).primary_key[0]
    return primary_key_column == record.get_primary_key()


def _discard_pending_changes(session: Session, record: HistoriedEntity) -> None:
    """Drops any unflushed changes to |record| held by |session|."""
    state = inspect(record)
    if state.persistent:
        session.expire(record)
    elif state.pending:
        session.expunge(record)


def _take_pending_changes(session: Session, record: HistoriedEntity) -> Dict[str, Any]:
    """Removes the unflushed column changes of |record| from |session| and returns
    them keyed by property name.

    Opening a SAVEPOINT flushes the session, so changes still pending at that point
    would be written outside of it.
    """
    state = inspect(record)
    if state.pending:
        session.expunge(record)
        return {}
    if not state.persistent:
        return {}

    column_property_names = type(record).get_column_property_names()
    pending_changes = {
        attribute_state.key: attribute_state.value
        for attribute_state in state.attrs
        if attribute_state.key in column_property_names
        and attribute_state.history.has_changes()
    }
    if pending_changes:
        session.expire(record, list(pending_changes))
    return pending_changes
