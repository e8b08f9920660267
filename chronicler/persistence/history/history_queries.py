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
"""Read queries over history tables."""
import logging
from typing import List, Optional, Type, Union

from sqlalchemy import func, select
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import RelationshipDirection, Session, aliased

from chronicler.persistence.database.history_entity import (
    HistoriedEntity,
    HistoryEntity,
)
from chronicler.persistence.errors import PersistenceError
from chronicler.persistence.history import type_hierarchy


def current(session: Session, history_class: Type[HistoryEntity]) -> List[HistoryEntity]:
    """Returns all open rows of |history_class|, newest first."""
    return list(
        session.scalars(
            select(history_class)
            .where(history_class.history_ended_at.is_(None))
            .order_by(history_class.history_id.desc())
        ).all()
    )


def current_history(
    session: Session, record: HistoriedEntity
) -> Optional[HistoryEntity]:
    """Returns the open history row of |record| with the highest history_id.

    More than one open row for a record should never happen. If it does, the
    newest row is returned and a warning is logged.
    """
    history_class = _history_base_class_for_record(record)
    open_rows = list(
        session.scalars(
            _select_rows_for_record(history_class, record)
            .where(history_class.history_ended_at.is_(None))
            .order_by(history_class.history_id.desc())
        ).all()
    )
    if not open_rows:
        return None
    if len(open_rows) > 1:
        logging.warning(
            "Found %s open histories for [%s] with id [%s], expected at most one. "
            "Using the newest, history_id [%s].",
            len(open_rows),
            type(record).__name__,
            record.get_primary_key(),
            open_rows[0].history_id,
        )
    return open_rows[0]


def histories(session: Session, record: HistoriedEntity) -> List[HistoryEntity]:
    """Returns the full timeline of |record|, oldest row first."""
    history_class = _history_base_class_for_record(record)
    return list(
        session.scalars(
            _select_rows_for_record(history_class, record).order_by(
                history_class.history_started_at, history_class.history_id
            )
        ).all()
    )


def latest_snapshot(
    session: Session, record: HistoriedEntity
) -> Optional[HistoryEntity]:
    """Returns the row of |record| captured by its most recent snapshot, or None if
    the record has never been snapshotted."""
    history_class = _history_base_class_for_record(record)
    return session.scalars(
        _select_rows_for_record(history_class, record)
        .where(history_class.snapshot_id.isnot(None))
        .order_by(
            history_class.history_started_at.desc(), history_class.history_id.desc()
        )
        .limit(1)
    ).first()


def latest_snapshot_rows(
    session: Session, history_class: Type[HistoryEntity]
) -> List[HistoryEntity]:
    """Returns one row of |history_class| per snapshot_id: the one with the latest
    history_started_at, ties broken by the highest history_id."""
    history_base_class = history_class.get_base_entity_class()
    row_number = (
        func.row_number()
        .over(
            partition_by=history_base_class.snapshot_id,
            order_by=(
                history_base_class.history_started_at.desc(),
                history_base_class.history_id.desc(),
            ),
        )
        .label("row_number")
    )
    ranked = (
        select(history_base_class.history_id, row_number)
        .where(history_base_class.snapshot_id.isnot(None))
        .subquery()
    )
    latest_ids = select(ranked.c.history_id).where(ranked.c.row_number == 1)
    return list(
        session.scalars(
            select(history_class)
            .where(history_class.history_id.in_(latest_ids))
            .order_by(history_class.snapshot_id, history_class.history_id)
        ).all()
    )


def snapshot_rows(
    session: Session, history_class: Type[HistoryEntity], snapshot_id: str
) -> List[HistoryEntity]:
    """Returns every row of |history_class| captured under |snapshot_id|."""
    return list(
        session.scalars(
            select(history_class)
            .where(history_class.snapshot_id == snapshot_id)
            .order_by(history_class.history_id)
        ).all()
    )


def get_snapshot_association(
    session: Session, history_row: HistoryEntity, relationship_name: str
) -> Union[Optional[HistoryEntity], List[HistoryEntity]]:
    """Follows the live relationship |relationship_name| from |history_row| to the
    history rows of the related records captured in the same snapshot.

    Returns a list for collection relationships and a single row (or None) for
    scalar relationships. Raises (PersistenceError) if |history_row| is not part
    of a snapshot, if the relationship does not exist, if its target is not
    versioned, or if it is a many-to-many relationship.
    """
    history_class = type(history_row)
    if history_row.snapshot_id is None:
        raise PersistenceError(
            f"[{history_class.__name__}] with history_id [{history_row.history_id}] "
            f"is not part of a snapshot"
        )

    live_class = history_class.live_class()
    relationship = inspect(live_class).relationships.get(relationship_name)
    if relationship is None:
        raise PersistenceError(
            f"[{live_class.__name__}] has no relationship [{relationship_name}]"
        )
    if relationship.direction is RelationshipDirection.MANYTOMANY:
        raise PersistenceError(
            f"Many-to-many relationship [{live_class.__name__}.{relationship_name}] "
            f"cannot be followed between snapshot rows"
        )

    target_live_class = relationship.mapper.class_
    target_history_class = type_hierarchy.history_class_for(target_live_class)
    if target_history_class is None:
        raise PersistenceError(
            f"[{target_live_class.__name__}] is not versioned, relationship "
            f"[{relationship_name}] cannot be followed between snapshot rows"
        )

    target = aliased(target_history_class)
    query = select(target).where(target.snapshot_id == history_row.snapshot_id)
    for local_column, remote_column in relationship.local_remote_pairs:
        local_value = _history_value_for_live_column(
            history_row, live_class, local_column
        )
        target_column_name = _history_column_name_for_live_column(
            target_live_class, remote_column
        )
        query = query.where(
            getattr(
                target,
                target_history_class.get_property_name_by_column_name(
                    target_column_name
                ),
            )
            == local_value
        )
    query = query.order_by(target.history_id)

    related_rows = list(session.scalars(query).all())
    if relationship.uselist:
        return related_rows
    return related_rows[-1] if related_rows else None


def _history_column_name_for_live_column(
    live_class: Type[HistoriedEntity], live_column
) -> str:
    """Returns the name of the history table column holding the values of
    |live_column| of |live_class|."""
    if live_column.name == live_class.get_primary_key_column_name():
        return type_hierarchy.history_foreign_key_name(live_class)
    return live_column.name


def _history_value_for_live_column(
    history_row: HistoryEntity, live_class: Type[HistoriedEntity], live_column
):
    history_class = type(history_row)
    column_name = _history_column_name_for_live_column(live_class, live_column)
    return getattr(history_row, history_class.get_property_name_by_column_name(column_name))


def _history_base_class_for_record(record: HistoriedEntity) -> Type[HistoryEntity]:
    return type_hierarchy.history_class_for_record(record).get_base_entity_class()


def _select_rows_for_record(
    history_class: Type[HistoryEntity], record: HistoriedEntity
):
    foreign_key_column = history_class.__table__.c[
        type_hierarchy.history_foreign_key_name(type(record))
    ]
    return select(history_class).where(
        foreign_key_column == record.get_primary_key()
    )
