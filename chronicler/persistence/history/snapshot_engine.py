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
"""Captures a live record and every versioned record reachable from it as one
snapshot: a set of history rows across tables sharing a single snapshot_id.

Snapshot rows are ordinary history rows. A record whose current history row has
not yet been claimed by a snapshot gets that row promoted (its snapshot_id set)
instead of a duplicate row, so a snapshot taken right after a save does not double
the record's history.
"""
import logging
import uuid
from typing import Optional, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from chronicler.persistence.database.history_entity import (
    SNAPSHOT_ID,
    HistoriedEntity,
    HistoryEntity,
)
from chronicler.persistence.errors import CannotSnapshotHistoryError
from chronicler.persistence.history import type_hierarchy
from chronicler.persistence.history.association_graph import AssociationGraph
from chronicler.persistence.history.history_configuration import (
    HistoryConfiguration,
)
from chronicler.persistence.history.history_recorder import (
    find_current_history_row,
    record_history,
)
from chronicler.persistence.history.history_view import HistoryView

# (base live class name, primary key)
VisitedKey = Tuple[str, int]


def snapshot(
    session: Session,
    record: HistoriedEntity,
    history_user_id: Optional[int] = None,
    *,
    config: HistoryConfiguration,
    snapshot_id: Optional[str] = None,
    visited: Optional[Set[VisitedKey]] = None,
    association_graph: Optional[AssociationGraph] = None,
) -> HistoryEntity:
    """Records |record| and all versioned records reachable from it under one
    snapshot_id, returning the history row of |record|.

    A new UUID snapshot_id is generated unless one is given. Records already
    captured under the snapshot_id are not captured again, and each record is
    visited at most once per traversal, so cyclic associations terminate.

    |visited| is only passed by recursive calls. A call without it is the top-level
    call of a traversal and runs in its own SAVEPOINT.

    Raises (CannotSnapshotHistoryError) if |record| is a history row.
    """
    if isinstance(record, (HistoryEntity, HistoryView)):
        raise CannotSnapshotHistoryError(
            f"Cannot snapshot history row [{record!r}], snapshot its live record "
            f"instead"
        )

    is_root = visited is None
    snapshot_id = snapshot_id or str(uuid.uuid4())
    visited = visited if visited is not None else set()
    association_graph = association_graph or AssociationGraph()

    if not is_root:
        return _snapshot_record(
            session, record, history_user_id, config, snapshot_id, visited,
            association_graph,
        )

    logging.info(
        "Taking snapshot [%s] of [%s] with id [%s]",
        snapshot_id,
        type(record).__name__,
        record.get_primary_key(),
    )
    with session.begin_nested():
        session.flush()
        visited.add(_visited_key(record))
        root_history = _snapshot_record(
            session, record, history_user_id, config, snapshot_id, visited,
            association_graph,
        )
    logging.info(
        "Finished snapshot [%s], captured %s record(s)", snapshot_id, len(visited)
    )
    return root_history


def _snapshot_record(
    session: Session,
    record: HistoriedEntity,
    history_user_id: Optional[int],
    config: HistoryConfiguration,
    snapshot_id: str,
    visited: Set[VisitedKey],
    association_graph: AssociationGraph,
) -> HistoryEntity:
    existing = find_snapshot_row(session, record, snapshot_id)
    if existing is not None:
        return existing

    history_row = _promote_current_history_row(session, record, snapshot_id)
    if history_row is None:
        history_row = record_history(
            session, record, history_user_id, config=config, snapshot_id=snapshot_id
        )

    for relationship_name, related_records in association_graph.related_records(
        record
    ):
        for related in related_records:
            related_class = type(related)
            if not association_graph.is_versioned(related_class):
                logging.debug(
                    "Skipping [%s.%s], [%s] is not versioned",
                    type(record).__name__,
                    relationship_name,
                    related_class.__name__,
                )
                continue
            if not association_graph.has_stable_identity(related_class):
                logging.debug(
                    "Skipping [%s.%s], [%s] has no stable identity",
                    type(record).__name__,
                    relationship_name,
                    related_class.__name__,
                )
                continue
            key = _visited_key(related)
            if key in visited:
                continue
            visited.add(key)
            snapshot(
                session,
                related,
                history_user_id,
                config=config,
                snapshot_id=snapshot_id,
                visited=visited,
                association_graph=association_graph,
            )

    return history_row


def find_snapshot_row(
    session: Session, record: HistoriedEntity, snapshot_id: str
) -> Optional[HistoryEntity]:
    """Returns the history row of |record| captured under |snapshot_id|, if any."""
    history_class = type_hierarchy.history_class_for_record(record)
    history_base_class = history_class.get_base_entity_class()
    foreign_key_column = history_base_class.__table__.c[
        type_hierarchy.history_foreign_key_name(type(record))
    ]
    return session.scalars(
        select(history_base_class)
        .where(foreign_key_column == record.get_primary_key())
        .where(history_base_class.snapshot_id == snapshot_id)
        .order_by(history_base_class.history_id.desc())
        .limit(1)
    ).first()


def _promote_current_history_row(
    session: Session, record: HistoriedEntity, snapshot_id: str
) -> Optional[HistoryEntity]:
    """Claims the open history row of |record| for |snapshot_id| if it has not been
    claimed by any snapshot, returning it. Returns None if there is no such row, or
    if a concurrent caller claimed it first.
    """
    current_history = find_current_history_row(session, record)
    if current_history is None or current_history.snapshot_id is not None:
        return None

    history_class = type(current_history).get_base_entity_class()
    result = session.execute(
        update(history_class)
        .where(history_class.history_id == current_history.history_id)
        .where(history_class.snapshot_id.is_(None))
        .values({SNAPSHOT_ID: snapshot_id})
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        return None
    return current_history


def _visited_key(record: HistoriedEntity) -> VisitedKey:
    return type(record).get_base_entity_class().__name__, record.get_primary_key()
