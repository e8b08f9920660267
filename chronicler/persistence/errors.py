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
"""Contains errors for the persistence directory."""
from typing import Tuple

import attr


class PersistenceError(Exception):
    """Raised when an error with the persistence layer is encountered."""


class MissingActorError(PersistenceError):
    """Raised when a mutation that must be attributed to a user is recorded without
    a valid history_user_id.

    Callers can retry with an actor, or explicitly opt out of history recording
    with one of the *_without_history operations.
    """

    def __init__(self, entity_name: str, history_user_id: object):
        self.entity_name = entity_name
        self.history_user_id = history_user_id
        super().__init__(
            f"history_user_id must be an integer in order to save [{entity_name}] "
            f"with histories, found [{history_user_id!r}]. If you are in a context "
            f"with no history_user_id, explicitly save without history."
        )


class HistoryInsertionError(PersistenceError):
    """Raised when a history row could not be inserted and no equivalent row written
    by a concurrent caller could be found."""

    def __init__(self, history_class_name: str, foreign_id: object, msg: str):
        self.history_class_name = history_class_name
        self.foreign_id = foreign_id
        super().__init__(
            f"Failed to insert [{history_class_name}] for foreign id "
            f"[{foreign_id}]: {msg}"
        )


class CannotSnapshotHistoryError(PersistenceError):
    """Raised when a snapshot is requested for a history row instead of a live
    record."""


@attr.s(frozen=True)
class ImmutableHistoryViolation:
    """Result returned (never raised) when a caller tries to update or destroy a
    history row. It is falsy so that code which treats history objects like any
    other model sees a failed save or destroy rather than an exception.
    """

    history_class_name: str = attr.ib()

    # Attribute names the caller attempted to change. Empty for destroy attempts.
    attempted_changes: Tuple[str, ...] = attr.ib(factory=tuple)

    def __bool__(self) -> bool:
        return False
