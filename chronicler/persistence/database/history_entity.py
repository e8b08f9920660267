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
"""Mixins for the live and history tables of a versioned entity.

A versioned entity is declared as two ORM classes that share a mixin holding all
business columns, following the same pattern as any master/historical table pair:

    class _PostSharedColumns:
        title = Column(String(255))

    class Post(Base, HistoriedEntity, _PostSharedColumns):
        __tablename__ = "post"
        post_id = Column(Integer, primary_key=True)

    class PostHistory(Base, HistoryEntity, _PostSharedColumns):
        __tablename__ = "post_history"
        __table_args__ = (UniqueConstraint("post_id", "history_started_at"),)
        post_id = Column(Integer, nullable=False, index=True)

NOTE: The foreign id column on a history table holds the primary key of the live
record but deliberately has no database foreign key constraint, so that closed
history survives a hard delete of the live record.
"""
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Optional, Tuple, Type, Union

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.inspection import inspect

from chronicler.common.constants.history_mode import ActorPolicy, HistoryMode
from chronicler.persistence.database.database_entity import DatabaseEntity
from chronicler.persistence.errors import ImmutableHistoryViolation

if TYPE_CHECKING:
    from chronicler.persistence.history.history_view import HistoryView

HISTORY_STARTED_AT = "history_started_at"
HISTORY_ENDED_AT = "history_ended_at"
HISTORY_USER_ID = "history_user_id"
SNAPSHOT_ID = "snapshot_id"

# Columns present on every history table that are never copied from a live record.
HISTORY_METADATA_COLUMN_NAMES: FrozenSet[str] = frozenset(
    {"history_id", HISTORY_STARTED_AT, HISTORY_ENDED_AT, HISTORY_USER_ID, SNAPSHOT_ID}
)

# Columns of a persisted history row which may each be set exactly once, from null
# to a value.
_SET_ONCE_COLUMN_NAMES: FrozenSet[str] = frozenset({HISTORY_ENDED_AT, SNAPSHOT_ID})


class HistoriedEntity(DatabaseEntity):
    """Mixin for live tables whose changes are recorded in a history table."""

    # Optional per-type defaults, used when the HistoryConfiguration passed to an
    # operation has no override for the type.
    __history_mode__: Optional[HistoryMode] = None
    __history_actor_policy__: Optional[ActorPolicy] = None

    # Name of the column set when a record is deleted. If None, deleting a record
    # removes the live row.
    __soft_delete_column__: Optional[str] = None

    @classmethod
    def history_class(cls) -> Optional[Type["HistoryEntity"]]:
        # late import, type_hierarchy depends on this module
        from chronicler.persistence.history import type_hierarchy

        return type_hierarchy.history_class_for(cls)


class HistoryEntity(DatabaseEntity):
    """Mixin for history tables. Each row captures the state of one live record
    over the interval [history_started_at, history_ended_at).
    """

    # Consider this class a mixin and only allow instantiating subclasses
    def __new__(cls, *_: Any, **__: Any) -> "HistoryEntity":
        if cls is HistoryEntity:
            raise Exception("HistoryEntity cannot be instantiated")
        return super().__new__(cls)

    # Name of the live class, if it is not this class's name without the "History"
    # suffix.
    __live_class_name__: Optional[str] = None

    # Name of the column holding the live record's primary key, if it is not
    # derived from the base live class.
    __history_foreign_key__: Optional[str] = None

    history_id = Column(Integer, primary_key=True)
    history_started_at = Column(DateTime, nullable=False, index=True)
    history_ended_at = Column(DateTime, index=True)
    history_user_id = Column(Integer, index=True)
    snapshot_id = Column(String(255), index=True)

    @classmethod
    def live_class(cls) -> Type[HistoriedEntity]:
        # late import, type_hierarchy depends on this module
        from chronicler.persistence.history import type_hierarchy

        return type_hierarchy.live_class_for(cls)

    @classmethod
    def history_foreign_key_name(cls) -> str:
        # late import, type_hierarchy depends on this module
        from chronicler.persistence.history import type_hierarchy

        return type_hierarchy.history_foreign_key_name(cls.live_class())

    def get_foreign_id(self) -> Optional[int]:
        """Returns the primary key of the live record this row belongs to."""
        property_name = type(self).get_property_name_by_column_name(
            type(self).history_foreign_key_name()
        )
        return getattr(self, property_name)

    @property
    def is_current(self) -> bool:
        return self.history_ended_at is None

    def live_view(self) -> "HistoryView":
        """Returns an adapter exposing the behavior of the live subtype this row
        was recorded from."""
        # late import, history_view depends on this module
        from chronicler.persistence.history.history_view import HistoryView

        return HistoryView(self)

    def update(self, **values: Any) -> Union[bool, ImmutableHistoryViolation]:
        """Sets |values| on this history row if they are permitted, returning True.

        A persisted history row only accepts closing (history_ended_at) and snapshot
        promotion (snapshot_id), each only while still null. Any other change is
        rejected, leaving the row untouched, and a falsy ImmutableHistoryViolation
        is returned.
        """
        if inspect(self).persistent:
            current_values = {name: getattr(self, name) for name in values}
            violation = self._violation_for_changes(current_values, values)
            if violation is not None:
                return violation

        for name, value in values.items():
            setattr(self, name, value)
        return True

    def destroy(self) -> ImmutableHistoryViolation:
        """History rows can never be destroyed."""
        return ImmutableHistoryViolation(history_class_name=type(self).__name__)

    def pending_change_violation(self) -> Optional[ImmutableHistoryViolation]:
        """Returns a violation if this row has unflushed attribute changes that a
        persisted history row may not accept."""
        previous_values: Dict[str, Any] = {}
        new_values: Dict[str, Any] = {}
        for attribute_state in inspect(self).attrs:
            if attribute_state.key not in type(self).get_column_property_names():
                continue
            history = attribute_state.history
            if not history.has_changes():
                continue
            previous_values[attribute_state.key] = (
                history.deleted[0] if history.deleted else None
            )
            new_values[attribute_state.key] = (
                history.added[0] if history.added else None
            )
        if not new_values:
            return None
        return self._violation_for_changes(previous_values, new_values)

    def _violation_for_changes(
        self, previous_values: Dict[str, Any], new_values: Dict[str, Any]
    ) -> Optional[ImmutableHistoryViolation]:
        rejected: Tuple[str, ...] = tuple(
            sorted(
                name
                for name, value in new_values.items()
                if value != previous_values.get(name)
                and (
                    name not in _SET_ONCE_COLUMN_NAMES
                    or previous_values.get(name) is not None
                )
            )
        )
        if not rejected:
            return None
        return ImmutableHistoryViolation(
            history_class_name=type(self).__name__, attempted_changes=rejected
        )
