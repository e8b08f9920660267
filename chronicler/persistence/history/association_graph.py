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
"""Describes how live records reach one another through their relationships, for
traversals that must visit every versioned record reachable from a root."""
from typing import Iterator, List, Tuple

from sqlalchemy.inspection import inspect

from chronicler.persistence.database.history_entity import (
    HistoriedEntity,
    HistoryEntity,
)
from chronicler.persistence.history import type_hierarchy


class AssociationGraph:
    """Reads the relationships declared on live ORM classes."""

    def related_records(
        self, record: HistoriedEntity
    ) -> Iterator[Tuple[str, List[HistoriedEntity]]]:
        """Yields (relationship name, related records) for each relationship of
        |record| in declaration order. Related records are sorted by ascending
        primary key. Relationships pointing at history classes are skipped.
        """
        for relationship in inspect(type(record)).relationships:
            if issubclass(relationship.mapper.class_, HistoryEntity):
                continue
            related = getattr(record, relationship.key)

            # Relationship can return either a collection or a single item
            if related is None:
                related_list = []
            elif relationship.uselist:
                related_list = list(related)
            else:
                related_list = [related]

            related_list.sort(key=_primary_key_sort_key)
            yield relationship.key, related_list

    def is_versioned(self, cls: type) -> bool:
        if not issubclass(cls, HistoriedEntity):
            return False
        return type_hierarchy.history_class_for(cls) is not None

    def has_stable_identity(self, cls: type) -> bool:
        """Returns False for classes mapped onto database views, whose rows cannot
        be tracked by primary key over time."""
        if getattr(cls, "__view_backed__", False):
            return False
        table = inspect(cls).local_table
        return not (table is not None and table.info.get("is_view", False))


def _primary_key_sort_key(record) -> Tuple[bool, object]:
    primary_key = inspect(record).identity
    value = primary_key[0] if primary_key else None
    return value is None, value if value is not None else 0
