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
"""Resolves the pairing between live classes and their history classes, including
polymorphic hierarchies.

NOTE: All code in this module makes the following assumptions:
1) The history ORM class for a live class <ENTITY> is named <ENTITY>History (e.g.
    Post and PostHistory), unless the history class declares
    __live_class_name__.
2) Every class in a polymorphic live hierarchy writes to one history table, owned
    by the history class of the hierarchy's base class. History subclasses use the
    same polymorphic identities as the live subclasses they mirror.
3) The foreign key naming on history tables is derived from the base class of the
    live hierarchy, never from a leaf subclass.

History classes may be declared before the live class is importable, so lookups
are deferred until first use and successful lookups are cached until
reset_class_resolution_cache() is called.
"""
from typing import Dict, List, Optional, Type

from sqlalchemy.inspection import inspect

from chronicler.persistence.database.database_entity import DatabaseEntity
from chronicler.persistence.database.history_entity import (
    HISTORY_METADATA_COLUMN_NAMES,
    HistoriedEntity,
    HistoryEntity,
)
from chronicler.persistence.errors import PersistenceError

_HISTORY_CLASS_SUFFIX = "History"


class _ClassResolutionCache:
    """Holds every successful live <-> history class resolution."""

    def __init__(self) -> None:
        self.history_class_by_live_class: Dict[type, Type[HistoryEntity]] = {}
        self.live_class_by_history_class: Dict[type, Type[HistoriedEntity]] = {}
        self.foreign_key_name_by_base_class: Dict[type, str] = {}

    def clear(self) -> None:
        self.history_class_by_live_class.clear()
        self.live_class_by_history_class.clear()
        self.foreign_key_name_by_base_class.clear()


_CACHE = _ClassResolutionCache()


def reset_class_resolution_cache() -> None:
    _CACHE.clear()


def history_class_for(live_class: type) -> Optional[Type[HistoryEntity]]:
    """Returns the history class recording changes to |live_class|, or None if
    |live_class| is not versioned.

    A live subclass without a history class of its own resolves through the base
    history class's polymorphic map, using the live subclass's discriminator value.
    """
    if not issubclass(live_class, DatabaseEntity) or issubclass(
        live_class, HistoryEntity
    ):
        return None
    if live_class in _CACHE.history_class_by_live_class:
        return _CACHE.history_class_by_live_class[live_class]

    history_class = _find_mapped_class(
        live_class, f"{live_class.__name__}{_HISTORY_CLASS_SUFFIX}"
    )

    if history_class is None:
        history_class = _find_history_class_declaring(live_class)

    if history_class is None:
        history_class = _find_history_subclass_by_identity(live_class)

    if history_class is None:
        return None

    if not issubclass(history_class, HistoryEntity):
        raise PersistenceError(
            f"Found class [{history_class.__name__}] for live class "
            f"[{live_class.__name__}], but it is not a HistoryEntity"
        )

    _CACHE.history_class_by_live_class[live_class] = history_class
    return history_class


def live_class_for(history_class: Type[HistoryEntity]) -> Type[HistoriedEntity]:
    """Returns the live class whose changes are recorded in |history_class|.

    Raises (PersistenceError) if the live class cannot be found. Failed lookups are
    not cached, so the lookup is retried once the live class has been loaded.
    """
    if history_class in _CACHE.live_class_by_history_class:
        return _CACHE.live_class_by_history_class[history_class]

    # Only honor a declaration made on this exact class, not one inherited from the
    # base history class of a polymorphic hierarchy.
    live_class_name = vars(history_class).get("__live_class_name__")
    if live_class_name is None:
        if not history_class.__name__.endswith(_HISTORY_CLASS_SUFFIX):
            raise PersistenceError(
                f"History class [{history_class.__name__}] must be named "
                f"<live class>{_HISTORY_CLASS_SUFFIX} or declare __live_class_name__"
            )
        live_class_name = history_class.__name__[: -len(_HISTORY_CLASS_SUFFIX)]

    live_class = _find_mapped_class(history_class, live_class_name)
    if live_class is None:
        raise PersistenceError(
            f"Could not find live class [{live_class_name}] for history class "
            f"[{history_class.__name__}]"
        )

    _CACHE.live_class_by_history_class[history_class] = live_class
    return live_class


def history_class_for_record(record: HistoriedEntity) -> Type[HistoryEntity]:
    """Returns the history class to instantiate for |record|, based on the record's
    concrete type rather than the type it was loaded or declared as.

    Raises (PersistenceError) if the record is not versioned, or if its
    discriminator value has no matching history subclass.
    """
    live_class = type(record)
    history_class = history_class_for(live_class)
    if history_class is None:
        raise PersistenceError(
            f"No history class found for live class [{live_class.__name__}]"
        )

    identity = live_class.get_polymorphic_identity()
    history_mapper = inspect(history_class)
    if (
        identity is not None
        and history_mapper.polymorphic_on is not None
        and history_mapper.polymorphic_identity != identity
    ):
        raise PersistenceError(
            f"History class [{history_class.__name__}] has polymorphic identity "
            f"[{history_mapper.polymorphic_identity}], which does not mirror "
            f"[{identity}] on live class [{live_class.__name__}]"
        )
    return history_class


def history_foreign_key_name(live_class: Type[DatabaseEntity]) -> str:
    """Returns the name of the history table column holding the live record's
    primary key, e.g. 'post_id' for Post and every subclass of Post.

    This is the __history_foreign_key__ declared on the base history class if
    present. Otherwise it is the primary key column name of the base live class, or
    <base table name>_id if that primary key column is literally named 'id'.
    """
    base_class = live_class.get_base_entity_class()
    if base_class in _CACHE.foreign_key_name_by_base_class:
        return _CACHE.foreign_key_name_by_base_class[base_class]

    base_history_class = history_class_for(base_class)
    foreign_key_name = (
        base_history_class.__history_foreign_key__ if base_history_class else None
    )
    if foreign_key_name is None:
        primary_key_column_name = base_class.get_primary_key_column_name()
        if primary_key_column_name == "id":
            foreign_key_name = f"{inspect(base_class).local_table.name}_id"
        else:
            foreign_key_name = primary_key_column_name

    _CACHE.foreign_key_name_by_base_class[base_class] = foreign_key_name
    return foreign_key_name


def get_shared_column_names(
    live_class: Type[DatabaseEntity], history_class: Type[HistoryEntity]
) -> List[str]:
    """Returns the names of all business columns present on both the live record's
    mapping and the history table, in history table order.

    NOTE: Columns present on only one of the tables are ignored. The live primary
    key, the history foreign id and the history metadata columns are never shared.
    """
    live_column_names = {
        column.name for column in inspect(live_class).columns
    } - {column.name for column in inspect(live_class).primary_key}
    excluded = HISTORY_METADATA_COLUMN_NAMES | {history_foreign_key_name(live_class)}
    return [
        column.name
        for column in inspect(history_class).local_table.columns
        if column.name in live_column_names and column.name not in excluded
    ]


def _find_history_subclass_by_identity(
    live_class: Type[DatabaseEntity],
) -> Optional[type]:
    base_class = live_class.get_base_entity_class()
    if base_class is live_class:
        return None
    base_history_class = history_class_for(base_class)
    if base_history_class is None:
        return None
    if inspect(base_history_class).polymorphic_on is None:
        # The history table does not mirror the hierarchy, every subclass shares
        # the base history class.
        return base_history_class
    history_mapper = inspect(base_history_class).polymorphic_map.get(
        live_class.get_polymorphic_identity()
    )
    return history_mapper.class_ if history_mapper is not None else None


def _find_history_class_declaring(live_class: type) -> Optional[type]:
    """Returns the history class which names |live_class| in its own
    __live_class_name__, if any."""
    for mapper in inspect(live_class).registry.mappers:
        if vars(mapper.class_).get("__live_class_name__") == live_class.__name__:
            return mapper.class_
    return None


def _find_mapped_class(owner: type, class_name: str) -> Optional[type]:
    """Returns the class named |class_name| mapped in the same registry as |owner|,
    preferring one declared in the same module as |owner|.
    """
    candidates = [
        mapper.class_
        for mapper in inspect(owner).registry.mappers
        if mapper.class_.__name__ == class_name
    ]
    if not candidates:
        return None
    for candidate in candidates:
        if candidate.__module__ == owner.__module__:
            return candidate
    return candidates[0]
