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
"""Adapter letting a history row answer calls to the behavior of the live subtype it
was recorded from."""
import inspect as pyinspect
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Type

from sqlalchemy.inspection import inspect

from chronicler.persistence.database.database_entity import DatabaseEntity
from chronicler.persistence.database.history_entity import (
    HistoriedEntity,
    HistoryEntity,
)
from chronicler.persistence.history import type_hierarchy


@lru_cache(maxsize=None)
def delegated_method_names(
    live_class: Type[HistoriedEntity], history_class: Type[HistoryEntity]
) -> FrozenSet[str]:
    """Returns the names of the public methods and properties declared on
    |live_class| (or its own superclasses) which a HistoryView of a
    |history_class| row forwards to the live class.

    Names defined on |history_class| are excluded, so the history row's own
    behavior always takes precedence. Computed once per pair.
    """
    return frozenset(
        name
        for name in _live_member_names(live_class)
        if not hasattr(history_class, name)
    )


@lru_cache(maxsize=None)
def overridden_method_names(
    live_class: Type[HistoriedEntity], history_class: Type[HistoryEntity]
) -> FrozenSet[str]:
    """Returns the names of the public methods of |live_class| which |history_class|
    also declares as methods.

    Calls to these names made from inside delegated live methods are answered by
    the history row. Properties are not rerouted, a delegated method reading a
    property always gets the live class's version.
    """
    return frozenset(
        name
        for name, value in _live_member_names(live_class).items()
        if pyinspect.isfunction(value)
        and pyinspect.isfunction(getattr(history_class, name, None))
    )


def _live_member_names(live_class: Type[HistoriedEntity]) -> Dict[str, Any]:
    """Returns the public methods and properties declared on |live_class| and its
    own superclasses, keyed by name, nearest declaration first."""
    framework_classes = {object, DatabaseEntity, HistoriedEntity}
    members: Dict[str, Any] = {}
    for klass in live_class.__mro__:
        if klass in framework_classes or _is_declarative_base(klass):
            continue
        for name, value in vars(klass).items():
            if name.startswith("_") or name in members:
                continue
            if isinstance(value, (staticmethod, classmethod, property)) or (
                pyinspect.isfunction(value)
            ):
                members[name] = value
    return members


class HistoryView:
    """Wraps a history row so that methods of the live subtype can be called on it.

    Each delegated call runs against a transient live instance populated from the
    row's business columns. The transient instance is never added to a session, so
    it can not be used to write to the live table. Methods the history class
    overrides stay bound to the history row on the transient instance, so a live
    method calling one of them internally gets the history row's version.
    """

    def __init__(self, history_row: HistoryEntity):
        self._history_row = history_row
        self._live_class = type_hierarchy.live_class_for(type(history_row))
        self._live_instance = None

    @property
    def history_row(self) -> HistoryEntity:
        return self._history_row

    @property
    def live_class(self) -> Type[HistoriedEntity]:
        return self._live_class

    def __getattr__(self, name: str) -> Any:
        # Only called for names not found on the view itself
        if name.startswith("_"):
            raise AttributeError(name)
        if name in delegated_method_names(self._live_class, type(self._history_row)):
            return getattr(self._get_live_instance(), name)
        return getattr(self._history_row, name)

    def _get_live_instance(self) -> HistoriedEntity:
        if self._live_instance is None:
            self._live_instance = _build_transient_live_instance(
                self._live_class, self._history_row
            )
        return self._live_instance

    def __repr__(self) -> str:
        return f"HistoryView({self._history_row!r})"


def _build_transient_live_instance(
    live_class: Type[HistoriedEntity], history_row: HistoryEntity
) -> HistoriedEntity:
    """Returns an unsaved |live_class| instance holding the business column values
    and the live primary key of |history_row|, without running the live class's
    constructor."""
    live_instance = inspect(live_class).class_manager.new_instance()
    history_class = type(history_row)
    for column_name in type_hierarchy.get_shared_column_names(
        live_class, history_class
    ):
        setattr(
            live_instance,
            live_class.get_property_name_by_column_name(column_name),
            getattr(
                history_row, history_class.get_property_name_by_column_name(column_name)
            ),
        )
    setattr(
        live_instance,
        live_class._get_primary_key_property_name(),  # pylint: disable=protected-access
        history_row.get_foreign_id(),
    )
    for name in overridden_method_names(live_class, history_class):
        # Instance attributes shadow the live class's methods
        live_instance.__dict__[name] = getattr(history_row, name)
    return live_instance


def _is_declarative_base(klass: type) -> bool:
    return "registry" in vars(klass) and "metadata" in vars(klass)
