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

"""Mixin class for database entities"""
from functools import lru_cache
from typing import Any, Dict, Optional, Set, Type, TypeVar

from sqlalchemy.inspection import inspect
from sqlalchemy.orm.properties import ColumnProperty
from sqlalchemy.orm.relationships import RelationshipProperty


class DatabaseEntity:
    """Mixin class to provide helper methods to expose database entity
    properties
    """

    Property = TypeVar("Property", RelationshipProperty, ColumnProperty)

    @classmethod
    def get_entity_name(cls) -> str:
        return cls.__name__

    @classmethod
    @lru_cache(maxsize=None)
    def get_base_entity_class(cls) -> Type["DatabaseEntity"]:
        """Returns the class at the root of this class's mapped inheritance
        hierarchy, or the class itself if it does not inherit from another mapped
        class.
        """
        return inspect(cls).base_mapper.class_

    @classmethod
    @lru_cache(maxsize=None)
    def get_primary_key_column_name(cls) -> str:
        """Returns string name of primary key column of the table

        NOTE: This name is the *column* name on the table, which is not
        guaranteed to be the same as the *attribute* name on the ORM object.
        """
        # primary_key returns a tuple containing a single column
        return inspect(cls).primary_key[0].name

    @classmethod
    @lru_cache(maxsize=None)
    def get_column_property_names(cls) -> Set[str]:
        """Returns set of string names of all properties of the entity that
        correspond to columns in the table.

        NOTE: These names are the *attribute* names on the ORM object, which are
        not guaranteed to be the same as the *column* names in the table. This
        distinction is important in cases where a different attribute name is
        used because the column name is a Python reserved keyword like "class".
        """
        return cls._get_entity_property_names_by_type(ColumnProperty)

    @classmethod
    @lru_cache(maxsize=None)
    def get_column_names_by_property_name(cls) -> Dict[str, str]:
        """Returns a dictionary mapping each column property name on the ORM object
        to the name of the column it is stored in.
        """
        return {
            column_property.key: column_property.columns[0].name
            for column_property in inspect(cls).column_attrs
        }

    @classmethod
    @lru_cache(maxsize=None)
    def get_relationship_property_names(cls) -> Set[str]:
        """Returns set of string names of all properties of the entity that
        correspond to relationships to other database entities.
        """
        return set(inspect(cls).relationships.keys())

    @classmethod
    @lru_cache(maxsize=None)
    def get_property_name_by_column_name(cls, column_name: str) -> str:
        """Returns string name of ORM object attribute corresponding to
        |column_name| on table
        """
        return next(
            name
            for name, name_of_column in cls.get_column_names_by_property_name().items()
            if column_name == name_of_column
        )

    @classmethod
    @lru_cache(maxsize=None)
    def get_discriminator_column_name(cls) -> Optional[str]:
        """Returns the name of the column that identifies the concrete subtype of a
        polymorphic entity, or None if the entity is not polymorphic.

        The discriminator is always declared on the base class of the hierarchy.
        """
        polymorphic_on = inspect(cls).base_mapper.polymorphic_on
        if polymorphic_on is None:
            return None
        return polymorphic_on.name

    @classmethod
    def get_polymorphic_identity(cls) -> Optional[Any]:
        """Returns the discriminator value stored for instances of this exact class,
        or None if the entity is not polymorphic."""
        return inspect(cls).polymorphic_identity

    @classmethod
    def get_soft_delete_column_name(cls) -> Optional[str]:
        """Returns the name of the column marking a record as soft-deleted, or None
        if records of this entity are removed when deleted.
        """
        return getattr(cls, "__soft_delete_column__", None)

    def get_primary_key(self) -> Optional[int]:
        """Returns primary key value for entity"""
        return getattr(self, type(self)._get_primary_key_property_name(), None)

    @classmethod
    @lru_cache(maxsize=None)
    def _get_primary_key_property_name(cls) -> str:
        """Returns string name of primary key column property of the entity

        NOTE: This name is the *attribute* name on the ORM object, which is not
        guaranteed to be the same as the *column* name in the table.
        """
        return cls.get_property_name_by_column_name(cls.get_primary_key_column_name())

    @classmethod
    @lru_cache(maxsize=None)
    def _get_entity_property_names_by_type(
        cls, property_type: Type[Property]
    ) -> Set[str]:
        """Returns set of string names of all properties of |cls| that match the
        type of |property_type|.
        """
        return set(cls._get_entity_names_and_properties_by_type(property_type).keys())

    @classmethod
    def _get_entity_names_and_properties_by_type(
        cls, property_type: Type[Property]
    ) -> Dict[str, Property]:
        """Returns a dictionary where the keys are the string names of all
        properties of |cls| that are of type |property_type|, and the
        values are the corresponding properties.
        """
        names_to_properties = {}

        for property_object in inspect(cls).attrs:
            if isinstance(property_object, property_type):
                names_to_properties[property_object.key] = property_object

        return names_to_properties

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.get_primary_key_column_name()}={self.get_primary_key()})"
