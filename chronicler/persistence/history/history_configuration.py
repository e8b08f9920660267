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
"""Configuration describing when and how history is recorded for each versioned
entity type."""
import os
from typing import Dict, Optional, Type, TypeVar

import attr

from chronicler.common.constants.history_mode import ActorPolicy, HistoryMode

HISTORY_MODE_ENV_VAR = "CHRONICLER_HISTORY_MODE"
HISTORY_ACTOR_POLICY_ENV_VAR = "CHRONICLER_HISTORY_ACTOR_POLICY"

_EnumT = TypeVar("_EnumT", HistoryMode, ActorPolicy)


@attr.s
class HistoryConfiguration:
    """Process-wide defaults plus per-type overrides for history recording.

    An instance is passed explicitly to every history operation. The effective
    setting for a live class is, in order of precedence:
    1) an override set on this configuration for the class or one of its mapped
        superclasses (e.g. an override for Post applies to PrivatePost),
    2) the __history_mode__ / __history_actor_policy__ declared on the class,
    3) the configuration default.

    Changes made at runtime only affect operations started afterwards.
    """

    mode: HistoryMode = attr.ib(
        default=HistoryMode.HISTORIES,
        validator=attr.validators.instance_of(HistoryMode),
    )
    actor_policy: ActorPolicy = attr.ib(
        default=ActorPolicy.REQUIRED,
        validator=attr.validators.instance_of(ActorPolicy),
    )

    # Overrides keyed by live class name
    mode_overrides: Dict[str, HistoryMode] = attr.ib(factory=dict)
    actor_policy_overrides: Dict[str, ActorPolicy] = attr.ib(factory=dict)

    @classmethod
    def from_environment(cls) -> "HistoryConfiguration":
        """Builds a configuration whose defaults are read from the
        CHRONICLER_HISTORY_MODE and CHRONICLER_HISTORY_ACTOR_POLICY environment
        variables, if set."""
        return cls(
            mode=_enum_from_env(HISTORY_MODE_ENV_VAR, HistoryMode, HistoryMode.HISTORIES),
            actor_policy=_enum_from_env(
                HISTORY_ACTOR_POLICY_ENV_VAR, ActorPolicy, ActorPolicy.REQUIRED
            ),
        )

    def set_mode_for(self, live_class: type, mode: HistoryMode) -> None:
        self.mode_overrides[live_class.__name__] = mode

    def set_actor_policy_for(self, live_class: type, actor_policy: ActorPolicy) -> None:
        self.actor_policy_overrides[live_class.__name__] = actor_policy

    def clear_overrides_for(self, live_class: type) -> None:
        self.mode_overrides.pop(live_class.__name__, None)
        self.actor_policy_overrides.pop(live_class.__name__, None)

    def mode_for(self, live_class: type) -> HistoryMode:
        override = self._override_for(live_class, self.mode_overrides)
        if override is not None:
            return override
        return getattr(live_class, "__history_mode__", None) or self.mode

    def actor_policy_for(self, live_class: type) -> ActorPolicy:
        override = self._override_for(live_class, self.actor_policy_overrides)
        if override is not None:
            return override
        return getattr(live_class, "__history_actor_policy__", None) or self.actor_policy

    def records_histories(self, live_class: type) -> bool:
        return self.mode_for(live_class) is HistoryMode.HISTORIES

    @staticmethod
    def _override_for(
        live_class: type, overrides: Dict[str, _EnumT]
    ) -> Optional[_EnumT]:
        for klass in live_class.__mro__:
            if klass.__name__ in overrides:
                return overrides[klass.__name__]
        return None


def _enum_from_env(env_var: str, enum_cls: Type[_EnumT], default: _EnumT) -> _EnumT:
    value = os.environ.get(env_var)
    if not value:
        return default
    try:
        return enum_cls(value.strip().lower())
    except ValueError as e:
        raise ValueError(
            f"Invalid value [{value}] for {env_var}, expected one of "
            f"{sorted(member.value for member in enum_cls)}"
        ) from e
