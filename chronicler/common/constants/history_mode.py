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
"""Constants describing how history is recorded for a versioned entity type."""
from enum import Enum


class HistoryMode(Enum):
    """When history rows are appended for a versioned entity type."""

    # Every recorded mutation of a live record appends a history row.
    HISTORIES = "histories"

    # History rows are only appended by explicit snapshot requests.
    SNAPSHOT_ONLY = "snapshot_only"


class ActorPolicy(Enum):
    """What happens when a mutation is recorded without an acting user id."""

    # Raise MissingActorError.
    REQUIRED = "required"

    # Log a warning and record the history row with a null actor.
    WARN_ONLY = "warn_only"

    # Record the history row with a null actor without logging.
    SILENT = "silent"
