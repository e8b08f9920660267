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
"""Utils for working with history timestamps."""
import datetime

import pytz


def current_datetime_utc() -> datetime.datetime:
    """Returns the current time in UTC as a naive datetime.

    History validity columns are stored without timezone information, so every
    timestamp written to them is normalized to naive UTC.
    """
    return datetime.datetime.now(tz=pytz.UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime.datetime) -> datetime.datetime:
    """Returns |value| as a naive UTC datetime. Naive values are assumed to already
    be in UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)
