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
"""Session listener keeping persisted history rows immutable."""
import logging

from sqlalchemy import event
from sqlalchemy.orm import Session

from chronicler.persistence.database.history_entity import HistoryEntity


def history_session_listener(session: Session) -> None:
    """Installs a listener on |session| that, before every flush:
    1) reverts pending changes to persisted history rows other than closing an open
        row or promoting it into a snapshot,
    2) cancels pending deletes of history rows.

    Rejected changes are logged as warnings rather than raised.
    """

    @event.listens_for(session, "before_flush")
    def _revert_history_mutations(session: Session, _flush_context, _instances) -> None:
        for obj in list(session.dirty):
            if not isinstance(obj, HistoryEntity):
                continue
            violation = obj.pending_change_violation()
            if violation is None:
                continue
            logging.warning(
                "Rejected changes to %s on [%s], history rows are immutable",
                list(violation.attempted_changes),
                obj,
            )
            session.expire(obj)

        for obj in list(session.deleted):
            if not isinstance(obj, HistoryEntity):
                continue
            logging.warning("Rejected delete of [%s], history rows are immutable", obj)
            session.expunge(obj)
