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
"""Tests for history_queries.py."""
from freezegun import freeze_time
from more_itertools import one

from chronicler.persistence.errors import PersistenceError
from chronicler.persistence.history import history_queries
from chronicler.persistence.history.live_record_persistence import (
    save,
    save_without_history,
)
from chronicler.persistence.history.snapshot_engine import snapshot
from chronicler.tests.persistence.history.history_test_case import (
    DATETIME_1,
    DATETIME_2,
    DATETIME_3,
    USER_ID,
    HistoryTestCase,
)
from chronicler.tests.persistence.history.history_test_schema import (
    Author,
    AuthorHistory,
    Comment,
    CommentHistory,
    Post,
    PostHistory,
)


class TestHistoryQueries(HistoryTestCase):
    """Tests for the timeline queries"""

    def setUp(self) -> None:
        super().setUp()
        self.author = Author(full_name="Ada Lovelace")
        for now, full_name in [
            (DATETIME_1, "Ada Byron"),
            (DATETIME_2, "Ada King"),
            (DATETIME_3, "Ada Lovelace"),
        ]:
            self.author.full_name = full_name
            save(
                self.session,
                self.author,
                history_user_id=USER_ID,
                config=self.config,
                now=now,
            )
        self.other_author = Author(full_name="Mary Somerville")
        save(
            self.session,
            self.other_author,
            history_user_id=USER_ID,
            config=self.config,
            now=DATETIME_1,
        )

    def test_histories_oldestFirst(self) -> None:
        rows = history_queries.histories(self.session, self.author)

        self.assertEqual(
            ["Ada Byron", "Ada King", "Ada Lovelace"], [row.full_name for row in rows]
        )

    def test_current_newestFirst(self) -> None:
        rows = history_queries.current(self.session, AuthorHistory)

        self.assertEqual(
            ["Mary Somerville", "Ada Lovelace"], [row.full_name for row in rows]
        )

    def test_currentHistory(self) -> None:
        row = history_queries.current_history(self.session, self.author)

        self.assertEqual("Ada Lovelace", row.full_name)
        self.assertTrue(row.is_current)

    def test_currentHistory_noHistory(self) -> None:
        author = Author(full_name="Unrecorded")
        save_without_history(self.session, author)

        self.assertIsNone(history_queries.current_history(self.session, author))

    def test_currentHistory_severalOpenRows_warnsAndReturnsNewest(self) -> None:
        stray = AuthorHistory(
            author_id=self.author.author_id,
            full_name="Stray",
            history_started_at=DATETIME_3.replace(year=2021),
        )
        self.session.add(stray)
        self.session.flush()

        with self.assertLogs(level="WARNING") as logs:
            row = history_queries.current_history(self.session, self.author)

        self.assertEqual(stray.history_id, row.history_id)
        self.assertIn("open histories", logs.output[0])


class TestSnapshotQueries(HistoryTestCase):
    """Tests for the snapshot queries"""

    def setUp(self) -> None:
        super().setUp()
        self.author = Author(full_name="Ada Lovelace")
        self.post = Post(title="Notes", author=self.author)
        self.comments = [
            Comment(body="Note A", post=self.post),
            Comment(body="Note G", post=self.post),
        ]
        save_without_history(self.session, self.post)

        with freeze_time("2021-06-01 12:00:00") as frozen_time:
            self.first = snapshot(self.session, self.author, config=self.config)
            frozen_time.tick()
            self.post.title = "Sketch of the Analytical Engine"
            save_without_history(self.session, self.post)
            self.second = snapshot(self.session, self.author, config=self.config)

    def test_latestSnapshot(self) -> None:
        row = history_queries.latest_snapshot(self.session, self.post)

        self.assertEqual(self.second.snapshot_id, row.snapshot_id)
        self.assertEqual("Sketch of the Analytical Engine", row.title)

    def test_latestSnapshot_neverSnapshotted(self) -> None:
        author = Author(full_name="Unrecorded")
        save_without_history(self.session, author)

        self.assertIsNone(history_queries.latest_snapshot(self.session, author))

    def test_latestSnapshotRows_onePerSnapshot(self) -> None:
        rows = history_queries.latest_snapshot_rows(self.session, CommentHistory)

        self.assertEqual(2, len(rows))
        self.assertCountEqual(
            [self.first.snapshot_id, self.second.snapshot_id],
            [row.snapshot_id for row in rows],
        )
        for row in rows:
            self.assertEqual(self.comments[1].comment_id, row.comment_id)

    def test_snapshotRows(self) -> None:
        rows = history_queries.snapshot_rows(
            self.session, CommentHistory, self.first.snapshot_id
        )

        self.assertEqual(
            [comment.comment_id for comment in self.comments],
            [row.comment_id for row in rows],
        )

    def test_getSnapshotAssociation_manyToOne(self) -> None:
        post_row = one(
            history_queries.snapshot_rows(
                self.session, PostHistory, self.first.snapshot_id
            )
        )

        author_row = history_queries.get_snapshot_association(
            self.session, post_row, "author"
        )

        self.assertEqual(self.first.history_id, author_row.history_id)

    def test_getSnapshotAssociation_oneToMany(self) -> None:
        post_row = one(
            history_queries.snapshot_rows(
                self.session, PostHistory, self.second.snapshot_id
            )
        )

        comment_rows = history_queries.get_snapshot_association(
            self.session, post_row, "comments"
        )

        self.assertEqual(
            [comment.comment_id for comment in self.comments],
            [row.comment_id for row in comment_rows],
        )
        for row in comment_rows:
            self.assertEqual(self.second.snapshot_id, row.snapshot_id)

    def test_getSnapshotAssociation_reverseOneToMany(self) -> None:
        author_rows = history_queries.get_snapshot_association(
            self.session, self.second, "posts"
        )

        self.assertEqual(
            ["Sketch of the Analytical Engine"], [row.title for row in author_rows]
        )

    def test_getSnapshotAssociation_rowOutsideSnapshot_raises(self) -> None:
        self.author.full_name = "Ada King"
        save(self.session, self.author, history_user_id=USER_ID, config=self.config)
        row = one(
            row
            for row in history_queries.histories(self.session, self.author)
            if row.snapshot_id is None
        )

        with self.assertRaises(PersistenceError):
            history_queries.get_snapshot_association(self.session, row, "posts")

    def test_getSnapshotAssociation_unknownRelationship_raises(self) -> None:
        with self.assertRaises(PersistenceError):
            history_queries.get_snapshot_association(
                self.session, self.second, "reviews"
            )
