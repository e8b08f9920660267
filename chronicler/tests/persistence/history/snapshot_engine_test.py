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
"""Tests for snapshot_engine.py."""
import uuid

from freezegun import freeze_time
from mock import patch
from more_itertools import one
from sqlalchemy import select

from chronicler.common.constants.history_mode import HistoryMode
from chronicler.persistence.errors import (
    CannotSnapshotHistoryError,
    HistoryInsertionError,
)
from chronicler.persistence.history import snapshot_engine
from chronicler.persistence.history.association_graph import AssociationGraph
from chronicler.persistence.history.live_record_persistence import (
    save,
    save_without_history,
)
from chronicler.persistence.history.snapshot_engine import snapshot
from chronicler.tests.persistence.history.history_test_case import (
    DATETIME_1,
    USER_ID,
    HistoryTestCase,
)
from chronicler.tests.persistence.history.history_test_schema import (
    Author,
    AuthorHistory,
    Comment,
    CommentHistory,
    DraftPost,
    Post,
    PostHistory,
    PostStats,
    PostStatsHistory,
    PrivatePost,
    PrivatePostHistory,
    Tag,
)


class TestSnapshot(HistoryTestCase):
    """Tests for snapshot"""

    def setUp(self) -> None:
        super().setUp()
        self.author = Author(full_name="Ada Lovelace")
        self.post = Post(title="Notes", author=self.author)
        self.private_post = PrivatePost(
            title="Letters", audience="Babbage", author=self.author
        )
        self.comment = Comment(body="Note G", post=self.post, author=self.author)
        self.tag = Tag(name="math", post_id=None)
        self.post.tags.append(self.tag)
        self.post.stats = PostStats(comment_count=1)
        for record in (self.author, self.post, self.private_post, self.comment):
            save_without_history(self.session, record)

    def _snapshot_row_count(self, snapshot_id: str) -> int:
        return sum(
            len(
                self.session.scalars(
                    select(history_class).where(
                        history_class.snapshot_id == snapshot_id
                    )
                ).all()
            )
            for history_class in (AuthorHistory, PostHistory, CommentHistory)
        )

    def test_snapshot_capturesReachableGraphOnce(self) -> None:
        root_history = snapshot(self.session, self.author, config=self.config)

        snapshot_id = root_history.snapshot_id
        self.assertEqual(str(uuid.UUID(snapshot_id)), snapshot_id)
        self.assertIsInstance(root_history, AuthorHistory)
        self.assertEqual(self.author.author_id, root_history.author_id)

        self.assertEqual(
            self.author.author_id, one(self.all_rows(AuthorHistory)).author_id
        )
        post_rows = self.all_rows(PostHistory)
        self.assertEqual(
            [self.post.post_id, self.private_post.post_id],
            [row.post_id for row in post_rows],
        )
        self.assertIsInstance(post_rows[1], PrivatePostHistory)
        self.assertEqual(
            self.comment.comment_id, one(self.all_rows(CommentHistory)).comment_id
        )
        self.assertEqual(4, self._snapshot_row_count(snapshot_id))

    def test_snapshot_fromAnyNode_reachesTheSameGraph(self) -> None:
        root_history = snapshot(self.session, self.comment, config=self.config)

        self.assertIsInstance(root_history, CommentHistory)
        self.assertEqual(4, self._snapshot_row_count(root_history.snapshot_id))

    def test_snapshot_skipsNonVersionedAndViewBackedRecords(self) -> None:
        snapshot(self.session, self.post, config=self.config)

        self.assertEqual(0, self.count_rows(PostStatsHistory))
        self.assertEqual(1, self.count_rows(Tag))

    def test_snapshot_skipsPolymorphicSubtypeWithoutHistory(self) -> None:
        draft = DraftPost(title="Draft", author=self.author)
        save_without_history(self.session, draft)

        root_history = snapshot(self.session, self.author, config=self.config)

        self.assertEqual(4, self._snapshot_row_count(root_history.snapshot_id))

    def test_snapshot_promotesOpenRowWithoutSnapshot(self) -> None:
        history = save(
            self.session,
            Author(full_name="Charles Babbage"),
            history_user_id=USER_ID,
            config=self.config,
            now=DATETIME_1,
        )
        author = self.session.get(Author, history.author_id)

        root_history = snapshot(self.session, author, config=self.config)

        self.assertEqual(history.history_id, root_history.history_id)
        self.assertIsNotNone(root_history.snapshot_id)
        self.assertEqual(USER_ID, root_history.history_user_id)
        self.assertEqual(
            1,
            len([row for row in self.all_rows(AuthorHistory) if row.author_id == author.author_id]),
        )

    def test_snapshot_secondSnapshot_appendsNewRows(self) -> None:
        with freeze_time("2021-06-01 12:00:00") as frozen_time:
            first = snapshot(self.session, self.author, config=self.config)
            frozen_time.tick()
            second = snapshot(self.session, self.author, config=self.config)

        self.assertNotEqual(first.snapshot_id, second.snapshot_id)
        self.assertEqual(4, self._snapshot_row_count(first.snapshot_id))
        self.assertEqual(4, self._snapshot_row_count(second.snapshot_id))
        self.assertEqual(second, one(self.open_rows(AuthorHistory)))
        self.assertIsNotNone(first.history_ended_at)

    def test_snapshot_secondSnapshotAtSameTime_raises(self) -> None:
        with freeze_time("2021-06-01 12:00:00"):
            first = snapshot(self.session, self.author, config=self.config)
            with self.assertRaises(HistoryInsertionError):
                snapshot(self.session, self.author, config=self.config)

        author_row = one(self.all_rows(AuthorHistory))
        self.assertEqual(first.history_id, author_row.history_id)
        self.assertEqual(first.snapshot_id, author_row.snapshot_id)
        self.assertIsNone(author_row.history_ended_at)
        self.assertEqual(4, self._snapshot_row_count(first.snapshot_id))
        self.assertEqual(
            4,
            self.count_rows(AuthorHistory)
            + self.count_rows(PostHistory)
            + self.count_rows(CommentHistory),
        )

    def test_snapshot_afterChangingOneRecord_promotesItAndCopiesTheRest(
        self,
    ) -> None:
        with freeze_time("2021-06-01 12:00:00") as frozen_time:
            first = snapshot(self.session, self.author, config=self.config)
            frozen_time.tick()
            self.post.title = "Revised notes"
            saved = save(
                self.session,
                self.post,
                history_user_id=USER_ID,
                config=self.config,
            )
            frozen_time.tick()
            second = snapshot(self.session, self.author, config=self.config)

        def snapshot_row(history_class, foreign_key_column, snapshot_id, foreign_id):
            return one(
                self.session.scalars(
                    select(history_class)
                    .where(history_class.snapshot_id == snapshot_id)
                    .where(foreign_key_column == foreign_id)
                ).all()
            )

        self.assertNotEqual(first.snapshot_id, second.snapshot_id)
        self.assertEqual(4, self._snapshot_row_count(second.snapshot_id))

        # The changed record's unclaimed row is promoted into the new snapshot
        second_post = snapshot_row(
            PostHistory, PostHistory.post_id, second.snapshot_id, self.post.post_id
        )
        self.assertEqual(saved.history_id, second_post.history_id)
        self.assertEqual("Revised notes", second_post.title)
        self.assertEqual(USER_ID, second_post.history_user_id)
        first_post = snapshot_row(
            PostHistory, PostHistory.post_id, first.snapshot_id, self.post.post_id
        )
        self.assertEqual("Notes", first_post.title)
        self.assertIsNotNone(first_post.history_ended_at)

        # Unchanged records get fresh rows equal in content to the previous ones
        self.assertNotEqual(first.history_id, second.history_id)
        self.assertEqual(first.full_name, second.full_name)
        for history_class, foreign_key_column, foreign_id, column_name in (
            (CommentHistory, CommentHistory.comment_id, self.comment.comment_id, "body"),
            (PostHistory, PostHistory.post_id, self.private_post.post_id, "title"),
        ):
            previous = snapshot_row(
                history_class, foreign_key_column, first.snapshot_id, foreign_id
            )
            current = snapshot_row(
                history_class, foreign_key_column, second.snapshot_id, foreign_id
            )
            self.assertNotEqual(previous.history_id, current.history_id)
            self.assertEqual(
                getattr(previous, column_name), getattr(current, column_name)
            )
            self.assertIsNotNone(previous.history_ended_at)
            self.assertIsNone(current.history_ended_at)

    def test_snapshot_existingSnapshotId_returnsExistingRow(self) -> None:
        first = snapshot(self.session, self.author, config=self.config)

        again = snapshot(
            self.session,
            self.author,
            config=self.config,
            snapshot_id=first.snapshot_id,
        )

        self.assertEqual(first.history_id, again.history_id)
        self.assertEqual(4, self._snapshot_row_count(first.snapshot_id))

    def test_snapshot_doesNotRequireActor(self) -> None:
        root_history = snapshot(self.session, self.author, None, config=self.config)

        self.assertIsNone(root_history.history_user_id)

    def test_snapshot_snapshotOnlyMode(self) -> None:
        self.config.mode = HistoryMode.SNAPSHOT_ONLY
        save(self.session, self.post, history_user_id=None, config=self.config)

        root_history = snapshot(self.session, self.post, config=self.config)

        self.assertEqual(4, self._snapshot_row_count(root_history.snapshot_id))

    def test_snapshot_historyRow_raises(self) -> None:
        root_history = snapshot(self.session, self.author, config=self.config)

        with self.assertRaises(CannotSnapshotHistoryError):
            snapshot(self.session, root_history, config=self.config)
        with self.assertRaises(CannotSnapshotHistoryError):
            snapshot(self.session, root_history.live_view(), config=self.config)

    def test_snapshot_failureLeavesNothingBehind(self) -> None:
        original_record_history = snapshot_engine.record_history
        calls = []

        def fail_on_third_record(*args, **kwargs):
            calls.append(args[1])
            if len(calls) == 3:
                raise HistoryInsertionError("CommentHistory", 1, "failed")
            return original_record_history(*args, **kwargs)

        with patch.object(
            snapshot_engine, "record_history", side_effect=fail_on_third_record
        ):
            with self.assertRaises(HistoryInsertionError):
                snapshot(self.session, self.author, config=self.config)

        self.assertEqual(0, self.count_rows(AuthorHistory))
        self.assertEqual(0, self.count_rows(PostHistory))
        self.assertEqual(0, self.count_rows(CommentHistory))

    def test_snapshot_customAssociationGraph(self) -> None:
        class _NoAssociations(AssociationGraph):
            def related_records(self, record):
                return iter(())

        root_history = snapshot(
            self.session,
            self.author,
            config=self.config,
            association_graph=_NoAssociations(),
        )

        self.assertEqual(1, self._snapshot_row_count(root_history.snapshot_id))
