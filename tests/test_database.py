"""Tests for the database layer."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, OperationalError

from mealmatch import database
from mealmatch.database import (
    INVITE_CODE_ALPHABET,
    INVITE_CODE_LENGTH,
    Match,
    PairGroup,
    Preference,
)
from mealmatch.domain.enums import SwipeDirection
from mealmatch.domain.errors import GroupMembershipError, MatchNotFound, StorageUnavailable
from mealmatch.metrics import metrics_snapshot


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class TestGroups:
    def test_open_invite_blocks_second_group(self, db):
        database.create_group(db, "alice")
        with pytest.raises(GroupMembershipError):
            database.create_group(db, "alice")

    def test_joining_discards_own_pending_invite(self, db):
        own = database.create_group(db, "alice")
        database.insert_preference(db, "alice", "pasta", own.id, SwipeDirection.LIKE)
        carol = database.create_group(db, "carol")

        joined = database.join_group(db, carol.invite_code, "alice")

        assert joined.id == carol.id
        assert joined.partner_of("alice") == "carol"
        groups_with_alice = (
            db.query(PairGroup)
            .filter(or_(PairGroup.first_actor_id == "alice", PairGroup.second_actor_id == "alice"))
            .count()
        )
        assert groups_with_alice == 1
        assert database.get_group(db, own.id) is None
        assert database.count_preferences(db, "alice", "pasta", own.id) == 0
        assert database.resolve_group(db, "alice").id == carol.id

    def test_failed_join_keeps_pending_invite(self, db):
        own = database.create_group(db, "alice")
        full = database.create_group(db, "carol")
        database.join_group(db, full.invite_code, "dave")

        with pytest.raises(GroupMembershipError):
            database.join_group(db, full.invite_code, "alice")
        assert database.get_group(db, own.id) is not None

    def test_invite_code_alphabet(self):
        for _ in range(50):
            code = database.generate_invite_code()
            assert len(code) == INVITE_CODE_LENGTH
            assert set(code) <= set(INVITE_CODE_ALPHABET)

    def test_create_then_join(self, db):
        group = database.create_group(db, "alice")
        assert not group.is_complete
        assert group.partner_of("alice") is None

        joined = database.join_group(db, group.invite_code.lower(), "bob")
        assert joined.id == group.id
        assert joined.is_complete
        assert joined.partner_of("alice") == "bob"
        assert joined.partner_of("bob") == "alice"
        assert joined.partner_of("carol") is None

    def test_join_own_group_rejected(self, db):
        group = database.create_group(db, "alice")
        with pytest.raises(GroupMembershipError):
            database.join_group(db, group.invite_code, "alice")

    def test_join_full_group_rejected(self, db):
        group = database.create_group(db, "alice")
        database.join_group(db, group.invite_code, "bob")
        with pytest.raises(GroupMembershipError):
            database.join_group(db, group.invite_code, "carol")

    def test_join_unknown_code_rejected(self, db):
        with pytest.raises(GroupMembershipError):
            database.join_group(db, "ZZZZZZ", "bob")

    def test_member_of_complete_group_cannot_open_another(self, db):
        group = database.create_group(db, "alice")
        database.join_group(db, group.invite_code, "bob")
        with pytest.raises(GroupMembershipError):
            database.create_group(db, "bob")

    def test_resolve_group_prefers_complete(self, db):
        complete = database.create_group(db, "alice", invite_code="AAAAAA")
        database.join_group(db, complete.invite_code, "bob")
        database.create_group(db, "carol", invite_code="BBBBBB")

        assert database.resolve_group(db, "bob").id == complete.id
        assert database.resolve_group(db, "alice").is_complete
        assert database.resolve_group(db, "nobody") is None

    def test_get_group_missing(self, db):
        assert database.get_group(db, "missing") is None


class TestPreferences:
    def test_unique_per_actor_item_group(self, db, group):
        database.insert_preference(db, "alice", "pasta", group.id, SwipeDirection.LIKE)
        with pytest.raises(IntegrityError):
            database.insert_preference(db, "alice", "pasta", group.id, SwipeDirection.DISLIKE)
        db.rollback()
        assert database.count_preferences(db, "alice", "pasta", group.id) == 1

    def test_find_preference_by_direction(self, db, group):
        database.insert_preference(db, "bob", "tacos", group.id, SwipeDirection.DISLIKE)
        assert database.find_preference(db, "bob", "tacos", group.id) is not None
        assert database.find_preference(
            db, "bob", "tacos", group.id, direction=SwipeDirection.LIKE,
        ) is None

    def test_swiped_item_ids(self, db, group):
        database.insert_preference(db, "alice", "pasta", group.id, SwipeDirection.LIKE)
        database.insert_preference(db, "alice", "soup", group.id, SwipeDirection.DISLIKE)
        database.insert_preference(db, "bob", "curry", group.id, SwipeDirection.LIKE)
        assert database.swiped_item_ids(db, "alice", group.id) == {"pasta", "soup"}

    def test_timestamps_are_utc_aware(self, db, group):
        event = database.insert_preference(db, "alice", "pasta", group.id, SwipeDirection.LIKE)
        stored = database.find_preference(db, "alice", "pasta", group.id)
        assert event.created_at.tzinfo is not None
        assert stored.created_at.tzinfo is not None


class TestMatches:
    def test_insert_if_absent_only_first_wins(self, db, group):
        first, inserted_first = database.insert_match_if_absent(db, group.id, "pasta")
        second, inserted_second = database.insert_match_if_absent(db, group.id, "pasta")
        assert inserted_first is True
        assert inserted_second is False
        assert first.id == second.id
        assert database.count_matches(db, group.id, "pasta") == 1

    def test_list_matches_newest_first_and_favorites(self, db, group):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i, item in enumerate(["a", "b", "c"]):
            db.add(Match(group_id=group.id, item_id=item, matched_at=base + timedelta(minutes=i)))
        db.commit()

        items = [m.item_id for m in database.list_matches(db, group.id)]
        assert items == ["c", "b", "a"]

        match_b = database.get_match(db, group.id, "b")
        updated = database.set_match_favorite(db, match_b.id, True)
        assert updated.is_favorite is True
        favorites = database.list_matches(db, group.id, favorites_only=True)
        assert [m.item_id for m in favorites] == ["b"]

    def test_set_favorite_missing(self, db):
        with pytest.raises(MatchNotFound):
            database.set_match_favorite(db, "nope", True)

    def test_favorite_does_not_touch_identity(self, db, group):
        match, _ = database.insert_match_if_absent(db, group.id, "pasta")
        database.set_match_favorite(db, match.id, True)
        database.set_match_favorite(db, match.id, False)
        again = database.get_match_by_id(db, match.id)
        assert (again.id, again.item_id, again.matched_at) == (match.id, match.item_id, match.matched_at)
        assert db.query(Preference).count() == 0


class TestPushTokens:
    def test_set_and_clear(self, db):
        assert database.get_push_token(db, "alice") is None
        database.set_push_token(db, "alice", "ExponentPushToken[abc]")
        assert database.get_push_token(db, "alice") == "ExponentPushToken[abc]"
        database.set_push_token(db, "alice", None)
        assert database.get_push_token(db, "alice") is None


class TestStorageErrors:
    def test_operational_error_maps_to_storage_unavailable(self):
        with pytest.raises(StorageUnavailable) as info:
            with database.storage_errors():
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        assert isinstance(info.value.cause, OperationalError)
        assert metrics_snapshot()["storage_faults"] == 1

    def test_integrity_error_passes_through(self):
        with pytest.raises(IntegrityError):
            with database.storage_errors():
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        assert metrics_snapshot()["storage_faults"] == 0
