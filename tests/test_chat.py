"""Tests for ChatSessionController, ChatListReducer and ChatDirectory."""

from datetime import timedelta

import pytest

from conftest import T0, make_dog, make_user
from mofumofu.chat import ChatDirectory, ChatListReducer, ChatSessionController, ChatState, new_chat_document
from mofumofu.errors import Forbidden, MissingPrecondition, NotFound, RemoteWriteError
from mofumofu.models import Match


@pytest.fixture
def owner(store):
    return make_user(store, "Owner")


@pytest.fixture
def petter(store):
    return make_user(store, "Petter")


@pytest.fixture
def dog_id(store, owner):
    return make_dog(store, owner.user_id, "Mochi")


@pytest.fixture
def match_id(store, owner, petter, dog_id):
    return store.insert("matches", {
        "dogId": dog_id,
        "dogOwnerId": owner.user_id,
        "pettingUserId": petter.user_id,
        "status": "active",
        "createdAt": T0,
    })


def insert_chat(store, match_id, created_at=T0, **extra):
    match = Match.from_doc(store.get("matches", match_id))
    doc = new_chat_document(match, created_at)
    doc.update(extra)
    chat_id = store.insert("chats", doc)
    store.update("matches", match_id, {"chatId": chat_id})
    return chat_id


def open_chat(identity, store, scheduler, clock, **kwargs):
    controller = ChatSessionController(identity, store, scheduler, clock)
    controller.initialize(**kwargs)
    return controller


class TestInitialize:
    def test_creates_chat_for_match_and_links_it(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)

        chat = store.get("chats", controller.session.id)
        assert chat["status"] == "active"
        assert chat["expiresAt"] - chat["createdAt"] == timedelta(hours=2)
        assert store.get("matches", match_id)["chatId"] == controller.session.id
        assert controller.state == ChatState.ACTIVE
        assert [j.seconds for j in scheduler.active] == [1]

    def test_reuses_linked_chat(self, owner, petter, match_id, store, scheduler, clock):
        first = open_chat(owner, store, scheduler, clock, match_id=match_id)
        second = open_chat(petter, store, scheduler, clock, match_id=match_id)
        assert first.session.id == second.session.id
        assert len(store.find("chats")) == 1

    def test_match_link_failure_surfaces(self, owner, match_id, store, scheduler, clock):
        store.fail_updates.add("matches")
        with pytest.raises(RemoteWriteError):
            open_chat(owner, store, scheduler, clock, match_id=match_id)

    def test_backfills_missing_expiry_once(self, owner, match_id, store, scheduler, clock):
        chat_id = insert_chat(store, match_id, expiresAt=None)
        controller = open_chat(owner, store, scheduler, clock, chat_id=chat_id)

        assert store.get("chats", chat_id)["expiresAt"] == T0 + timedelta(hours=2)
        assert controller.session.expires_at == T0 + timedelta(hours=2)

        again = open_chat(owner, store, scheduler, clock, chat_id=chat_id)
        assert again.session.expires_at == T0 + timedelta(hours=2)

    def test_already_expired_chat_is_closed_on_open(self, owner, match_id, store, scheduler, clock):
        chat_id = insert_chat(store, match_id, created_at=T0 - timedelta(hours=3))
        controller = open_chat(owner, store, scheduler, clock, chat_id=chat_id)

        assert controller.state == ChatState.CLOSED
        assert store.get("chats", chat_id)["status"] == "closed"
        assert store.get("chats", chat_id)["closedAt"] == clock()
        assert scheduler.active == []

    def test_strangers_are_refused(self, match_id, store, scheduler, clock):
        chat_id = insert_chat(store, match_id)
        stranger = make_user(store, "Stranger")
        with pytest.raises(Forbidden):
            open_chat(stranger, store, scheduler, clock, chat_id=chat_id)

    def test_nothing_to_open(self, owner, store, scheduler, clock):
        with pytest.raises(MissingPrecondition):
            open_chat(owner, store, scheduler, clock)
        with pytest.raises(NotFound):
            open_chat(owner, store, scheduler, clock, chat_id="missing")


class TestExpiry:
    def test_monitor_closes_chat_after_two_hours(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        states = []
        controller.subscribe(lambda snap: states.append(snap["state"]))

        clock.advance(hours=1, minutes=59)
        scheduler.run_pending("chat-expiry")
        assert controller.state == ChatState.ACTIVE

        clock.advance(minutes=1)
        scheduler.run_pending("chat-expiry")
        assert controller.state == ChatState.CLOSED
        assert store.get("chats", controller.session.id)["status"] == "closed"
        assert states == ["closed"]
        assert scheduler.active == []

    def test_close_write_failure_still_closes_locally(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        store.fail_updates.add("chats")
        clock.advance(hours=2)
        scheduler.run_pending("chat-expiry")
        assert controller.state == ChatState.CLOSED

    def test_explicit_close(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        snap = controller.close()
        assert snap["state"] == "closed"
        assert snap["canSend"] is False

    def test_snapshot_remaining(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        clock.advance(minutes=30)
        snap = controller.snapshot()
        assert snap["remainingSeconds"] == 90 * 60
        assert snap["remainingLabel"] == "1h 30m"


class TestMessages:
    def test_send_writes_message_and_summary(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        message = controller.send_message("  Hello!  ")

        assert message.text == "Hello!"
        assert message.sender_id == owner.user_id
        chat = store.get("chats", controller.session.id)
        assert chat["lastMessage"] == "Hello!"
        assert chat["lastMessageAt"] == clock()

    def test_blank_message_is_a_no_op(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        assert controller.send_message("   ") is None
        assert store.find("messages") == []

    def test_expired_chat_takes_no_messages(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        clock.advance(hours=2, seconds=1)
        # the monitor has not ticked yet; sending notices the expiry itself
        assert controller.send_message("still there?") is None
        assert store.find("messages") == []
        assert controller.state == ChatState.CLOSED

    def test_unresolved_controller_takes_no_messages(self, owner, store, scheduler, clock):
        controller = ChatSessionController(owner, store, scheduler, clock)
        assert controller.send_message("hi") is None

    def test_summary_failure_is_tolerated(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        store.fail_updates.add("chats")
        assert controller.send_message("hi") is not None
        assert len(store.find("messages")) == 1

    def test_message_insert_failure_surfaces(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        store.fail_inserts.add("messages")
        with pytest.raises(RemoteWriteError):
            controller.send_message("hi")

    def test_subscription_marks_foreign_messages_read(self, owner, petter, match_id, store, scheduler, clock):
        owner_side = open_chat(owner, store, scheduler, clock, match_id=match_id)
        petter_side = open_chat(petter, store, scheduler, clock, match_id=match_id)
        owner_side.send_message("Mochi is at the park")

        emissions = []
        petter_side.subscribe_messages(emissions.append)
        assert [m.text for m in emissions[-1]] == ["Mochi is at the park"]
        assert store.find("messages")[0]["read"] is True

        clock.advance(seconds=5)
        petter_side.send_message("On my way!")
        latest = emissions[-1]
        assert [m.text for m in latest] == ["On my way!", "Mochi is at the park"]
        own = store.find("messages", {"senderId": petter.user_id})[0]
        assert own["read"] is False

    def test_load_messages_is_newest_first_and_limited(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        for i in range(60):
            clock.advance(seconds=1)
            controller.send_message(f"m{i}")
        messages = controller.load_messages()
        assert len(messages) == 50
        assert messages[0].text == "m59"

    def test_teardown_stops_monitor_and_subscription(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        emissions = []
        controller.subscribe_messages(emissions.append)
        controller.teardown()
        controller.send_message("after leaving")
        assert len(emissions) == 1
        assert scheduler.active == []

    def test_overlapping_subscribers_cancel_independently(self, owner, match_id, store, scheduler, clock):
        controller = open_chat(owner, store, scheduler, clock, match_id=match_id)
        first, second = [], []
        unsubscribe_first = controller.subscribe_messages(first.append)
        controller.subscribe_messages(second.append)

        unsubscribe_first()
        controller.send_message("hello")

        assert len(first) == 1
        assert [m.text for m in second[-1]] == ["hello"]

        controller.teardown()
        controller.send_message("gone")
        assert len(second) == 2


class TestClosedElsewhere:
    def test_other_participant_cannot_send_after_close(self, owner, petter, match_id, store, scheduler, clock):
        owner_side = open_chat(owner, store, scheduler, clock, match_id=match_id)
        petter_side = open_chat(petter, store, scheduler, clock, match_id=match_id)
        states = []
        petter_side.subscribe(lambda snap: states.append(snap["state"]))

        owner_side.close()

        assert petter_side.send_message("still here?") is None
        assert store.find("messages") == []
        assert petter_side.state == ChatState.CLOSED
        assert petter_side.session.closed_at == clock()
        assert states == ["closed"]
        assert scheduler.active == []

    def test_check_expiry_reads_the_stored_status(self, owner, petter, match_id, store, scheduler, clock):
        open_chat(owner, store, scheduler, clock, match_id=match_id)
        petter_side = open_chat(petter, store, scheduler, clock, match_id=match_id)
        store.update("chats", petter_side.session.id, {"status": "closed", "closedAt": clock()})

        snap = petter_side.check_expiry()
        assert snap["state"] == "closed"
        assert snap["canSend"] is False


class TestChatList:
    def test_reducer_upserts_hides_and_sorts(self, owner, petter, match_id, store):
        older = insert_chat(store, match_id, lastMessageAt=T0)
        newer = insert_chat(store, match_id, lastMessageAt=T0 + timedelta(minutes=5))
        hidden = insert_chat(store, match_id, lastMessageAt=T0 + timedelta(minutes=9),
                             deletedBy={owner.user_id: True})

        reducer = ChatListReducer(owner.user_id)
        reducer.apply(store.find("chats", {"dogOwnerId": owner.user_id}))
        items = reducer.apply(store.find("chats", {"pettingUserId": owner.user_id}))
        assert [c.id for c in items] == [newer, older]

        store.update("chats", older, {"lastMessageAt": T0 + timedelta(minutes=7)})
        items = reducer.apply([store.get("chats", older)])
        assert [c.id for c in items] == [older, newer]

        other_view = ChatListReducer(petter.user_id).apply(store.find("chats"))
        assert hidden in [c.id for c in other_view]

    def test_directory_lists_both_roles_with_details(self, owner, petter, match_id, dog_id, store, clock):
        chat_id = insert_chat(store, match_id)

        owner_items = ChatDirectory(owner, store, clock).list_chats()
        petter_items = ChatDirectory(petter, store, clock).list_chats()

        assert owner_items[0]["id"] == chat_id
        assert owner_items[0]["otherUserName"] == "Petter"
        assert owner_items[0]["isUserDogOwner"] is True
        assert owner_items[0]["dogName"] == "Mochi"
        assert owner_items[0]["remainingLabel"] == "2h 0m"
        assert petter_items[0]["otherUserName"] == "Owner"
        assert petter_items[0]["isUserDogOwner"] is False

    def test_hide_only_affects_one_participant(self, owner, petter, match_id, store, clock):
        chat_id = insert_chat(store, match_id)
        ChatDirectory(petter, store, clock).hide(chat_id)

        assert ChatDirectory(petter, store, clock).list_chats() == []
        assert [c["id"] for c in ChatDirectory(owner, store, clock).list_chats()] == [chat_id]
        assert store.get("chats", chat_id)["deletedAt"][petter.user_id] == clock()

    def test_directory_subscription_follows_new_messages(self, owner, petter, match_id, store, scheduler, clock):
        emissions = []
        ChatDirectory(owner, store, clock).subscribe(emissions.append)
        controller = open_chat(petter, store, scheduler, clock, match_id=match_id)
        controller.send_message("hello")
        assert emissions[-1][0]["lastMessage"] == "hello"

    def test_expired_chat_shows_no_label(self, owner, match_id, store, clock):
        insert_chat(store, match_id, created_at=T0 - timedelta(hours=3))
        item = ChatDirectory(owner, store, clock).list_chats()[0]
        assert item["isExpired"] is True
        assert item["remainingLabel"] is None
