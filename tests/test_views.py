"""Tests for the chat, feed and comments views."""

import asyncio
from datetime import datetime, timedelta

import pytest

from campus_sync.models.identity import UserIdentity
from campus_sync.models.query import Filter, ListQuery
from campus_sync.models.store import StoreStatus
from campus_sync.remote.contract import FetchError, MutationError
from campus_sync.remote.local import LocalCollectionClient
from campus_sync.views.chat import ChatView
from campus_sync.views.collections import CollectionItemsView, CollectionsView
from campus_sync.views.comments import CommentsView
from campus_sync.views.feed import FeedView
from campus_sync.views.my_items import MyItemsView

T0 = datetime(2024, 3, 1, 12, 0, 0)

ALICE = UserIdentity(id="alice", email="alice@uni.edu")
BOB = UserIdentity(id="bob", email="bob@uni.edu")


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def seed(client: LocalCollectionClient, table: str, rows: list) -> None:
    async def _insert_all():
        for row in rows:
            await client.insert(table, row)
    asyncio.run(_insert_all())


def fetch_all(client: LocalCollectionClient, table: str) -> list:
    return asyncio.run(client.fetch(ListQuery(table=table)))


class TestChatView:
    def setup_method(self):
        self.client = LocalCollectionClient(user=ALICE)
        seed(self.client, "messages", [
            {"id": "m1", "created_at": at(0), "sender_id": "alice", "receiver_id": "bob",
             "content": "hi", "is_read": False},
            {"id": "m2", "created_at": at(10), "sender_id": "bob", "receiver_id": "alice",
             "content": "hey", "is_read": False},
            {"id": "m3", "created_at": at(20), "sender_id": "bob", "receiver_id": "alice",
             "content": "you there?", "is_read": True},
            {"id": "x1", "created_at": at(5), "sender_id": "carol", "receiver_id": "alice",
             "content": "unrelated", "is_read": False},
        ])
        self.view = ChatView(self.client, "alice", "bob")

    def teardown_method(self):
        self.view.close()

    def test_open_loads_thread_and_marks_read(self):
        asyncio.run(self.view.open())
        assert [m.id for m in self.view.messages] == ["m1", "m2", "m3"]
        assert self.view.status == StoreStatus.READY
        assert self.view.store.get("m2").get("is_read") is True
        # Outgoing messages are the other side's to mark.
        assert self.view.store.get("m1").get("is_read") is False
        unread_x1 = [r for r in fetch_all(self.client, "messages") if r["id"] == "x1"][0]
        assert unread_x1["is_read"] is False

    def test_mark_read_failure_is_not_fatal(self):
        self.client.inject_failure("update")
        asyncio.run(self.view.open())
        assert self.view.status == StoreStatus.READY
        assert self.view.store.get("m2").get("is_read") is False

    def test_send_appears_once(self):
        asyncio.run(self.view.open())
        record = asyncio.run(self.view.send("  see you at 5  "))
        assert record.get("content") == "see you at 5"
        assert [m.id for m in self.view.messages] == ["m1", "m2", "m3", record.id]

    def test_blank_send_is_ignored(self):
        asyncio.run(self.view.open())
        assert asyncio.run(self.view.send("   ")) is None
        assert len(self.view.messages) == 3
        assert len(fetch_all(self.client, "messages")) == 4

    def test_failed_send_withdraws_message(self):
        asyncio.run(self.view.open())
        self.client.inject_failure("insert")
        with pytest.raises(MutationError):
            asyncio.run(self.view.send("lost"))
        assert [m.id for m in self.view.messages] == ["m1", "m2", "m3"]

    def test_incoming_messages_are_filtered(self):
        asyncio.run(self.view.open())

        async def incoming():
            await self.client.insert("messages", {
                "sender_id": "bob", "receiver_id": "alice", "content": "new"
            })
            await self.client.insert("messages", {
                "sender_id": "carol", "receiver_id": "alice", "content": "spam"
            })

        asyncio.run(incoming())
        assert [m.get("content") for m in self.view.messages][-1] == "new"
        assert len(self.view.messages) == 4

    def test_close_releases_feed(self):
        asyncio.run(self.view.open())
        assert self.client.subscription_count == 1
        self.view.close()
        assert self.client.subscription_count == 0

    def test_subscription_failure_does_not_block_loading(self):
        self.client.inject_failure("subscribe")
        asyncio.run(self.view.open())
        assert self.view.subscription_error is not None
        assert len(self.view.messages) == 3

        asyncio.run(self.view.focus())
        assert self.view.subscription_error is None
        assert self.view.store.attached

    def test_fetch_failure_then_retry(self):
        self.client.inject_failure("fetch")
        with pytest.raises(FetchError):
            asyncio.run(self.view.open())
        assert self.view.status == StoreStatus.ERROR
        assert self.view.records == []

        records = asyncio.run(self.view.retry())
        assert [m.id for m in records] == ["m1", "m2", "m3"]
        assert self.view.status == StoreStatus.READY

    def test_retry_failing_again_returns_none(self):
        self.client.inject_failure("fetch")
        with pytest.raises(FetchError):
            asyncio.run(self.view.open())
        self.client.inject_failure("fetch")
        assert asyncio.run(self.view.retry()) is None
        assert self.view.status == StoreStatus.ERROR

    def test_archive_hides_conversation(self):
        asyncio.run(self.view.archive())
        rows = fetch_all(self.client, "conversation_visibility")
        assert [(r["user_id"], r["other_user_id"]) for r in rows] == [("alice", "bob")]


class TestFeedView:
    def setup_method(self):
        self.client = LocalCollectionClient(user=ALICE)
        seed(self.client, "profiles", [
            {"id": "alice", "full_name": "Alice Smith", "email": "alice@uni.edu"},
            {"id": "bob", "full_name": "Bob Jones", "email": "bob@uni.edu"},
        ])
        seed(self.client, "items", [
            {
                "id": f"i{n:02d}",
                "created_at": at(n),
                "user_id": "alice" if n % 2 == 0 else "bob",
                "title": f"Item {n}",
                "description": "Calculus textbook" if n == 11 else "",
                "category": "Books" if n % 3 == 0 else "Other",
                "status": "available",
            }
            for n in range(12)
        ] + [{"id": "sold", "created_at": at(50), "user_id": "bob", "status": "sold"}])
        self.view = FeedView(self.client, page_size=10)
        asyncio.run(self.view.open())

    def teardown_method(self):
        self.view.close()

    def test_first_page_newest_first_with_profiles(self):
        items = self.view.records
        assert len(items) == 10
        assert items[0].id == "i11"
        assert items[0].get("profiles")["full_name"] == "Bob Jones"
        assert self.view.store.has_more

    def test_load_more(self):
        added = asyncio.run(self.view.load_more())
        assert [i.id for i in added] == ["i01", "i00"]
        assert not self.view.store.has_more

    def test_filtered(self):
        books = self.view.filtered(category="Books")
        assert books and all(i.get("category") == "Books" for i in books)
        assert [i.id for i in self.view.filtered(search="calculus")] == ["i11"]
        by_author = self.view.filtered(search="bob jones")
        assert by_author and all(i.get("user_id") == "bob" for i in by_author)
        assert len(self.view.filtered()) == 10

    def test_new_item_triggers_refetch(self):
        async def scenario():
            await self.client.insert("items", {
                "id": "fresh", "user_id": "bob", "title": "Lamp", "status": "available"
            })
            await self.view.store.settle()

        asyncio.run(scenario())
        assert self.view.records[0].id == "fresh"
        assert self.view.records[0].get("profiles")["full_name"] == "Bob Jones"

    def test_owner_can_delete(self):
        async def scenario():
            await self.view.delete_item("i10")
            await self.view.store.settle()

        asyncio.run(scenario())
        assert self.view.store.get("i10") is None
        assert "i10" not in [r["id"] for r in fetch_all(self.client, "items")]

    def test_only_owner_can_delete(self):
        with pytest.raises(PermissionError):
            asyncio.run(self.view.delete_item("i11"))
        assert self.view.store.get("i11") is not None

    def test_delete_requires_login(self):
        self.client.sign_in_as(None)
        with pytest.raises(PermissionError):
            asyncio.run(self.view.delete_item("i10"))

    def test_delete_unknown_item(self):
        with pytest.raises(KeyError):
            asyncio.run(self.view.delete_item("missing"))

    def test_failed_delete_restores_item(self):
        self.client.inject_failure("delete")
        with pytest.raises(MutationError):
            asyncio.run(self.view.delete_item("i10"))
        assert [r.id for r in self.view.records].index("i10") == 1


class TestCommentsView:
    def setup_method(self):
        self.client = LocalCollectionClient(user=ALICE)
        seed(self.client, "profiles", [
            {"id": "alice", "full_name": "Alice Smith", "email": "alice@uni.edu"},
            {"id": "bob", "full_name": "Bob Jones", "email": "bob@uni.edu"},
        ])
        seed(self.client, "comments", [
            {"id": "c1", "created_at": at(0), "item_id": "i1", "user_id": "alice",
             "content": "Is it still available?", "rating": None},
            {"id": "c2", "created_at": at(10), "item_id": "i1", "user_id": "bob",
             "content": "Great seller", "rating": 5},
            {"id": "c3", "created_at": at(20), "item_id": "i1", "user_id": "alice",
             "content": "Fair price", "rating": 4},
            {"id": "c4", "created_at": at(5), "item_id": "i2", "user_id": "bob",
             "content": "Other item", "rating": 1},
        ])
        self.view = CommentsView(self.client, "i1")
        asyncio.run(self.view.open())

    def teardown_method(self):
        self.view.close()

    def test_newest_first_with_names_only(self):
        assert [c.id for c in self.view.records] == ["c3", "c2", "c1"]
        assert self.view.records[1].get("profiles") == {"id": "bob", "full_name": "Bob Jones"}

    def test_average_rating(self):
        assert self.view.average_rating == 4.5

    def test_add_comment(self):
        async def scenario():
            record = await self.view.add_comment("  Can you hold it?  ", rating=0)
            await self.view.store.settle()
            return record

        record = asyncio.run(scenario())
        assert record.get("content") == "Can you hold it?"
        assert record.get("rating") is None
        assert self.view.records[0].id == record.id
        assert self.view.records[0].get("profiles")["full_name"] == "Alice Smith"
        assert len(self.view.records) == 4

    def test_comment_on_another_item_is_not_shown(self):
        async def scenario():
            await self.client.insert("comments", {"item_id": "i2", "user_id": "bob", "content": "x"})
            await self.view.store.settle()

        asyncio.run(scenario())
        assert len(self.view.records) == 3

    def test_invalid_comments_rejected(self):
        with pytest.raises(ValueError):
            asyncio.run(self.view.add_comment("   "))
        with pytest.raises(ValueError):
            asyncio.run(self.view.add_comment("ok", rating=6))
        self.client.sign_in_as(None)
        with pytest.raises(PermissionError):
            asyncio.run(self.view.add_comment("ok"))
        assert len(self.view.records) == 3

    def test_author_deletes_comment(self):
        asyncio.run(self.view.delete_comment("c3"))
        assert [c.id for c in self.view.records] == ["c2", "c1"]

    def test_cannot_delete_others_comment(self):
        with pytest.raises(PermissionError):
            asyncio.run(self.view.delete_comment("c2"))
        assert len(self.view.records) == 3

    def test_delete_unknown_comment(self):
        with pytest.raises(KeyError):
            asyncio.run(self.view.delete_comment("nope"))


class TestMyItemsView:
    def setup_method(self):
        self.client = LocalCollectionClient(user=ALICE)
        seed(self.client, "items", [
            {"id": "a1", "created_at": at(0), "user_id": "alice", "title": "Desk", "status": "available"},
            {"id": "a2", "created_at": at(10), "user_id": "alice", "title": "Chair", "status": "sold"},
            {"id": "b1", "created_at": at(5), "user_id": "bob", "title": "Lamp", "status": "available"},
        ])
        self.view = MyItemsView(self.client, "alice")
        asyncio.run(self.view.open())

    def teardown_method(self):
        self.view.close()

    def test_own_items_newest_first_any_status(self):
        assert [i.id for i in self.view.records] == ["a2", "a1"]

    def test_new_listing_arrives(self):
        async def scenario():
            await self.client.insert("items", {"id": "a3", "user_id": "alice", "title": "Bike"})
            await self.client.insert("items", {"id": "b2", "user_id": "bob", "title": "Mug"})

        asyncio.run(scenario())
        assert [i.id for i in self.view.records] == ["a3", "a2", "a1"]

    def test_status_change_merges_in_place(self):
        async def scenario():
            await self.client.update("items", [Filter(field="id", value="a1")], {"status": "sold"})

        asyncio.run(scenario())
        assert self.view.store.get("a1").get("status") == "sold"
        assert [i.id for i in self.view.records] == ["a2", "a1"]

    def test_pull_to_refresh(self):
        self.view.close()
        view = MyItemsView(self.client, "alice")
        asyncio.run(view.open())
        view.store.detach()
        seed(self.client, "items", [{"id": "a3", "user_id": "alice", "title": "Bike"}])
        assert len(view.records) == 2
        asyncio.run(view.refresh())
        assert [i.id for i in view.records] == ["a3", "a2", "a1"]
        view.close()

    def test_delete_own_item(self):
        asyncio.run(self.view.delete_item("a1"))
        assert [i.id for i in self.view.records] == ["a2"]
        assert "a1" not in [r["id"] for r in fetch_all(self.client, "items")]

    def test_delete_requires_owner_session(self):
        self.client.sign_in_as(BOB)
        with pytest.raises(PermissionError):
            asyncio.run(self.view.delete_item("a1"))
        self.client.sign_in_as(None)
        with pytest.raises(PermissionError):
            asyncio.run(self.view.delete_item("a1"))
        assert len(fetch_all(self.client, "items")) == 3

    def test_delete_unknown_item(self):
        with pytest.raises(KeyError):
            asyncio.run(self.view.delete_item("b1"))

    def test_failed_delete_restores_item(self):
        self.client.inject_failure("delete")
        with pytest.raises(MutationError):
            asyncio.run(self.view.delete_item("a1"))
        assert [i.id for i in self.view.records] == ["a2", "a1"]


class TestCollectionsView:
    def setup_method(self):
        self.client = LocalCollectionClient(user=ALICE)
        seed(self.client, "user_collections", [
            {"id": "c1", "created_at": at(0), "user_id": "alice", "name": "Textbooks"},
            {"id": "c2", "created_at": at(10), "user_id": "alice", "name": "Dorm"},
            {"id": "cx", "created_at": at(5), "user_id": "bob", "name": "Bob's"},
        ])
        seed(self.client, "collection_items", [
            {"id": "ci1", "created_at": at(0), "collection_id": "c1", "item_id": "i1"},
            {"id": "ci2", "created_at": at(1), "collection_id": "c1", "item_id": "i2"},
            {"id": "ci3", "created_at": at(2), "collection_id": "c2", "item_id": "i1"},
        ])
        self.view = CollectionsView(self.client, "alice")
        asyncio.run(self.view.open())

    def teardown_method(self):
        self.view.close()

    def test_own_collections_newest_first(self):
        assert [c.id for c in self.view.records] == ["c2", "c1"]

    def test_create(self):
        record = asyncio.run(self.view.create("  Gifts  "))
        assert record.get("name") == "Gifts"
        assert [c.id for c in self.view.records] == [record.id, "c2", "c1"]
        stored = [r for r in fetch_all(self.client, "user_collections") if r["id"] == record.id]
        assert stored[0]["is_default"] is False

    def test_blank_name_rejected(self):
        with pytest.raises(ValueError):
            asyncio.run(self.view.create("   "))
        assert len(fetch_all(self.client, "user_collections")) == 3

    def test_delete_empties_collection_first(self):
        asyncio.run(self.view.delete("c1"))
        assert [c.id for c in self.view.records] == ["c2"]
        assert [r["id"] for r in fetch_all(self.client, "collection_items")] == ["ci3"]
        assert "c1" not in [r["id"] for r in fetch_all(self.client, "user_collections")]

    def test_delete_unknown_collection(self):
        with pytest.raises(KeyError):
            asyncio.run(self.view.delete("cx"))

    def test_failed_delete_keeps_collection(self):
        self.client.inject_failure("delete")
        with pytest.raises(MutationError):
            asyncio.run(self.view.delete("c1"))
        assert [c.id for c in self.view.records] == ["c2", "c1"]
        assert len(fetch_all(self.client, "collection_items")) == 3


class TestCollectionItemsView:
    def setup_method(self):
        self.client = LocalCollectionClient(user=ALICE)
        seed(self.client, "items", [
            {"id": "i1", "created_at": at(0), "title": "Desk", "status": "available"},
            {"id": "i2", "created_at": at(1), "title": "Chair", "status": "sold"},
            {"id": "i3", "created_at": at(2), "title": "Lamp", "status": "available"},
        ])
        seed(self.client, "collection_items", [
            {"id": "ci1", "created_at": at(0), "collection_id": "c1", "item_id": "i1"},
            {"id": "ci2", "created_at": at(1), "collection_id": "c1", "item_id": "i2"},
            {"id": "ci3", "created_at": at(2), "collection_id": "c2", "item_id": "i1"},
        ])
        self.view = CollectionItemsView(self.client, "c1")
        asyncio.run(self.view.open())

    def teardown_method(self):
        self.view.close()

    def test_memberships_joined_with_items(self):
        assert [r.id for r in self.view.records] == ["ci2", "ci1"]
        assert self.view.records[0].get("items")["title"] == "Chair"
        assert [i["id"] for i in self.view.items] == ["i1"]

    def test_add(self):
        async def scenario():
            await self.view.add("i3")
            await self.view.store.settle()

        asyncio.run(scenario())
        assert [i["id"] for i in self.view.items] == ["i3", "i1"]
        assert len(fetch_all(self.client, "collection_items")) == 4

    def test_add_existing_is_noop(self):
        record = asyncio.run(self.view.add("i1"))
        assert record.id == "ci1"
        assert len(fetch_all(self.client, "collection_items")) == 3

    def test_remove(self):
        async def scenario():
            await self.view.remove("i1")
            await self.view.store.settle()

        asyncio.run(scenario())
        assert [r.id for r in self.view.records] == ["ci2"]
        assert sorted(r["id"] for r in fetch_all(self.client, "collection_items")) == ["ci2", "ci3"]

    def test_remove_missing(self):
        with pytest.raises(KeyError):
            asyncio.run(self.view.remove("i3"))
