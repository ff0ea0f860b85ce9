"""
Contact Store Tests
Natural-key upserts (replace and merge), deletes, and offset-paginated search.
"""
import pytest

from contact_store import (
    ContactPage,
    ContactStore,
    comparable_view,
    merge_fields,
    parse_offset_cursor,
    set_dotted,
)
from errors import ValidationError
from conftest import make_records


class TestDottedPathHelpers:

    def test_set_dotted_top_level(self):
        target = {"email": "old@example.com"}
        set_dotted(target, "email", "new@example.com")
        assert target == {"email": "new@example.com"}

    def test_set_dotted_creates_nested_dicts(self):
        target = {}
        set_dotted(target, "address.city", "Tashkent")
        assert target == {"address": {"city": "Tashkent"}}

    def test_set_dotted_replaces_scalar_on_the_path(self):
        target = {"address": "unknown"}
        set_dotted(target, "address.city", "Tashkent")
        assert target == {"address": {"city": "Tashkent"}}

    def test_merge_fields_keeps_untouched_keys(self):
        merged = merge_fields({"email": "a@example.com", "phone": "1"}, {"phone": "2"})
        assert merged == {"email": "a@example.com", "phone": "2"}

    def test_merge_fields_does_not_mutate_existing(self):
        existing = {"address": {"city": "Tashkent"}}
        merge_fields(existing, {"address.zip": "100000"})
        assert existing == {"address": {"city": "Tashkent"}}


class TestComparableView:

    def test_volatile_keys_are_ignored(self):
        stored = {
            "id": "c-1", "customerId": "cust-1", "name": "Ada", "fields": {"email": "a@example.com"},
            "storageId": "17", "revision": 4, "updatedTime": "2026-01-01T00:00:00+00:00",
            "createdAt": "2026-01-01T00:00:00+00:00", "updatedAt": "2026-01-02T00:00:00+00:00",
        }
        incoming = {"id": "c-1", "name": "Ada", "fields": {"email": "a@example.com"}, "updatedTime": "later"}
        assert comparable_view(stored, "c-1", "cust-1") == comparable_view(incoming, "c-1", "cust-1")

    def test_key_is_normalized_to_strings(self):
        view = comparable_view({"name": "Ada"}, 42, 7)
        assert view["id"] == "42"
        assert view["customerId"] == "7"

    def test_field_change_is_detected(self):
        before = comparable_view({"fields": {"email": "a@example.com"}}, "c-1", "cust-1")
        after = comparable_view({"fields": {"email": "b@example.com"}}, "c-1", "cust-1")
        assert before != after


class TestParseOffsetCursor:

    def test_absent_cursor_is_first_page(self):
        assert parse_offset_cursor(None) == 0
        assert parse_offset_cursor("") == 0

    def test_decimal_offset(self):
        assert parse_offset_cursor("100") == 100

    def test_garbage_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_offset_cursor("abc")

    def test_negative_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_offset_cursor("-1")

    def test_page_response_omits_absent_cursor(self):
        assert ContactPage(records=[]).to_response() == {"records": []}
        assert ContactPage(records=[], cursor=100).to_response() == {"records": [], "cursor": "100"}


class TestUpsert:

    @pytest.mark.asyncio
    async def test_creates_record_with_storage_id(self, store):
        record = await store.upsert("c-1", "cust-1", {"id": "c-1", "name": "Ada", "fields": {"email": "a@example.com"}})
        assert record["id"] == "c-1"
        assert record["customerId"] == "cust-1"
        assert record["name"] == "Ada"
        assert record["fields"] == {"email": "a@example.com"}
        assert record["storageId"]
        assert record["revision"] == 1

    @pytest.mark.asyncio
    async def test_upserting_twice_is_idempotent(self, store):
        payload = {"id": "c-1", "name": "Ada", "fields": {"email": "a@example.com", "phone": None}}
        first = await store.upsert("c-1", "cust-1", payload, replace=True)
        second = await store.upsert("c-1", "cust-1", payload, replace=True)

        assert second["storageId"] == first["storageId"]
        assert comparable_view(second, "c-1", "cust-1") == comparable_view(first, "c-1", "cust-1")
        page = await store.list("cust-1")
        assert len(page.records) == 1

    @pytest.mark.asyncio
    async def test_replace_overwrites_fields(self, store):
        await store.upsert("c-1", "cust-1", {"name": "Ada", "fields": {"email": "a@example.com", "phone": "1"}})
        record = await store.upsert("c-1", "cust-1", {"name": "Ada L.", "fields": {"email": "b@example.com"}})
        assert record["name"] == "Ada L."
        assert record["fields"] == {"email": "b@example.com"}

    @pytest.mark.asyncio
    async def test_merge_patches_individual_fields(self, store):
        await store.upsert("c-1", "cust-1", {"name": "Ada", "fields": {"email": "a@example.com", "phone": "1"}})
        record = await store.upsert("c-1", "cust-1", {"fields": {"phone": "2", "address.city": "Tashkent"}}, replace=False)
        assert record["name"] == "Ada"
        assert record["fields"] == {"email": "a@example.com", "phone": "2", "address": {"city": "Tashkent"}}
        assert record["revision"] == 2

    @pytest.mark.asyncio
    async def test_payload_customer_id_never_changes_owner(self, store):
        await store.upsert("c-1", "cust-1", {"name": "Ada"})
        record = await store.upsert("c-1", "cust-1", {"customerId": "cust-2", "name": "Eve"}, replace=False)
        assert record["customerId"] == "cust-1"
        assert await store.find_one("c-1", "cust-2") is None

    @pytest.mark.asyncio
    async def test_unknown_top_level_keys_are_dropped(self, store):
        record = await store.upsert("c-1", "cust-1", {"name": "Ada", "ownerEmail": "x@example.com"})
        assert "ownerEmail" not in record

    @pytest.mark.asyncio
    async def test_same_external_id_is_separate_per_customer(self, store):
        a = await store.upsert("c-1", "cust-1", {"name": "Ada"})
        b = await store.upsert("c-1", "cust-2", {"name": "Bob"})
        assert a["storageId"] != b["storageId"]
        assert (await store.find_one("c-1", "cust-1"))["name"] == "Ada"
        assert (await store.find_one("c-1", "cust-2"))["name"] == "Bob"

    @pytest.mark.asyncio
    async def test_missing_key_is_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.upsert("", "cust-1", {"name": "Ada"})
        with pytest.raises(ValidationError):
            await store.upsert("c-1", None, {"name": "Ada"})

    @pytest.mark.asyncio
    async def test_non_object_fields_are_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.upsert("c-1", "cust-1", {"name": "Ada", "fields": "email=a@example.com"})


class TestUpsertMany:

    @pytest.mark.asyncio
    async def test_writes_page_and_counts(self, store):
        written = await store.upsert_many("cust-1", make_records("c", 5))
        assert written == 5
        page = await store.list("cust-1")
        assert [r["id"] for r in page.records] == ["c-0", "c-1", "c-2", "c-3", "c-4"]

    @pytest.mark.asyncio
    async def test_skips_records_without_id(self, store):
        written = await store.upsert_many("cust-1", [{"name": "No id"}, {"id": "c-1", "name": "Ada"}])
        assert written == 1

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_page_collapse(self, store):
        records = [{"id": "c-1", "name": "First"}, {"id": "c-1", "name": "Second"}]
        await store.upsert_many("cust-1", records)
        page = await store.list("cust-1")
        assert len(page.records) == 1
        assert page.records[0]["name"] == "Second"


class TestUpdate:

    @pytest.mark.asyncio
    async def test_merges_into_existing_record(self, store):
        created = await store.upsert("c-1", "cust-1", {"name": "Ada", "fields": {"email": "a@example.com"}})
        record = await store.update("c-1", "cust-1", {"fields": {"phone": "2"}})
        assert record["storageId"] == created["storageId"]
        assert record["name"] == "Ada"
        assert record["fields"] == {"email": "a@example.com", "phone": "2"}
        assert record["revision"] == 2

    @pytest.mark.asyncio
    async def test_missing_record_is_not_created(self, store):
        assert await store.update("c-1", "cust-1", {"name": "Ada"}) is None
        assert await store.find_one("c-1", "cust-1") is None

    @pytest.mark.asyncio
    async def test_record_deleted_mid_update_is_not_recreated(self, store, database, monkeypatch):
        await store.upsert("c-1", "cust-1", {"name": "Ada"})
        other = ContactStore(database)
        original_get = store._get

        async def get_then_delete_elsewhere(session, external_id, customer_id, for_update=False):
            contact = await original_get(session, external_id, customer_id, for_update)
            await other.delete_one(external_id, customer_id)
            return contact

        monkeypatch.setattr(store, "_get", get_then_delete_elsewhere)

        assert await store.update("c-1", "cust-1", {"name": "Eve"}) is None
        assert await other.find_one("c-1", "cust-1") is None


class TestDelete:

    @pytest.mark.asyncio
    async def test_delete_returns_removed_record(self, store):
        created = await store.upsert("c-1", "cust-1", {"name": "Ada"})
        deleted = await store.delete_one("c-1", "cust-1")
        assert deleted["storageId"] == created["storageId"]
        assert await store.find_one("c-1", "cust-1") is None

    @pytest.mark.asyncio
    async def test_delete_missing_record_returns_none(self, store):
        assert await store.delete_one("missing", "cust-1") is None

    @pytest.mark.asyncio
    async def test_delete_is_scoped_by_customer(self, store):
        await store.upsert("c-1", "cust-1", {"name": "Ada"})
        assert await store.delete_one("c-1", "cust-2") is None
        assert await store.find_one("c-1", "cust-1") is not None


class TestList:

    @pytest.mark.asyncio
    async def test_full_page_returns_cursor_and_next_page_ends(self, store):
        await store.upsert_many("cust-1", make_records("c", 101))

        first = await store.list("cust-1", page_size=100)
        assert len(first.records) == 100
        assert first.cursor == 100

        second = await store.list("cust-1", cursor=first.cursor, page_size=100)
        assert [r["id"] for r in second.records] == ["c-100"]
        assert second.cursor is None

    @pytest.mark.asyncio
    async def test_exact_page_has_no_cursor(self, store):
        await store.upsert_many("cust-1", make_records("c", 100))
        page = await store.list("cust-1", page_size=100)
        assert len(page.records) == 100
        assert page.cursor is None

    @pytest.mark.asyncio
    async def test_list_is_scoped_by_customer(self, store):
        await store.upsert_many("cust-1", make_records("a", 3))
        await store.upsert_many("cust-2", make_records("b", 2))
        page = await store.list("cust-2")
        assert {r["customerId"] for r in page.records} == {"cust-2"}
        assert len(page.records) == 2

    @pytest.mark.asyncio
    async def test_search_matches_name_fields_and_id_case_insensitively(self, store):
        await store.upsert_many("cust-1", [
            {"id": "acme-1", "name": "Jane Doe", "fields": {"domain": "example.org"}},
            {"id": "x-2", "name": "ACME Sales", "fields": {}},
            {"id": "x-3", "name": "John Roe", "fields": {"domain": "acme.io"}},
            {"id": "x-4", "name": "Globex", "fields": {"industry": "Manufacturing"}},
        ])

        acme = await store.list("cust-1", search="acme")
        assert [r["id"] for r in acme.records] == ["acme-1", "x-2", "x-3"]

        industry = await store.list("cust-1", search="MANUFACT")
        assert [r["id"] for r in industry.records] == ["x-4"]

    @pytest.mark.asyncio
    async def test_search_treats_wildcards_literally(self, store):
        await store.upsert_many("cust-1", [
            {"id": "c-1", "name": "100% Cotton"},
            {"id": "c-2", "name": "Plain"},
        ])
        page = await store.list("cust-1", search="%")
        assert [r["id"] for r in page.records] == ["c-1"]
