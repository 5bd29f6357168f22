import asyncio
import gc

import pytest

from thumbforge.pipeline.errors import ForbiddenError, NotFoundError
from thumbforge.pipeline.ledger import (
    DOWNLOAD_DENIED,
    FREE_PREVIEW_EXHAUSTED,
    EntitlementLedger,
    deny_all,
)
from thumbforge.pipeline.models import CreditKind, EntitlementRecord, GenerationResult
from thumbforge.pipeline.stores import MemoryCreditStore, memory_stores

from conftest import ADMIN_EMAIL


def test_new_user_starts_with_zero_balances_and_unused_preview(ledger):
    record = asyncio.run(ledger.get_or_create("u1", "u1@example.com"))
    assert record.thumbnails_remaining == 0
    assert record.regenerates_remaining == 0
    assert record.has_used_free_preview is False
    assert record.is_admin is False


def test_get_or_create_is_idempotent(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        await ledger.adjust("u1", 2, 0)
        return await ledger.get_or_create("u1", "u1@example.com")

    assert asyncio.run(scenario()).thumbnails_remaining == 2


def test_unknown_user_raises_not_found(ledger):
    with pytest.raises(NotFoundError):
        asyncio.run(ledger.get("ghost"))


def test_free_preview_scenario(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        before = await ledger.can_consume_free_preview("u1")
        consumed = await ledger.consume_free_preview("u1")
        after = await ledger.can_consume_free_preview("u1")
        return before, consumed, after

    before, consumed, after = asyncio.run(scenario())
    assert before.allowed is True
    assert consumed.success is True
    assert consumed.record.has_used_free_preview is True
    assert after.allowed is False
    assert after.message == FREE_PREVIEW_EXHAUSTED


def test_free_preview_consumed_exactly_once_under_concurrency(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        return await asyncio.gather(*(ledger.consume_free_preview("u1") for _ in range(5)))

    results = asyncio.run(scenario())
    assert sum(r.success for r in results) == 1


def test_paid_balance_allows_generation_after_preview(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        await ledger.consume_free_preview("u1")
        await ledger.adjust("u1", 1, 0)
        return await ledger.can_consume_free_preview("u1")

    assert asyncio.run(scenario()).allowed is True


def test_consume_decrements_and_denies_at_zero(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        await ledger.adjust("u1", 1, 0)
        first = await ledger.consume(CreditKind.THUMBNAIL, "u1")
        second = await ledger.consume(CreditKind.THUMBNAIL, "u1")
        return first, second

    first, second = asyncio.run(scenario())
    assert first.success and first.record.thumbnails_remaining == 0
    assert not second.success
    assert second.record.thumbnails_remaining == 0
    assert "thumbnail" in second.message.lower()


def test_concurrent_consume_of_last_credit_succeeds_once(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        await ledger.adjust("u1", 0, 1)
        results = await asyncio.gather(
            ledger.consume(CreditKind.REGENERATE, "u1"),
            ledger.consume(CreditKind.REGENERATE, "u1"),
        )
        return results, await ledger.get("u1")

    results, record = asyncio.run(scenario())
    assert sorted(r.success for r in results) == [False, True]
    assert record.regenerates_remaining == 0


def test_compare_and_set_rejects_stale_expectation():
    store = MemoryCreditStore()

    async def scenario():
        await store.insert_if_absent(EntitlementRecord(user_id="u1", thumbnails_remaining=2))
        stale = await store.compare_and_set("u1", {"thumbnails_remaining": 5}, {"thumbnails_remaining": 4})
        fresh = await store.compare_and_set("u1", {"thumbnails_remaining": 2}, {"thumbnails_remaining": 1})
        return stale, fresh

    stale, fresh = asyncio.run(scenario())
    assert stale is None
    assert fresh.thumbnails_remaining == 1


def test_adjust_clamps_at_zero(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        await ledger.adjust("u1", 3, 2)
        return await ledger.adjust("u1", -1000, -1)

    record = asyncio.run(scenario())
    assert record.thumbnails_remaining == 0
    assert record.regenerates_remaining == 1


def test_balances_never_negative_over_mixed_sequence(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        seen = []
        for delta in (2, -5, 1, 0, -1, 3):
            seen.append(await ledger.adjust("u1", delta, -delta))
            for kind in (CreditKind.THUMBNAIL, CreditKind.REGENERATE):
                seen.append((await ledger.consume(kind, "u1")).record)
        return seen

    for record in asyncio.run(scenario()):
        assert record.thumbnails_remaining >= 0
        assert record.regenerates_remaining >= 0


def test_admin_consume_never_mutates_balances(ledger):
    async def scenario():
        await ledger.get_or_create("boss", ADMIN_EMAIL)
        check = await ledger.can_consume(CreditKind.THUMBNAIL, "boss")
        results = [await ledger.consume(CreditKind.THUMBNAIL, "boss") for _ in range(3)]
        preview = await ledger.consume_free_preview("boss")
        return check, results, preview, await ledger.get("boss")

    check, results, preview, record = asyncio.run(scenario())
    assert check.allowed is True
    assert all(r.success for r in results)
    assert preview.success is True
    assert record.thumbnails_remaining == 0
    assert record.has_used_free_preview is False
    assert record.unlimited is True
    assert record.thumbnails_display == "unlimited"


def test_admin_email_match_is_case_insensitive(ledger):
    record = asyncio.run(ledger.get_or_create("boss", "Admin@Example.COM"))
    assert record.is_admin is True


def test_demotion_keeps_real_balance():
    stores = memory_stores()
    admins = {ADMIN_EMAIL}
    ledger = EntitlementLedger(stores.credits, lambda email: email.lower() in admins, stores.history)

    async def scenario():
        await ledger.get_or_create("boss", ADMIN_EMAIL)
        await ledger.adjust("boss", 2, 1)
        admins.clear()
        return await ledger.get_or_create("boss", ADMIN_EMAIL)

    record = asyncio.run(scenario())
    assert record.is_admin is False
    assert record.thumbnails_remaining == 2
    assert record.regenerates_remaining == 1
    assert record.thumbnails_display == "2"


def test_missing_email_does_not_change_admin_flag(ledger):
    async def scenario():
        await ledger.get_or_create("boss", ADMIN_EMAIL)
        return await ledger.get_or_create("boss", "")

    assert asyncio.run(scenario()).is_admin is True


def test_default_policy_grants_nobody_admin():
    ledger = EntitlementLedger(MemoryCreditStore(), deny_all)
    record = asyncio.run(ledger.get_or_create("u1", ADMIN_EMAIL))
    assert record.is_admin is False


def test_download_requires_thumbnail_balance(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        denied = await ledger.can_download("u1")
        await ledger.adjust("u1", 1, 0)
        return denied, await ledger.can_download("u1")

    denied, allowed = asyncio.run(scenario())
    assert denied.allowed is False and denied.message == DOWNLOAD_DENIED
    assert allowed.allowed is True


def test_reset_free_preview(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        await ledger.consume_free_preview("u1")
        return await ledger.reset_free_preview("u1")

    assert asyncio.run(scenario()).has_used_free_preview is False


def test_block_zeroes_balances(ledger):
    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        await ledger.adjust("u1", 4, 4)
        return await ledger.block("u1")

    record = asyncio.run(scenario())
    assert record.thumbnails_remaining == 0
    assert record.regenerates_remaining == 0


def test_admin_targets_cannot_be_blocked_or_deleted(ledger):
    asyncio.run(ledger.get_or_create("boss", ADMIN_EMAIL))
    with pytest.raises(ForbiddenError):
        asyncio.run(ledger.block("boss"))
    with pytest.raises(ForbiddenError):
        asyncio.run(ledger.delete_user("boss"))


def test_block_and_delete_unknown_user_raise_not_found(ledger):
    with pytest.raises(NotFoundError):
        asyncio.run(ledger.block("ghost"))
    with pytest.raises(NotFoundError):
        asyncio.run(ledger.delete_user("ghost"))


def test_delete_user_removes_record_and_history():
    stores = memory_stores()
    ledger = EntitlementLedger(stores.credits, deny_all, stores.history)

    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        await stores.history.insert(GenerationResult(
            id="r1", user_id="u1", topic="t", prompt="p", image_url="https://x/r1.png",
        ))
        await ledger.delete_user("u1")
        return await stores.credits.get("u1"), await stores.history.count()

    record, history_count = asyncio.run(scenario())
    assert record is None
    assert history_count == 0


def test_consume_queued_behind_delete_sees_the_deletion():
    stores = memory_stores()
    ledger = EntitlementLedger(stores.credits, deny_all, stores.history)

    async def scenario():
        await ledger.get_or_create("u1", "u1@example.com")
        await ledger.adjust("u1", 1, 0)
        lock = ledger._lock_for("u1")
        await lock.acquire()
        deleting = asyncio.create_task(ledger.delete_user("u1"))
        consuming = asyncio.create_task(ledger.consume(CreditKind.THUMBNAIL, "u1"))
        await asyncio.sleep(0)
        shared = ledger._lock_for("u1") is lock
        lock.release()
        await deleting
        with pytest.raises(NotFoundError):
            await consuming
        return shared

    assert asyncio.run(scenario()) is True


def test_lock_map_does_not_grow_with_users(ledger):
    async def scenario():
        for i in range(50):
            await ledger.get_or_create(f"u{i}", f"u{i}@example.com")
            await ledger.adjust(f"u{i}", 1, 0)

    asyncio.run(scenario())
    gc.collect()
    assert len(ledger._locks) == 0


def test_admin_stats_counts(ledger):
    async def scenario():
        await ledger.get_or_create("boss", ADMIN_EMAIL)
        await ledger.get_or_create("paid", "paid@example.com")
        await ledger.adjust("paid", 3, 0)
        await ledger.get_or_create("empty", "empty@example.com")
        return await ledger.admin_stats()

    stats = asyncio.run(scenario())
    assert stats.total_users == 3
    assert stats.active_users == 2
    assert stats.blocked_users == 1
    assert stats.total_thumbnails == 0
