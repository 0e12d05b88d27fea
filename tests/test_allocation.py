import asyncio

import pytest
from sqlalchemy import text

from vouchershop.errors import AllocationError, StrandedVoucher
from vouchershop.helpers import DAY_SECONDS
from vouchershop.model.db import (
    CANCELLED, EXPIRED, FAILED, NOTE_NO_INVENTORY, PENDING, SUCCESSFUL,
)


async def test_normal_flow(allocator, inventory, ledger, seed, pending,
                           event, notifier, clock):
    codes = await seed("Tea", 3)
    pk = await pending()

    out = await allocator.process(event())

    assert out.status == SUCCESSFUL
    assert out.voucher_code == codes[0]
    assert not out.idempotent and not out.unfulfilled
    tx = await ledger.get(pk)
    assert tx["status"] == SUCCESSFUL
    assert tx["voucher_code"] == codes[0]
    assert tx["transaction_id"] == "TX1"
    assert tx["expiry_date"] == clock() + 30 * DAY_SECONDS
    v = await inventory.get_voucher(codes[0])
    assert v["used"] and v["used_by"] == "a@x.com"
    assert notifier.sent == [{
        "to": "a@x.com", "code": codes[0], "transaction_id": "TX1",
        "amount": 10000,
    }]


async def test_duplicate_delivery_is_a_noop(allocator, inventory, seed,
                                            pending, event, notifier):
    await seed("Tea", 3)
    await pending()

    first = await allocator.process(event())
    second = await allocator.process(event())

    assert second.idempotent
    assert second.voucher_code == first.voucher_code
    assert await inventory.count_available("Tea") == 2
    assert len(notifier.sent) == 1


async def test_cancel_after_success_releases(allocator, inventory, ledger,
                                             seed, pending, event):
    [code] = await seed("Tea", 1)
    pk = await pending()
    await allocator.process(event())

    out = await allocator.process(event(status=CANCELLED))

    assert out.status == CANCELLED
    assert out.voucher_released
    assert (await ledger.get(pk))["status"] == CANCELLED
    v = await inventory.get_voucher(code)
    assert not v["used"] and v["used_by"] is None
    assert await inventory.count_available("Tea") == 1

    again = await allocator.process(event(status=CANCELLED))
    assert again.idempotent and not again.voucher_released


async def test_success_after_cancel_does_not_allocate(allocator, inventory,
                                                      seed, pending, event):
    await seed("Tea", 1)
    await pending()
    await allocator.process(event(status=FAILED))

    out = await allocator.process(event())
    assert out.idempotent
    assert out.status == FAILED
    assert out.voucher_code is None
    assert await inventory.count_available("Tea") == 1


async def test_exhausted_inventory(allocator, ledger, pending, event,
                                   notifier):
    pk = await pending()
    out = await allocator.process(event())

    assert out.status == SUCCESSFUL
    assert out.voucher_code is None
    assert out.unfulfilled
    tx = await ledger.get(pk)
    assert tx["status"] == SUCCESSFUL
    assert tx["note"] == NOTE_NO_INVENTORY
    assert notifier.sent == []

    replay = await allocator.process(event())
    assert replay.idempotent and replay.unfulfilled


async def test_lost_claim_retries_next_candidate(allocator, inventory, seed,
                                                 pending, event, clock):
    codes = await seed("Tea", 2)
    await pending()

    real_claim = inventory.claim
    calls = []

    async def stolen_first(code, email, now, valid_for):
        calls.append(code)
        if len(calls) == 1:
            # someone else takes it between select and claim
            await real_claim(code, "thief@x.com", now, valid_for)
            return False
        return await real_claim(code, email, now, valid_for)

    inventory.claim = stolen_first
    out = await allocator.process(event())

    assert calls == codes
    assert out.voucher_code == codes[1]


async def test_claim_gives_up_after_two_losses(allocator, inventory, ledger,
                                               seed, pending, event):
    await seed("Tea", 3)
    pk = await pending()

    async def always_lose(code, email, now, valid_for):
        return False

    inventory.claim = always_lose
    out = await allocator.process(event())

    assert out.unfulfilled
    assert (await ledger.get(pk))["note"] == NOTE_NO_INVENTORY


async def test_bind_failure_releases_claim(allocator, inventory, ledger, seed,
                                           pending, event):
    [code] = await seed("Tea", 1)
    pk = await pending()

    async def broken(*a, **kw):
        raise RuntimeError("connection reset")

    ledger.mark_successful = broken
    with pytest.raises(AllocationError) as exc_info:
        await allocator.process(event())

    assert exc_info.value.voucher_code == code
    assert await inventory.count_available("Tea") == 1
    assert (await ledger.get(pk))["status"] == PENDING


async def test_failed_compensation_is_stranded(allocator, inventory, ledger,
                                               seed, pending, event):
    await seed("Tea", 1)
    await pending()

    async def broken(*a, **kw):
        raise RuntimeError("connection reset")

    ledger.mark_successful = broken
    inventory.release = broken
    with pytest.raises(StrandedVoucher):
        await allocator.process(event())


async def test_lost_bind_releases_and_replays(allocator, inventory, ledger,
                                              seed, pending, event, clock):
    codes = await seed("Tea", 2)
    pk = await pending()
    real_bind = ledger.mark_successful

    async def winner_first(tx_pk, **kw):
        # a concurrent delivery binds the other voucher first
        await inventory.claim(codes[1], "a@x.com", clock(), 1)
        await real_bind(tx_pk, **{**kw, "voucher_code": codes[1]})
        return await real_bind(tx_pk, **kw)

    ledger.mark_successful = winner_first
    out = await allocator.process(event())

    assert out.idempotent
    assert out.voucher_code == codes[1]
    assert (await ledger.get(pk))["voucher_code"] == codes[1]
    assert not (await inventory.get_voucher(codes[0]))["used"]


async def test_notifier_failure_keeps_allocation(allocator, ledger, seed,
                                                 pending, event, notifier):
    [code] = await seed("Tea", 1)
    pk = await pending()
    notifier.fail = True

    out = await allocator.process(event())

    assert out.voucher_code == code
    assert (await ledger.get(pk))["status"] == SUCCESSFUL


async def test_reserved_voucher_is_confirmed(allocator, inventory, ledger,
                                             session, seed, pending, event,
                                             clock, notifier):
    codes = await seed("Tea", 2)
    # a bare reservation: taken, but no owner or dates yet
    async with session.begin():
        await session.execute(
            text("UPDATE vouchers SET used = TRUE WHERE code = :c"),
            {"c": codes[1]},
        )
    pk = await pending(voucher_code=codes[1])

    out = await allocator.process(event())

    assert out.voucher_code == codes[1]
    tx = await ledger.get(pk)
    assert tx["status"] == SUCCESSFUL
    assert tx["expiry_date"] == clock() + 30 * DAY_SECONDS
    v = await inventory.get_voucher(codes[1])
    assert v["used"] and v["used_by"] == "a@x.com"
    assert v["used_at"] == clock()
    assert v["expiry_date"] == tx["expiry_date"]
    # nothing else was claimed
    assert await inventory.count_available("Tea") == 1
    assert notifier.sent[0]["code"] == codes[1]


async def test_reserved_voucher_keeps_claim_dates(allocator, inventory,
                                                  ledger, seed, pending,
                                                  event, clock):
    codes = await seed("Tea", 1)
    await inventory.claim(codes[0], "a@x.com", clock(), 7 * DAY_SECONDS)
    pk = await pending(voucher_code=codes[0])
    clock.advance(60)

    await allocator.process(event())

    v = await inventory.get_voucher(codes[0])
    assert v["used_at"] == clock() - 60
    assert v["expiry_date"] == clock() - 60 + 7 * DAY_SECONDS
    assert (await ledger.get(pk))["expiry_date"] == v["expiry_date"]


async def test_unmatched_success_is_recorded_and_fulfilled(
    allocator, ledger, seed, event
):
    [code] = await seed("Tea", 1, amount=12000, discounted_amount=10000)

    out = await allocator.process(event(id="TX-NEW", email="new@x.com"))

    assert out.voucher_code == code
    tx = await ledger.by_transaction_id("TX-NEW")
    assert tx["status"] == SUCCESSFUL
    assert tx["product_name"] == "Tea"
    assert tx["email"] == "new@x.com"


async def test_unmatched_negative_is_recorded(allocator, ledger, event):
    out = await allocator.process(event(id="TX-X", status=EXPIRED))

    assert out.status == EXPIRED
    assert not out.idempotent
    assert (await ledger.by_transaction_id("TX-X"))["status"] == EXPIRED

    again = await allocator.process(event(id="TX-X", status=EXPIRED))
    assert again.idempotent


async def test_pending_callback_only_links(allocator, ledger, seed, pending,
                                           event, inventory):
    await seed("Tea", 1)
    pk = await pending()

    out = await allocator.process(event(status=PENDING, bill_link_id=9))

    assert out.status == PENDING
    tx = await ledger.get(pk)
    assert tx["status"] == PENDING
    assert (tx["transaction_id"], tx["bill_link_id"]) == ("TX1", 9)
    assert await inventory.count_available("Tea") == 1


async def test_failure_of_other_payment_keeps_linked_pending(
    allocator, ledger, inventory, seed, pending, event
):
    codes = await seed("Tea", 1)
    pk = await pending()
    await allocator.process(event(id="TX-A", status=PENDING))
    assert (await ledger.get(pk))["transaction_id"] == "TX-A"

    out = await allocator.process(event(id="TX-B", status=FAILED))

    assert out.status == FAILED
    tx = await ledger.get(pk)
    assert tx["status"] == PENDING and tx["transaction_id"] == "TX-A"
    other = await ledger.by_transaction_id("TX-B")
    assert other["id"] != pk and other["status"] == FAILED

    out = await allocator.process(event(id="TX-A"))

    assert out.status == SUCCESSFUL and not out.idempotent
    assert out.voucher_code == codes[0]
    assert (await ledger.get(pk))["status"] == SUCCESSFUL
    assert await inventory.count_available("Tea") == 0


async def test_racing_duplicate_deliveries(make_allocator, inventory, seed,
                                           pending, event, notifier):
    await seed("Tea", 5)
    await pending()

    outs = await asyncio.gather(*(
        make_allocator().process(event()) for _ in range(4)
    ))

    # every delivery reports the single recorded outcome
    assert len({o.voucher_code for o in outs}) == 1
    assert sum(1 for o in outs if not o.idempotent) == 1
    bound = 1 if outs[0].voucher_code else 0
    assert await inventory.count_available("Tea") == 5 - bound
    assert len(notifier.sent) == bound


async def test_racing_buyers_never_share_a_voucher(make_allocator, inventory,
                                                   ledger, seed, pending,
                                                   event):
    await seed("Tea", 3)
    for i in range(6):
        await pending(email=f"u{i}@x.com")

    outs = await asyncio.gather(*(
        make_allocator().process(event(id=f"TX{i}", email=f"u{i}@x.com"))
        for i in range(6)
    ))

    assert all(o.status == SUCCESSFUL for o in outs)
    codes = [o.voucher_code for o in outs if o.voucher_code]
    assert 1 <= len(codes) <= 3
    assert len(set(codes)) == len(codes)
    assert sum(1 for o in outs if o.unfulfilled) == 6 - len(codes)
    # every claimed voucher is bound to exactly one paid transaction
    assert await inventory.count_available("Tea") == 3 - len(codes)
    _, rows = await ledger.list_transactions(status=SUCCESSFUL, limit=50)
    assert sorted(r["voucher_code"] for r in rows if r["voucher_code"]) == (
        sorted(codes)
    )
