import pytest

from vouchershop.matcher import Matcher


@pytest.fixture
def matcher(ledger):
    return Matcher(ledger)


async def test_reference_token_wins_over_heuristic(matcher, pending, event,
                                                   clock):
    mine = await pending(temp_id="TEMP-a", created_at=clock() - 30)
    # newer purchase, same payer and amount
    await pending(temp_id="TEMP-b")
    tx = await matcher.match(event(reference="TEMP-a"))
    assert tx["id"] == mine


async def test_gateway_id_then_bill_link(matcher, ledger, pending, event,
                                         clock):
    by_tid = await pending()
    await ledger.link_gateway_ids(by_tid, "TX1", None, clock())
    by_link = await pending(email="b@x.com", bill_link_id=42)

    assert (await matcher.match(event(id="TX1")))["id"] == by_tid
    tx = await matcher.match(
        event(id="TX2", email="b@x.com", bill_link_id=42)
    )
    assert tx["id"] == by_link


async def test_bill_link_paid_by_other_payment_is_not_reused(
    matcher, ledger, pending, event, clock
):
    pk = await pending(bill_link_id=42)
    await ledger.link_gateway_ids(pk, "TX1", None, clock())
    assert await matcher.match_exact(event(id="TX2", bill_link_id=42)) is None


async def test_heuristic_newest_unlinked(matcher, ledger, pending, event,
                                         clock):
    older = await pending(created_at=clock() - 60)
    newer = await pending()
    assert (await matcher.match(event()))["id"] == newer

    await ledger.link_gateway_ids(newer, "OTHER", None, clock())
    assert (await matcher.match(event()))["id"] == older
    await ledger.link_gateway_ids(older, "TX4", None, clock())
    assert await matcher.match(event(id="TX5")) is None


async def test_miss(matcher, pending, event):
    await pending()
    assert await matcher.match(event(amount=1)) is None
    assert await matcher.match(event(email="z@x.com")) is None
