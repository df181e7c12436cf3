import pytest

from errors import NotFound
from schemas import AccessAction


async def test_unauthenticated_scan_asks_for_login(engine, make_user, make_item):
    owner = await make_user("Olive")
    item = await make_item(owner, level=2)

    decision = await engine.access.decide(None, item.id)
    assert decision.action == AccessAction.LOGIN
    assert decision.item is None


async def test_owner_always_views(engine, make_user, make_item):
    owner = await make_user("Olive")
    item = await make_item(owner, level=5, hidden=True)

    decision = await engine.access.decide(owner.id, item.id)
    assert decision.action == AccessAction.VIEW
    assert decision.item.item.id == item.id


async def test_stranger_is_sent_to_request_trust(engine, make_user, make_item):
    owner = await make_user("Olive")
    stranger = await make_user("Sam")
    item = await make_item(owner, level=1)

    decision = await engine.access.decide(stranger.id, item.id)
    assert decision.action == AccessAction.REQUEST_TRUST
    assert decision.owner_id == owner.id
    assert decision.current_level is None
    assert decision.item is None


async def test_low_trust_reports_scanners_own_level(engine, make_user, make_item):
    owner = await make_user("Olive")
    viewer = await make_user("Victor")
    item = await make_item(owner, level=4)
    await engine.trust.set_trust(owner.id, viewer.id, 2)

    decision = await engine.access.decide(viewer.id, item.id)
    assert decision.action == AccessAction.INSUFFICIENT_TRUST
    assert decision.required_level == 4
    assert decision.current_level == 2
    assert decision.item is None


async def test_sufficient_trust_views_item(engine, make_user, make_item):
    owner = await make_user("Olive")
    viewer = await make_user("Victor")
    item = await make_item(owner, level=4)
    await engine.trust.set_trust(owner.id, viewer.id, 4)

    decision = await engine.access.decide(viewer.id, item.id)
    assert decision.action == AccessAction.VIEW
    assert decision.item.owner.name == "Olive"
    assert decision.current_level is None


async def test_hidden_item_looks_missing_to_others(engine, make_user, make_item):
    owner = await make_user("Olive")
    viewer = await make_user("Victor")
    item = await make_item(owner, level=1, hidden=True)
    await engine.trust.set_trust(owner.id, viewer.id, 5)

    with pytest.raises(NotFound):
        await engine.access.decide(viewer.id, item.id)
    with pytest.raises(NotFound):
        await engine.access.decide(viewer.id, "0123456789abcdef01234567")
