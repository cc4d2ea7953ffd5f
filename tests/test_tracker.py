import pytest

from ltcpay_node import (
    STATUS_COMPLETED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    ConfirmationTracker,
    Payment,
    confirmation_depth,
    settlement_reached,
)

AMOUNT = 50_000_000


@pytest.mark.parametrize("tip, height, depth", [
    (1000, 997, 4),
    (1000, 1000, 1),
    (1000, 0, 0),
    (1000, -1, 0),
    (1000, 1005, 0),
])
def test_confirmation_depth(tip, height, depth):
    assert confirmation_depth(tip, height) == depth


def test_settlement_gate():
    assert settlement_reached(AMOUNT, AMOUNT, [2, 5], 2)
    assert not settlement_reached(AMOUNT - 1, AMOUNT, [5], 2)
    assert not settlement_reached(AMOUNT, AMOUNT, [5, 1], 2)
    assert not settlement_reached(AMOUNT, AMOUNT, [], 2)


@pytest.mark.asyncio
@pytest.mark.parametrize("height, expected", [
    (997, STATUS_COMPLETED),
    (999, STATUS_COMPLETED),
    (1000, STATUS_PENDING),
])
async def test_threshold_two_at_tip_1000(service, store, chain, height, expected):
    """Depth 4 and depth 2 settle, depth 1 keeps waiting."""
    created = service.create_payment(AMOUNT)
    chain.fund(created["address"], AMOUNT, height)
    tracker = ConfirmationTracker(chain, store, confirmations_required=2)

    status = await tracker.evaluate(store.get(created["id"]))

    assert status == expected
    assert store.get(created["id"]).status == expected


@pytest.mark.asyncio
async def test_underpayment_stays_pending(service, store, chain):
    created = service.create_payment(AMOUNT)
    chain.fund(created["address"], AMOUNT - 1, 900)
    tracker = ConfirmationTracker(chain, store, confirmations_required=2)

    assert await tracker.evaluate(store.get(created["id"])) == STATUS_PENDING


@pytest.mark.asyncio
async def test_one_shallow_output_blocks_completion(service, store, chain):
    created = service.create_payment(AMOUNT)
    chain.fund(created["address"], AMOUNT // 2, 900)
    chain.fund(created["address"], AMOUNT // 2, 1000)
    tracker = ConfirmationTracker(chain, store, confirmations_required=2)

    assert await tracker.evaluate(store.get(created["id"])) == STATUS_PENDING


@pytest.mark.asyncio
async def test_completion_is_terminal_and_notifies_once(service, store, chain, webhook):
    created = service.create_payment(AMOUNT)
    chain.fund(created["address"], AMOUNT, 990)
    tracker = ConfirmationTracker(chain, store, confirmations_required=2, webhook=webhook)

    assert await tracker.evaluate(store.get(created["id"])) == STATUS_COMPLETED
    calls_after_first = len(chain.calls)
    assert await tracker.evaluate(store.get(created["id"])) == STATUS_COMPLETED

    assert len(chain.calls) == calls_after_first
    assert [p.id for p in webhook.sent] == [created["id"]]
    assert webhook.sent[0].status == STATUS_COMPLETED


@pytest.mark.asyncio
async def test_stale_snapshot_does_not_regress_status(service, store, chain):
    """A second evaluation of an old pending snapshot reports the stored status."""
    created = service.create_payment(AMOUNT)
    snapshot = store.get(created["id"])
    chain.fund(created["address"], AMOUNT, 990)
    tracker = ConfirmationTracker(chain, store, confirmations_required=2)

    assert await tracker.evaluate(snapshot) == STATUS_COMPLETED
    assert await tracker.evaluate(snapshot) == STATUS_COMPLETED
    assert store.get(created["id"]).status == STATUS_COMPLETED


@pytest.mark.asyncio
async def test_unpaid_payment_expires_after_deadline(store, vault, chain):
    address, encrypted = vault.create_address()
    store.insert(Payment(id="p-exp", address=address, encrypted_key=encrypted, amount_sats=AMOUNT,
                         created_at=100, updated_at=100, expires_at=200))
    tracker = ConfirmationTracker(chain, store, confirmations_required=2, clock=lambda: 201)

    assert await tracker.evaluate(store.get("p-exp")) == STATUS_EXPIRED
    assert store.get("p-exp").status == STATUS_EXPIRED


@pytest.mark.asyncio
async def test_settlement_wins_over_expiry(store, vault, chain):
    address, encrypted = vault.create_address()
    store.insert(Payment(id="p-late", address=address, encrypted_key=encrypted, amount_sats=AMOUNT,
                         created_at=100, updated_at=100, expires_at=200))
    chain.fund(address, AMOUNT, 990)
    tracker = ConfirmationTracker(chain, store, confirmations_required=2, clock=lambda: 10_000)

    assert await tracker.evaluate(store.get("p-late")) == STATUS_COMPLETED


@pytest.mark.asyncio
async def test_no_expiry_when_deadline_unset(service, store, chain):
    created = service.create_payment(AMOUNT)
    tracker = ConfirmationTracker(chain, store, confirmations_required=2, clock=lambda: 10 ** 12)

    assert await tracker.evaluate(store.get(created["id"])) == STATUS_PENDING
