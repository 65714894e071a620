from concurrent.futures import ThreadPoolExecutor

import pytest

from casehub.errors import (
    InactiveResourceError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from casehub.models import models
from casehub.notifications import LiveFeedNotifier
from casehub.opening import CaseOpeningService, update_account_stats
from casehub.selection import ItemSelector


@pytest.fixture
def starter_case(seed):
    cheap = seed.item("P250 | Sand Dune", 50)
    rare = seed.item("AWP | Asiimov", 9000, rarity="COVERT")
    case_id = seed.case(500, [(cheap, 90), (rare, 10)])
    return case_id, cheap, rare


def test_open_case_debits_and_grants(db, seed, starter_case):
    case_id, cheap, _ = starter_case
    seed.account("acc-1", balance=1200)
    service = CaseOpeningService(selector=ItemSelector(draw_source=lambda: 12.0))

    result = service.open_case(db, "acc-1", case_id)

    assert result.new_balance == 700
    assert result.item_id == cheap
    assert seed.balance("acc-1") == 700
    inventory = db.query(models.InventoryEntry).filter_by(account_id="acc-1").all()
    assert [entry.item_id for entry in inventory] == [cheap]
    assert inventory[0].status == "OWNED"
    record = db.query(models.OpeningRecord).one()
    assert record.item_price == 50
    assert db.get(models.Case, case_id).open_count == 1


def test_boundary_draw_wins_second_item(db, seed, starter_case):
    case_id, _, rare = starter_case
    seed.account("acc-1", balance=500)
    service = CaseOpeningService(selector=ItemSelector(draw_source=lambda: 90.0))
    assert service.open_case(db, "acc-1", case_id).item_id == rare


def test_insufficient_funds_leaves_no_trace(db, seed, starter_case):
    case_id, _, _ = starter_case
    seed.account("acc-1", balance=499)
    with pytest.raises(InsufficientFundsError):
        CaseOpeningService().open_case(db, "acc-1", case_id)
    assert seed.balance("acc-1") == 499
    assert db.query(models.OpeningRecord).count() == 0
    assert db.query(models.InventoryEntry).count() == 0


def test_missing_account_and_case(db, seed, starter_case):
    case_id, _, _ = starter_case
    with pytest.raises(NotFoundError):
        CaseOpeningService().open_case(db, "ghost", case_id)
    seed.account("acc-1", balance=1000)
    with pytest.raises(NotFoundError):
        CaseOpeningService().open_case(db, "acc-1", 9999)


def test_inactive_and_empty_cases_rejected(db, seed):
    item = seed.item("P250 | Sand Dune", 50)
    inactive = seed.case(100, [(item, 100)], is_active=False)
    empty = seed.case(100, [])
    seed.account("acc-1", balance=1000)
    with pytest.raises(InactiveResourceError):
        CaseOpeningService().open_case(db, "acc-1", inactive)
    with pytest.raises(ValidationError):
        CaseOpeningService().open_case(db, "acc-1", empty)
    assert seed.balance("acc-1") == 1000


def test_blocked_account_cannot_open(db, seed, starter_case):
    case_id, _, _ = starter_case
    seed.account("acc-1", balance=1000, is_blocked=True)
    with pytest.raises(ValidationError):
        CaseOpeningService().open_case(db, "acc-1", case_id)


def test_failure_after_debit_rolls_everything_back(db, seed, starter_case, monkeypatch):
    case_id, _, _ = starter_case
    seed.account("acc-1", balance=1000)
    service = CaseOpeningService()

    original_flush = db.flush

    def exploding_flush(*args, **kwargs):
        original_flush(*args, **kwargs)
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "flush", exploding_flush)
    with pytest.raises(RuntimeError):
        service.open_case(db, "acc-1", case_id)
    monkeypatch.undo()

    assert seed.balance("acc-1") == 1000
    assert db.query(models.OpeningRecord).count() == 0
    assert db.query(models.InventoryEntry).count() == 0
    assert db.get(models.Case, case_id).open_count == 0


def test_concurrent_openings_never_overdraw(session_factory, seed, starter_case):
    case_id, _, _ = starter_case
    seed.account("acc-1", balance=500 * 8)
    service = CaseOpeningService()

    def attempt(_):
        with session_factory() as session:
            try:
                service.open_case(session, "acc-1", case_id)
                return True
            except InsufficientFundsError:
                return False

    with ThreadPoolExecutor(max_workers=10) as pool:
        outcomes = list(pool.map(attempt, range(10)))

    assert outcomes.count(True) == 8
    assert seed.balance("acc-1") == 0
    with session_factory() as session:
        assert session.query(models.OpeningRecord).count() == 8
        assert session.query(models.InventoryEntry).count() == 8
        assert session.get(models.Case, case_id).open_count == 8


def test_notifier_failure_does_not_fail_opening(db, seed, starter_case):
    case_id, _, _ = starter_case
    seed.account("acc-1", balance=500)
    notifier = LiveFeedNotifier(size=5)
    received = []

    def broken(event):
        raise RuntimeError("socket closed")

    notifier.subscribe(broken)
    notifier.subscribe(received.append)
    result = CaseOpeningService(notifier=notifier).open_case(db, "acc-1", case_id)

    assert result.new_balance == 0
    assert received[0]["id"] == result.opening_id
    assert notifier.recent(1)[0]["caseName"] == "Starter case"


def test_stats_failure_does_not_fail_opening(db, seed, starter_case, monkeypatch):
    case_id, _, _ = starter_case
    seed.account("acc-1", balance=500)

    def broken_stats(*args, **kwargs):
        raise RuntimeError("stats table locked")

    monkeypatch.setattr("casehub.opening.update_account_stats", broken_stats)
    result = CaseOpeningService().open_case(db, "acc-1", case_id)
    assert result.new_balance == 0
    assert seed.balance("acc-1") == 0


def test_stats_track_most_opened_case_and_best_drop(db, seed, starter_case):
    case_id, cheap, rare = starter_case
    seed.account("acc-1", balance=5000)
    lucky = CaseOpeningService(selector=ItemSelector(draw_source=lambda: 95.0))
    unlucky = CaseOpeningService(selector=ItemSelector(draw_source=lambda: 1.0))

    lucky.open_case(db, "acc-1", case_id)
    unlucky.open_case(db, "acc-1", case_id)

    stats = db.get(models.AccountStats, "acc-1")
    db.refresh(stats)
    assert stats.total_openings == 2
    assert stats.most_opened_case_id == case_id
    assert stats.best_drop_item_id == rare
    assert stats.best_drop_price == 9000


def test_equal_priced_drop_does_not_replace_best(db, seed):
    first = seed.item("Sticker | A", 300)
    second = seed.item("Sticker | B", 300)
    case_id = seed.case(100, [(first, 50), (second, 50)])
    seed.account("acc-1", balance=1000)
    CaseOpeningService(selector=ItemSelector(draw_source=lambda: 10.0)).open_case(db, "acc-1", case_id)
    CaseOpeningService(selector=ItemSelector(draw_source=lambda: 60.0)).open_case(db, "acc-1", case_id)

    stats = update_account_stats(db, "acc-1", second, 300)
    assert stats.best_drop_item_id == first
