"""Referral commission cascade.

Invariants:
    - K configured levels and an upline of depth d produce exactly min(K, d) credits
    - Level L pays the L-th ancestor, never anyone past the configured depth
    - No referral table means a single level-1 rule at 10%
    - Commissions are never negative; NaN, infinite or negative config pays 0
    - A failure inside the cascade is logged and swallowed, never raised
"""

import math

import pytest

import referrals
from extensions import db
from models_referrals import COMMISSION_FLAT_RATE, COMMISSION_PERCENTAGE, ReferralEarning
from models_users import User
from models_wallet import TX_REFERRAL, Transaction
from referrals import compute_commission, process_referral_commissions


@pytest.mark.parametrize("levels,depth", [(3, 5), (5, 3), (3, 3), (10, 12), (2, 0), (1, 1)])
def test_credits_equal_min_of_levels_and_depth(referral_chain, percent_levels, levels, depth):
    percent_levels(*([10] * levels))
    chain = referral_chain(depth)
    earner = chain[0]

    credited = process_referral_commissions(earner.id, 1000, "task-1")

    expected = min(levels, depth)
    assert credited == expected
    assert ReferralEarning.query.count() == expected
    paid = {e.user_id for e in ReferralEarning.query.all()}
    assert paid == {u.id for u in chain[1:expected + 1]}


def test_each_level_pays_its_own_rate(referral_chain, percent_levels):
    percent_levels(10, 5, 2)
    earner, l1, l2, l3, l4 = referral_chain(4)

    process_referral_commissions(earner.id, 1000, 7)

    balances = {u.id: db.session.get(User, u.id).points_balance for u in (l1, l2, l3, l4)}
    assert balances == {l1.id: 100, l2.id: 50, l3.id: 20, l4.id: 0}
    levels = {e.user_id: e.level for e in ReferralEarning.query.all()}
    assert levels == {l1.id: 1, l2.id: 2, l3.id: 3}


def test_default_rule_is_ten_percent_level_one(referral_chain):
    earner, l1, l2 = referral_chain(2)

    credited = process_referral_commissions(earner.id, 250, "s")

    assert credited == 1
    assert db.session.get(User, l1.id).points_balance == 25
    assert db.session.get(User, l2.id).points_balance == 0


def test_commission_writes_transaction_and_notification(referral_chain, percent_levels):
    percent_levels(10)
    earner, l1 = referral_chain(1)

    process_referral_commissions(earner.id, 500, 42)

    tx = Transaction.query.filter_by(user_id=l1.id, type=TX_REFERRAL).one()
    assert tx.points == 50
    assert tx.reference == f"referral_{earner.id}_42"
    assert tx.description.startswith("Level 1 referral commission")
    assert db.session.get(User, l1.id).total_earnings == pytest.approx(0.05)


def test_flat_rate_pays_whole_points(referral_chain, set_levels):
    set_levels([(COMMISSION_FLAT_RATE, 25.9), (COMMISSION_PERCENTAGE, 10)])
    earner, l1, l2 = referral_chain(2)

    process_referral_commissions(earner.id, 1000, "t")

    assert db.session.get(User, l1.id).points_balance == 25
    assert db.session.get(User, l2.id).points_balance == 100


def test_zero_and_negative_levels_are_skipped_but_do_not_stop_the_walk(referral_chain, set_levels):
    set_levels([(COMMISSION_PERCENTAGE, -5), (COMMISSION_PERCENTAGE, 0), (COMMISSION_PERCENTAGE, 10)])
    earner, l1, l2, l3 = referral_chain(3)

    credited = process_referral_commissions(earner.id, 1000, "t")

    assert credited == 1
    assert db.session.get(User, l1.id).points_balance == 0
    assert db.session.get(User, l2.id).points_balance == 0
    assert db.session.get(User, l3.id).points_balance == 100


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf, -1, 0, "abc", None])
def test_compute_commission_never_negative_or_nan(value):
    for ctype in (COMMISSION_PERCENTAGE, COMMISSION_FLAT_RATE):
        result = compute_commission(1000, {"commission_type": ctype, "commission_value": value})
        assert result == 0


@pytest.mark.parametrize("points", [0, -100, None])
def test_no_commission_on_non_positive_earnings(points):
    assert compute_commission(points, {"commission_type": COMMISSION_PERCENTAGE, "commission_value": 10}) == 0


def test_percentage_floors():
    assert compute_commission(99, {"commission_type": COMMISSION_PERCENTAGE, "commission_value": 10}) == 9
    assert compute_commission(1, {"commission_type": COMMISSION_PERCENTAGE, "commission_value": 10}) == 0


def test_failure_is_swallowed_and_rolled_back(referral_chain, percent_levels, monkeypatch):
    percent_levels(10, 10)
    earner, l1, l2 = referral_chain(2)

    def boom(*args, **kwargs):
        raise RuntimeError("ledger down")

    monkeypatch.setattr(referrals, "record_transaction", boom)

    assert process_referral_commissions(earner.id, 1000, "t") == 0
    assert db.session.get(User, l1.id).points_balance == 0
    assert ReferralEarning.query.count() == 0


def test_unknown_user_pays_nothing(app):
    assert process_referral_commissions(999999, 1000, "t") == 0


def test_referrals_overview_route(client, login, referral_chain, percent_levels):
    percent_levels(10, 5)
    earner, l1, l2 = referral_chain(2)
    process_referral_commissions(earner.id, 1000, "t")
    login(l2)

    res = client.get("/api/referrals")

    assert res.status_code == 200
    body = res.get_json()
    assert body["success"] is True
    assert body["referral_code"] == l2.referral_code
