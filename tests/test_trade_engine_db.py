import threading
from decimal import Decimal

import pytest

from claim_db import claim_cashback_db, claim_commission_db, claim_db, get_claimable_balance_db, get_earnings_db
from db.repositories import create_user_db, insert_processed_marker_db, insert_trade_db
from errors import AlreadyProcessed, NotOwner
from trade_engine import new_trade, utcnow
from trade_engine_db import process_trade_db, record_trade_db


def _rows(conn, table, trade_id):
    with conn.cursor() as cur:
        cur.execute(f"SELECT amount FROM {table} WHERE trade_id = %s", (trade_id,))
        return [r[0] for r in cur.fetchall()]


def test_db_trade_flow_full_lineage(pg, chain):
    result = record_trade_db(chain["D"], Decimal("1000"), "USDC-ARBITRUM")

    assert result["fee_amount"] == Decimal("10")
    assert [(c["beneficiary"], c["level"], c["amount"]) for c in result["breakdown"]["commissions"]] == [
        (chain["C"], 1, Decimal("3")),
        (chain["B"], 2, Decimal("0.3")),
        (chain["A"], 3, Decimal("0.2")),
    ]

    trade_id = result["trade_id"]
    with pg() as conn:
        commissions = _rows(conn, "commissions", trade_id)
        cashback = _rows(conn, "cashback", trade_id)
        treasury = _rows(conn, "treasury_allocation", trade_id)
        with conn.cursor() as cur:
            cur.execute("SELECT processed_for_commissions FROM trades WHERE id = %s", (trade_id,))
            assert cur.fetchone()[0] is True
            cur.execute("SELECT COUNT(*) FROM processed_trades WHERE trade_id = %s", (trade_id,))
            assert cur.fetchone()[0] == 1

    assert sorted(commissions) == [Decimal("0.2"), Decimal("0.3"), Decimal("3")]
    assert cashback == [Decimal("1")]
    assert treasury == [Decimal("5.5")]
    assert sum(commissions + cashback + treasury) == Decimal("10")


def test_pending_trade_is_processed_once(pg, chain):
    with pg() as conn:
        trade = new_trade(chain["D"], Decimal("1000"), Decimal("0.01"), "USDC-SOLANA", utcnow())
        insert_trade_db(conn, trade)
        conn.commit()

    process_trade_db(trade["id"])
    with pytest.raises(AlreadyProcessed):
        process_trade_db(trade["id"])

    with pg() as conn:
        assert len(_rows(conn, "commissions", trade["id"])) == 3
        assert len(_rows(conn, "cashback", trade["id"])) == 1


def test_claims_against_db(pg, chain):
    record_trade_db(chain["D"], Decimal("1000"), "USDC-ARBITRUM")

    balance = get_claimable_balance_db(chain["C"])
    assert balance["USDC-ARBITRUM"]["commissions"] == Decimal("3")

    result = claim_db(chain["C"], "USDC-ARBITRUM")
    assert result["claimed_total"] == Decimal("3")
    assert claim_db(chain["C"], "USDC-ARBITRUM")["claimed_total"] == Decimal("0")

    earnings = get_earnings_db(chain["C"])
    assert earnings["commissions"]["claimed"] == Decimal("3")
    assert earnings["commissions"]["unclaimed"] == Decimal("0")


def test_single_row_claims_check_owner(pg, chain):
    record_trade_db(chain["D"], Decimal("1000"), "USDC-ARBITRUM")
    with pg() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT id FROM commissions WHERE user_id = %s", (chain["B"],))
            commission_id = cur.fetchone()[0]
            cur.execute("SELECT id FROM cashback WHERE user_id = %s", (chain["D"],))
            cashback_id = cur.fetchone()[0]

    with pytest.raises(NotOwner):
        claim_commission_db(chain["A"], commission_id)

    first = claim_commission_db(chain["B"], commission_id)
    assert first["claimed"] is True
    assert first["claimed_amount"] == Decimal("0.3")
    assert claim_commission_db(chain["B"], commission_id)["claimed"] is False

    assert claim_cashback_db(chain["D"], cashback_id)["claimed_amount"] == Decimal("1")


def test_concurrent_claims_pay_out_once(pg):
    with pg() as conn:
        trader = create_user_db(conn, "T")
        conn.commit()
    record_trade_db(trader["id"], Decimal("1000"), "USDC-ARBITRUM")

    barrier = threading.Barrier(2)
    results = []

    def worker():
        barrier.wait()
        results.append(claim_db(trader["id"], "USDC-ARBITRUM")["claimed_total"])

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == [Decimal("0"), Decimal("1")]


def test_processed_marker_collision_is_already_processed(pg, chain):
    with pg() as conn:
        trade = new_trade(chain["D"], Decimal("1000"), Decimal("0.01"), "USDC-ARBITRUM", utcnow())
        insert_trade_db(conn, trade)
        insert_processed_marker_db(conn, trade["id"], utcnow())
        conn.commit()

        with pytest.raises(AlreadyProcessed):
            insert_processed_marker_db(conn, trade["id"], utcnow())
        conn.rollback()

    # the flag is still false, the marker alone blocks processing
    with pytest.raises(AlreadyProcessed):
        process_trade_db(trade["id"])

    with pg() as conn:
        assert _rows(conn, "commissions", trade["id"]) == []
        assert _rows(conn, "cashback", trade["id"]) == []
