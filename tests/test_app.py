from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import app as app_module
import claim_engine
import trade_engine
from errors import SerializationConflict, TransactionFailed

client = TestClient(app_module.app)

A, B, C, D = 1, 2, 3, 4


@pytest.fixture
def state(monkeypatch):
    """
    route the API onto an in-memory ledger:
    users 1..4 with codes REF_A..REF_D, nobody linked yet.
    """
    state = trade_engine.LedgerState()
    for user_id, name in zip((A, B, C, D), "ABCD"):
        trade_engine.add_user(state, user_id, fee_tier=Decimal("0.01"), referral_code=f"REF_{name}")

    def generate(user_id):
        user = trade_engine.get_user(state, user_id)
        return {"user_id": user_id, "referral_code": user["referral_code"], "already_exists": True}

    patches = {
        "register_referral_db": lambda child_id, referral_code: trade_engine.register(
            state, child_id, referral_code
        ),
        "generate_referral_code_db": generate,
        "record_trade_db": lambda user_id, volume, token_type, fee_tier=None: trade_engine.record_trade(
            state, user_id, volume, token_type, fee_tier
        ),
        "process_trade_db": lambda trade_id: trade_engine.process_trade(state, trade_id),
        "claim_db": lambda user_id, token_type: claim_engine.claim(state, user_id, token_type),
        "claim_commission_db": lambda user_id, row_id: claim_engine.claim_commission(
            state, user_id, row_id
        ),
        "claim_cashback_db": lambda user_id, row_id: claim_engine.claim_cashback(
            state, user_id, row_id
        ),
        "get_claimable_balance_db": lambda user_id: claim_engine.get_claimable_balance(
            state, user_id
        ),
        "get_earnings_db": lambda user_id, token_type=None: claim_engine.get_earnings(
            state, user_id, token_type
        ),
    }
    for name, fake in patches.items():
        monkeypatch.setattr(app_module, name, fake)
    return state


def _wire_chain_via_api():
    """
    helper to wire A -> B -> C -> D using /api/referral/register.
    """
    for child, code in ((B, "REF_A"), (C, "REF_B"), (D, "REF_C")):
        res = client.post(
            "/api/referral/register",
            json={"child_user_id": child, "referral_code": code},
        )
        assert res.status_code == 200


def _trade(user_id, volume="1000", token_type="USDC-ARBITRUM", **extra):
    return client.post(
        "/api/webhook/trade",
        json={"user_id": user_id, "volume": volume, "token_type": token_type, **extra},
    )


def test_full_api_flow(state):
    """
    end-to-end flow:
      - wire A->B->C->D
      - trade from D
      - check splits, claim, earnings
    """
    _wire_chain_via_api()

    res = _trade(D)
    assert res.status_code == 200
    data = res.json()
    assert data["fee_amount"] == "10.000000000000000000"

    commissions = data["breakdown"]["commissions"]
    assert [(c["beneficiary"], c["level"], c["amount"]) for c in commissions] == [
        (C, 1, "3.000000000000000000"),
        (B, 2, "0.300000000000000000"),
        (A, 3, "0.200000000000000000"),
    ]
    assert data["breakdown"]["cashback"] == "1.000000000000000000"
    assert data["breakdown"]["treasury"] == "5.500000000000000000"

    # claimable for C (L1)
    res = client.get(f"/api/referral/claimable?user_id={C}")
    assert res.status_code == 200
    assert res.json()["balances"]["USDC-ARBITRUM"]["commissions"] == "3.000000000000000000"

    # claim for C
    res = client.post("/api/referral/claim", json={"user_id": C, "token_type": "USDC-ARBITRUM"})
    assert res.status_code == 200
    claimed = res.json()
    assert claimed["claimed_total"] == "3.000000000000000000"
    assert claimed["claimed_commission_total"] == "3.000000000000000000"

    # earnings for C now show it as claimed
    res = client.get(f"/api/referral/earnings?user_id={C}")
    assert res.status_code == 200
    earnings = res.json()
    assert earnings["commissions"]["claimed"] == "3.000000000000000000"
    assert earnings["commissions"]["unclaimed"] == "0.000000000000000000"


def test_trade_with_fee_tier_override(state):
    res = _trade(A, volume="10000", fee_tier="0.01")
    assert res.status_code == 200
    data = res.json()
    assert data["breakdown"]["commissions"] == []
    assert data["breakdown"]["cashback"] == "10.000000000000000000"
    assert data["breakdown"]["treasury"] == "90.000000000000000000"
    assert data["breakdown"]["absorbed_levels"] == [1, 2, 3]


def test_trade_rejects_bad_payloads(state):
    assert _trade(D, volume="-1").status_code == 422
    assert _trade(D, volume="1e5").status_code == 422
    assert _trade(D, token_type="DOGE").status_code == 422
    assert _trade(99).status_code == 404
    assert _trade(D, fee_tier="2").status_code == 400
    assert _trade(D, fee_tier="0.012345").status_code == 400


def test_reprocessing_a_trade_conflicts(state):
    trade_id = _trade(D).json()["trade_id"]

    res = client.post(f"/api/trades/{trade_id}/process")
    assert res.status_code == 409

    res = client.post("/api/trades/unknown/process")
    assert res.status_code == 404


def test_register_errors_map_to_http_codes(state):
    _wire_chain_via_api()

    # already referred
    res = client.post("/api/referral/register", json={"child_user_id": B, "referral_code": "REF_C"})
    assert res.status_code == 400

    # unknown code
    res = client.post("/api/referral/register", json={"child_user_id": A, "referral_code": "REF_ZZ"})
    assert res.status_code == 404

    # circular: A's referrer would be B, who sits in A's downline
    res = client.post("/api/referral/register", json={"child_user_id": A, "referral_code": "REF_B"})
    assert res.status_code == 400
    assert "cycle" in res.json()["detail"]


def test_referral_generate_returns_existing_code(state):
    res = client.post("/api/referral/generate", json={"user_id": A})
    assert res.status_code == 200
    assert res.json()["referral_code"] == "REF_A"


def test_claim_with_nothing_returns_zero(state):
    res = client.post("/api/referral/claim", json={"user_id": C, "token_type": "USDC-SOLANA"})
    assert res.status_code == 200
    assert res.json()["claimed_total"] == "0.000000000000000000"


def test_claim_single_rows(state):
    _wire_chain_via_api()
    _trade(D)
    commission_id = next(r["id"] for r in state.commissions.values() if r["user_id"] == C)
    cashback_id = next(iter(state.cashback))

    res = client.post(
        "/api/referral/claim/commission",
        json={"user_id": B, "commission_id": commission_id},
    )
    assert res.status_code == 403

    res = client.post(
        "/api/referral/claim/commission",
        json={"user_id": C, "commission_id": commission_id},
    )
    assert res.status_code == 200
    assert res.json()["claimed"] is True
    assert res.json()["claimed_amount"] == "3.000000000000000000"

    res = client.post(
        "/api/referral/claim/cashback",
        json={"user_id": D, "cashback_id": cashback_id},
    )
    assert res.status_code == 200
    assert res.json()["claimed_amount"] == "1.000000000000000000"


def test_transaction_failure_maps_to_503(state, monkeypatch):
    def boom(user_id, token_type):
        raise TransactionFailed("retries exhausted")

    monkeypatch.setattr(app_module, "claim_db", boom)
    res = client.post("/api/referral/claim", json={"user_id": C, "token_type": "USDC-ARBITRUM"})
    assert res.status_code == 503


def test_escaped_serialization_conflict_maps_to_503(state, monkeypatch):
    def conflict(trade_id):
        raise SerializationConflict("concurrent update")

    monkeypatch.setattr(app_module, "process_trade_db", conflict)
    res = client.post("/api/trades/some-trade/process")
    assert res.status_code == 503
