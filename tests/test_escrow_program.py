from agrifund.pyteal_compiled import TEAL_VERSION, get_approval_teal, get_clear_teal
from agrifund.pyteal_src import escrow_app


def test_approval_compiles_to_teal():
    teal = get_approval_teal()
    assert teal.startswith(f"#pragma version {TEAL_VERSION}")
    for method in ("contribute", "set_active", "claim_refund"):
        assert f'"{method}"' in teal
    for key in (escrow_app.GOAL, escrow_app.RAISED, escrow_app.CONTRIBUTORS, escrow_app.RELEASED):
        assert f'"{key}"' in teal


def test_clear_program_always_approves():
    teal = get_clear_teal()
    assert teal.startswith(f"#pragma version {TEAL_VERSION}")
    assert "int 1" in teal


def test_release_keeps_minimum_balance_and_pools_fees():
    teal = get_approval_teal()
    # payout is capped by balance - min_balance so the boxes stay funded
    assert "min_balance" in teal
    assert "balance" in teal.replace("min_balance", "")
    # both inner payments (release and refund) are paid for by the outer call
    assert teal.count("itxn_field Fee") == 2
