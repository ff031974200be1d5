from __future__ import annotations

import pytest

from app.crm.stages import (
    OpportunityStage,
    can_transition,
    forward_path,
    is_closed,
    next_stages,
)


P = OpportunityStage.PROSPECTING
D = OpportunityStage.DISCOVERY
Q = OpportunityStage.QUOTE_SENT
N = OpportunityStage.NEGOTIATION
W = OpportunityStage.CLOSED_WON
L = OpportunityStage.CLOSED_LOST
H = OpportunityStage.ON_HOLD

ALLOWED: dict[OpportunityStage, set[OpportunityStage]] = {
    P: {D, W, L, H},
    D: {Q, W, L, H},
    Q: {N, W, L, H},
    N: {W, L, H},
    W: set(),
    L: set(),
    H: {P, D, Q, N, W, L},
}


@pytest.mark.parametrize("current", list(OpportunityStage))
@pytest.mark.parametrize("target", list(OpportunityStage))
def test_can_transition_matches_table(current: OpportunityStage, target: OpportunityStage) -> None:
    assert can_transition(current, target) is (target in ALLOWED[current])


def test_next_stages_order_is_forward_step_then_always_available() -> None:
    assert next_stages(P) == [D, W, L, H]
    assert next_stages(Q) == [N, W, L, H]
    assert next_stages(N) == [W, L, H]


def test_closed_stages_are_terminal() -> None:
    assert next_stages(W) == []
    assert next_stages(L) == []
    assert is_closed(W) and is_closed(L)
    assert not is_closed(H)


def test_on_hold_reenters_anywhere_but_itself() -> None:
    assert set(next_stages(H)) == {P, D, Q, N, W, L}
    assert H not in next_stages(H)


def test_no_self_transitions() -> None:
    for stage in OpportunityStage:
        assert not can_transition(stage, stage)


def test_accepts_raw_stage_strings() -> None:
    assert can_transition("Prospecting", "Discovery")
    assert not can_transition("Prospecting", "Quote Sent")


def test_forward_path_walks_one_legal_step_at_a_time() -> None:
    assert forward_path(P, Q) == [D, Q]
    assert forward_path(D, N) == [Q, N]
    assert forward_path(Q, Q) == []
    assert forward_path(N, Q) == []


def test_forward_path_leaves_closed_stages_alone() -> None:
    assert forward_path(W, Q) == []
    assert forward_path(L, N) == []


def test_forward_path_from_on_hold_jumps_to_target() -> None:
    assert forward_path(H, Q) == [Q]


def test_forward_path_ignores_non_forward_targets() -> None:
    assert forward_path(P, W) == []
