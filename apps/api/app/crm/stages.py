from __future__ import annotations

from enum import StrEnum


class OpportunityStage(StrEnum):
    PROSPECTING = "Prospecting"
    DISCOVERY = "Discovery"
    QUOTE_SENT = "Quote Sent"
    NEGOTIATION = "Negotiation"
    CLOSED_WON = "Closed Won"
    CLOSED_LOST = "Closed Lost"
    ON_HOLD = "On Hold"


FORWARD_ORDER: tuple[OpportunityStage, ...] = (
    OpportunityStage.PROSPECTING,
    OpportunityStage.DISCOVERY,
    OpportunityStage.QUOTE_SENT,
    OpportunityStage.NEGOTIATION,
)

CLOSED_STAGES = frozenset({OpportunityStage.CLOSED_WON, OpportunityStage.CLOSED_LOST})

# Reachable from every open stage other than On Hold.
ALWAYS_AVAILABLE: tuple[OpportunityStage, ...] = (
    OpportunityStage.CLOSED_WON,
    OpportunityStage.CLOSED_LOST,
    OpportunityStage.ON_HOLD,
)


def next_stages(current: OpportunityStage | str) -> list[OpportunityStage]:
    """Return the stages an opportunity may move to from ``current``.

    Closed stages are terminal. On Hold re-enters anywhere. Every other stage
    may advance exactly one step along the forward order, or jump to one of the
    always-available stages.
    """
    stage = OpportunityStage(current)
    if stage in CLOSED_STAGES:
        return []
    if stage is OpportunityStage.ON_HOLD:
        return [item for item in OpportunityStage if item is not OpportunityStage.ON_HOLD]

    candidates: list[OpportunityStage] = []
    position = FORWARD_ORDER.index(stage)
    if position + 1 < len(FORWARD_ORDER):
        candidates.append(FORWARD_ORDER[position + 1])
    candidates.extend(ALWAYS_AVAILABLE)
    return list(dict.fromkeys(candidates))


def can_transition(current: OpportunityStage | str, target: OpportunityStage | str) -> bool:
    return OpportunityStage(target) in next_stages(current)


def is_closed(stage: OpportunityStage | str) -> bool:
    return OpportunityStage(stage) in CLOSED_STAGES


def forward_path(current: OpportunityStage | str, target: OpportunityStage | str) -> list[OpportunityStage]:
    """Legal single steps that carry ``current`` forward to ``target``.

    Returns an empty list when the opportunity is closed, already at or past
    ``target`` in the forward order, or when ``target`` is not a forward stage.
    On Hold jumps straight to ``target``.
    """
    stage = OpportunityStage(current)
    goal = OpportunityStage(target)
    if goal not in FORWARD_ORDER or stage in CLOSED_STAGES:
        return []
    if stage is OpportunityStage.ON_HOLD:
        return [goal]

    path: list[OpportunityStage] = []
    while FORWARD_ORDER.index(stage) < FORWARD_ORDER.index(goal):
        step = FORWARD_ORDER[FORWARD_ORDER.index(stage) + 1]
        if not can_transition(stage, step):
            break
        path.append(step)
        stage = step
    return path
