"""
Requisition workflow transition table.

Each row names the state an action starts from, the state it produces, and
who may perform it. Anything not listed here is an invalid transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .common import RequisitionStatus as S
from .common import WorkflowAction as A
from .common import WorkflowRole as R


@dataclass(frozen=True)
class TransitionRule:
    from_state: S
    action: A
    to_state: S
    required_role: Optional[R]
    requires_owner: bool = False
    # Org owners/admins may perform this action without being the requisition owner
    org_admin_allowed: bool = False


_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(S.DRAFT, A.SUBMIT, S.PENDING, R.SUBMITTER, requires_owner=True),
    TransitionRule(S.REJECTED, A.SUBMIT, S.PENDING, R.SUBMITTER, requires_owner=True),
    TransitionRule(S.PENDING, A.START_REVIEW, S.UNDER_REVIEW, R.REVIEWER),
    TransitionRule(S.UNDER_REVIEW, A.MARK_REVIEWED, S.REVIEWED, R.REVIEWER),
    TransitionRule(S.UNDER_REVIEW, A.REJECT, S.REJECTED, R.REVIEWER),
    TransitionRule(S.REVIEWED, A.APPROVE, S.APPROVED, R.APPROVER),
    TransitionRule(S.REVIEWED, A.REJECT, S.REJECTED, R.APPROVER),
    TransitionRule(S.APPROVED, A.COMPLETE, S.COMPLETED, R.STORE_MANAGER),
    TransitionRule(S.PENDING, A.CANCEL, S.CANCELLED, None, requires_owner=True, org_admin_allowed=True),
    TransitionRule(S.UNDER_REVIEW, A.CANCEL, S.CANCELLED, None, requires_owner=True, org_admin_allowed=True),
    TransitionRule(S.REVIEWED, A.CANCEL, S.CANCELLED, None, requires_owner=True, org_admin_allowed=True),
)

TRANSITION_TABLE: dict[tuple[S, A], TransitionRule] = {
    (rule.from_state, rule.action): rule for rule in _RULES
}


def lookup_transition(state: S, action: A) -> Optional[TransitionRule]:
    return TRANSITION_TABLE.get((S(state), A(action)))


def rules_for_action(action: A) -> list[TransitionRule]:
    return [rule for rule in _RULES if rule.action == action]


def allowed_actions(state: S) -> list[A]:
    return [rule.action for rule in _RULES if rule.from_state == state]
