"""Pure decision function for the work loop.

Given a task snapshot and what the loop observed about its environment,
return the single action to take. No I/O, no clock, no randomness: the same
inputs always produce the same Action.

Rules, first match wins:

 1. task done                                      -> noop
 2. task blocked                                   -> skip(awaiting_triage)
 3. agent running                                  -> skip(agent_active)
 4. in_progress and agent finished/stale           -> block(agent_terminated_without_signal)
 5. in_review, open PR, reviewer capacity          -> dispatch_reviewer
 6. in_review, no open PR, no agent                -> block(in_review_without_pr)
 7. ready, dependencies met, capacity              -> dispatch(role)
 8. ready, dependencies not met                    -> skip(dependencies_not_met)
 9. ready, no capacity                             -> skip(no_capacity)
10. anything else                                  -> noop
"""

from dataclasses import dataclass

from work_loop.db.models import DEFAULT_ROLE, Task

AWAITING_TRIAGE = "awaiting_triage"
AGENT_ACTIVE = "agent_active"
AGENT_TERMINATED_WITHOUT_SIGNAL = "agent_terminated_without_signal"
IN_REVIEW_WITHOUT_PR = "in_review_without_pr"
DEPENDENCIES_NOT_MET = "dependencies_not_met"
NO_CAPACITY = "no_capacity"


@dataclass(frozen=True)
class Action:
    type: str
    role: str | None = None
    reason: str | None = None

    @classmethod
    def dispatch(cls, role: str) -> "Action":
        return cls("dispatch", role=role)

    @classmethod
    def dispatch_reviewer(cls) -> "Action":
        return cls("dispatch_reviewer")

    @classmethod
    def block(cls, reason: str) -> "Action":
        return cls("block", reason=reason)

    @classmethod
    def skip(cls, reason: str) -> "Action":
        return cls("skip", reason=reason)

    @classmethod
    def noop(cls) -> "Action":
        return cls("noop")

    def to_dict(self) -> dict:
        data = {"type": self.type}
        if self.role is not None:
            data["role"] = self.role
        if self.reason is not None:
            data["reason"] = self.reason
        return data


def decide(
    task: Task,
    agent_status: str,
    has_open_pr: bool,
    dependencies_met: bool,
    capacity_available: bool,
    reviewer_capacity_available: bool,
) -> Action:
    status = task.status

    if status == "done":
        return Action.noop()

    if status == "blocked":
        return Action.skip(AWAITING_TRIAGE)

    if agent_status == "running":
        return Action.skip(AGENT_ACTIVE)

    if status == "in_progress" and agent_status in ("finished", "stale"):
        return Action.block(AGENT_TERMINATED_WITHOUT_SIGNAL)

    if status == "in_review" and has_open_pr and reviewer_capacity_available:
        return Action.dispatch_reviewer()

    if status == "in_review" and not has_open_pr and agent_status == "none":
        return Action.block(IN_REVIEW_WITHOUT_PR)

    if status == "ready" and dependencies_met and capacity_available:
        # Only a missing role falls back to dev; "" is passed through as-is.
        role = task.role if task.role is not None else DEFAULT_ROLE
        return Action.dispatch(role)

    if status == "ready" and not dependencies_met:
        return Action.skip(DEPENDENCIES_NOT_MET)

    if status == "ready" and not capacity_available:
        return Action.skip(NO_CAPACITY)

    return Action.noop()
