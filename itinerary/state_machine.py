"""Request lifecycle as an explicit (status, event) -> status table.

The table is derived from STAGE_ORDER and checked against the ProcessingStatus
enumeration at import time, so adding or reordering a stage without a matching
status fails loudly instead of falling through.
"""

from typing import Dict, Optional, Tuple, get_args

from .errors import InvalidTransition
from .schemas import AGENTS, ProcessingStatus

Event = Tuple[str, Optional[str]]

STAGE_ORDER: Tuple[str, ...] = AGENTS
INITIAL = "initiated"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL = frozenset({COMPLETED, FAILED})

BEGIN: Event = ("begin", None)


def complete(agent: str) -> Event:
    return ("complete", agent)


def fail(agent: str) -> Event:
    return ("fail", agent)


def in_progress(agent: str) -> str:
    return f"{agent}-in-progress"


def completed_status(agent: str) -> str:
    """Status reported by a stage's own success envelope ("curation-completed")."""
    if agent == STAGE_ORDER[-1]:
        return COMPLETED
    return f"{agent}-completed"


def next_agent(agent: str) -> Optional[str]:
    idx = STAGE_ORDER.index(agent)
    if idx + 1 < len(STAGE_ORDER):
        return STAGE_ORDER[idx + 1]
    return None


def previous_agent(agent: str) -> Optional[str]:
    idx = STAGE_ORDER.index(agent)
    return STAGE_ORDER[idx - 1] if idx > 0 else None


def active_agent(status: str) -> Optional[str]:
    for agent in STAGE_ORDER:
        if status == in_progress(agent):
            return agent
    return None


ACTIVE = frozenset({INITIAL, *(in_progress(agent) for agent in STAGE_ORDER)})
# Reported in stage success envelopes only; never persisted on a request.
REPORT_ONLY = frozenset(completed_status(agent) for agent in STAGE_ORDER[:-1])


def _build_transitions() -> Dict[Tuple[str, Event], str]:
    table: Dict[Tuple[str, Event], str] = {(INITIAL, BEGIN): in_progress(STAGE_ORDER[0])}
    for agent in STAGE_ORDER:
        following = next_agent(agent)
        table[(in_progress(agent), complete(agent))] = in_progress(following) if following else COMPLETED
    for status in ACTIVE:
        for agent in STAGE_ORDER:
            table[(status, fail(agent))] = FAILED
    return table


TRANSITIONS = _build_transitions()


def transition(status: str, event: Event) -> str:
    target = TRANSITIONS.get((status, event))
    if target is None:
        kind, agent = event
        raise InvalidTransition(
            f"Cannot apply {kind}{'(' + agent + ')' if agent else ''} to a request in status {status}",
            {"status": status, "event": kind, "agent": agent},
        )
    return target


def can_apply(status: str, event: Event) -> bool:
    return (status, event) in TRANSITIONS


def is_terminal(status: str) -> bool:
    return status in TERMINAL


def _check_exhaustive() -> None:
    statuses = set(get_args(ProcessingStatus))
    classified = set(ACTIVE) | set(TERMINAL) | set(REPORT_ONLY)
    if statuses != classified:
        raise RuntimeError(
            f"ProcessingStatus and stage order disagree: unclassified={sorted(statuses - classified)} "
            f"unknown={sorted(classified - statuses)}"
        )
    sources = {status for status, _ in TRANSITIONS}
    if sources & (set(TERMINAL) | set(REPORT_ONLY)):
        raise RuntimeError("terminal or report-only statuses must not have outgoing transitions")
    for status in ACTIVE:
        forward = [event for (src, event) in TRANSITIONS if src == status and event[0] != "fail"]
        if len(forward) != 1:
            raise RuntimeError(f"status {status} must have exactly one forward transition, found {forward}")
    for target in TRANSITIONS.values():
        if target not in statuses:
            raise RuntimeError(f"transition target {target} is not a ProcessingStatus")


_check_exhaustive()
