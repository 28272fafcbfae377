from typing import get_args

import pytest

from itinerary import state_machine as sm
from itinerary.errors import InvalidTransition
from itinerary.schemas import ProcessingStatus


def test_forward_path_reaches_completed():
    status = sm.transition(sm.INITIAL, sm.BEGIN)
    assert status == "research-in-progress"
    for agent in sm.STAGE_ORDER:
        assert sm.active_agent(status) == agent
        status = sm.transition(status, sm.complete(agent))
    assert status == sm.COMPLETED
    assert sm.is_terminal(status)


def test_completing_a_stage_that_is_not_active_is_rejected():
    with pytest.raises(InvalidTransition):
        sm.transition("research-in-progress", sm.complete("curation"))
    with pytest.raises(InvalidTransition):
        sm.transition(sm.INITIAL, sm.complete("research"))


def test_begin_only_from_initiated():
    assert sm.can_apply(sm.INITIAL, sm.BEGIN)
    assert not sm.can_apply("research-in-progress", sm.BEGIN)


def test_failure_allowed_from_every_active_status_and_nowhere_else():
    for status in get_args(ProcessingStatus):
        for agent in sm.STAGE_ORDER:
            assert sm.can_apply(status, sm.fail(agent)) == (status in sm.ACTIVE)


def test_terminal_statuses_have_no_way_out():
    for status in sm.TERMINAL:
        assert not any(src == status for src, _ in sm.TRANSITIONS)


def test_stage_neighbours_and_reported_status():
    assert sm.next_agent("research") == "curation"
    assert sm.next_agent("response") is None
    assert sm.previous_agent("research") is None
    assert sm.previous_agent("validation") == "curation"
    assert sm.completed_status("curation") == "curation-completed"
    assert sm.completed_status("response") == "completed"
