import pytest
from pydantic import ValidationError

from errors import InvalidTransition, RecordNotFound
from identity import STUDENT, TEACHER
from portal import Action, LoginStep, LoginWizard, PortalState, View


def test_teacher_add_flow():
    state = PortalState(role=TEACHER)
    state = state.apply(Action.OPEN_ADD)
    assert state.view == View.ADD_STUDENT
    state = state.apply(Action.STUDENT_ADDED)
    assert state.view == View.VIEW_GRADES
    state = state.apply(Action.BACK)
    assert state.view == View.DASHBOARD


def test_teacher_grade_filters():
    state = PortalState(role=TEACHER).apply(Action.OPEN_GRADES)
    state = state.apply(Action.SET_BRANCH, "ECE").apply(Action.SET_SECTION, "B")
    state = state.apply(Action.TOGGLE_FAILED)
    assert (state.branch, state.section, state.sort) == ("ECE", "B", "failed")
    assert state.criteria().only_failed

    state = state.apply(Action.TOGGLE_RANK)
    assert state.sort == "rank"
    assert not state.criteria().only_failed
    assert state.apply(Action.TOGGLE_RANK).sort == "none"
    assert state.apply(Action.SET_BRANCH, None).branch == "All"


def test_student_views():
    dashboard = PortalState(role=STUDENT)
    assert dashboard.apply(Action.OPEN_PERFORMANCE).view == View.PERFORMANCE
    assert dashboard.apply(Action.OPEN_GRADES).view == View.VIEW_GRADES
    failed = dashboard.apply(Action.OPEN_FAILED)
    assert failed.view == View.FAILED
    assert failed.criteria().only_failed
    assert failed.apply(Action.SET_SECTION, "A").section == "A"
    assert failed.apply(Action.BACK).view == View.DASHBOARD


@pytest.mark.parametrize("role, view, action", [
    (STUDENT, View.DASHBOARD, Action.OPEN_ADD),
    (TEACHER, View.DASHBOARD, Action.OPEN_FAILED),
    (TEACHER, View.DASHBOARD, Action.BACK),
    (TEACHER, View.ADD_STUDENT, Action.SET_BRANCH),
    (STUDENT, View.VIEW_GRADES, Action.TOGGLE_RANK),
    (STUDENT, View.PERFORMANCE, Action.SET_SECTION),
])
def test_invalid_transitions(role, view, action):
    with pytest.raises(InvalidTransition):
        PortalState(role=role, view=view).apply(action, "A")


def test_state_is_immutable():
    state = PortalState(role=TEACHER)
    state.apply(Action.OPEN_ADD)
    assert state.view == View.DASHBOARD
    with pytest.raises(ValidationError):
        state.view = View.ADD_STUDENT


class TestLoginWizard:
    def test_first_time_login(self):
        wizard = LoginWizard().submit_id("S1", {"id": "S1", "password_set": False})
        assert wizard.step == LoginStep.ENTER_PASSWORD
        assert wizard.student_id == "S1"
        assert wizard.first_time

    def test_returning_login(self):
        wizard = LoginWizard().submit_id("S1", {"id": "S1", "password_set": True})
        assert not wizard.first_time

    def test_unknown_student(self):
        with pytest.raises(RecordNotFound):
            LoginWizard().submit_id("S9", None)

    def test_back_and_resubmit(self):
        wizard = LoginWizard().submit_id("S1", {"id": "S1"})
        with pytest.raises(InvalidTransition):
            wizard.submit_id("S1", {"id": "S1"})
        assert wizard.back() == LoginWizard()
