"""
Portal navigation as a state machine.

A PortalState is immutable; apply() returns the next state for an action or
raises InvalidTransition. The student login wizard is a separate two-step
machine.
"""
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from errors import InvalidTransition, RecordNotFound
from identity import STUDENT, TEACHER
from ranking import ALL, FilterCriteria


class View(str, Enum):
    DASHBOARD = "dashboard"
    ADD_STUDENT = "add_student"
    VIEW_GRADES = "view_grades"
    PERFORMANCE = "performance"
    FAILED = "failed"


class Action(str, Enum):
    OPEN_ADD = "open_add"
    OPEN_GRADES = "open_grades"
    OPEN_PERFORMANCE = "open_performance"
    OPEN_FAILED = "open_failed"
    STUDENT_ADDED = "student_added"
    BACK = "back"
    SET_BRANCH = "set_branch"
    SET_SECTION = "set_section"
    TOGGLE_RANK = "toggle_rank"
    TOGGLE_FAILED = "toggle_failed"


SORT_NONE = "none"
SORT_RANK = "rank"
SORT_FAILED = "failed"

NAVIGATION: Dict[Tuple[str, View, Action], View] = {
    (TEACHER, View.DASHBOARD, Action.OPEN_ADD): View.ADD_STUDENT,
    (TEACHER, View.DASHBOARD, Action.OPEN_GRADES): View.VIEW_GRADES,
    (TEACHER, View.ADD_STUDENT, Action.BACK): View.DASHBOARD,
    (TEACHER, View.ADD_STUDENT, Action.STUDENT_ADDED): View.VIEW_GRADES,
    (TEACHER, View.VIEW_GRADES, Action.BACK): View.DASHBOARD,
    (TEACHER, View.VIEW_GRADES, Action.OPEN_ADD): View.ADD_STUDENT,
    (STUDENT, View.DASHBOARD, Action.OPEN_PERFORMANCE): View.PERFORMANCE,
    (STUDENT, View.DASHBOARD, Action.OPEN_GRADES): View.VIEW_GRADES,
    (STUDENT, View.DASHBOARD, Action.OPEN_FAILED): View.FAILED,
    (STUDENT, View.PERFORMANCE, Action.BACK): View.DASHBOARD,
    (STUDENT, View.VIEW_GRADES, Action.BACK): View.DASHBOARD,
    (STUDENT, View.FAILED, Action.BACK): View.DASHBOARD,
}

# views whose filters can be changed in place
FILTERABLE = {
    TEACHER: {View.VIEW_GRADES},
    STUDENT: {View.VIEW_GRADES, View.FAILED},
}
SORTABLE = {TEACHER: {View.VIEW_GRADES}, STUDENT: set()}


class PortalState(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str = TEACHER
    view: View = View.DASHBOARD
    branch: str = ALL
    section: str = ALL
    sort: str = SORT_NONE

    def criteria(self) -> FilterCriteria:
        only_failed = self.view == View.FAILED or (self.role == TEACHER and self.sort == SORT_FAILED)
        return FilterCriteria(branch=self.branch, section=self.section, only_failed=only_failed)

    def apply(self, action: Action, value: Optional[str] = None) -> "PortalState":
        target = NAVIGATION.get((self.role, self.view, action))
        if target is not None:
            return self.model_copy(update={"view": target})

        if action in (Action.SET_BRANCH, Action.SET_SECTION):
            if self.view not in FILTERABLE.get(self.role, set()):
                raise InvalidTransition(f"Cannot filter from {self.view.value}")
            field = "branch" if action == Action.SET_BRANCH else "section"
            return self.model_copy(update={field: value or ALL})

        if action in (Action.TOGGLE_RANK, Action.TOGGLE_FAILED):
            if self.view not in SORTABLE.get(self.role, set()):
                raise InvalidTransition(f"Cannot sort from {self.view.value}")
            mode = SORT_RANK if action == Action.TOGGLE_RANK else SORT_FAILED
            return self.model_copy(update={"sort": SORT_NONE if self.sort == mode else mode})

        raise InvalidTransition(f"{action.value} is not allowed from {self.role} {self.view.value}")


class LoginStep(int, Enum):
    ENTER_ID = 1
    ENTER_PASSWORD = 2


class LoginWizard(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: LoginStep = LoginStep.ENTER_ID
    student_id: Optional[str] = None
    first_time: bool = False

    def submit_id(self, student_id: str, record: Optional[dict]) -> "LoginWizard":
        if self.step != LoginStep.ENTER_ID:
            raise InvalidTransition("Student ID was already entered")
        if record is None:
            raise RecordNotFound(student_id)
        return LoginWizard(
            step=LoginStep.ENTER_PASSWORD,
            student_id=student_id,
            first_time=not record.get("password_set", False),
        )

    def back(self) -> "LoginWizard":
        return LoginWizard()
