from typing import NamedTuple, Sequence

NO_GRADE = "N/A"


class GradeResult(NamedTuple):
    total: int
    cgpa: float
    grade: str


EMPTY_RESULT = GradeResult(total=0, cgpa=0, grade=NO_GRADE)


def letter_grade(cgpa: float) -> str:
    grade = "C"
    if cgpa >= 8.0:
        grade = "B"
    if cgpa >= 9.0:
        grade = "A"
    # Fail is checked last and overrides A/B/C
    if cgpa < 4.0:
        grade = "F"
    return grade


def grade_from_total(total: int, subject_count: int) -> GradeResult:
    if subject_count <= 0:
        return EMPTY_RESULT
    average = total / subject_count
    cgpa = round(average / 10, 2)
    return GradeResult(total=total, cgpa=cgpa, grade=letter_grade(cgpa))


def compute_grade(marks: Sequence[int]) -> GradeResult:
    """Derive total, CGPA (0-10 scale) and letter grade from per-subject marks."""
    return grade_from_total(sum(marks), len(marks))
