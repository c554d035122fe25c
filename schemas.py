"""
Database Schemas for the Grade Book

Each Pydantic model either describes a document in a collection (StudentRecord
lives in "student") or the body of an API request/response.
"""
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

USERNAME_PATTERN = r"^[a-zA-Z\s]+$"
PASSWORD_PATTERN = r"^[a-zA-Z0-9]+$"
MAX_SUBJECTS = 10


class Branch(str, Enum):
    CSE = "CSE"
    CSD = "CSD"
    CAI = "CAI"
    AIDS = "AIDS"
    ECM = "ECM"
    ECE = "ECE"
    EEE = "EEE"
    IT = "IT"
    MECH = "MECH"
    CIVIL = "CIVIL"


Year = Literal["1st", "2nd"]


class StudentIn(BaseModel):
    id: str = Field(..., min_length=1, description="Student ID, also the record key")
    name: str = Field(..., min_length=1, description="Display name")
    branch: Branch = Field(Branch.CSE, description="Branch code")
    section: str = Field("A", min_length=1, description="Section, usually A, B or C")
    year: Year = Field("1st", description="1st or 2nd year")
    marks: List[int] = Field(default_factory=list, max_length=MAX_SUBJECTS, description="One mark per subject, 0-100")


class StudentUpdate(BaseModel):
    name: str = Field(..., min_length=1)
    branch: Branch = Branch.CSE
    section: str = Field("A", min_length=1)
    year: Year = "1st"
    marks: List[int] = Field(default_factory=list, max_length=MAX_SUBJECTS)


class StudentRecord(BaseModel):
    id: str
    name: str
    branch: Branch
    section: str
    year: Year
    marks: List[int] = Field(default_factory=list)
    total: int = 0
    cgpa: float = 0
    grade: str = "N/A"
    password_set: bool = False


class RankedStudent(StudentRecord):
    rank: int


class TeacherSignupIn(BaseModel):
    username: str = Field(..., pattern=USERNAME_PATTERN, description="Letters and spaces only")
    password: str = Field(..., pattern=PASSWORD_PATTERN, description="Letters and numbers only")


class TeacherLoginIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class StudentLookupIn(BaseModel):
    id: str = Field(..., min_length=1)


class StudentLookupOut(BaseModel):
    id: str
    first_time: bool


class StudentLoginIn(BaseModel):
    id: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class LoginOut(BaseModel):
    token: str
    role: str
    login_id: str
    display_name: Optional[str] = None


class MyStanding(BaseModel):
    student: StudentRecord
    rank: Union[int, str] = Field(..., description="Class rank, '-' when unknown")
    class_size: int
