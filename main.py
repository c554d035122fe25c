import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from database import DocumentStore, RecordSnapshot, Subscription, client, get_store
from errors import (
    GradeBookError,
    IdentityExists,
    IdentityNotFound,
    InvalidIdentityInput,
    InvalidTransition,
    RecordExists,
    RecordNotFound,
    StoreUnavailable,
    WrongSecret,
)
from grading import compute_grade
from identity import STUDENT, TEACHER, Identity, IdentityProvider, validate_secret
from portal import Action, LoginWizard, PortalState
from ranking import ALL, FilterCriteria, LiveLeaderboard, filtered_rank, global_rank, my_rank, select
from schemas import (
    LoginOut,
    MyStanding,
    RankedStudent,
    StudentIn,
    StudentLoginIn,
    StudentLookupIn,
    StudentLookupOut,
    StudentRecord,
    StudentUpdate,
    TeacherLoginIn,
    TeacherSignupIn,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)

logger = logging.getLogger(__name__)

STUDENT_COLLECTION = "student"
UNKNOWN_RANK = "-"

app = FastAPI(title="Grade Book API")

allowed_origins = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = {
    RecordNotFound: 404,
    RecordExists: 409,
    IdentityExists: 409,
    InvalidTransition: 409,
    IdentityNotFound: 401,
    WrongSecret: 401,
    InvalidIdentityInput: 422,
    StoreUnavailable: 503,
}


@app.exception_handler(GradeBookError)
async def gradebook_error_handler(request: Request, exc: GradeBookError):
    status = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 500)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status}): {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# Dependencies
def get_student_store() -> DocumentStore:
    return get_store(STUDENT_COLLECTION)


def get_identity_provider() -> IdentityProvider:
    return IdentityProvider(get_store("identity"), get_store("session"))


def get_current_identity(
    authorization: Optional[str] = Header(None),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Identity:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Bearer token")
    identity = provider.resolve(authorization[len("Bearer "):].strip())
    if identity is None:
        raise HTTPException(status_code=401, detail="Session expired or unknown")
    return identity


def require_teacher(identity: Identity = Depends(get_current_identity)) -> Identity:
    if identity.role != TEACHER:
        raise HTTPException(status_code=403, detail="Teachers only")
    return identity


def require_student(identity: Identity = Depends(get_current_identity)) -> Identity:
    if identity.role != STUDENT:
        raise HTTPException(status_code=403, detail="Students only")
    return identity


def build_student_document(payload: BaseModel, password_set: bool = False) -> Dict[str, Any]:
    """Full student document with total, CGPA and grade recomputed from marks."""
    data = payload.model_dump(mode="json")
    total, cgpa, grade = compute_grade(data["marks"])
    data.update({"total": total, "cgpa": cgpa, "grade": grade, "password_set": password_set})
    return data


def _ranked_out(view: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [RankedStudent(**record).model_dump(mode="json") for record in view]


@app.get("/")
def root():
    return {"message": "Grade Book API"}


@app.get("/test")
def test_database(store: DocumentStore = Depends(get_student_store)):
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Connected",
        "store": type(store).__name__,
    }
    try:
        if client is not None:
            client.admin.command("ping")
            resp["database"] = "✅ Connected"
        resp["students"] = len(store.list_all())
    except Exception as e:
        resp["error"] = str(e)
    return resp


# Teacher accounts
def _teacher_login_id(username: str) -> str:
    return "".join(username.split()).lower()


@app.post("/api/teachers/signup", response_model=LoginOut)
def teacher_signup(payload: TeacherSignupIn, provider: IdentityProvider = Depends(get_identity_provider)):
    login_id = _teacher_login_id(payload.username)
    token = provider.create_identity(login_id, payload.password, TEACHER, display_name=payload.username.strip())
    return LoginOut(token=token, role=TEACHER, login_id=login_id, display_name=payload.username.strip())


@app.post("/api/teachers/login", response_model=LoginOut)
def teacher_login(payload: TeacherLoginIn, provider: IdentityProvider = Depends(get_identity_provider)):
    login_id = _teacher_login_id(payload.username)
    token = provider.authenticate(login_id, payload.password, TEACHER)
    identity = provider.resolve(token)
    return LoginOut(token=token, role=TEACHER, login_id=login_id, display_name=identity.display_name)


@app.post("/api/auth/logout")
def logout(
    authorization: Optional[str] = Header(None),
    identity: Identity = Depends(get_current_identity),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    provider.revoke(authorization[len("Bearer "):].strip())
    return {"success": True}


# Student login wizard
@app.post("/api/students/lookup", response_model=StudentLookupOut)
def student_lookup(payload: StudentLookupIn, store: DocumentStore = Depends(get_student_store)):
    wizard = LoginWizard().submit_id(payload.id, store.get_by_key(payload.id))
    return StudentLookupOut(id=payload.id, first_time=wizard.first_time)


@app.post("/api/students/login", response_model=LoginOut)
def student_login(
    payload: StudentLoginIn,
    store: DocumentStore = Depends(get_student_store),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    record = store.get_by_key(payload.id)
    wizard = LoginWizard().submit_id(payload.id, record)
    validate_secret(payload.password)

    if wizard.first_time:
        try:
            token = provider.create_identity(
                payload.id, payload.password, STUDENT, record_key=payload.id, display_name=record.get("name")
            )
        except IdentityExists:
            # identity outlived an earlier record with the same id
            logger.warning(f"Identity for {payload.id} already exists, logging in instead")
            token = provider.authenticate(payload.id, payload.password, STUDENT)
        store.put_by_key(payload.id, {**record, "password_set": True})
    else:
        token = provider.authenticate(payload.id, payload.password, STUDENT)

    return LoginOut(token=token, role=STUDENT, login_id=payload.id, display_name=record.get("name"))


# Students CRUD (teacher)
@app.post("/api/students", response_model=StudentRecord, status_code=201)
def create_student(
    payload: StudentIn,
    store: DocumentStore = Depends(get_student_store),
    teacher: Identity = Depends(require_teacher),
):
    if store.exists(payload.id):
        raise RecordExists(payload.id)
    data = build_student_document(payload)
    store.put_by_key(payload.id, data)
    logger.info(f"{teacher.login_id} added student {payload.id} ({data['grade']}, {data['cgpa']})")
    return data


@app.put("/api/students/{student_id}", response_model=StudentRecord)
def update_student(
    student_id: str,
    payload: StudentUpdate,
    store: DocumentStore = Depends(get_student_store),
    teacher: Identity = Depends(require_teacher),
):
    existing = store.get_by_key(student_id)
    if existing is None:
        raise RecordNotFound(student_id)
    data = build_student_document(payload, password_set=existing.get("password_set", False))
    data["id"] = student_id
    store.put_by_key(student_id, data)
    logger.info(f"{teacher.login_id} updated marks of {student_id}")
    return data


@app.delete("/api/students/{student_id}")
def delete_student(
    student_id: str,
    store: DocumentStore = Depends(get_student_store),
    teacher: Identity = Depends(require_teacher),
):
    if not store.delete_by_key(student_id):
        raise RecordNotFound(student_id)
    logger.info(f"{teacher.login_id} removed student {student_id}")
    return {"success": True, "id": student_id}


@app.get("/api/students", response_model=List[RankedStudent])
def list_students(
    branch: str = ALL,
    section: str = ALL,
    sort: str = "none",
    store: DocumentStore = Depends(get_student_store),
    teacher: Identity = Depends(require_teacher),
):
    records = store.list_all()
    criteria = FilterCriteria(branch=branch, section=section)
    if sort == "rank":
        return filtered_rank(records, criteria)
    if sort == "failed":
        return filtered_rank(records, FilterCriteria(branch=branch, section=section, only_failed=True))
    if sort != "none":
        raise HTTPException(status_code=422, detail="sort must be one of none, rank, failed")
    # unsorted listing shows class rank, ordered by id
    return sorted(select(global_rank(records), criteria), key=lambda r: r["id"])


# Student views
@app.get("/api/me", response_model=MyStanding)
def my_standing(
    store: DocumentStore = Depends(get_student_store),
    student: Identity = Depends(require_student),
):
    record = store.get_by_key(student.record_key)
    if record is None:
        raise RecordNotFound(student.record_key)
    ranked = global_rank(store.list_all())
    rank = my_rank(ranked, record["id"])
    return MyStanding(student=record, rank=rank if rank is not None else UNKNOWN_RANK, class_size=len(ranked))


@app.get("/api/leaderboard", response_model=List[RankedStudent])
def leaderboard(
    store: DocumentStore = Depends(get_student_store),
    identity: Identity = Depends(get_current_identity),
):
    return global_rank(store.list_all())


@app.get("/api/grades", response_model=List[RankedStudent])
def grades(
    branch: str = ALL,
    section: str = ALL,
    only_failed: bool = False,
    store: DocumentStore = Depends(get_student_store),
    student: Identity = Depends(require_student),
):
    criteria = FilterCriteria(branch=branch, section=section, only_failed=only_failed)
    # rank inside the branch/section subset; failed filter keeps those ranks
    ranked = filtered_rank(store.list_all(), criteria.without_failed())
    return select(ranked, criteria)


# Portal navigation
class TransitionIn(BaseModel):
    state: PortalState = PortalState()
    action: Action
    value: Optional[str] = None


@app.post("/api/portal/transition", response_model=PortalState)
def portal_transition(payload: TransitionIn):
    return payload.state.apply(payload.action, payload.value)


# Live feeds
async def _stream_updates(websocket: WebSocket, subscribe: Callable[[Callable[[dict], None]], Subscription]):
    """
    Push every message emitted by a store subscription until the client leaves.

    Store callbacks may fire on a watcher thread, so messages are handed to
    the event loop through a queue. The subscription is always released.
    """
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue = asyncio.Queue()
    subscription = subscribe(lambda message: loop.call_soon_threadsafe(updates.put_nowait, message))

    async def push():
        while True:
            await websocket.send_json(await updates.get())

    async def drain():
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(push()), asyncio.create_task(drain())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"Live feed {websocket.url.path} failed: {exc}")
    finally:
        for task in tasks:
            task.cancel()
        subscription.cancel()
        logger.info(f"Subscriber left {websocket.url.path}")


@app.websocket("/ws/leaderboard")
async def leaderboard_feed(
    websocket: WebSocket,
    token: Optional[str] = None,
    store: DocumentStore = Depends(get_student_store),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    if provider.resolve(token) is None:
        await websocket.close(code=1008)
        return
    await websocket.accept()

    def subscribe(emit):
        board = LiveLeaderboard()
        board.add_listener(lambda version, view: emit({"version": version, "leaderboard": _ranked_out(view)}))
        return store.subscribe_collection(lambda snapshot: board.apply(snapshot.version, snapshot.records))

    await _stream_updates(websocket, subscribe)


@app.websocket("/ws/me")
async def my_record_feed(
    websocket: WebSocket,
    token: Optional[str] = None,
    store: DocumentStore = Depends(get_student_store),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    identity = provider.resolve(token)
    if identity is None or identity.role != STUDENT:
        await websocket.close(code=1008)
        return
    await websocket.accept()

    def render(snapshot: RecordSnapshot) -> dict:
        student = StudentRecord(**snapshot.record).model_dump(mode="json") if snapshot.record else None
        return {"version": snapshot.version, "student": student}

    await _stream_updates(
        websocket,
        lambda emit: store.subscribe_by_key(identity.record_key, lambda snapshot: emit(render(snapshot))),
    )


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
