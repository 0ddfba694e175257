# ====== Synchronizations ======
from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

from engine import Engine, Frame, Sync, ThenTemplate, Var, WhenPattern, maybe, variables

logger = logging.getLogger(__name__)

UNAUTHORIZED = "Unauthorized: valid session required."
NOT_PERMITTED = "Unauthorized: user not permitted to modify this schedule."
NOT_OWN_SCHEDULE = "Unauthorized: you can only access your own schedules"
SCHEDULE_NOT_FOUND = "Schedule not found"


def requested(path: str, request: Var, **fields: Any) -> WhenPattern:
    return WhenPattern("Requesting", "request", {"path": path, **fields}, {"request": request})


def respond(request: Var, **fields: Any) -> ThenTemplate:
    return ThenTemplate("Requesting", "respond", {"request": request, **fields})


def disabled(prefix: str, paths: List[str], message: str) -> List[Sync]:
    syncs = []
    for path in paths:
        (request,) = variables("request")
        syncs.append(Sync(
            name=f"{prefix}Disabled{path.rsplit('/', 1)[-1]}",
            when=[requested(path, request)],
            then=[respond(request, error=message)],
        ))
    return syncs

# ------ guards ------

async def _reject(eng: Engine, fr: Frame, request: Var, message: str) -> None:
    await eng.invoke("Requesting", "respond", {"request": fr[request], "error": message}, flow=fr.flow)


async def _session_user(eng: Engine, fr: Frame, session_id: Optional[str]) -> Optional[str]:
    if not session_id:
        return None
    used = await eng.invoke("Session", "useSession", {"s": session_id}, flow=fr.flow)
    if "error" in used.output:
        return None
    doc = await eng.query("Session", "_getSession", s=session_id)
    return doc.get("userID")


def session_guard(request: Var, session: Var, user: Var, message: str = UNAUTHORIZED):
    """Bind ``user`` from a live session, or answer the request with ``message``."""
    async def where(eng: Engine, frames: List[Frame]) -> List[Frame]:
        out = []
        for fr in frames:
            uid = await _session_user(eng, fr, fr[session])
            if uid is None:
                await _reject(eng, fr, request, message)
                continue
            out.append(fr.extend({user: uid}))
        return out
    return where


def ownership_guard(request: Var, schedule_id: Var, session: Var, user: Var):
    """Like session_guard, and the session's user must own ``schedule_id``."""
    async def where(eng: Engine, frames: List[Frame]) -> List[Frame]:
        out = []
        for fr in frames:
            uid = await _session_user(eng, fr, fr[session])
            owner = None
            if uid is not None:
                found = await eng.query("CourseScheduling", "_getSchedule", scheduleId=fr[schedule_id])
                owner = found.get("schedule", {}).get("owner")
            if uid is None or owner != uid:
                logger.info("Ownership check failed for schedule %s", fr[schedule_id], extra={"flow": fr.flow})
                await _reject(eng, fr, request, NOT_PERMITTED)
                continue
            out.append(fr.extend({user: uid}))
        return out
    return where

# ------ UserAuth ------

def user_auth_syncs() -> List[Sync]:
    syncs: List[Sync] = []
    for verb in ("register", "authenticate"):
        path = f"/UserAuth/{verb}"
        title = verb.capitalize()
        # Credentials go straight to UserAuth and are never echoed back
        request, username, password = variables("request", "username", "password")
        syncs.append(Sync(
            name=f"{title}Request",
            when=[requested(path, request, username=maybe(username), password=maybe(password))],
            then=[ThenTemplate("UserAuth", verb, {"username": username, "password": password})],
        ))
        request, user = variables("request", "user")
        syncs.append(Sync(
            name=f"{title}ResponseSuccess",
            when=[requested(path, request), WhenPattern("UserAuth", verb, {}, {"user": user})],
            then=[ThenTemplate("Session", "startSession", {"u": user})],
        ))
        request, session = variables("request", "session")
        syncs.append(Sync(
            name=f"{title}SessionResponse",
            when=[requested(path, request), WhenPattern("Session", "startSession", {}, {"session": session})],
            then=[respond(request, session=session)],
        ))
    request, error = variables("request", "error")
    syncs.append(Sync(
        name="RegisterResponseError",
        when=[requested("/UserAuth/register", request), WhenPattern("UserAuth", "register", {}, {"error": error})],
        then=[respond(request, error=error)],
    ))
    # Generic message: never reveal which half of the credentials was wrong
    request, error = variables("request", "error")
    syncs.append(Sync(
        name="AuthenticateResponseError",
        when=[requested("/UserAuth/authenticate", request), WhenPattern("UserAuth", "authenticate", {}, {"error": error})],
        then=[respond(request, error="Invalid username or password.")],
    ))
    syncs += disabled(
        "UserAuth", ["/UserAuth/_getUserByUsername", "/UserAuth/_getUserById"],
        "Route disabled: UserAuth internal routes are not accessible.",
    )
    return syncs

# ------ Session ------

def session_syncs() -> List[Sync]:
    syncs: List[Sync] = []
    request, session = variables("request", "session")
    syncs.append(Sync(
        name="EndSessionRequest",
        when=[requested("/Session/endSession", request, session=maybe(session))],
        then=[ThenTemplate("Session", "endSession", {"s": session})],
    ))
    request, error = variables("request", "error")
    syncs.append(Sync(
        name="EndSessionResponse",
        when=[requested("/Session/endSession", request), WhenPattern("Session", "endSession", {}, {"error": error})],
        then=[respond(request, error=error)],
    ))
    request, s = variables("request", "s")
    syncs.append(Sync(
        name="EndSessionResponseSuccess",
        when=[requested("/Session/endSession", request), WhenPattern("Session", "endSession", {}, {"s": s})],
        then=[respond(request, success=True)],
    ))
    syncs += disabled(
        "Session",
        ["/Session/startSession", "/Session/useSession", "/Session/extendSession", "/Session/_expireSessions",
         "/Session/_getUserSessions", "/Session/_getSession"],
        "Route disabled: Session management routes are internal-only.",
    )
    return syncs

# ------ CourseScheduling ------

SCHEDULING_ACTIONS = (
    "createCourse", "createSection", "createSchedule", "deleteSchedule",
    "addSection", "addSectionByCourseCode", "removeSection", "duplicateSchedule",
)


def scheduling_syncs() -> List[Sync]:
    syncs: List[Sync] = []

    def path(action: str) -> str:
        return f"/CourseScheduling/{action}"

    def answer(action: str, key: str, **fields: Any) -> Sync:
        # respond once the action reports `key`; a field given as None echoes it back
        request, value = variables("request", key)
        payload: Dict[str, Any] = {k: (value if v is None else v) for k, v in fields.items()}
        return Sync(
            name=f"{action[0].upper()}{action[1:]}Response",
            when=[requested(path(action), request), WhenPattern("CourseScheduling", action, {}, {key: value})],
            then=[respond(request, **payload)],
        )

    # CreateCourse / CreateSection: any signed-in user
    request, course_id, title, department, session, user = variables(
        "request", "id", "title", "department", "session", "userId")
    syncs.append(Sync(
        name="CreateCourseRequest",
        when=[requested(path("createCourse"), request, id=maybe(course_id), title=maybe(title),
                        department=maybe(department), session=maybe(session))],
        where=session_guard(request, session, user),
        binds=(user,),
        then=[ThenTemplate("CourseScheduling", "createCourse",
                           {"courseId": course_id, "title": title, "department": department})],
    ))
    syncs.append(answer("createCourse", "course", course=None))

    request, course_id, number, instructor, capacity, slots, distribution, session, user = variables(
        "request", "courseId", "sectionNumber", "instructor", "capacity", "timeSlots", "distribution",
        "session", "userId")
    syncs.append(Sync(
        name="CreateSectionRequest",
        when=[requested(path("createSection"), request, courseId=maybe(course_id), sectionNumber=maybe(number),
                        instructor=maybe(instructor), capacity=maybe(capacity), timeSlots=maybe(slots),
                        distribution=maybe(distribution), session=maybe(session))],
        where=session_guard(request, session, user),
        binds=(user,),
        then=[ThenTemplate("CourseScheduling", "createSection", {
            "courseId": course_id, "sectionNumber": number, "instructor": instructor,
            "capacity": capacity, "timeSlots": slots, "distribution": distribution,
        })],
    ))
    syncs.append(answer("createSection", "section", section=None))

    # CreateSchedule: owner is whoever holds the session
    request, name, session, user = variables("request", "name", "session", "userId")
    syncs.append(Sync(
        name="CreateScheduleRequest",
        when=[requested(path("createSchedule"), request, name=maybe(name), session=maybe(session))],
        where=session_guard(request, session, user),
        binds=(user,),
        then=[ThenTemplate("CourseScheduling", "createSchedule", {"userId": user, "name": name})],
    ))
    syncs.append(answer("createSchedule", "s", s=None))

    # Owner-only mutations
    request, schedule_id, session, user = variables("request", "scheduleId", "session", "userId")
    syncs.append(Sync(
        name="DeleteScheduleRequest",
        when=[requested(path("deleteSchedule"), request, scheduleId=maybe(schedule_id), session=maybe(session))],
        where=ownership_guard(request, schedule_id, session, user),
        binds=(user,),
        then=[ThenTemplate("CourseScheduling", "deleteSchedule", {"userId": user, "scheduleId": schedule_id})],
    ))
    syncs.append(answer("deleteSchedule", "schedule", success=True))

    for action in ("addSection", "removeSection"):
        request, schedule_id, section_id, session, user = variables(
            "request", "scheduleId", "sectionId", "session", "userId")
        syncs.append(Sync(
            name=f"{action[0].upper()}{action[1:]}Request",
            when=[requested(path(action), request, scheduleId=maybe(schedule_id), sectionId=maybe(section_id),
                            session=maybe(session))],
            where=ownership_guard(request, schedule_id, session, user),
            binds=(user,),
            then=[ThenTemplate("CourseScheduling", action,
                               {"userId": user, "scheduleId": schedule_id, "sectionId": section_id})],
        ))
        syncs.append(answer(action, "schedule", success=True))

    request, source_id, new_name, session, user = variables(
        "request", "sourceScheduleId", "newName", "session", "userId")
    syncs.append(Sync(
        name="DuplicateScheduleRequest",
        when=[requested(path("duplicateSchedule"), request, sourceScheduleId=maybe(source_id),
                        newName=maybe(new_name), session=maybe(session))],
        where=ownership_guard(request, source_id, session, user),
        binds=(user,),
        then=[ThenTemplate("CourseScheduling", "duplicateSchedule",
                           {"userId": user, "sourceScheduleId": source_id, "newName": new_name})],
    ))
    syncs.append(answer("duplicateSchedule", "s", s=None))

    request, schedule_id, code, number, session, user = variables(
        "request", "scheduleId", "courseCode", "sectionNumber", "session", "userId")
    syncs.append(Sync(
        name="AddSectionByCourseCodeRequest",
        when=[requested(path("addSectionByCourseCode"), request, scheduleId=maybe(schedule_id),
                        courseCode=maybe(code), sectionNumber=maybe(number), session=maybe(session))],
        where=ownership_guard(request, schedule_id, session, user),
        binds=(user,),
        then=[ThenTemplate("CourseScheduling", "addSectionByCourseCode", {
            "userId": user, "scheduleId": schedule_id, "courseCode": code, "sectionNumber": number,
        })],
    ))
    request, success, section_id, message = variables("request", "success", "sectionId", "message")
    syncs.append(Sync(
        name="AddSectionByCourseCodeResponse",
        when=[requested(path("addSectionByCourseCode"), request),
              WhenPattern("CourseScheduling", "addSectionByCourseCode", {},
                          {"success": success, "sectionId": section_id, "message": message})],
        then=[respond(request, success=success, sectionId=section_id, message=message)],
    ))

    # GetSchedule: a missing schedule and someone else's schedule answer differently
    request, schedule_id, session, user, schedule = variables(
        "request", "scheduleId", "session", "userId", "schedule")
    check_session = session_guard(request, session, user)

    async def readable_schedule(eng: Engine, frames: List[Frame]) -> List[Frame]:
        out = []
        for fr in await check_session(eng, frames):
            found = (await eng.query("CourseScheduling", "_getSchedule", scheduleId=fr[schedule_id])).get("schedule")
            if found is None:
                await _reject(eng, fr, request, SCHEDULE_NOT_FOUND)
            elif found["owner"] != fr[user]:
                await _reject(eng, fr, request, NOT_OWN_SCHEDULE)
            else:
                out.append(fr.extend({schedule: found}))
        return out
    syncs.append(Sync(
        name="GetScheduleRequest",
        when=[requested(path("getSchedule"), request, scheduleId=maybe(schedule_id), session=maybe(session))],
        where=readable_schedule,
        binds=(user, schedule),
        then=[respond(request, schedule=schedule)],
    ))

    # GetSchedulesByOwner: the requested owner must be the caller
    request, owner, session, user, schedules = variables("request", "userId", "session", "sessionUser", "schedules")
    check_owner_session = session_guard(request, session, user)

    async def owner_schedules(eng: Engine, frames: List[Frame]) -> List[Frame]:
        out = []
        for fr in await check_owner_session(eng, frames):
            if fr[owner] != fr[user]:
                await _reject(eng, fr, request, NOT_OWN_SCHEDULE)
                continue
            found = await eng.query("CourseScheduling", "_getSchedulesByOwner", userId=fr[user])
            out.append(fr.extend({schedules: found["schedules"]}))
        return out
    syncs.append(Sync(
        name="GetSchedulesByOwnerRequest",
        when=[requested(path("getSchedulesByOwner"), request, userId=maybe(owner), session=maybe(session))],
        where=owner_schedules,
        binds=(user, schedules),
        then=[respond(request, schedules=schedules)],
    ))

    # GetAllSchedules: only the caller's own schedules
    request, session, user, schedules = variables("request", "session", "userId", "schedules")
    check_session = session_guard(request, session, user)

    async def own_schedules(eng: Engine, frames: List[Frame]) -> List[Frame]:
        out = []
        for fr in await check_session(eng, frames):
            found = await eng.query("CourseScheduling", "_getSchedulesByOwner", userId=fr[user])
            out.append(fr.extend({schedules: found["schedules"]}))
        return out
    syncs.append(Sync(
        name="GetAllSchedulesRequest",
        when=[requested(path("getAllSchedules"), request, session=maybe(session))],
        where=own_schedules,
        binds=(user, schedules),
        then=[respond(request, schedules=schedules)],
    ))

    # Any scheduling action that reports an error answers with it
    for action in SCHEDULING_ACTIONS:
        request, error = variables("request", "error")
        syncs.append(Sync(
            name=f"{action[0].upper()}{action[1:]}Error",
            when=[requested(path(action), request), WhenPattern("CourseScheduling", action, {}, {"error": error})],
            then=[respond(request, error=error)],
        ))
    # Course catalogue edits are admin-only and never reachable from clients
    syncs += disabled("CourseScheduling", ["/CourseScheduling/editSection"], "Route disabled: admin/system-only route.")
    return syncs


def make_syncs() -> List[Sync]:
    return user_auth_syncs() + session_syncs() + scheduling_syncs()
