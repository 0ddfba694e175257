"""End-to-end request flows through the fully wired engine."""

import asyncio
import logging

import pytest

from sync import NOT_OWN_SCHEDULE, NOT_PERMITTED, SCHEDULE_NOT_FOUND, UNAUTHORIZED


async def _signup(engine, username="alice", password="pw"):
    out = await engine.handle("/UserAuth/register", {"username": username, "password": password})
    return out["session"]


async def _user_of(engine, session):
    return (await engine.query("Session", "_getSession", s=session))["userID"]


async def _new_schedule(engine, session, name="Fall"):
    out = await engine.handle("/CourseScheduling/createSchedule", {"name": name, "session": session})
    return out["s"]


@pytest.mark.asyncio
async def test_register_then_authenticate_returns_sessions(engine):
    first = await _signup(engine)
    again = await engine.handle("/UserAuth/authenticate", {"username": "alice", "password": "pw"})
    assert again["session"] != first
    assert await _user_of(engine, first) == await _user_of(engine, again["session"])


@pytest.mark.asyncio
async def test_wrong_password_gets_generic_error(engine):
    await _signup(engine)
    out = await engine.handle("/UserAuth/authenticate", {"username": "alice", "password": "nope"})
    assert out == {"error": "Invalid username or password."}


@pytest.mark.asyncio
async def test_duplicate_username_is_reported(engine):
    await _signup(engine)
    out = await engine.handle("/UserAuth/register", {"username": "alice", "password": "other"})
    assert out == {"error": "Username 'alice' is already taken."}


@pytest.mark.asyncio
async def test_missing_credentials_are_reported(engine):
    out = await engine.handle("/UserAuth/register", {"username": "alice"})
    assert out == {"error": "Username and password are required."}


@pytest.mark.asyncio
async def test_create_schedule_without_session_is_unauthorized(engine):
    out = await engine.handle("/CourseScheduling/createSchedule", {"name": "Fall"})
    assert out == {"error": UNAUTHORIZED}
    assert engine.log.query("CourseScheduling", "createSchedule") == []


@pytest.mark.asyncio
async def test_create_schedule_with_stale_session_is_unauthorized(engine):
    out = await engine.handle("/CourseScheduling/createSchedule", {"name": "Fall", "session": "stale"})
    assert out == {"error": UNAUTHORIZED}


@pytest.mark.asyncio
async def test_new_schedule_is_owned_by_the_session_user(engine):
    session = await _signup(engine)
    schedule = await _new_schedule(engine, session)
    assert schedule["name"] == "Fall"
    assert schedule["owner"] == await _user_of(engine, session)
    assert schedule["sectionIds"] == []


@pytest.mark.asyncio
async def test_owner_can_delete_schedule(engine):
    session = await _signup(engine)
    schedule = await _new_schedule(engine, session)
    out = await engine.handle("/CourseScheduling/deleteSchedule", {"scheduleId": schedule["id"], "session": session})
    assert out == {"success": True}
    assert await engine.query("CourseScheduling", "_getSchedule", scheduleId=schedule["id"]) == {}


@pytest.mark.asyncio
async def test_other_user_cannot_delete_schedule(engine):
    alice = await _signup(engine, "alice")
    bob = await _signup(engine, "bob")
    schedule = await _new_schedule(engine, alice)
    out = await engine.handle("/CourseScheduling/deleteSchedule", {"scheduleId": schedule["id"], "session": bob})
    assert out == {"error": NOT_PERMITTED}
    assert engine.log.query("CourseScheduling", "deleteSchedule") == []
    found = await engine.query("CourseScheduling", "_getSchedule", scheduleId=schedule["id"])
    assert found["schedule"]["id"] == schedule["id"]


@pytest.mark.asyncio
async def test_deleting_unknown_schedule_is_not_permitted(engine):
    session = await _signup(engine)
    out = await engine.handle("/CourseScheduling/deleteSchedule", {"scheduleId": "missing", "session": session})
    assert out == {"error": NOT_PERMITTED}


@pytest.mark.asyncio
async def test_course_section_and_schedule_workflow(engine):
    session = await _signup(engine)
    course = await engine.handle("/CourseScheduling/createCourse", {
        "id": "CS101", "title": "Intro", "department": "CS", "session": session,
    })
    assert course == {"course": {"id": "CS101", "title": "Intro", "department": "CS"}}
    section = (await engine.handle("/CourseScheduling/createSection", {
        "courseId": "CS101", "sectionNumber": "01", "capacity": 30,
        "timeSlots": [{"days": ["Mon"], "startTime": "09:00", "endTime": "10:00"}], "session": session,
    }))["section"]
    assert section["instructor"] is None
    schedule = await _new_schedule(engine, session)
    added = await engine.handle("/CourseScheduling/addSection", {
        "scheduleId": schedule["id"], "sectionId": section["id"], "session": session,
    })
    assert added == {"success": True}
    copy = await engine.handle("/CourseScheduling/duplicateSchedule", {
        "sourceScheduleId": schedule["id"], "newName": "Fall copy", "session": session,
    })
    assert copy["s"]["sectionIds"] == [section["id"]]
    assert copy["s"]["name"] == "Fall copy"
    removed = await engine.handle("/CourseScheduling/removeSection", {
        "scheduleId": schedule["id"], "sectionId": section["id"], "session": session,
    })
    assert removed == {"success": True}
    found = await engine.query("CourseScheduling", "_getSchedule", scheduleId=schedule["id"])
    assert found["schedule"]["sectionIds"] == []


@pytest.mark.asyncio
async def test_action_error_is_answered(engine):
    session = await _signup(engine)
    schedule = await _new_schedule(engine, session)
    out = await engine.handle("/CourseScheduling/addSection", {
        "scheduleId": schedule["id"], "sectionId": "nope", "session": session,
    })
    assert out == {"error": "Section nope not found."}


@pytest.mark.asyncio
async def test_get_all_schedules_returns_only_own(engine):
    alice = await _signup(engine, "alice")
    bob = await _signup(engine, "bob")
    await _new_schedule(engine, alice, "A1")
    await _new_schedule(engine, alice, "A2")
    await _new_schedule(engine, bob, "B1")
    out = await engine.handle("/CourseScheduling/getAllSchedules", {"session": alice})
    assert sorted(s["name"] for s in out["schedules"]) == ["A1", "A2"]


@pytest.mark.asyncio
async def test_end_session_then_end_again(engine):
    session = await _signup(engine)
    assert await engine.handle("/Session/endSession", {"session": session}) == {"success": True}
    assert await engine.handle("/Session/endSession", {"session": session}) == {"error": "Session not found."}
    out = await engine.handle("/CourseScheduling/createSchedule", {"name": "Fall", "session": session})
    assert out == {"error": UNAUTHORIZED}


@pytest.mark.asyncio
async def test_internal_routes_are_disabled(engine):
    out = await engine.handle("/Session/_getSession", {"s": "anything"})
    assert out == {"error": "Route disabled: Session management routes are internal-only."}
    out = await engine.handle("/UserAuth/_getUserById", {"userId": "x"})
    assert out == {"error": "Route disabled: UserAuth internal routes are not accessible."}


@pytest.mark.asyncio
async def test_concurrent_requests_each_get_their_own_answer(engine):
    names = [f"user{i}" for i in range(5)]
    sessions = await asyncio.gather(*(_signup(engine, n) for n in names))
    assert len(set(sessions)) == 5
    users = [await _user_of(engine, s) for s in sessions]
    assert len(set(users)) == 5
    flows = {r.flow for r in engine.log.query("Requesting", "request")}
    assert len(flows) == 5


@pytest.mark.asyncio
async def test_passwords_never_reach_the_log(engine, caplog):
    caplog.set_level(logging.INFO)
    await _signup(engine, "alice", "hunter2")
    assert "UserAuth.register" in caplog.text
    assert "hunter2" not in caplog.text


async def _course_with_section(engine, session, code="CS101", number="01"):
    await engine.handle("/CourseScheduling/createCourse", {
        "id": code, "title": "Intro", "department": "CS", "session": session,
    })
    out = await engine.handle("/CourseScheduling/createSection", {
        "courseId": code, "sectionNumber": number, "capacity": 30, "timeSlots": [], "session": session,
    })
    return out["section"]


@pytest.mark.asyncio
async def test_non_string_credentials_are_answered_not_dropped(engine):
    out = await engine.handle("/UserAuth/register", {"username": "alice", "password": 1234})
    assert out == {"error": "Username and password must be strings."}
    await _signup(engine)
    out = await engine.handle("/UserAuth/authenticate", {"username": ["alice"], "password": "pw"})
    assert out == {"error": "Invalid username or password."}
    out = await engine.handle("/UserAuth/authenticate", {"username": "alice", "password": 1234})
    assert out == {"error": "Invalid username or password."}


@pytest.mark.asyncio
async def test_malformed_session_token_is_unauthorized(engine):
    out = await engine.handle("/CourseScheduling/createSchedule", {"name": "Fall", "session": ["tok"]})
    assert out == {"error": UNAUTHORIZED}
    out = await engine.handle("/Session/endSession", {"session": {"id": "tok"}})
    assert out == {"error": "Session not found."}


@pytest.mark.asyncio
async def test_malformed_fields_reach_the_caller_as_errors(engine):
    session = await _signup(engine)
    out = await engine.handle("/CourseScheduling/createSchedule", {"name": ["Fall"], "session": session})
    assert out == {"error": "Schedule name must be a string"}
    out = await engine.handle("/CourseScheduling/deleteSchedule", {"scheduleId": {"id": 1}, "session": session})
    assert out == {"error": NOT_PERMITTED}
    await engine.handle("/CourseScheduling/createCourse", {
        "id": "CS101", "title": "Intro", "department": "CS", "session": session,
    })
    out = await engine.handle("/CourseScheduling/createSection", {
        "courseId": "CS101", "sectionNumber": "01", "capacity": "thirty", "timeSlots": [], "session": session,
    })
    assert out == {"error": "capacity must be a non-negative integer"}
    out = await engine.handle("/CourseScheduling/createSection", {
        "courseId": ["CS101"], "sectionNumber": "01", "capacity": 3, "timeSlots": [], "session": session,
    })
    assert "error" in out


@pytest.mark.asyncio
async def test_get_schedule_answers_missing_and_foreign_schedules_differently(engine):
    alice = await _signup(engine, "alice")
    bob = await _signup(engine, "bob")
    schedule = await _new_schedule(engine, alice)
    mine = await engine.handle("/CourseScheduling/getSchedule", {"scheduleId": schedule["id"], "session": alice})
    assert mine == {"schedule": schedule}
    theirs = await engine.handle("/CourseScheduling/getSchedule", {"scheduleId": schedule["id"], "session": bob})
    assert theirs == {"error": NOT_OWN_SCHEDULE}
    missing = await engine.handle("/CourseScheduling/getSchedule", {"scheduleId": "missing", "session": alice})
    assert missing == {"error": SCHEDULE_NOT_FOUND}
    anonymous = await engine.handle("/CourseScheduling/getSchedule", {"scheduleId": schedule["id"]})
    assert anonymous == {"error": UNAUTHORIZED}


@pytest.mark.asyncio
async def test_schedules_by_owner_only_for_the_caller(engine):
    alice = await _signup(engine, "alice")
    bob = await _signup(engine, "bob")
    await _new_schedule(engine, alice, "A1")
    alice_id = await _user_of(engine, alice)
    out = await engine.handle("/CourseScheduling/getSchedulesByOwner", {"userId": alice_id, "session": alice})
    assert [s["name"] for s in out["schedules"]] == ["A1"]
    out = await engine.handle("/CourseScheduling/getSchedulesByOwner", {"userId": alice_id, "session": bob})
    assert out == {"error": NOT_OWN_SCHEDULE}


@pytest.mark.asyncio
async def test_add_section_by_course_code(engine):
    session = await _signup(engine)
    section = await _course_with_section(engine, session)
    schedule = await _new_schedule(engine, session)
    out = await engine.handle("/CourseScheduling/addSectionByCourseCode", {
        "scheduleId": schedule["id"], "courseCode": "CS101", "sectionNumber": "01", "session": session,
    })
    assert out["success"] is True and out["sectionId"] == section["id"]
    found = await engine.query("CourseScheduling", "_getSchedule", scheduleId=schedule["id"])
    assert found["schedule"]["sectionIds"] == [section["id"]]
    out = await engine.handle("/CourseScheduling/addSectionByCourseCode", {
        "scheduleId": schedule["id"], "courseCode": "CS101", "sectionNumber": "99", "session": session,
    })
    assert out == {"error": "Section 99 of CS101 not found."}


@pytest.mark.asyncio
async def test_add_section_by_course_code_requires_ownership(engine):
    alice = await _signup(engine, "alice")
    bob = await _signup(engine, "bob")
    await _course_with_section(engine, alice)
    schedule = await _new_schedule(engine, alice)
    out = await engine.handle("/CourseScheduling/addSectionByCourseCode", {
        "scheduleId": schedule["id"], "courseCode": "CS101", "sectionNumber": "01", "session": bob,
    })
    assert out == {"error": NOT_PERMITTED}


@pytest.mark.asyncio
async def test_admin_and_session_internal_routes_are_disabled(engine):
    session = await _signup(engine)
    out = await engine.handle("/CourseScheduling/editSection", {"sectionId": "x", "updates": {}, "session": session})
    assert out == {"error": "Route disabled: admin/system-only route."}
    for path in ("/Session/extendSession", "/Session/_expireSessions"):
        out = await engine.handle(path, {})
        assert out == {"error": "Route disabled: Session management routes are internal-only."}


@pytest.mark.asyncio
async def test_edit_section_updates_only_editable_fields(engine):
    session = await _signup(engine)
    section = await _course_with_section(engine, session)
    out = await engine.invoke("CourseScheduling", "editSection", {
        "sectionId": section["id"], "updates": {"capacity": 45, "instructor": "Dr. Lee"},
    })
    assert out.output["section"]["capacity"] == 45
    assert out.output["section"]["instructor"] == "Dr. Lee"
    out = await engine.invoke("CourseScheduling", "editSection", {
        "sectionId": section["id"], "updates": {"courseId": "OTHER"},
    })
    assert "error" in out.output
    out = await engine.invoke("CourseScheduling", "editSection", {
        "sectionId": section["id"], "updates": {"capacity": -1},
    })
    assert out.output == {"error": "capacity must be a non-negative integer"}
    found = await engine.query("CourseScheduling", "_getSection", sectionId=section["id"])
    assert found["section"]["capacity"] == 45
