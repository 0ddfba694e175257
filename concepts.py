from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4
import copy, hashlib, hmac, secrets

from engine import Concept

# ====== Concepts ======
# Business failures come back as {"error": ...} so a sync can always respond.
# Inputs arrive straight from JSON bodies, so every action checks their types first.


def _text(*values: Any) -> bool:
    """True when every value is a non-empty string."""
    return all(isinstance(v, str) and v for v in values)


def _optional_text(value: Any) -> bool:
    return value is None or isinstance(value, str)


# 1) UserAuth: known users by username/password
class UserAuth(Concept):
    actions = ("register", "authenticate")
    queries = ("_getUserByUsername", "_getUserById")

    def __init__(self, name: str = "UserAuth"):
        super().__init__(name)
        self._users: Dict[str, Dict[str, Any]] = {}
        self._by_username: Dict[str, str] = {}

    @staticmethod
    def _digest(password: str, salt: str) -> str:
        return hashlib.sha256((salt + password).encode()).hexdigest()

    @staticmethod
    def _public(user: Dict[str, Any]) -> Dict[str, Any]:
        return {"_id": user["_id"], "username": user["username"]}

    def _find(self, username: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(username, str):
            return None
        return self._users.get(self._by_username.get(username, ""))

    async def register(self, username: Any, password: Any) -> Dict[str, Any]:
        if not username or not password:
            return {"error": "Username and password are required."}
        if not _text(username, password):
            return {"error": "Username and password must be strings."}
        if username in self._by_username:
            return {"error": f"Username '{username}' is already taken."}
        uid = str(uuid4())
        salt = secrets.token_hex(8)
        self._users[uid] = {"_id": uid, "username": username, "salt": salt, "password": self._digest(password, salt)}
        self._by_username[username] = uid
        return {"user": uid}

    async def authenticate(self, username: Any, password: Any) -> Dict[str, Any]:
        user = self._find(username)
        if user is None or not _text(password):
            return {"error": "Invalid username or password."}
        if not hmac.compare_digest(user["password"], self._digest(password, user["salt"])):
            return {"error": "Invalid username or password."}
        return {"user": user["_id"]}

    async def _getUserByUsername(self, username: Any) -> Dict[str, Any]:
        user = self._find(username)
        return self._public(user) if user else {}

    async def _getUserById(self, userId: Any) -> Dict[str, Any]:
        user = self._users.get(userId) if isinstance(userId, str) else None
        return self._public(user) if user else {}

# 2) Session: expiring tokens bound to a user
class Session(Concept):
    actions = ("startSession", "useSession", "endSession")
    queries = ("_getSession", "_getUserSessions")

    def __init__(self, name: str = "Session", ttl_minutes: int = 60):
        super().__init__(name)
        self.ttl = timedelta(minutes=ttl_minutes)
        self._sessions: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _live(self, s: Any) -> Optional[Dict[str, Any]]:
        rec = self._sessions.get(s) if _text(s) else None
        if rec is None or rec["expiresAt"] <= self._now():
            return None
        return rec

    async def startSession(self, u: Any) -> Dict[str, Any]:
        if not _text(u):
            return {"error": "A user id is required to start a session."}
        sid = str(uuid4())
        self._sessions[sid] = {"_id": sid, "userID": u, "expiresAt": self._now() + self.ttl}
        return {"session": sid}

    async def useSession(self, s: Any) -> Dict[str, Any]:
        rec = self._live(s)
        if rec is None:
            return {"error": "Session not found or expired."}
        rec["expiresAt"] = self._now() + self.ttl
        return {"s": s}

    async def endSession(self, s: Any) -> Dict[str, Any]:
        if not _text(s) or s not in self._sessions:
            return {"error": "Session not found."}
        del self._sessions[s]
        return {"s": s}

    async def _getSession(self, s: Any) -> Dict[str, Any]:
        rec = self._live(s)
        return {"userID": rec["userID"], "expiresAt": rec["expiresAt"].isoformat()} if rec else {}

    async def _getUserSessions(self, u: Any) -> Dict[str, Any]:
        return {"sessions": [sid for sid, rec in self._sessions.items() if rec["userID"] == u and self._live(sid)]}

# 3) CourseScheduling: courses, sections and students' schedules
class CourseScheduling(Concept):
    actions = (
        "createCourse", "createSection", "editSection", "createSchedule", "deleteSchedule",
        "addSection", "addSectionByCourseCode", "removeSection", "duplicateSchedule",
    )
    queries = (
        "_getCourse", "_getSection", "_getSchedule", "_getSchedulesByOwner",
        "_getAllCourses", "_getAllSections",
    )

    # fields editSection may change; id and courseId are fixed
    EDITABLE = ("sectionNumber", "instructor", "capacity", "timeSlots", "distribution")

    def __init__(self, name: str = "CourseScheduling"):
        super().__init__(name)
        self._courses: Dict[str, Dict[str, Any]] = {}
        self._sections: Dict[str, Dict[str, Any]] = {}
        self._schedules: Dict[str, Dict[str, Any]] = {}

    def _owned(self, userId: Any, scheduleId: Any) -> Optional[Dict[str, Any]]:
        rec = self._schedules.get(scheduleId) if _text(scheduleId) else None
        if rec is None or rec["owner"] != userId:
            return None
        return rec

    @staticmethod
    def _section_fields_error(sectionNumber: Any, capacity: Any, timeSlots: Any,
                              instructor: Any, distribution: Any) -> Optional[str]:
        if not _text(sectionNumber):
            return "sectionNumber must be a non-empty string"
        if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity < 0:
            return "capacity must be a non-negative integer"
        if not isinstance(timeSlots, list):
            return "timeSlots must be a list"
        if not _optional_text(instructor) or not _optional_text(distribution):
            return "instructor and distribution must be strings"
        return None

    async def createCourse(self, courseId: Any, title: Any, department: Any) -> Dict[str, Any]:
        if not courseId or not title or not department:
            return {"error": "All fields (id, title, department) are required"}
        if not _text(courseId, title, department):
            return {"error": "Course id, title and department must be strings"}
        if courseId in self._courses:
            return {"error": f"Course {courseId} already exists."}
        self._courses[courseId] = {"id": courseId, "title": title, "department": department}
        return {"course": copy.deepcopy(self._courses[courseId])}

    async def createSection(self, courseId: Any, sectionNumber: Any, capacity: Any,
                            timeSlots: Any, instructor: Any = None, distribution: Any = None) -> Dict[str, Any]:
        if not _text(courseId) or courseId not in self._courses:
            return {"error": f"Course {courseId} not found."}
        if not sectionNumber or capacity is None or timeSlots is None:
            return {"error": "All fields (courseId, sectionNumber, capacity, timeSlots) are required"}
        problem = self._section_fields_error(sectionNumber, capacity, timeSlots, instructor, distribution)
        if problem:
            return {"error": problem}
        sid = str(uuid4())
        self._sections[sid] = {
            "id": sid, "courseId": courseId, "sectionNumber": sectionNumber, "instructor": instructor,
            "capacity": capacity, "timeSlots": list(timeSlots), "distribution": distribution,
        }
        return {"section": copy.deepcopy(self._sections[sid])}

    async def editSection(self, sectionId: Any, updates: Any) -> Dict[str, Any]:
        rec = self._sections.get(sectionId) if _text(sectionId) else None
        if rec is None:
            return {"error": f"Section {sectionId} not found."}
        if not isinstance(updates, dict) or set(updates) - set(self.EDITABLE):
            return {"error": f"Only {', '.join(self.EDITABLE)} can be edited"}
        merged = {**rec, **updates}
        problem = self._section_fields_error(
            merged["sectionNumber"], merged["capacity"], merged["timeSlots"],
            merged["instructor"], merged["distribution"],
        )
        if problem:
            return {"error": problem}
        rec.update(copy.deepcopy(updates))
        return {"section": copy.deepcopy(rec)}

    async def createSchedule(self, userId: Any, name: Any) -> Dict[str, Any]:
        if not userId or not name:
            return {"error": "All fields (userId, name) are required"}
        if not _text(userId, name):
            return {"error": "Schedule name must be a string"}
        sid = str(uuid4())
        self._schedules[sid] = {"id": sid, "name": name, "sectionIds": [], "owner": userId}
        return {"s": copy.deepcopy(self._schedules[sid])}

    async def deleteSchedule(self, userId: Any, scheduleId: Any) -> Dict[str, Any]:
        if self._owned(userId, scheduleId) is None:
            return {"error": "Schedule not found or unauthorized"}
        del self._schedules[scheduleId]
        return {"schedule": scheduleId}

    async def addSection(self, userId: Any, scheduleId: Any, sectionId: Any) -> Dict[str, Any]:
        rec = self._owned(userId, scheduleId)
        if rec is None:
            return {"error": "Schedule not found or unauthorized"}
        if not _text(sectionId) or sectionId not in self._sections:
            return {"error": f"Section {sectionId} not found."}
        if sectionId not in rec["sectionIds"]:
            rec["sectionIds"].append(sectionId)
        return {"schedule": scheduleId}

    async def addSectionByCourseCode(self, userId: Any, scheduleId: Any, courseCode: Any,
                                     sectionNumber: Any) -> Dict[str, Any]:
        """Add the section of ``courseCode`` numbered ``sectionNumber`` to a schedule."""
        rec = self._owned(userId, scheduleId)
        if rec is None:
            return {"error": "Schedule not found or unauthorized"}
        if not _text(courseCode, sectionNumber):
            return {"error": "courseCode and sectionNumber are required"}
        if courseCode not in self._courses:
            return {"error": f"Course {courseCode} not found."}
        found = next(
            (s for s in self._sections.values()
             if s["courseId"] == courseCode and s["sectionNumber"] == sectionNumber),
            None,
        )
        if found is None:
            return {"error": f"Section {sectionNumber} of {courseCode} not found."}
        if found["id"] in rec["sectionIds"]:
            return {"success": True, "sectionId": found["id"], "message": "Section already in schedule"}
        rec["sectionIds"].append(found["id"])
        return {"success": True, "sectionId": found["id"], "message": f"Added {courseCode} section {sectionNumber}"}

    async def removeSection(self, userId: Any, scheduleId: Any, sectionId: Any) -> Dict[str, Any]:
        rec = self._owned(userId, scheduleId)
        if rec is None:
            return {"error": "Schedule not found or unauthorized"}
        if not _text(sectionId):
            return {"error": f"Section {sectionId} not found."}
        if sectionId in rec["sectionIds"]:
            rec["sectionIds"].remove(sectionId)
        return {"schedule": scheduleId}

    async def duplicateSchedule(self, userId: Any, sourceScheduleId: Any, newName: Any) -> Dict[str, Any]:
        src = self._owned(userId, sourceScheduleId)
        if src is None:
            return {"error": "Source schedule not found or unauthorized"}
        if not _text(newName):
            return {"error": "A name for the new schedule is required"}
        sid = str(uuid4())
        self._schedules[sid] = {"id": sid, "name": newName, "sectionIds": list(src["sectionIds"]), "owner": userId}
        return {"s": copy.deepcopy(self._schedules[sid])}

    async def _getCourse(self, courseId: Any) -> Dict[str, Any]:
        rec = self._courses.get(courseId) if _text(courseId) else None
        return {"course": copy.deepcopy(rec)} if rec else {}

    async def _getSection(self, sectionId: Any) -> Dict[str, Any]:
        rec = self._sections.get(sectionId) if _text(sectionId) else None
        return {"section": copy.deepcopy(rec)} if rec else {}

    async def _getSchedule(self, scheduleId: Any) -> Dict[str, Any]:
        rec = self._schedules.get(scheduleId) if _text(scheduleId) else None
        return {"schedule": copy.deepcopy(rec)} if rec else {}

    async def _getSchedulesByOwner(self, userId: Any) -> Dict[str, Any]:
        return {"schedules": [copy.deepcopy(s) for s in self._schedules.values() if s["owner"] == userId]}

    async def _getAllCourses(self) -> Dict[str, Any]:
        return {"courses": copy.deepcopy(list(self._courses.values()))}

    async def _getAllSections(self) -> Dict[str, Any]:
        return {"sections": copy.deepcopy(list(self._sections.values()))}
