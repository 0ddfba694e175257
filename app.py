from __future__ import annotations
from typing import Any, Coroutine, Dict, Optional
from flask import Flask, Response, jsonify, request
import asyncio, logging, threading, time

from concepts import CourseScheduling, Session, UserAuth
from config import Settings, get_settings
from engine import Engine, EngineLogging
from errors import RequestTimeoutError, SyncEngineError
from requesting import RequestingConcept
from sync import make_syncs

logger = logging.getLogger(__name__)

# Public read-only queries served directly, bypassing Requesting.
# {"route": "justification"}
PASSTHROUGH: Dict[str, str] = {
    "/CourseScheduling/_getCourse": "public course data, read-only query",
    "/CourseScheduling/_getSection": "public section data, read-only query",
    "/CourseScheduling/_getAllCourses": "public course listing, read-only query",
    "/CourseScheduling/_getAllSections": "public section listing, read-only query",
}

CORS_METHODS = "GET, POST, PUT, DELETE, OPTIONS, PATCH"
CORS_HEADERS = "Content-Type, Authorization, X-Session-ID, Accept, Origin, X-Requested-With"


# ====== Build & Run ======

def build_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    eng = Engine(trace=EngineLogging(settings.engine_logging), redact_keys=settings.engine_redact_keys)
    eng.register_concept(RequestingConcept(
        "Requesting", timeout=settings.requesting_timeout, save_responses=settings.requesting_save_responses,
    ))
    eng.register_concept(UserAuth("UserAuth"))
    eng.register_concept(Session("Session", ttl_minutes=settings.session_ttl_minutes))
    eng.register_concept(CourseScheduling("CourseScheduling"))
    for s in make_syncs():
        eng.register_sync(s)
    return eng


class EngineThread(threading.Thread):
    """Owns the event loop every action runs on; request threads hand it coroutines."""

    def __init__(self, eng: Engine, sweep_interval: float = 1.0):
        super().__init__(daemon=True, name="sync-engine")
        self.eng = eng
        self.sweep_interval = sweep_interval
        self.loop = asyncio.new_event_loop()
        self._ready = threading.Event()

    def run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._ready.set)
        self.loop.create_task(self._sweep())
        try:
            self.loop.run_forever()
        finally:
            tasks = asyncio.all_tasks(self.loop)
            for t in tasks:
                t.cancel()
            self.loop.run_until_complete(asyncio.gather(*tasks, return_exceptions=True))
            self.loop.close()

    async def _sweep(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            n = self.eng.requesting.pending.sweep()
            if n:
                logger.info("Swept %d abandoned request(s)", n)

    def start(self):
        super().start()
        self._ready.wait()

    def call(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.join()


def _session_from_headers() -> Optional[str]:
    sid = request.headers.get("X-Session-ID")
    if sid:
        return sid
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):] or None
    return None


def make_app(eng: Engine, runner: EngineThread, settings: Optional[Settings] = None) -> Flask:
    settings = settings or get_settings()
    app = Flask(__name__)
    base = settings.requesting_base_url
    allowed = [d.strip() for d in settings.requesting_allowed_domain.split(",") if d.strip()] or ["*"]

    @app.after_request
    def cors(resp: Response) -> Response:
        if allowed == ["*"]:
            resp.headers["Access-Control-Allow-Origin"] = "*"
        else:
            origin = request.headers.get("Origin")
            resp.headers["Access-Control-Allow-Origin"] = origin if origin in allowed else allowed[0]
            resp.headers["Access-Control-Allow-Credentials"] = "true"
            resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Methods"] = CORS_METHODS
        resp.headers["Access-Control-Allow-Headers"] = CORS_HEADERS
        resp.headers["Access-Control-Max-Age"] = "86400"
        return resp

    @app.post(f"{base}/<path:action_path>")
    def requesting_route(action_path: str):
        path = "/" + action_path
        body = request.get_json(force=True, silent=True) if request.data else {}
        if not isinstance(body, dict):
            return jsonify({"error": "Invalid request body. Must be a JSON object."}), 400

        if path in PASSTHROUGH:
            concept, qname = action_path.split("/", 1)
            try:
                return jsonify(runner.call(eng.query(concept, qname, **body)))
            except TypeError:
                return jsonify({"error": "Invalid query arguments."}), 400

        fields = dict(body)
        session = _session_from_headers()
        if session:
            fields["session"] = session
        logger.info("Received request for path: %s", path)
        t0 = time.monotonic()
        try:
            payload = runner.call(eng.handle(path, fields))
        except RequestTimeoutError as exc:
            logger.warning("Request for %s timed out", path)
            return jsonify(exc.to_response()), 504
        except SyncEngineError as exc:
            logger.error("Error processing request for %s: %s", path, exc.message, extra={"code": exc.code})
            return jsonify(exc.to_response()), exc.http_status
        logger.info("Responded to %s in %dms", path, int((time.monotonic() - t0) * 1000))
        return jsonify(payload)

    @app.get("/")
    def root():
        return jsonify({"status": "ok", "message": "Backend API is running", "baseUrl": base})

    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    return app
