from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple
from uuid import uuid4
import asyncio, functools, inspect, itertools, logging, time

from errors import DispatchError, RegistrationError, UnboundVariableError, UnknownActionError

logger = logging.getLogger(__name__)

# Bootstrap concept that turns external calls into actions
REQUESTING = "Requesting"

# ====== Variables ======

class Var:
    """Join key between pattern slots and frame bindings.

    Identity is what matters: two rules that both call a variable
    ``request`` get two different tokens.
    """
    __slots__ = ("name", "id")
    _ids = itertools.count(1)

    def __init__(self, name: str):
        self.name = name
        self.id = next(Var._ids)

    def __repr__(self) -> str:
        return f"${self.name}#{self.id}"


@dataclass(frozen=True)
class Maybe:
    """Pattern slot that binds None when the key is absent from the record."""
    var: Var


def maybe(var: Var) -> Maybe:
    return Maybe(var)


def variables(*names: str) -> Tuple[Var, ...]:
    return tuple(Var(n) for n in names)


def _var_of(slot: Any) -> Optional[Var]:
    if isinstance(slot, Var):
        return slot
    if isinstance(slot, Maybe):
        return slot.var
    return None

# ====== Action Log ======

@dataclass(frozen=True)
class ActionRecord:
    concept: str
    action: str
    input: Dict[str, Any]
    output: Dict[str, Any]
    flow: str
    seq: int = 0
    t: float = field(default_factory=lambda: time.time())


def _fits(values: Mapping[str, Any], pattern: Optional[Mapping[str, Any]]) -> bool:
    if not pattern:
        return True
    for key, slot in pattern.items():
        if isinstance(slot, Maybe):
            continue
        if key not in values:
            return False
        if isinstance(slot, Var):
            continue
        if values[key] != slot:
            return False
    return True


class ActionLog:
    """Append-only record of every completed action, queryable by pattern."""

    def __init__(self):
        self._records: List[ActionRecord] = []
        self._by_seq: Dict[int, ActionRecord] = {}
        self._by_flow: Dict[str, List[ActionRecord]] = {}
        self._seq = itertools.count(1)

    def append(self, record: ActionRecord) -> int:
        rec = replace(record, seq=next(self._seq), input=dict(record.input), output=dict(record.output))
        self._records.append(rec)
        self._by_seq[rec.seq] = rec
        self._by_flow.setdefault(rec.flow, []).append(rec)
        return rec.seq

    def __getitem__(self, seq: int) -> ActionRecord:
        return self._by_seq[seq]

    def __len__(self) -> int:
        return len(self._records)

    def records(self, flow: Optional[str] = None) -> List[ActionRecord]:
        if flow is None:
            return list(self._records)
        return list(self._by_flow.get(flow, ()))

    def query(self, concept: str, action: str,
              inputs: Optional[Mapping[str, Any]] = None,
              outputs: Optional[Mapping[str, Any]] = None,
              flow: Optional[str] = None) -> List[ActionRecord]:
        """Records of ``concept.action`` in insertion order.

        Concrete slot values must be equal, Var slots only require the key to
        be present and Maybe slots accept anything. Unifying variables is the
        matcher's job.
        """
        source = self._records if flow is None else self._by_flow.get(flow, ())
        return [
            r for r in source
            if r.concept == concept and r.action == action
            and _fits(r.input, inputs) and _fits(r.output, outputs)
        ]

# ====== Patterns & rules ======

@dataclass
class WhenPattern:
    concept: str
    action: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)

    def slots(self) -> Iterator[Tuple[str, str, Any]]:
        for key, slot in self.inputs.items():
            yield "input", key, slot
        for key, slot in self.outputs.items():
            yield "output", key, slot

    def variables(self) -> Set[Var]:
        found = (_var_of(slot) for _, _, slot in self.slots())
        return {v for v in found if v is not None}


@dataclass
class ThenTemplate:
    concept: str
    action: str
    inputs: Dict[str, Any] = field(default_factory=dict)

    def variables(self) -> Set[Var]:
        return {v for v in self.inputs.values() if isinstance(v, Var)}

    def substitute(self, frame: "Frame", sync_name: str) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in self.inputs.items():
            if isinstance(value, Var):
                if value not in frame:
                    raise UnboundVariableError(sync_name, repr(value))
                out[key] = frame[value]
            else:
                out[key] = value
        return out


WhereFn = Callable[["Engine", List["Frame"]], Awaitable[List["Frame"]]]


@dataclass
class Sync:
    """A synchronization: when all patterns match, (guard), then fire templates.

    ``binds`` lists the variables the guard adds to frames so that the
    then-templates can be checked at registration.
    """
    name: str
    when: List[WhenPattern]
    where: Optional[WhereFn] = None
    then: List[ThenTemplate] = field(default_factory=list)
    binds: Tuple[Var, ...] = ()

    def when_variables(self) -> Set[Var]:
        out: Set[Var] = set()
        for pat in self.when:
            out |= pat.variables()
        return out

    def request_vars(self) -> List[Var]:
        """Variables holding the id of a pending request this rule answers."""
        out = []
        for pat in self.when:
            if pat.concept == REQUESTING and pat.action == "request":
                var = _var_of(pat.outputs.get("request"))
                if var is not None:
                    out.append(var)
        return out

# ====== Frames ======

_UNBOUND = object()


class Frame(Mapping[Var, Any]):
    """One consistent assignment of variables. Immutable; extending makes a copy.

    ``support`` holds the sequence numbers of the action records matched to
    produce the frame.
    """
    __slots__ = ("_bindings", "flow", "support")

    def __init__(self, bindings: Optional[Mapping[Var, Any]] = None, *, flow: str,
                 support: FrozenSet[int] = frozenset()):
        self._bindings: Dict[Var, Any] = dict(bindings or {})
        self.flow = flow
        self.support = support

    def __getitem__(self, var: Var) -> Any:
        return self._bindings[var]

    def __iter__(self) -> Iterator[Var]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    def __repr__(self) -> str:
        return f"Frame({self.describe()}, flow={self.flow!r})"

    def describe(self, redact: FrozenSet[str] = frozenset()) -> Dict[str, Any]:
        return {v.name: ("***" if v.name in redact else val) for v, val in self._bindings.items()}

    def extend(self, bindings: Mapping[Var, Any]) -> "Frame":
        for var, value in bindings.items():
            known = self._bindings.get(var, _UNBOUND)
            if known is not _UNBOUND and known != value:
                raise ValueError(f"{var!r} already bound to {known!r}")
        return Frame({**self._bindings, **bindings}, flow=self.flow, support=self.support)

    def unify(self, pattern: WhenPattern, record: ActionRecord) -> Optional["Frame"]:
        """Extend with the bindings ``record`` gives ``pattern``; None on conflict."""
        new: Dict[Var, Any] = {}
        for side, key, slot in pattern.slots():
            values = record.input if side == "input" else record.output
            if isinstance(slot, Maybe):
                var, value = slot.var, values.get(key)
            elif isinstance(slot, Var):
                if key not in values:
                    return None
                var, value = slot, values[key]
            else:
                continue
            known = new.get(var, self._bindings.get(var, _UNBOUND))
            if known is _UNBOUND:
                new[var] = value
            elif known != value:
                return None
        return Frame({**self._bindings, **new}, flow=self.flow, support=self.support | {record.seq})


def _constrain(pattern: Mapping[str, Any], frame: Frame) -> Dict[str, Any]:
    # Bound variables become concrete constraints for the log query
    out = {}
    for key, slot in pattern.items():
        if isinstance(slot, Var) and slot in frame:
            out[key] = frame[slot]
        else:
            out[key] = slot
    return out

# ====== Concepts ======

async def _call(fn: Callable[..., Any], input_map: Mapping[str, Any]) -> Any:
    result = fn(**input_map)
    if inspect.isawaitable(result):
        result = await result
    return result


class Concept:
    """Base class for concepts.

    Subclasses list their ``actions`` and ``_``-prefixed pure ``queries``;
    the callable tables are built once, here.
    """
    actions: Tuple[str, ...] = ()
    queries: Tuple[str, ...] = ()

    def __init__(self, name: str):
        self.name = name
        self._actions = self._table(self.actions, query=False)
        self._queries = self._table(self.queries, query=True)

    def _table(self, names: Iterable[str], query: bool) -> Dict[str, Callable[..., Any]]:
        table = {}
        for n in names:
            if query and not n.startswith("_"):
                raise RegistrationError(f"{self.name}.{n}: query names must start with '_' to be pure")
            fn = getattr(self, n, None)
            if not callable(fn):
                raise RegistrationError(f"{self.name}.{n} not found")
            table[n] = fn
        return table

    def action_table(self) -> Dict[str, Callable[..., Any]]:
        return dict(self._actions)

    async def perform(self, action: str, input_map: Mapping[str, Any]) -> Dict[str, Any]:
        fn = self._actions.get(action)
        if fn is None:
            raise UnknownActionError(self.name, action)
        return dict(await _call(fn, input_map) or {})

    async def query(self, qname: str, input_map: Mapping[str, Any]) -> Any:
        fn = self._queries.get(qname)
        if fn is None:
            raise UnknownActionError(self.name, qname)
        return await _call(fn, input_map)

# ====== Engine ======

class EngineLogging(str, Enum):
    OFF = "off"
    TRACE = "trace"      # one line per action
    VERBOSE = "verbose"  # also frames per rule


class Engine:
    def __init__(self, trace: EngineLogging = EngineLogging.TRACE, redact_keys: Iterable[str] = ("password",)):
        self.concepts: Dict[str, Concept] = {}
        self.syncs: List[Sync] = []
        self.log = ActionLog()
        self.trace = EngineLogging(trace)
        self._redact = frozenset(redact_keys)
        self._actions: Dict[Tuple[str, str], Callable[..., Any]] = {}
        self._index: Dict[Tuple[str, str], List[Sync]] = {}
        # flow -> (sync name, supporting records) pairs that already fired there
        self._fired: Dict[str, Set[Tuple[str, FrozenSet[int]]]] = {}
        self._tasks: Set[asyncio.Task] = set()

    # --- registration ---

    def register_concept(self, concept: Concept) -> None:
        if concept.name in self.concepts:
            raise RegistrationError(f"Concept {concept.name} registered twice")
        self.concepts[concept.name] = concept
        for action, fn in concept.action_table().items():
            self._actions[(concept.name, action)] = fn

    def register_sync(self, sync: Sync) -> None:
        if any(s.name == sync.name for s in self.syncs):
            raise RegistrationError(f"Sync {sync.name} registered twice")
        refs = [(p.concept, p.action) for p in sync.when] + [(t.concept, t.action) for t in sync.then]
        for ref in refs:
            if ref not in self._actions:
                raise RegistrationError(f"Sync {sync.name} references unknown action {ref[0]}.{ref[1]}")
        unbound = set().union(*(t.variables() for t in sync.then)) - sync.when_variables() - set(sync.binds)
        if unbound:
            names = ", ".join(sorted(repr(v) for v in unbound))
            raise RegistrationError(f"Sync {sync.name} uses unbound variable(s) in then: {names}")
        self.syncs.append(sync)
        if not sync.when:
            logger.warning("Sync %s has no when patterns and will never fire", sync.name, extra={"sync": sync.name})
            return
        for ref in dict.fromkeys((p.concept, p.action) for p in sync.when):
            self._index.setdefault(ref, []).append(sync)

    def register_syncs(self, syncs: Iterable[Sync]) -> None:
        for s in syncs:
            self.register_sync(s)

    @property
    def requesting(self):
        concept = self.concepts.get(REQUESTING)
        if concept is None:
            raise RegistrationError(f"Bootstrap concept {REQUESTING} is not registered")
        return concept

    # --- actions ---

    def start_flow(self) -> str:
        return str(uuid4())

    def end_flow(self, flow: str) -> None:
        """Forget which rules fired in ``flow``; its records stay in the log."""
        self._fired.pop(flow, None)

    async def invoke(self, concept: str, action: str, input_map: Dict[str, Any], *, flow: Optional[str] = None) -> ActionRecord:
        """Perform an action, record it and run every sync it triggers.

        Raises whatever the action raises (nothing is recorded then) and
        DispatchError if a triggered sync failed downstream.
        """
        fn = self._actions.get((concept, action))
        if fn is None:
            raise UnknownActionError(concept, action)
        owned = flow is None
        if owned:
            flow = self.start_flow()
        try:
            output = dict(await _call(fn, input_map) or {})
            rec = self._record(concept, action, input_map, output, flow)
            await self._evaluate_syncs(rec)
        finally:
            if owned:
                self.end_flow(flow)
        return rec

    async def query(self, concept: str, qname: str, **kwargs) -> Any:
        c = self.concepts.get(concept)
        if c is None:
            raise UnknownActionError(concept, qname)
        return await c.query(qname, kwargs)

    def _record(self, concept: str, action: str, input_map: Mapping[str, Any], output: Mapping[str, Any], flow: str) -> ActionRecord:
        seq = self.log.append(ActionRecord(concept=concept, action=action, input=dict(input_map), output=dict(output), flow=flow))
        rec = self.log[seq]
        if self.trace is not EngineLogging.OFF:
            logger.info(
                "%s.%s %s => %s", concept, action, self._redacted(rec.input), self._redacted(rec.output),
                extra={"flow": flow, "concept": concept, "action": action},
            )
        return rec

    def _redacted(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        return {k: ("***" if k in self._redact else v) for k, v in values.items()}

    # --- request / response boundary ---

    def submit_request(self, path: str, fields: Optional[Mapping[str, Any]] = None) -> str:
        """Register a pending request and schedule its syncs; returns the id at once.

        Must be called on the engine's event loop.
        """
        inputs = dict(fields or {})
        inputs["path"] = path
        request_id = self.requesting.open(inputs)
        flow = self.start_flow()
        rec = self._record(REQUESTING, "request", inputs, {"request": request_id}, flow)
        task = asyncio.get_running_loop().create_task(self._evaluate_syncs(rec))
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._flow_done, flow))
        return request_id

    async def await_response(self, request_id: str) -> Dict[str, Any]:
        return await self.requesting.await_response(request_id)

    async def handle(self, path: str, fields: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return await self.await_response(self.submit_request(path, fields))

    def _flow_done(self, flow: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self.end_flow(flow)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, DispatchError):
            logger.warning("Flow ended with %d failed action(s)", len(exc.failures))
        elif exc is not None:
            logger.error("Flow evaluation crashed", exc_info=exc)

    # --- matching ---

    def match(self, sync: Sync, flow: Optional[str] = None) -> List[Frame]:
        """All frames that jointly satisfy ``sync.when`` (nested-loop join, declaration order)."""
        if not sync.when:
            return []
        frames = [Frame(flow=flow)]
        for pat in sync.when:
            extended: List[Frame] = []
            for fr in frames:
                inputs = _constrain(pat.inputs, fr)
                outputs = _constrain(pat.outputs, fr)
                for rec in self.log.query(pat.concept, pat.action, inputs, outputs, flow=flow):
                    nxt = fr.unify(pat, rec)
                    if nxt is not None:
                        extended.append(nxt)
            frames = extended
            if not frames:
                break
        return frames

    def _claim(self, sync: Sync, frame: Frame) -> bool:
        key = (sync.name, frame.support)
        fired = self._fired.setdefault(frame.flow, set())
        if key in fired:
            return False
        fired.add(key)
        return True

    async def _evaluate_syncs(self, rec: ActionRecord) -> None:
        failures: List[BaseException] = []
        for sync in self._index.get((rec.concept, rec.action), ()):
            frames = [f for f in self.match(sync, rec.flow) if rec.seq in f.support and self._claim(sync, f)]
            if not frames:
                continue
            self._verbose(sync, "matched", frames)
            if sync.where is not None:
                frames = await self._guard(sync, frames)
                self._verbose(sync, "passed guard with", frames)
            for fr in frames:
                try:
                    await self._dispatch(sync, fr)
                except DispatchError as exc:
                    failures.extend(exc.failures)
                except Exception as exc:
                    logger.exception("Sync %s failed to dispatch", sync.name, extra={"sync": sync.name, "flow": fr.flow})
                    failures.append(exc)
        if failures:
            raise DispatchError(failures)

    def _verbose(self, sync: Sync, stage: str, frames: List[Frame]) -> None:
        if self.trace is EngineLogging.VERBOSE:
            logger.info(
                "Sync %s %s %d frame(s)", sync.name, stage, len(frames),
                extra={"sync": sync.name, "frames": [f.describe(self._redact) for f in frames]},
            )

    # --- guard ---

    async def _guard(self, sync: Sync, frames: List[Frame]) -> List[Frame]:
        groups = await asyncio.gather(*(self._guard_frame(sync, fr) for fr in frames))
        return [fr for group in groups for fr in group]

    async def _guard_frame(self, sync: Sync, frame: Frame) -> List[Frame]:
        req_vars = sync.request_vars()
        waiting = {frame[v] for v in req_vars if v in frame and self._is_waiting(frame[v])}
        try:
            refined = await sync.where(self, [frame])
        except Exception:
            logger.exception("Guard of sync %s failed; frame dropped", sync.name, extra={"sync": sync.name, "flow": frame.flow})
            return []
        # A request the guard answered itself must not also be dispatched
        answered = {rid for rid in waiting if not self._is_waiting(rid)}
        out = []
        for fr in refined or ():
            if not isinstance(fr, Frame):
                logger.error("Guard of sync %s returned %r instead of a Frame", sync.name, fr, extra={"sync": sync.name})
                continue
            rid = next((fr[v] for v in req_vars if v in fr and fr[v] in answered), None)
            if rid is not None:
                logger.warning(
                    "Guard of sync %s responded to %s and returned its frame; frame dropped", sync.name, rid,
                    extra={"sync": sync.name, "request_id": rid},
                )
                continue
            out.append(fr)
        return out

    def _is_waiting(self, request_id: Any) -> bool:
        concept = self.concepts.get(REQUESTING)
        return concept is not None and concept.is_waiting(request_id)

    # --- dispatch ---

    async def _dispatch(self, sync: Sync, frame: Frame) -> None:
        downstream: List[BaseException] = []
        for tpl in sync.then:
            input_map = tpl.substitute(frame, sync.name)
            try:
                await self.invoke(tpl.concept, tpl.action, input_map, flow=frame.flow)
            except DispatchError as exc:
                # this action ran; a sync it triggered did not
                downstream.extend(exc.failures)
        if downstream:
            raise DispatchError(downstream)
