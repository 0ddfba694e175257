"""Shared fixtures: the fully wired engine, and a bare engine with a toy concept."""

import pytest

from app import build_engine
from config import Settings
from engine import Concept, Engine, EngineLogging
from requesting import RequestingConcept


class Ledger(Concept):
    """Toy concept for engine tests: notes, marks, echoes and actions that fail."""
    actions = ("note", "mark", "echo", "pick", "boom")

    def __init__(self, name: str = "Ledger"):
        super().__init__(name)
        self.notes = []
        self.marks = []

    async def note(self, **fields):
        self.notes.append(fields)
        return {"noted": len(self.notes), **fields}

    async def mark(self, **fields):
        self.marks.append(fields)
        return {"marked": len(self.marks)}

    async def echo(self, **fields):
        return dict(fields)

    async def pick(self, item, **fields):
        if item == "a":
            raise ValueError("cannot pick a")
        return {"picked": item}

    async def boom(self, **fields):
        raise RuntimeError("boom")


@pytest.fixture
def settings():
    return Settings(_env_file=None, requesting_timeout_ms=200, engine_logging="verbose")


@pytest.fixture
def engine(settings):
    return build_engine(settings)


@pytest.fixture
def bare_engine():
    eng = Engine(trace=EngineLogging.TRACE)
    eng.register_concept(RequestingConcept("Requesting", timeout=0.2))
    eng.register_concept(Ledger())
    return eng


@pytest.fixture
def ledger(bare_engine):
    return bare_engine.concepts["Ledger"]
