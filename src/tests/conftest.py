import itertools

import pytest
import pytest_asyncio

from libris import catalog
from libris.db import init_db, make_engine, make_session_factory
from libris.notifications.dispatcher import LoggingDispatcher


class RecordingDispatcher(LoggingDispatcher):
    """LoggingDispatcher que además guarda lo encolado."""

    def __init__(self):
        super().__init__()
        self.sent = []

    async def enqueue(self, job):
        self.sent.append(job)
        return await super().enqueue(job)

    def kinds(self):
        return [j.kind for j in self.sent]


class BrokenDispatcher(LoggingDispatcher):
    async def enqueue(self, job):
        raise RuntimeError("broker caído")


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    # Archivo temporal: varias sesiones concurrentes comparten la misma base.
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'libris.db'}")
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()

@pytest_asyncio.fixture
async def session_factory(async_engine):
    return make_session_factory(async_engine)

@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        try:
            yield s
        finally:
            await s.rollback()

@pytest.fixture
def dispatcher():
    return RecordingDispatcher()

@pytest.fixture
def broken_dispatcher():
    return BrokenDispatcher()

@pytest_asyncio.fixture
async def author(session):
    return await catalog.create_author(session, first_name="Gabriel", last_name="García Márquez", email="ggm@example.com")

@pytest_asyncio.fixture
async def category(session):
    return await catalog.create_category(session, name="Novela")

@pytest_asyncio.fixture
async def make_book(session, author, category):
    seq = itertools.count(1)

    async def _make(title="Cien años de soledad", total_copies=1, **kw):
        n = next(seq)
        return await catalog.create_book(
            session, title=title, isbn=kw.pop("isbn", f"978-0-00-{n:06d}"),
            author_id=author.id, category_id=category.id, total_copies=total_copies, **kw,
        )
    return _make
