import sys
import tempfile
import uuid
from datetime import datetime
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert

from media_jobs.api.db_models import Asset, AssetExif, AssetStatus, AssetType, AssetVisibility, Person
from media_jobs.api.main import app
from media_jobs.config import SystemConfigStore
from media_jobs.events import EventBus
from media_jobs.models import Settings, SystemConfig
from media_jobs.queue import InMemoryCron, InMemoryLock, SQLiteQueue, WorkerRole
from media_jobs.repositories import create_tables, get_engine
from media_jobs.runtime import JobsRuntime


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def queue_db(temp_dir):
    """Path of a fresh queue engine database."""
    return str(temp_dir / "queue.db")


@pytest.fixture
def queue(queue_db):
    """Create SQLiteQueue instance."""
    backend = SQLiteQueue(queue_db)
    yield backend
    backend.close()


@pytest.fixture
def engine(temp_dir):
    """Asset database with all tables created."""
    engine = get_engine(f"sqlite:///{temp_dir / 'assets.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def make_asset(engine):
    """Insert an asset (and optionally its exif row); returns the asset id."""

    def _make(with_exif=True, **fields):
        asset_id = fields.pop("id", str(uuid.uuid4()))
        values = {
            "id": asset_id,
            "ownerId": "user-1",
            "originalFileName": "IMG_0001.jpg",
            "type": AssetType.IMAGE,
            "visibility": AssetVisibility.TIMELINE,
            "status": AssetStatus.ACTIVE,
            "checksum": b"\x01\x02\x03\x04",
            "thumbhash": None,
            "fileCreatedAt": datetime(2024, 5, 1, 12, 0, 0),
            "fileModifiedAt": datetime(2024, 5, 1, 12, 0, 0),
            "localDateTime": datetime(2024, 5, 1, 14, 0, 0),
            "isFavorite": False,
        }
        values.update(fields)
        with engine.begin() as conn:
            conn.execute(insert(Asset).values(**values))
            if with_exif:
                conn.execute(
                    insert(AssetExif).values(
                        assetId=asset_id,
                        exifImageWidth=4032,
                        exifImageHeight=3024,
                        make="Canon",
                        model="EOS R6",
                        city="Lisbon",
                    )
                )
        return asset_id

    return _make


@pytest.fixture
def make_person(engine):
    def _make(person_id="person-1", owner_id="user-1", name="Ana"):
        with engine.begin() as conn:
            conn.execute(insert(Person).values(id=person_id, ownerId=owner_id, name=name))
        return person_id

    return _make


@pytest.fixture
def client_events():
    """EventBus plus the list of client events it delivered."""
    bus = EventBus()
    received = []
    bus.on_client(received.append)
    return bus, received


@pytest.fixture
def config_store():
    return SystemConfigStore(initial=SystemConfig())


@pytest.fixture
def make_runtime(temp_dir, config_store):
    """Build runtimes on shared temp databases with in-memory lock and cron."""
    runtimes = []

    def _make(
        worker_role=WorkerRole.API,
        lock=None,
        cron=None,
        handlers=None,
        store=None,
        handler_modules=(),
    ):
        settings = Settings(
            worker_role=worker_role,
            queue_db_path=str(temp_dir / "queue.db"),
            database_url=f"sqlite:///{temp_dir / 'assets.db'}",
            poll_interval_s=0.05,
            handler_modules=list(handler_modules),
        )
        runtime = JobsRuntime(
            settings,
            config_store=store or config_store,
            lock=lock or InMemoryLock(),
            cron=cron or InMemoryCron(),
            handlers=handlers,
        )
        runtimes.append(runtime)
        return runtime

    yield _make

    for runtime in runtimes:
        runtime.backend.close()
        runtime.shared_config.close()
        runtime.engine.dispose()


@pytest.fixture(scope="function")
async def client(make_runtime):
    runtime = make_runtime()
    await runtime.start()
    app.state.runtime = runtime

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await runtime.stop()


HANDLER_MODULE_SOURCE = '''
from media_jobs.queue import JobName


def register_handlers(registry):
    registry.add(JobName.TAG_CLEANUP, lambda data: None)
'''


@pytest.fixture
def handler_module(temp_dir, monkeypatch):
    """Importable module exposing register_handlers(); returns its name."""
    name = "sample_job_handlers"
    (temp_dir / f"{name}.py").write_text(HANDLER_MODULE_SOURCE)
    monkeypatch.syspath_prepend(str(temp_dir))
    monkeypatch.delitem(sys.modules, name, raising=False)
    return name
