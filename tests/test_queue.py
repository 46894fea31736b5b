import pytest
from redis.exceptions import ResponseError

from ensemble import queue
from ensemble.queue import STREAM_DLQ, STREAM_PRIORITY, STREAM_SESSIONS, QueueFullError, SessionRunPayload
from ensemble.workers import base
from ensemble.workers.base import MAX_ATTEMPTS, JobMessage, RedisWorker
from ensemble.workers.session_worker import SessionWorker


class FakeRedis:
    """The handful of stream and key commands the queue uses."""

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        self.keys: dict[str, str] = {}
        self.acked: list[tuple[str, str, str]] = []
        self.groups: set[tuple[str, str]] = set()

    async def xlen(self, stream):
        return len(self.streams.get(stream, []))

    async def xadd(self, stream, fields):
        entries = self.streams.setdefault(stream, [])
        msg_id = f"{len(entries) + 1}-0"
        entries.append((msg_id, dict(fields)))
        return msg_id

    async def xack(self, stream, group, msg_id):
        self.acked.append((stream, group, msg_id))
        return 1

    async def xgroup_create(self, stream, group, id="$", mkstream=False):
        if (stream, group) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.groups.add((stream, group))

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.keys:
            return None
        self.keys[key] = value
        return True

    async def delete(self, key):
        return 1 if self.keys.pop(key, None) is not None else 0


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(queue, "get_redis_client", lambda: fake)
    monkeypatch.setattr(base, "get_redis_client", lambda: fake)
    return fake


class RecordingWorker(RedisWorker):
    def __init__(self, failures: int = 0) -> None:
        super().__init__(name="test", group="test-workers")
        self.failures = failures
        self.processed: list[str] = []

    async def process(self, payload):
        self.processed.append(payload["session_id"])
        if len(self.processed) <= self.failures:
            raise RuntimeError("database unavailable")


def _job(payload: SessionRunPayload, msg_id: str = "1-0") -> JobMessage:
    return JobMessage(msg_id=msg_id, stream=STREAM_SESSIONS, payload=payload.to_dict())


def test_payload_wire_format() -> None:
    payload = SessionRunPayload(session_id="s1", owner_id="u1", run_id="r1")
    data = payload.to_dict()

    assert data == {
        "schema_version": "1.0",
        "job_type": "session_run",
        "session_id": "s1",
        "owner_id": "u1",
        "run_id": "r1",
        "retry_count": "0",
    }
    assert SessionRunPayload.from_dict({**data, "retry_count": "2"}).retry_count == 2
    assert SessionRunPayload.from_dict({"session_id": "s2"}).run_id


@pytest.mark.asyncio
async def test_enqueue_picks_the_stream_and_enforces_capacity(fake_redis, monkeypatch) -> None:
    await queue.enqueue_session_run(SessionRunPayload(session_id="s1", owner_id="u1"))
    await queue.enqueue_session_run(SessionRunPayload(session_id="s2", owner_id="u1"), priority=True)

    assert [f["session_id"] for _, f in fake_redis.streams[STREAM_SESSIONS]] == ["s1"]
    assert [f["session_id"] for _, f in fake_redis.streams[STREAM_PRIORITY]] == ["s2"]

    monkeypatch.setattr(queue.settings, "redis_queue_max_depth", 1)
    with pytest.raises(QueueFullError):
        await queue.enqueue_session_run(SessionRunPayload(session_id="s3", owner_id="u1"))


@pytest.mark.asyncio
async def test_setup_tolerates_existing_groups(fake_redis) -> None:
    worker = RecordingWorker()
    await worker.setup()
    await worker.setup()
    assert fake_redis.groups == {(STREAM_PRIORITY, "test-workers"), (STREAM_SESSIONS, "test-workers")}


@pytest.mark.asyncio
async def test_duplicate_delivery_is_processed_once(fake_redis) -> None:
    worker = RecordingWorker()
    payload = SessionRunPayload(session_id="s1", owner_id="u1", run_id="r1")

    await worker.handle(_job(payload, "1-0"))
    await worker.handle(_job(payload, "2-0"))

    assert worker.processed == ["s1"]
    assert [msg_id for _, _, msg_id in fake_redis.acked] == ["1-0", "2-0"]
    assert "idempotency:s1:r1" in fake_redis.keys


@pytest.mark.asyncio
async def test_failed_job_is_requeued_then_dead_lettered(fake_redis) -> None:
    worker = RecordingWorker(failures=MAX_ATTEMPTS)
    job = _job(SessionRunPayload(session_id="s1", owner_id="u1", run_id="r1"))

    for _ in range(MAX_ATTEMPTS):
        await worker.handle(job)
        requeued = fake_redis.streams.get(STREAM_SESSIONS)
        if requeued:
            msg_id, fields = requeued.pop()
            job = JobMessage(msg_id=msg_id, stream=STREAM_SESSIONS, payload=fields)

    assert worker.processed == ["s1"] * MAX_ATTEMPTS
    [(_, dead)] = fake_redis.streams[STREAM_DLQ]
    assert dead["error"] == "database unavailable"
    assert dead["retry_count"] == str(MAX_ATTEMPTS - 1)


@pytest.mark.asyncio
async def test_payload_without_ids_is_dropped(fake_redis) -> None:
    worker = RecordingWorker()
    await worker.handle(JobMessage(msg_id="1-0", stream=STREAM_SESSIONS, payload={"job_type": "session_run"}))
    assert worker.processed == []
    assert fake_redis.acked == [(STREAM_SESSIONS, "test-workers", "1-0")]


@pytest.mark.asyncio
async def test_session_worker_runs_the_scheduler(fake_redis) -> None:
    class StubScheduler:
        def __init__(self) -> None:
            self.runs: list[str] = []

        async def run_session(self, session_id):
            self.runs.append(session_id)
            return "completed"

    scheduler = StubScheduler()
    worker = SessionWorker(scheduler=scheduler)  # type: ignore[arg-type]

    await worker.handle(_job(SessionRunPayload(session_id="s1", owner_id="u1")))

    assert scheduler.runs == ["s1"]
