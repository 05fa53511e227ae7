"""Shared pytest fixtures for the Soundmap transcode pipeline tests.

Provides temporary databases, a controllable clock, and in-process fakes for
the worker's collaborators (object store, prober, transcoder, notifier), so
no ffmpeg, S3 endpoint or callback receiver is needed.
"""

import io
import tempfile
import threading
import wave
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from soundmap.db import init_db
from soundmap.errors import ObjectNotFoundError
from soundmap.queue import Delivery, SqlJobQueue
from soundmap.schemas import ChannelLayout, TechnicalMetadata

# --- Helpers ---


def make_wav_bytes(seconds: float = 0.1, sample_rate: int = 44100, channels: int = 2) -> bytes:
    """Build a small valid PCM WAV file in memory."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(b"\x00" * int(seconds * sample_rate) * 2 * channels)
    return buf.getvalue()


def make_delivery(payload: dict, job_id: str = "job-1", attempt: int = 1) -> Delivery:
    return Delivery(job_id=job_id, attempt=attempt, payload=payload, lease_token="lease-1")


STEREO_WAV_METADATA = TechnicalMetadata(
    duration_seconds=5.0,
    sample_rate_hz=44100,
    bitrate_bps=1411200,
    channel_count=2,
    channel_layout=ChannelLayout.STEREO,
    codec="pcm_s16le",
    container_format="wav",
    bit_depth=16,
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeObjectStore:
    """In-memory object store recording every call.

    Set ``get_error``/``put_error``/``delete_error`` to make that operation raise.
    """

    def __init__(self, objects: dict[str, bytes] | None = None):
        self.objects = dict(objects or {})
        self.calls: list[tuple[str, str]] = []
        self.content_types: dict[str, str] = {}
        self.get_error: Exception | None = None
        self.put_error: Exception | None = None
        self.delete_error: Exception | None = None
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            self.calls.append(("get", key))
        if self.get_error is not None:
            raise self.get_error
        if key not in self.objects:
            raise ObjectNotFoundError(key)
        return io.BytesIO(self.objects[key])

    def put(self, key, data, content_type):
        with self._lock:
            self.calls.append(("put", key))
        if self.put_error is not None:
            raise self.put_error
        body = data if isinstance(data, bytes) else data.read()
        with self._lock:
            self.objects[key] = body
            self.content_types[key] = content_type
        return f"http://storage.test/sounds/{key}"

    def delete(self, key):
        with self._lock:
            self.calls.append(("delete", key))
        if self.delete_error is not None:
            raise self.delete_error
        with self._lock:
            self.objects.pop(key, None)

    def keys_called(self, operation: str) -> list[str]:
        return [key for op, key in self.calls if op == operation]


class FakeProber:
    """Returns fixed metadata, or raises ``error`` when set."""

    def __init__(self, metadata: TechnicalMetadata = STEREO_WAV_METADATA):
        self.metadata = metadata
        self.error: Exception | None = None
        self.probed: list[Path] = []

    def probe(self, path):
        self.probed.append(Path(path))
        if self.error is not None:
            raise self.error
        return self.metadata


class FakeTranscoder:
    """Writes fake MP3 bytes to the output path, or raises ``error`` when set."""

    def __init__(self, output: bytes = b"ID3fake-mp3-bytes"):
        self.output = output
        self.error: Exception | None = None
        self.calls: list[tuple[Path, Path]] = []

    def transcode(self, input_path, output_path):
        self.calls.append((Path(input_path), Path(output_path)))
        if self.error is not None:
            raise self.error
        Path(output_path).write_bytes(self.output)


class FakeNotifier:
    """Records callbacks; raises ``error`` (after recording) when set."""

    def __init__(self):
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self._lock = threading.Lock()

    def notify(self, callback_url, secret, sound_id, outcome):
        with self._lock:
            self.calls.append(
                {"url": callback_url, "secret": secret, "sound_id": sound_id, "outcome": outcome}
            )
        if self.error is not None:
            raise self.error

    def close(self):
        pass


# --- Fixtures ---


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        yield db_path, engine, SessionFactory
        engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sql_queue(temp_db, clock):
    """SqlJobQueue on a temp database with a controllable clock."""
    _, _, SessionFactory = temp_db
    return SqlJobQueue(
        SessionFactory, lease_ttl_seconds=60, max_attempts=3, retry_base_delay=10, clock=clock
    )


@pytest.fixture
def staging_root(tmp_path):
    root = tmp_path / "staging"
    root.mkdir()
    return root


@pytest.fixture
def sample_wav_bytes():
    return make_wav_bytes()


@pytest.fixture
def client(temp_db):
    """FastAPI test client for the queue API bound to the temp database.

    Yields:
        tuple: (test_client, SessionFactory)
    """
    from services.queue_api.main import app, override_session_factory

    _, _, SessionFactory = temp_db
    override_session_factory(SessionFactory)

    with TestClient(app) as test_client:
        yield test_client, SessionFactory

    override_session_factory(None)


@pytest.fixture
def stereo_metadata():
    return STEREO_WAV_METADATA


@pytest.fixture
def delivery_factory():
    """Build a Delivery without going through a queue."""
    return make_delivery


@pytest.fixture
def fake_store(sample_wav_bytes):
    """Object store holding one uploaded WAV under u1/100-test.wav."""
    return FakeObjectStore({"u1/100-test.wav": sample_wav_bytes})


@pytest.fixture
def fake_prober():
    return FakeProber()


@pytest.fixture
def fake_transcoder():
    return FakeTranscoder()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()
