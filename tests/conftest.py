# tests/conftest.py
import os

# Keep the module-level app and limiter inert for the unit tests
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("RECONCILER_ENABLED", "false")
os.environ.setdefault("OPENAI_API_KEY", "test-key")

import asyncio
import itertools
import time
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from sora_studio.config import Settings
from sora_studio.container import build_services, close_services
from sora_studio.errors import NotFoundError, NotReadyError, SourceNotCompletedError, UpstreamError
from sora_studio.main import create_app
from sora_studio.schemas.video import VideoError, VideoJob, VideoModel, VideoOptions, VideoStatus
from sora_studio.utils import metrics


class FakeRedis:
    """
    In-memory stand-in for the redis.asyncio calls the app makes.
    Expiry follows ``now``, which tests move with ``advance``.
    """

    def __init__(self):
        self.now = 0.0
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _live(self, key: str):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.now >= expires_at:
            del self._data[key]
            return None
        return entry

    async def set(self, key, value, ex=None):
        self._data[key] = (value, self.now + ex if ex else None)
        return True

    async def get(self, key):
        entry = self._live(key)
        return entry[0] if entry else None

    async def delete(self, *keys):
        return sum(1 for key in keys if self._data.pop(key, None) is not None)

    async def ttl(self, key):
        entry = self._live(key)
        if entry is None:
            return -2
        return -1 if entry[1] is None else int(entry[1] - self.now)

    async def incr(self, key):
        entry = self._live(key)
        value = int(entry[0]) + 1 if entry else 1
        self._data[key] = (str(value), entry[1] if entry else None)
        return value

    async def expire(self, key, seconds):
        entry = self._live(key)
        if entry is None:
            return False
        self._data[key] = (entry[0], self.now + seconds)
        return True

    async def ping(self):
        return True

    async def aclose(self):
        pass

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._ops = []

    def incr(self, key):
        self._ops.append(("incr", (key,)))
        return self

    def expire(self, key, seconds):
        self._ops.append(("expire", (key, seconds)))
        return self

    async def execute(self):
        results = []
        for name, args in self._ops:
            results.append(await getattr(self._redis, name)(*args))
        self._ops = []
        return results


class FakeSoraClient:
    """
    Provider double. Jobs live in ``videos``; tests move them along with
    ``advance`` and inspect ``calls`` to see what was asked of the provider.
    """

    def __init__(self):
        self.videos: Dict[str, VideoJob] = {}
        self.calls: List[Tuple[str, str]] = []
        self.unavailable: set = set()
        self._ids = itertools.count(1)
        self._clock = itertools.count(int(time.time()))

    def _new_job(self, prompt: str, model: str, **fields) -> VideoJob:
        job = VideoJob(
            id=f"video_{next(self._ids):04d}",
            model=model,
            status=VideoStatus.QUEUED,
            progress=0,
            prompt=prompt,
            created_at=next(self._clock),
            **fields,
        )
        self.videos[job.id] = job
        return job

    def advance(self, video_id: str, status: VideoStatus, progress: int = 0, **fields) -> None:
        self.videos[video_id] = self.videos[video_id].model_copy(
            update={"status": status, "progress": progress, **fields}
        )

    def fail(self, video_id: str, message: str) -> None:
        self.advance(video_id, VideoStatus.FAILED, error=VideoError(message=message))

    async def create(self, prompt: str, options: Optional[VideoOptions] = None) -> VideoJob:
        options = options or VideoOptions()
        await asyncio.sleep(0)
        job = self._new_job(
            prompt,
            (options.model or VideoModel.SORA_2).value,
            size=options.size.value if options.size else "1024x1808",
            seconds=options.seconds.value if options.seconds else "5",
        )
        self.calls.append(("create", job.id))
        return job.model_copy()

    async def get_status(self, video_id: str) -> VideoJob:
        self.calls.append(("get_status", video_id))
        if video_id in self.unavailable:
            raise UpstreamError(UpstreamError.UNAVAILABLE, "provider down")
        if video_id not in self.videos:
            raise NotFoundError()
        return self.videos[video_id].model_copy()

    async def list(self, limit: int = 20, after: Optional[str] = None):
        videos = sorted(self.videos.values(), key=lambda v: v.created_at, reverse=True)
        return videos[:limit], len(videos) > limit

    async def delete(self, video_id: str):
        self.calls.append(("delete", video_id))
        if self.videos.pop(video_id, None) is None:
            raise NotFoundError()
        return {"id": video_id, "deleted": True}

    async def remix(self, source_id: str, prompt: str) -> VideoJob:
        self.calls.append(("remix", source_id))
        source = self.videos.get(source_id)
        if source is None:
            raise NotFoundError()
        if source.status != VideoStatus.COMPLETED:
            raise SourceNotCompletedError()
        job = self._new_job(prompt, source.model, remixed_from_video_id=source_id)
        return job.model_copy()

    async def download(self, video_id: str, variant: str = "video") -> bytes:
        self.calls.append(("download", video_id))
        video = self.videos.get(video_id)
        if video is None:
            raise NotFoundError()
        if video.status != VideoStatus.COMPLETED:
            raise NotReadyError()
        return f"{variant}:{video_id}".encode()

    async def aclose(self):
        pass

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        redis_url=None,
        openai_api_key="test-key",
        default_videos_limit=5,
        anonymous_videos_limit=2,
        reconciler_enabled=False,
        rate_limit_enabled=False,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_client():
    return FakeSoraClient()


@pytest_asyncio.fixture
async def services(settings, fake_client, fake_redis):
    built = await build_services(settings, client=fake_client, redis=fake_redis)
    yield built
    await close_services(built)


@pytest.fixture
def api(settings, fake_client, fake_redis):
    """TestClient over an app wired to the fakes; startup/shutdown run around it"""
    app = create_app(settings, sora_client=fake_client, redis=fake_redis)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def user_headers():
    return {"X-User-ID": "user_alice"}
