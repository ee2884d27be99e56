import asyncio
import io
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from smart_e2b.guard import OutputGuard


@dataclass
class FakeEntry:
    name: str
    type: str
    path: str


class FakeFiles:
    def __init__(self):
        self.store: Dict[str, str] = {}
        self.dirs: List[str] = []
        self.fail_with: Optional[BaseException] = None

    async def make_dir(self, path: str) -> bool:
        if path in self.dirs:
            raise FileExistsError(path)
        self.dirs.append(path)
        return True

    async def write(self, path: str, data: str):
        if self.fail_with is not None:
            raise self.fail_with
        self.store[path] = data
        return FakeEntry(name=path.rsplit("/", 1)[-1], type="file", path=path)

    async def read(self, path: str) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        if path not in self.store:
            raise FileNotFoundError(path)
        return self.store[path]

    async def list(self, path: str) -> List[FakeEntry]:
        if self.fail_with is not None:
            raise self.fail_with
        return [FakeEntry(name=d.rsplit("/", 1)[-1], type="dir", path=d) for d in self.dirs] + [
            FakeEntry(name=p.rsplit("/", 1)[-1], type="file", path=p) for p in self.store
        ]


class FakeSandbox:
    """Same surface as the code interpreter's AsyncSandbox, all in memory."""

    def __init__(self, name: str = "sbx"):
        self.name = name
        self.files = FakeFiles()
        self.timeouts: List[int] = []
        self.killed = False
        self.runs: List[Dict[str, Any]] = []
        self.run_delay = 0.0
        self.run_error: Optional[BaseException] = None
        self.renew_error: Optional[BaseException] = None
        self.kill_error: Optional[BaseException] = None
        self.stdout = ["hello\n"]

    async def set_timeout(self, timeout: int) -> None:
        if self.renew_error is not None:
            raise self.renew_error
        self.timeouts.append(timeout)

    async def kill(self) -> None:
        if self.kill_error is not None:
            raise self.kill_error
        self.killed = True

    async def run_code(self, code: str, language: Optional[str] = None):
        self.runs.append({"code": code, "language": language})
        if self.run_delay:
            await asyncio.sleep(self.run_delay)
        if self.run_error is not None:
            raise self.run_error
        return SimpleNamespace(
            logs=SimpleNamespace(stdout=list(self.stdout), stderr=[]),
            error=None,
            results=[],
        )


class FakeFactory:
    def __init__(self, delay: float = 0.0):
        self.created: List[FakeSandbox] = []
        self.delay = delay
        self.error: Optional[BaseException] = None

    async def __call__(self) -> FakeSandbox:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        sandbox = FakeSandbox(name=f"sbx-{len(self.created) + 1}")
        self.created.append(sandbox)
        return sandbox


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def channels():
    """In-memory stand-ins for the process stdout/stderr."""
    return SimpleNamespace(stdout=io.StringIO(), stderr=io.StringIO())


@pytest.fixture
def output_guard(channels):
    guard = OutputGuard(debug_markers=("Creating",), stdout=channels.stdout, stderr=channels.stderr)
    yield guard
    guard.uninstall()
