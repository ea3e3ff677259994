"""Shared fakes for worker transport and plan construction."""

from __future__ import annotations

from typing import Callable

import pytest

from packai.models import Phase, Plan, Task


class FakeResponse:
    """Streams chunks, optionally calling hooks before a chunk and raising at the end."""

    def __init__(
        self,
        chunks: list[str],
        error: BaseException | None = None,
        hooks: dict[int, Callable[[], None]] | None = None,
    ):
        self.text = self._stream(chunks, error, hooks or {})

    @staticmethod
    async def _stream(chunks, error, hooks):
        for index, chunk in enumerate(chunks):
            if index in hooks:
                hooks[index]()
            yield chunk
        if error is not None:
            raise error


class FakeWorker:
    """Worker replaying scripted attempts.

    Each attempt is a list of chunks, a ``(chunks, error)`` tuple for a
    mid-stream failure, or an exception raised by ``send_request``. The last
    attempt repeats once the script runs out.
    """

    def __init__(self, *attempts, hooks: dict[int, Callable[[], None]] | None = None):
        self.attempts = list(attempts) or [["ok"]]
        self.hooks = hooks
        self.calls: list = []

    async def send_request(self, messages, options, token):
        self.calls.append(list(messages))
        attempt = self.attempts.pop(0) if len(self.attempts) > 1 else self.attempts[0]
        if isinstance(attempt, BaseException):
            raise attempt
        if isinstance(attempt, tuple):
            chunks, error = attempt
        else:
            chunks, error = attempt, None
        return FakeResponse(chunks, error, self.hooks)


class FakeProvider:
    """Worker provider returning configured workers per model family."""

    def __init__(self, workers: dict[str | None, list] | None = None, default=None):
        self.workers = workers or {}
        self.default = default
        self.selectors: list = []
        self.errors: dict[str | None, Exception] = {}

    async def select_workers(self, selector):
        self.selectors.append(selector)
        if selector.family in self.errors:
            raise self.errors[selector.family]
        if selector.family in self.workers:
            return self.workers[selector.family]
        return [self.default] if self.default is not None else []


async def no_sleep(seconds: float) -> None:
    return None


def make_task(task_id: str, *deps: str, **kwargs) -> Task:
    return Task(id=task_id, label=kwargs.pop("label", task_id), depends_on=list(deps), **kwargs)


def make_plan(*phases: list[Task], name: str = "test-plan") -> Plan:
    return Plan(
        template_name=name,
        phases=[
            Phase(id=f"phase-{i + 1}", label=f"Phase {i + 1}", tasks=tasks)
            for i, tasks in enumerate(phases)
        ],
    )


@pytest.fixture
def fake_worker():
    return FakeWorker(["Hello", " ", "world"])


@pytest.fixture
def fake_provider(fake_worker):
    return FakeProvider(default=fake_worker)
