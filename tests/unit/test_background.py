"""Unit tests for the background task registry"""

import asyncio
import logging

import pytest

from src.services.background import BackgroundTasks


@pytest.mark.asyncio
async def test_spawned_task_is_tracked_until_done():
    background = BackgroundTasks()
    release = asyncio.Event()

    background.spawn(release.wait(), name="waiter")
    assert len(background) == 1

    release.set()
    await background.drain()
    assert len(background) == 0


@pytest.mark.asyncio
async def test_failure_is_logged_not_raised(caplog):
    background = BackgroundTasks()

    async def fail():
        raise RuntimeError("upstream exploded")

    with caplog.at_level(logging.ERROR, logger="src.services.background"):
        background.spawn(fail(), name="failing")
        failures = await background.drain()

    assert "upstream exploded" in caplog.text
    assert [str(error) for error in failures] == ["upstream exploded"]
    assert len(background) == 0
    assert await background.drain() == []


@pytest.mark.asyncio
async def test_drain_waits_for_tasks_spawned_while_draining():
    background = BackgroundTasks()
    finished = []

    async def child():
        await asyncio.sleep(0.01)
        finished.append("child")

    async def parent():
        background.spawn(child(), name="child")
        finished.append("parent")

    background.spawn(parent(), name="parent")
    await background.drain()

    assert finished == ["parent", "child"]


@pytest.mark.asyncio
async def test_only_recent_failures_are_kept():
    background = BackgroundTasks(max_failures=2)

    async def fail(n):
        raise RuntimeError(f"failure {n}")

    for n in range(3):
        background.spawn(fail(n), name=f"failing-{n}")
    failures = await background.drain()

    assert len(failures) == 2
