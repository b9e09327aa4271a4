import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from mcp_isolate_bridge import create_terminator

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")

SLEEPER = "import time; time.sleep(60)"


async def _spawn(code: str, **kwargs) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        sys.executable,
        "-c",
        code,
        stdout=asyncio.subprocess.PIPE,
        start_new_session=True,
        **kwargs,
    )


def _is_running(pid: int) -> bool:
    stat = Path(f"/proc/{pid}/stat")
    try:
        fields = stat.read_text().rsplit(")", 1)[1].split()
    except (FileNotFoundError, ProcessLookupError):
        return False
    return fields[0] != "Z"


@pytest.mark.asyncio
async def test_terminate_kills_tracked_process():
    terminator = create_terminator(grace_period=1.0)
    process = await _spawn(SLEEPER)
    terminator.track(process.pid, label="sleeper")

    await terminator.terminate(process.pid)

    await asyncio.wait_for(process.wait(), timeout=5)
    assert process.returncode is not None
    assert not terminator.is_tracked(process.pid)


@pytest.mark.asyncio
async def test_terminate_is_idempotent():
    terminator = create_terminator(grace_period=0.5)
    process = await _spawn(SLEEPER)
    terminator.track(process.pid)

    await terminator.terminate(process.pid)
    await asyncio.wait_for(process.wait(), timeout=5)
    await terminator.terminate(process.pid)
    await terminator.terminate(process.pid)


@pytest.mark.asyncio
async def test_terminate_ignores_missing_pids():
    terminator = create_terminator()

    await terminator.terminate(None)
    await terminator.terminate(0)

    process = await _spawn("pass")
    await process.wait()
    await terminator.terminate(process.pid)


@pytest.mark.asyncio
async def test_terminate_escalates_to_kill():
    terminator = create_terminator(grace_period=0.3)
    process = await _spawn(
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('armed', flush=True)\n"
        "time.sleep(60)\n"
    )
    assert (await process.stdout.readline()).strip() == b"armed"
    terminator.track(process.pid)

    started = time.monotonic()
    await terminator.terminate(process.pid)
    await asyncio.wait_for(process.wait(), timeout=5)

    assert process.returncode == -9
    assert time.monotonic() - started >= 0.25


@pytest.mark.asyncio
async def test_terminate_untracked_session_leader():
    terminator = create_terminator(grace_period=0.5)
    process = await _spawn(SLEEPER)

    await terminator.terminate(process.pid)

    await asyncio.wait_for(process.wait(), timeout=5)
    assert process.returncode is not None


@pytest.mark.asyncio
@pytest.mark.skipif(not Path("/proc").exists(), reason="needs /proc")
async def test_terminate_reaches_grandchildren():
    terminator = create_terminator(grace_period=0.5)
    process = await _spawn(
        "import subprocess, sys, time\n"
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        "print(child.pid, flush=True)\n"
        "time.sleep(60)\n"
    )
    grandchild = int((await process.stdout.readline()).strip())
    terminator.track(process.pid)

    await terminator.terminate(process.pid)
    await asyncio.wait_for(process.wait(), timeout=5)

    deadline = time.monotonic() + 5
    while _is_running(grandchild) and time.monotonic() < deadline:
        await asyncio.sleep(0.05)
    assert not _is_running(grandchild)


@pytest.mark.asyncio
async def test_terminate_all_clears_tracking():
    terminator = create_terminator(grace_period=0.5)
    processes = [await _spawn(SLEEPER) for _ in range(2)]
    for process in processes:
        terminator.track(process.pid)

    await terminator.terminate_all()

    assert terminator.tracked == {}
    for process in processes:
        await asyncio.wait_for(process.wait(), timeout=5)
    assert os.getpgrp() > 0
