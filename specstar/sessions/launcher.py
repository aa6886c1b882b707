"""
Subprocess launcher for worker sessions.

Runs the agent CLI configured in agents.yaml and translates its lifecycle
into worker events for the session pool:

    starting -> idle        process started
    idle -> working         initial prompt handed over
    stdout line             Activity (token_count counts output lines)
    exit 0                  working -> idle, then shutdown
    exit != 0               SessionFailed, working -> error, then shutdown
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from specstar.lib.agents_config import AgentsConfig, get_spawn_command
from specstar.lib.ids import SessionId
from specstar.lib.types import WorkerSession, WorkerStatus
from specstar.sessions.events import (
    Activity,
    SessionFailed,
    ShutdownComplete,
    StatusChanged,
    WorkerEvent,
)
from specstar.sessions.pool import SessionOptions

logger = logging.getLogger(__name__)

# Seconds to wait for a terminated process before killing it
STOP_GRACE_SECONDS = 5


class CommandLauncher:
    """Starts one agent CLI process per session."""

    def __init__(self, config: AgentsConfig | None = None):
        self.config = config or AgentsConfig()
        self._processes: dict[SessionId, asyncio.subprocess.Process] = {}
        self._tasks: dict[SessionId, asyncio.Task] = {}

    async def start(
        self,
        session: WorkerSession,
        options: SessionOptions,
        emit: Callable[[WorkerEvent], None],
    ) -> None:
        prompt = options.initial_prompt or ""
        spawn = get_spawn_command(self.config, prompt, options.cwd, options.name, options.model)
        stdin_input = spawn.get_stdin_input(prompt)

        # Remove ANTHROPIC_API_KEY so the CLI uses its own OAuth credentials
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}

        logger.info(f"Starting session {session.id}: {spawn.cmd[0]} in {options.cwd}")
        process = await asyncio.create_subprocess_exec(
            *spawn.cmd,
            cwd=str(Path(options.cwd)),
            stdin=asyncio.subprocess.PIPE if stdin_input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        self._processes[session.id] = process

        emit(StatusChanged(session.id, WorkerStatus.IDLE))
        if stdin_input is not None:
            try:
                process.stdin.write(stdin_input.encode())
                await process.stdin.drain()
                process.stdin.close()
            except (OSError, asyncio.CancelledError):
                logger.warning(f"Session {session.id}: could not hand over prompt, stopping process")
                await self.stop(session.id)
                raise
        emit(StatusChanged(session.id, WorkerStatus.WORKING))

        self._tasks[session.id] = asyncio.create_task(self._supervise(session.id, process, emit))

    async def _supervise(
        self,
        session_id: SessionId,
        process: asyncio.subprocess.Process,
        emit: Callable[[WorkerEvent], None],
    ) -> None:
        async def count_lines() -> None:
            lines = 0
            async for _ in process.stdout:
                lines += 1
                emit(Activity(session_id, datetime.now(timezone.utc), lines))

        # stdout and stderr must be drained concurrently
        _, raw_stderr = await asyncio.gather(count_lines(), process.stderr.read())
        stderr = raw_stderr.decode(errors="replace").strip()
        code = await process.wait()
        self._processes.pop(session_id, None)

        if code == 0:
            logger.info(f"Session {session_id} exited cleanly")
            emit(StatusChanged(session_id, WorkerStatus.IDLE))
        else:
            message = stderr.splitlines()[-1] if stderr else f"Agent exited with code {code}"
            logger.warning(f"Session {session_id} failed with exit code {code}: {message}")
            emit(SessionFailed(session_id, message, stack=stderr or None))
            emit(StatusChanged(session_id, WorkerStatus.ERROR))
        emit(ShutdownComplete(session_id))

    async def stop(self, session_id: SessionId) -> None:
        # No events are emitted for a deliberate stop
        task = self._tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()

        process = self._processes.pop(session_id, None)
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                await process.wait()
                return
            try:
                await asyncio.wait_for(process.wait(), STOP_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning(f"Session {session_id} did not exit, killing")
                process.kill()
                await process.wait()
