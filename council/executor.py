"""Run one external agent CLI as an OS process until it reaches a terminal status."""

import asyncio
import codecs
import logging
import os
import signal
import threading

from council.models import AgentConfig, AgentState, AgentStatus

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096
_KILL_GRACE_SEC = 5.0
_STDERR_TAIL_CHARS = 500
_HAS_PROCESS_GROUPS = hasattr(os, "killpg")


class CancelToken:
    """Cancellation flag for a single agent run.

    ``cancel()`` is safe to call from any thread; the interactive console calls
    it from its key-reader thread. The executor awaits ``wait()`` on the loop.
    """

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def cancel(self) -> None:
        with self._lock:
            self._flag.set()
            loop, event = self._loop, self._event
        if loop is None or event is None:
            return
        try:
            loop.call_soon_threadsafe(event.set)
        except RuntimeError:
            # Loop already closed: nobody is waiting any more.
            logger.debug("Cancel requested after event loop closed")

    async def wait(self) -> None:
        with self._lock:
            if self._event is None:
                self._loop = asyncio.get_running_loop()
                self._event = asyncio.Event()
            if self._flag.is_set():
                self._event.set()
            event = self._event
        await event.wait()


async def _pump(stream: asyncio.StreamReader, chunks: list[str]) -> None:
    """Append decoded chunks in arrival order until EOF."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(_READ_CHUNK)
        if not data:
            break
        text = decoder.decode(data)
        if text:
            chunks.append(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        chunks.append(tail)


async def _feed_stdin(proc: asyncio.subprocess.Process, prompt: str, agent_name: str) -> None:
    """Write the prompt to stdin, then close it."""
    if proc.stdin is None:
        return
    try:
        proc.stdin.write(prompt.encode("utf-8"))
        await proc.stdin.drain()
        proc.stdin.close()
        await proc.stdin.wait_closed()
    except (BrokenPipeError, ConnectionResetError) as exc:
        # The process went away before reading everything; its exit code decides.
        logger.debug("Agent %s closed stdin early: %s", agent_name, exc)


def _stderr_tail(state: AgentState) -> str:
    text = "".join(state.stderr).strip()
    return text[-_STDERR_TAIL_CHARS:]


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the agent and every process it spawned.

    Agents run in their own session, so the process group id is the agent's pid.
    Without process groups (Windows) only the agent itself is signalled.
    """
    try:
        if _HAS_PROCESS_GROUPS:
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


class AgentExecutor:
    """Spawns agent processes. Holds no per-run state, so one instance can serve
    any number of concurrent ``execute`` calls."""

    def __init__(self, kill_grace_sec: float = _KILL_GRACE_SEC) -> None:
        self._kill_grace_sec = kill_grace_sec

    async def execute(
        self,
        config: AgentConfig,
        prompt: str,
        timeout_sec: float | None = None,
        cancel: CancelToken | None = None,
        state: AgentState | None = None,
    ) -> AgentState:
        """Run ``config`` with ``prompt`` and return its final state.

        Never raises for agent-level failures: spawn errors, nonzero exits,
        timeouts and cancellations are all reported through the returned state.

        Args:
            config: The agent to run.
            prompt: Prompt text, sent on stdin or appended as the last argument.
            timeout_sec: Seconds before the process is terminated. None or 0
                disables the timeout.
            cancel: Optional token; cancelling it terminates a running agent.
            state: Pre-built state to fill in (lets a caller observe progress).

        Returns:
            The AgentState in a terminal status.
        """
        if state is None:
            state = AgentState(config=config)
        use_stdin = config.prompt_via_stdin
        argv = list(config.command) if use_stdin else [*config.command, prompt]

        state.start()
        if not argv:
            state.finish(AgentStatus.ERROR, error_message="Agent command is empty")
            logger.warning("Agent %s has an empty command", config.name)
            return state

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if use_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=_HAS_PROCESS_GROUPS,
            )
        except OSError as exc:
            state.finish(AgentStatus.ERROR, error_message=f"Failed to start '{argv[0]}': {exc}")
            logger.warning("Agent %s failed to start: %s", config.name, exc)
            return state

        io_tasks = [
            asyncio.create_task(_pump(proc.stdout, state.stdout)),
            asyncio.create_task(_pump(proc.stderr, state.stderr)),
        ]
        if use_stdin:
            io_tasks.append(asyncio.create_task(_feed_stdin(proc, prompt, config.name)))

        exit_task = asyncio.create_task(proc.wait())
        cancel_task = asyncio.create_task(cancel.wait()) if cancel is not None else None
        waiters = {exit_task} | ({cancel_task} if cancel_task is not None else set())
        limit = timeout_sec if timeout_sec and timeout_sec > 0 else None

        try:
            done, _ = await asyncio.wait(waiters, timeout=limit, return_when=asyncio.FIRST_COMPLETED)
            if exit_task in done:
                returncode = exit_task.result()
            else:
                if cancel_task is not None and cancel_task in done:
                    state.finish(AgentStatus.KILLED, error_message="Cancelled by operator")
                    logger.info("Agent %s cancelled", config.name)
                else:
                    state.finish(AgentStatus.TIMEOUT, error_message=f"Timed out after {limit}s")
                    logger.warning("Agent %s timed out after %ss", config.name, limit)
                returncode = await self._terminate(proc, exit_task)
        except asyncio.CancelledError:
            state.finish(AgentStatus.KILLED, error_message="Run cancelled")
            await self._terminate(proc, exit_task)
            for task in io_tasks:
                task.cancel()
            raise
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        state.exit_code = returncode
        _, pending = await asyncio.wait(io_tasks, timeout=self._kill_grace_sec)
        for task in pending:
            # Pipes kept open by a grandchild process.
            task.cancel()

        if returncode == 0:
            state.finish(AgentStatus.COMPLETED, exit_code=0)
        else:
            tail = _stderr_tail(state)
            message = f"Exited with code {returncode}" + (f": {tail}" if tail else "")
            state.finish(AgentStatus.ERROR, exit_code=returncode, error_message=message)

        logger.info(
            "Agent %s finished: %s (%.1fs)",
            config.name,
            state.status.value,
            state.duration_sec or 0.0,
        )
        return state

    async def _terminate(self, proc: asyncio.subprocess.Process, exit_task: asyncio.Task) -> int | None:
        """SIGTERM the agent's process group, then SIGKILL once the grace period runs out.

        Returns the exit code, or None if the process still has not been reaped
        after the kill. Every wait here is bounded by the grace period.
        """
        # The agent may be gone while its children still hold the pipes.
        _signal_group(proc, signal.SIGTERM)
        try:
            return await asyncio.wait_for(asyncio.shield(exit_task), timeout=self._kill_grace_sec)
        except TimeoutError:
            pass
        _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        try:
            return await asyncio.wait_for(asyncio.shield(exit_task), timeout=self._kill_grace_sec)
        except TimeoutError:
            logger.warning("Process %s did not exit after SIGKILL", proc.pid)
            exit_task.cancel()
            return proc.returncode
