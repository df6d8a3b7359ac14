"""Stage fan-out: run every agent of a stage in parallel and join on all of them."""

import asyncio
import logging
import os
import select
import sys
import threading
import time

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from council.executor import AgentExecutor, CancelToken
from council.models import AgentConfig, AgentState, AgentStatus

logger = logging.getLogger(__name__)

_REFRESH_SEC = 0.12
_TAIL_LINES = 12
_SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

_STATUS_STYLES = {
    AgentStatus.PENDING: "dim",
    AgentStatus.RUNNING: "yellow",
    AgentStatus.COMPLETED: "green",
    AgentStatus.ERROR: "red",
    AgentStatus.TIMEOUT: "red",
    AgentStatus.KILLED: "red",
}

_KEY_ESCAPE = "\x1b"
_KEY_UP = "\x1b[A"
_KEY_DOWN = "\x1b[B"


def _tail_lines(chunks: list[str], max_lines: int) -> list[str]:
    lines = "".join(chunks).splitlines()
    return lines[-max_lines:]


def _format_duration(state: AgentState) -> str:
    duration = state.duration_sec
    return "-" if duration is None else f"{duration:.1f}s"


class StageConsole:
    """Operator view of one running stage.

    Renders the live status table and turns keys into cancel requests. It only
    ever sets cancel tokens; the executors own their processes.
    """

    def __init__(
        self,
        stage_name: str,
        states: list[AgentState],
        tokens: list[CancelToken],
    ) -> None:
        self.stage_name = stage_name
        self.states = states
        self.tokens = tokens
        self.focused = 0
        self.aborted = False

    def cancel_agent(self, index: int) -> bool:
        """Request termination of one agent. No-op unless it is running."""
        if not 0 <= index < len(self.states):
            return False
        if self.states[index].status is not AgentStatus.RUNNING:
            return False
        self.tokens[index].cancel()
        return True

    def cancel_focused(self) -> bool:
        return self.cancel_agent(self.focused)

    def cancel_all(self) -> None:
        for index in range(len(self.states)):
            self.cancel_agent(index)
        self.aborted = True

    def handle_key(self, key: str) -> None:
        count = len(self.states)
        if not count:
            return
        if key == _KEY_ESCAPE:
            self.cancel_all()
        elif key in ("k", "K"):
            self.cancel_focused()
        elif key == _KEY_UP:
            self.focused = (self.focused + count - 1) % count
        elif key == _KEY_DOWN:
            self.focused = (self.focused + 1) % count
        elif key.isdigit() and 1 <= int(key) <= count:
            self.focused = int(key) - 1

    def render(self) -> RenderableType:
        frame = _SPINNER_FRAMES[int(time.monotonic() / _REFRESH_SEC) % len(_SPINNER_FRAMES)]

        table = Table(box=None, show_header=False, pad_edge=False)
        for _ in range(6):
            table.add_column()
        for idx, state in enumerate(self.states):
            marker = Text("➤", style="cyan") if idx == self.focused else Text(" ")
            spinner = frame if state.status is AgentStatus.RUNNING else " "
            table.add_row(
                marker,
                f"[{idx + 1}] {state.config.name}",
                spinner,
                Text(state.status.value, style=_STATUS_STYLES[state.status]),
                f"({_format_duration(state)})",
                f"out:{len(state.stdout)} err:{len(state.stderr)}",
            )

        focus = self.states[self.focused] if self.states else None
        if focus is not None:
            lines = _tail_lines(focus.stdout or focus.stderr, _TAIL_LINES)
            body: RenderableType = Text("\n".join(lines)) if lines else Text("(no output yet)", style="dim")
            tail = Panel(body, title=f"{focus.config.name} (last {_TAIL_LINES} lines)", border_style="dim")
        else:
            tail = Text("")

        return Group(
            Text(f"Stage: {self.stage_name}", style="bold"),
            Text(
                "Keys: [number] focus | k cancel focused | ESC cancel all | ↑/↓ focus | Ctrl+C quit",
                style="dim",
            ),
            table,
            tail,
        )


class _KeyReader:
    """Reads single keys from a POSIX terminal in cbreak mode on a daemon thread.

    cbreak keeps ISIG, so Ctrl+C still raises KeyboardInterrupt in the main
    thread, which tears the whole run down.
    """

    def __init__(self, on_key) -> None:
        self._on_key = on_key
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._saved_attrs = None

    @staticmethod
    def supported() -> bool:
        return sys.platform != "win32" and sys.stdin.isatty()

    def start(self) -> None:
        import termios
        import tty

        fd = sys.stdin.fileno()
        self._saved_attrs = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        self._thread = threading.Thread(target=self._run, args=(fd,), name="council-keys", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        import termios

        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        if self._saved_attrs is not None:
            termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None

    def _run(self, fd: int) -> None:
        while not self._stop.is_set():
            ready, _, _ = select.select([fd], [], [], 0.1)
            if not ready:
                continue
            data = os.read(fd, 8)
            if not data:
                return
            self._on_key(data.decode("utf-8", errors="ignore"))


class ParallelStageRunner:
    """Fans a prompt out to N agents concurrently and waits for all of them."""

    def __init__(self, executor: AgentExecutor | None = None, console: Console | None = None) -> None:
        self._executor = executor or AgentExecutor()
        self._console = console or Console(legacy_windows=False)
        self.last_stage_aborted = False
        self.current_console: StageConsole | None = None

    async def run_stage(
        self,
        name: str,
        prompt: str,
        agents: list[AgentConfig],
        timeout_sec: float | None = None,
        interactive: bool = False,
    ) -> list[AgentState]:
        """Run one stage and return states in the same order as ``agents``.

        One agent failing, timing out or being cancelled never affects the
        others; the call returns once every agent is terminal.
        """
        states = [AgentState(config=agent) for agent in agents]
        tokens = [CancelToken() for _ in agents]
        stage_console = StageConsole(name, states, tokens)
        self.current_console = stage_console

        logger.info("Starting %s with %d agents", name, len(agents))

        runs = [
            self._executor.execute(state.config, prompt, timeout_sec, cancel=token, state=state)
            for state, token in zip(states, tokens)
        ]

        if interactive:
            results = await self._run_interactive(stage_console, runs)
        else:
            results = await asyncio.gather(*runs)

        self.last_stage_aborted = stage_console.aborted
        completed = sum(1 for s in results if s.status is AgentStatus.COMPLETED)
        for state in results:
            if state.status is not AgentStatus.COMPLETED:
                logger.info(
                    "%s: agent %s ended %s%s",
                    name,
                    state.config.name,
                    state.status.value,
                    f" ({state.error_message})" if state.error_message else "",
                )
        if stage_console.aborted:
            logger.warning("%s aborted by user (%d/%d completed)", name, completed, len(agents))
        else:
            logger.info("%s complete: %d/%d agents completed", name, completed, len(agents))
        return list(results)

    async def _run_interactive(self, stage_console: StageConsole, runs: list) -> list[AgentState]:
        reader = _KeyReader(stage_console.handle_key) if _KeyReader.supported() else None
        if reader is not None:
            reader.start()
        try:
            with Live(
                console=self._console,
                get_renderable=stage_console.render,
                refresh_per_second=1 / _REFRESH_SEC,
                transient=False,
            ):
                return await asyncio.gather(*runs)
        finally:
            if reader is not None:
                reader.stop()
            if stage_console.aborted:
                self._console.print("[red]Aborted by user.[/red]")
            else:
                self._console.print("[green]Stage complete.[/green]")
