"""Claude CLI subprocess runner with stream-json parsing."""

from __future__ import annotations

import asyncio
import contextlib
import re
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeAlias

from loguru import logger

from claude_telegram.config import Settings
from claude_telegram.events import READ_CHUNK_SIZE, StreamEvent, extract_result, iter_stream_events
from claude_telegram.session import SessionStore
from claude_telegram.types import TurnResult

EventListener: TypeAlias = Callable[[StreamEvent], None]

STDERR_TAIL_CHARS = 300
SESSION_MISSING_PATTERNS = (
    re.compile(r"no conversation found", re.IGNORECASE),
    re.compile(r"session\b.*\b(?:not found|does not exist|expired|invalid)", re.IGNORECASE),
    re.compile(r"\bENOENT\b"),
)
SESSION_LOST_MESSAGE = "Conversation couldn't be restored (session expired). Send your message again to start fresh."


def build_args(settings: Settings, session_id: str, is_new: bool, message: str) -> list[str]:
    """Build Claude CLI arguments; the message always follows a `--` separator."""

    args = ["-p", "--output-format", "stream-json", "--verbose"]
    if is_new:
        args += ["--session-id", session_id]
    else:
        args += ["--resume", session_id]
    args += ["--permission-mode", settings.permission_mode]

    if settings.model:
        args += ["--model", settings.model]
    if settings.system_prompt:
        args += ["--append-system-prompt", settings.system_prompt]
    if settings.disable_slash_commands:
        args.append("--disable-slash-commands")
    if settings.setting_sources:
        args += ["--setting-sources", settings.setting_sources]
    if settings.strict_mcp_config:
        args.append("--strict-mcp-config")
    if settings.tools:
        args += ["--tools", *settings.tools]
    if settings.allowed_tools:
        args += ["--allowed-tools", *settings.allowed_tools]
    if settings.disallowed_tools:
        args += ["--disallowed-tools", *settings.disallowed_tools]
    if settings.mcp_config:
        args += ["--mcp-config", *settings.mcp_config]
    for directory in settings.add_dirs:
        args += ["--add-dir", str(directory)]

    # A message such as "--help" must never be read as a flag.
    args += ["--", message]
    return args


def looks_like_session_missing(stderr: str) -> bool:
    """Best-effort guess that `--resume` failed because Claude forgot the session."""

    return any(pattern.search(stderr) for pattern in SESSION_MISSING_PATTERNS)


def format_timeout(seconds: float) -> str:
    if seconds >= 60:
        return f"{int(seconds // 60)}min"
    return f"{seconds:g}s"


class Termination:
    """Two-phase stop for one process: SIGTERM now, SIGKILL after a grace period.

    One more grace period after the process is gone, `on_abandon` is called so
    readers stuck on pipes that a grandchild still holds open can be released.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        grace_seconds: float,
        on_abandon: Callable[[], None] | None = None,
    ) -> None:
        self._process = process
        self._grace_seconds = grace_seconds
        self._timer: asyncio.TimerHandle | None = None
        self.on_abandon = on_abandon
        self.requested = False

    def request(self) -> bool:
        """Start termination; returns False if it was already requested."""

        if self.requested:
            return False
        self.requested = True
        if self._process.returncode is not None:
            self._schedule(self._abandon)
            return True
        with contextlib.suppress(ProcessLookupError):
            self._process.terminate()
        self._schedule(self._force_kill)
        return True

    def _schedule(self, callback: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._grace_seconds, callback)

    def _force_kill(self) -> None:
        self._timer = None
        if self._process.returncode is None:
            logger.warning("runner.force_kill pid={}", self._process.pid)
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()
        self._schedule(self._abandon)

    def _abandon(self) -> None:
        self._timer = None
        if self.on_abandon is not None:
            self.on_abandon()

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class ProcessTracker:
    """Live Claude processes, so shutdown can stop them."""

    def __init__(self) -> None:
        self._processes: set[asyncio.subprocess.Process] = set()

    def register(self, process: asyncio.subprocess.Process) -> None:
        self._processes.add(process)

    def discard(self, process: asyncio.subprocess.Process) -> None:
        self._processes.discard(process)

    def __len__(self) -> int:
        return len(self._processes)

    async def terminate_all(self, grace_seconds: float = 5.0) -> None:
        processes = [process for process in self._processes if process.returncode is None]
        if not processes:
            return
        logger.info("runner.terminate_all count={}", len(processes))
        for process in processes:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
        _, pending = await asyncio.wait(
            [asyncio.ensure_future(process.wait()) for process in processes], timeout=grace_seconds
        )
        for process in processes:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
        if pending:
            await asyncio.wait(pending, timeout=grace_seconds)
        self._processes.clear()


@dataclass
class RunHandle:
    """A started run: the process, its event log and the pending result."""

    process: asyncio.subprocess.Process | None
    termination: Termination | None
    events: list[StreamEvent] = field(default_factory=list)
    task: asyncio.Future[TurnResult] | None = None

    async def wait(self) -> TurnResult:
        assert self.task is not None
        return await self.task

    def terminate(self) -> bool:
        if self.termination is None:
            return False
        return self.termination.request()


class ProcessRunner:
    """Spawn one Claude CLI process per turn and resolve it to a TurnResult."""

    def __init__(self, settings: Settings, sessions: SessionStore, tracker: ProcessTracker | None = None) -> None:
        self.settings = settings
        self.sessions = sessions
        self.tracker = tracker or ProcessTracker()

    async def run(self, user_id: int, message: str, on_event: EventListener | None = None) -> TurnResult:
        handle = await self.start(user_id, message, on_event)
        return await handle.wait()

    async def start(self, user_id: int, message: str, on_event: EventListener | None = None) -> RunHandle:
        session_id, is_new = self.sessions.get_or_create(user_id)
        args = build_args(self.settings, session_id, is_new, message)
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            process = await asyncio.create_subprocess_exec(
                self.settings.claude_path,
                *args,
                cwd=str(self.settings.workspace),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("runner.spawn_failed user_id={} path={} error={}", user_id, self.settings.claude_path, exc)
            failed = TurnResult(success=False, output="", error=str(exc), duration_ms=_elapsed_ms(loop, started))
            handle = RunHandle(process=None, termination=None)
            handle.task = loop.create_future()
            handle.task.set_result(failed)
            return handle

        logger.info(
            "runner.spawn user_id={} pid={} session_id={} resume={}", user_id, process.pid, session_id, not is_new
        )
        self.tracker.register(process)
        handle = RunHandle(process=process, termination=Termination(process, self.settings.kill_grace))
        handle.task = asyncio.create_task(
            self._supervise(handle, user_id=user_id, session_id=session_id, is_new=is_new, started=started, on_event=on_event)
        )
        return handle

    async def _supervise(
        self,
        handle: RunHandle,
        *,
        user_id: int,
        session_id: str,
        is_new: bool,
        started: float,
        on_event: EventListener | None,
    ) -> TurnResult:
        process = handle.process
        termination = handle.termination
        assert process is not None and termination is not None
        assert process.stdout is not None and process.stderr is not None
        loop = asyncio.get_running_loop()
        timed_out = False
        pipes_abandoned = False
        detected_session_id: str | None = None
        stderr_bytes = bytearray()

        def _on_timeout() -> None:
            nonlocal timed_out
            if process.returncode is None:
                timed_out = True
                logger.warning(
                    "runner.timeout user_id={} pid={} timeout={}", user_id, process.pid, self.settings.timeout
                )
            else:
                logger.warning("runner.pipes_held_open user_id={} pid={}", user_id, process.pid)
            termination.request()

        async def _read_stderr() -> None:
            while chunk := await process.stderr.read(READ_CHUNK_SIZE):
                stderr_bytes.extend(chunk)

        async def _read_stdout() -> None:
            nonlocal detected_session_id
            async for event in iter_stream_events(process.stdout):
                handle.events.append(event)
                if on_event is not None:
                    try:
                        on_event(event)
                    except Exception:
                        logger.opt(exception=True).warning("runner.listener_failed user_id={}", user_id)
                if event.is_init:
                    if event.session_id:
                        detected_session_id = event.session_id
                    # Claude has taken the id; later turns must resume it even if this one fails.
                    if is_new:
                        self.sessions.confirm(user_id, session_id)

        pump = asyncio.gather(_read_stderr(), _read_stdout())

        def _abandon_pipes() -> None:
            nonlocal pipes_abandoned
            if pump.done():
                return
            pipes_abandoned = True
            logger.warning("runner.pipes_abandoned user_id={} pid={}", user_id, process.pid)
            pump.cancel()

        termination.on_abandon = _abandon_pipes
        timer = loop.call_later(self.settings.timeout, _on_timeout)
        try:
            try:
                await pump
            except asyncio.CancelledError:
                if not pipes_abandoned:
                    raise
            if pipes_abandoned:
                code = process.returncode if process.returncode is not None else -signal.SIGKILL
            else:
                code = await process.wait()
        finally:
            timer.cancel()
            termination.disarm()
            self.tracker.discard(process)

        duration_ms = _elapsed_ms(loop, started)
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        reported_session = detected_session_id or session_id
        logger.info("runner.exit user_id={} pid={} code={} duration_ms={}", user_id, process.pid, code, duration_ms)

        if timed_out:
            return TurnResult(
                success=False,
                output="",
                error=(
                    f"Claude took too long (>{format_timeout(self.settings.timeout)}). "
                    "Try a simpler request or send again."
                ),
                session_id=reported_session,
                duration_ms=duration_ms,
            )

        if code != 0 and not is_new and looks_like_session_missing(stderr):
            logger.warning("runner.session_lost user_id={} session_id={}", user_id, session_id)
            self.sessions.reset(user_id)
            return TurnResult(
                success=False,
                output="",
                error=SESSION_LOST_MESSAGE,
                session_id=reported_session,
                duration_ms=duration_ms,
            )

        if code != 0:
            return TurnResult(
                success=False,
                output="",
                error=stderr.strip()[-STDERR_TAIL_CHARS:] or f"Process exited with code {code}",
                session_id=reported_session,
                duration_ms=duration_ms,
            )

        output, cost_usd = extract_result(handle.events)
        if is_new:
            self.sessions.confirm(user_id, session_id)
        return TurnResult(
            success=True,
            output=output,
            session_id=reported_session,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
        )


def _elapsed_ms(loop: asyncio.AbstractEventLoop, started: float) -> int:
    return int((loop.time() - started) * 1000)
