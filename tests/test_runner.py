from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Callable
from pathlib import Path

import pytest

from claude_telegram.config import Settings
from claude_telegram.events import StreamEvent
from claude_telegram.runner import (
    SESSION_LOST_MESSAGE,
    ProcessRunner,
    ProcessTracker,
    build_args,
    format_timeout,
    looks_like_session_missing,
)
from claude_telegram.session import SessionStore, derive_session_id

SUCCESS_SCRIPT = """
import json, sys
from pathlib import Path
Path(sys.argv[0] + ".args").write_text(json.dumps(sys.argv[1:]))
print(json.dumps({"type": "system", "subtype": "init", "session_id": "tool-sid"}), flush=True)
print("some banner noise", flush=True)
print(json.dumps({"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Read"}]}}), flush=True)
sys.stdout.write(json.dumps({"type": "result", "result": "hi there", "total_cost_usd": 0.0123}))
"""

FALLBACK_SCRIPT = """
import asyncio
import json
for text in ("first part", "second part"):
    print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}))
"""

SESSION_MISSING_SCRIPT = """
import sys
sys.stderr.write("Error: No conversation found with session ID: abc\\n")
sys.exit(1)
"""

GENERIC_FAILURE_SCRIPT = """
import sys
sys.stderr.write("x" * 500 + "rate limited, try later")
sys.exit(2)
"""

STUBBORN_SCRIPT = """
import json, signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print(json.dumps({"type": "system", "subtype": "init", "session_id": "slow"}), flush=True)
time.sleep(60)
"""

SLEEPY_SCRIPT = """
import time
time.sleep(60)
"""


def test_build_args_puts_message_after_separator(make_settings: Callable[..., Settings], workspace: Path) -> None:
    extra = workspace / "extra"
    extra.mkdir()
    settings = make_settings(
        model="opus",
        system_prompt="be brief",
        disable_slash_commands=True,
        setting_sources=["user", "project"],
        strict_mcp_config=True,
        tools=["Read", "Grep"],
        allowed_tools=["Read"],
        disallowed_tools=["Bash"],
        mcp_config=["mcp.json"],
        add_dirs=[extra],
        permission_mode="plan",
    )

    args = build_args(settings, "sid", False, "--help")

    assert args[:4] == ["-p", "--output-format", "stream-json", "--verbose"]
    assert args[-2:] == ["--", "--help"]
    assert ["--resume", "sid"] == args[4:6]
    assert "--session-id" not in args
    joined = " ".join(args)
    assert "--permission-mode plan" in joined
    assert "--model opus" in joined
    assert "--append-system-prompt be brief" in joined
    assert "--setting-sources user,project" in joined
    assert "--tools Read Grep" in joined
    assert "--allowed-tools Read" in joined
    assert "--disallowed-tools Bash" in joined
    assert "--mcp-config mcp.json" in joined
    assert f"--add-dir {extra.resolve()}" in joined
    assert "--disable-slash-commands" in args
    assert "--strict-mcp-config" in args


def test_build_args_uses_session_id_for_new_sessions(make_settings: Callable[..., Settings]) -> None:
    args = build_args(make_settings(), "sid", True, "hello")

    assert args[4:6] == ["--session-id", "sid"]
    assert "--model" not in args
    assert args[-2:] == ["--", "hello"]


def test_session_missing_heuristic() -> None:
    assert looks_like_session_missing("No conversation found with session ID: 123")
    assert looks_like_session_missing("Error: session abc not found")
    assert looks_like_session_missing("ENOENT: no such file or directory")
    assert not looks_like_session_missing("API Error: 529 overloaded")
    assert not looks_like_session_missing("")


def test_format_timeout() -> None:
    assert format_timeout(300) == "5min"
    assert format_timeout(1.0) == "1s"
    assert format_timeout(0.5) == "0.5s"


@pytest.mark.asyncio
async def test_successful_turn_creates_and_confirms_session(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    script = fake_claude(SUCCESS_SCRIPT)
    tracker = ProcessTracker()
    runner = ProcessRunner(make_settings(claude_path=script), sessions, tracker)
    seen: list[StreamEvent] = []

    result = await runner.run(1, "hello", on_event=seen.append)

    assert result.success is True
    assert result.output == "hi there"
    assert result.cost_usd == pytest.approx(0.0123)
    assert result.session_id == "tool-sid"
    assert result.duration_ms >= 0
    assert [event.type for event in seen] == ["system", "assistant", "result"]
    assert len(tracker) == 0

    args = json.loads(Path(script + ".args").read_text())
    assert args[4:6] == ["--session-id", derive_session_id("1")]
    assert args[-2:] == ["--", "hello"]
    assert sessions.get_or_create(1) == (derive_session_id("1"), False)


@pytest.mark.asyncio
async def test_second_turn_resumes_session(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    script = fake_claude(SUCCESS_SCRIPT)
    runner = ProcessRunner(make_settings(claude_path=script), sessions)

    await runner.run(1, "first")
    await runner.run(1, "second")

    args = json.loads(Path(script + ".args").read_text())
    assert args[4:6] == ["--resume", derive_session_id("1")]


@pytest.mark.asyncio
async def test_output_falls_back_to_assistant_text(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    runner = ProcessRunner(make_settings(claude_path=fake_claude(FALLBACK_SCRIPT)), sessions)

    result = await runner.run(1, "hello")

    assert result.success is True
    assert result.output == "first part\nsecond part"
    assert result.cost_usd is None


@pytest.mark.asyncio
async def test_session_loss_resets_store(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    previous, _ = sessions.get_or_create(1)
    sessions.confirm(1)
    runner = ProcessRunner(make_settings(claude_path=fake_claude(SESSION_MISSING_SCRIPT)), sessions)

    result = await runner.run(1, "hello again")

    assert result.success is False
    assert result.error == SESSION_LOST_MESSAGE
    fresh, is_new = sessions.get_or_create(1)
    assert fresh != previous
    assert is_new is True


@pytest.mark.asyncio
async def test_session_missing_text_on_new_session_is_generic_failure(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    runner = ProcessRunner(make_settings(claude_path=fake_claude(SESSION_MISSING_SCRIPT)), sessions)

    result = await runner.run(1, "hello")

    assert result.success is False
    assert result.error is not None
    assert "No conversation found" in result.error
    assert sessions.get(1) == derive_session_id("1")


@pytest.mark.asyncio
async def test_other_failures_report_bounded_stderr_tail(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    previous, _ = sessions.get_or_create(1)
    sessions.confirm(1)
    runner = ProcessRunner(make_settings(claude_path=fake_claude(GENERIC_FAILURE_SCRIPT)), sessions)

    result = await runner.run(1, "hello")

    assert result.success is False
    assert result.error is not None
    assert len(result.error) == 300
    assert result.error.endswith("rate limited, try later")
    assert sessions.get(1) == previous


@pytest.mark.asyncio
async def test_timeout_escalates_to_kill(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    tracker = ProcessTracker()
    settings = make_settings(claude_path=fake_claude(STUBBORN_SCRIPT), timeout=1.0, kill_grace=0.3)
    runner = ProcessRunner(settings, sessions, tracker)

    handle = await runner.start(1, "never finishes")
    result = await handle.wait()

    assert result.success is False
    assert result.error is not None
    assert ">1s" in result.error
    assert result.session_id == "slow"
    assert handle.process is not None
    assert handle.process.returncode == -signal.SIGKILL
    assert handle.termination is not None and handle.termination.requested
    assert len(tracker) == 0


@pytest.mark.asyncio
async def test_terminate_handle_stops_process(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    runner = ProcessRunner(make_settings(claude_path=fake_claude(SLEEPY_SCRIPT), kill_grace=2), sessions)

    handle = await runner.start(1, "stop me")
    assert handle.terminate() is True
    assert handle.terminate() is False
    result = await handle.wait()

    assert result.success is False
    assert handle.process is not None
    assert handle.process.returncode == -signal.SIGTERM


@pytest.mark.asyncio
async def test_spawn_failure_becomes_failed_result(make_settings: Callable[..., Settings], sessions: SessionStore, workspace: Path) -> None:
    runner = ProcessRunner(make_settings(claude_path=str(workspace / "missing-claude")), sessions)

    handle = await runner.start(1, "hello")
    result = await handle.wait()

    assert handle.process is None
    assert handle.terminate() is False
    assert result.success is False
    assert result.error


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_run(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    runner = ProcessRunner(make_settings(claude_path=fake_claude(SUCCESS_SCRIPT)), sessions)

    def _explode(_event: StreamEvent) -> None:
        raise RuntimeError("listener broke")

    result = await runner.run(1, "hello", on_event=_explode)

    assert result.success is True
    assert result.output == "hi there"


INIT_THEN_FAIL_SCRIPT = """
import json, sys
from pathlib import Path
Path(sys.argv[0] + ".args").write_text(json.dumps(sys.argv[1:]))
print(json.dumps({"type": "system", "subtype": "init", "session_id": "accepted"}), flush=True)
sys.stderr.write("API Error: 500 internal server error")
sys.exit(1)
"""

GRANDCHILD_HOLDS_PIPES_SCRIPT = """
import json, subprocess, sys
subprocess.Popen([sys.executable, "-c", "import time; time.sleep(10)"])
print(json.dumps({"type": "result", "result": "done"}), flush=True)
"""


@pytest.mark.asyncio
async def test_failed_turn_after_init_resumes_next_time(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    script = fake_claude(INIT_THEN_FAIL_SCRIPT)
    runner = ProcessRunner(make_settings(claude_path=script), sessions)

    first = await runner.run(1, "first")
    first_args = json.loads(Path(script + ".args").read_text())
    second = await runner.run(1, "second")
    second_args = json.loads(Path(script + ".args").read_text())

    assert first.success is False
    assert second.success is False
    assert first_args[4:6] == ["--session-id", derive_session_id("1")]
    assert second_args[4:6] == ["--resume", derive_session_id("1")]


@pytest.mark.asyncio
async def test_pipes_held_by_grandchild_are_released_after_deadline(
    make_settings: Callable[..., Settings], sessions: SessionStore, fake_claude: Callable[[str], str]
) -> None:
    settings = make_settings(claude_path=fake_claude(GRANDCHILD_HOLDS_PIPES_SCRIPT), timeout=1.0, kill_grace=0.2)
    runner = ProcessRunner(settings, sessions)

    handle = await runner.start(1, "hello")
    result = await asyncio.wait_for(handle.wait(), timeout=5)

    assert result.success is True
    assert result.output == "done"
    assert handle.process is not None
    assert handle.process.returncode == 0
