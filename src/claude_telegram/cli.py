"""claude-telegram command line."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from claude_telegram.config import Settings, load_settings
from claude_telegram.errors import ClaudeCliCheckError, ClaudeTelegramError
from claude_telegram.hook_runtime import HookPipeline
from claude_telegram.logging_utils import configure_logging
from claude_telegram.plugins import load_plugins

REQUIRED_CLI_FLAGS = ("--output-format", "stream-json", "--permission-mode", "--resume", "--session-id")

app = typer.Typer(name="claude-telegram", help="Telegram bridge to the Claude Code CLI", add_completion=False)
console = Console()

ConfigOption = Annotated[
    Path | None, typer.Option("--config", "-c", help="Path to claude-telegram.yaml", show_default=False)
]


def _load_or_exit(config: Path | None) -> Settings:
    try:
        return load_settings(config)
    except ClaudeTelegramError as exc:
        console.print(f"[red]✗ Config error:[/red] {exc}")
        raise typer.Exit(1) from exc


def check_claude_cli(claude_path: str) -> str:
    """Return the CLI version after making sure it accepts the flags the bot relies on."""

    try:
        version = subprocess.run(  # noqa: S603
            [claude_path, "--version"], capture_output=True, text=True, check=True, timeout=30
        ).stdout.strip()
    except (OSError, subprocess.SubprocessError) as exc:
        raise ClaudeCliCheckError(f"Claude CLI not found or not executable: {claude_path}") from exc
    try:
        help_text = subprocess.run(  # noqa: S603
            [claude_path, "--help"], capture_output=True, text=True, check=True, timeout=30
        ).stdout
    except (OSError, subprocess.SubprocessError) as exc:
        raise ClaudeCliCheckError("Failed to validate Claude CLI help output") from exc
    missing = [flag for flag in REQUIRED_CLI_FLAGS if flag not in help_text]
    if missing:
        raise ClaudeCliCheckError(f"Claude CLI is missing required flags: {', '.join(missing)}")
    return version


@app.command("run")
def run_command(config: ConfigOption = None) -> None:
    """Start the bot."""

    from claude_telegram.app import run

    configure_logging()
    settings = _load_or_exit(config)
    try:
        run(settings)
    except ClaudeTelegramError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(1) from exc


@app.command("check")
def check_command(config: ConfigOption = None) -> None:
    """Validate the config and the Claude CLI without contacting Telegram."""

    console.print("Validating config...")
    settings = _load_or_exit(config)
    console.print("  [green]✓[/green] Config loaded")
    console.print(f"  [green]✓[/green] Workspace: {settings.workspace}")
    if settings.whitelist:
        console.print(f"  [green]✓[/green] Whitelist: {len(settings.whitelist)} user(s)")
    else:
        console.print("  [yellow]⚠[/yellow] Whitelist: empty (no one can use the bot)")
    console.print(f"  [green]✓[/green] Permission mode: {settings.permission_mode}")

    try:
        version = check_claude_cli(settings.claude_path)
    except ClaudeCliCheckError as exc:
        console.print(f"  [red]✗[/red] {exc}")
        raise typer.Exit(1) from exc
    console.print(f"  [green]✓[/green] Claude CLI: {version}")
    console.print("  [green]✓[/green] Claude CLI flags look compatible")
    console.print("\nAll checks passed.")


@app.command("hooks")
def hooks_command(config: ConfigOption = None) -> None:
    """Show which plugins implement which hooks."""

    configure_logging(profile="console")
    settings = _load_or_exit(config)
    pipeline = HookPipeline()
    try:
        for item in load_plugins(settings.plugin_specs()):
            pipeline.register(item.plugin, name=item.name)
    except ClaudeTelegramError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(1) from exc

    report = pipeline.hook_report()
    if not report:
        console.print("No plugin hooks registered.")
        return
    for hook_name, plugin_names in report.items():
        console.print(f"{hook_name}: {', '.join(plugin_names)}")


if __name__ == "__main__":
    app()
