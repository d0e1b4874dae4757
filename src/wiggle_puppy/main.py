"""CLI entrypoint for wiggle-puppy."""

import logging
import sys
from pathlib import Path

import rich_click as click
from rich.console import Console
from rich.logging import RichHandler

from wiggle_puppy import __version__
from wiggle_puppy.controllers import EXIT_CODES, RunCliController, RunCommand
from wiggle_puppy.errors import ConfigError

click.rich_click.USE_MARKDOWN = True
RUN_CONTROLLER = RunCliController()


@click.command()
@click.version_option(version=__version__, prog_name="wiggle-puppy")
@click.argument(
    "prompt_file",
    required=False,
    type=click.Path(dir_okay=False, path_type=Path),
)
@click.option("-p", "--prompt", "prompt_text", default=None, help="Inline prompt text.")
@click.option(
    "-a",
    "--agent",
    default=None,
    help="Agent executable. Defaults to WIGGLE_PUPPY_AGENT or `claude`.",
)
@click.option(
    "--agent-args",
    default=None,
    help=(
        "Arguments passed to the agent, split like a shell would. Supports {prompt} "
        "and {prompt_file}; otherwise the prompt is appended last. Default: `-p`."
    ),
)
@click.option(
    "-m",
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of agent runs (default 20).",
)
@click.option(
    "-s",
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Work document (JSON) tracking stories and their dependencies.",
)
@click.option(
    "-c",
    "--completion",
    "completion_phrase",
    default=None,
    help="Phrase that signals completion (default `<promise>COMPLETE</promise>`).",
)
@click.option(
    "-d",
    "--delay",
    "delay_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds to wait between iterations (default 2).",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Verbose output and logs.")
@click.option(
    "--no-auto-instruction",
    is_flag=True,
    default=False,
    help="Do not append the completion instruction to the prompt.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-iteration agent timeout in seconds.",
)
@click.option(
    "--always-spawn",
    is_flag=True,
    default=False,
    help="Spawn the agent even when every work item already passes.",
)
def wiggle_puppy(  # noqa: PLR0913
    prompt_file: Path | None,
    prompt_text: str | None,
    agent: str | None,
    agent_args: str | None,
    max_iterations: int | None,
    state_file: Path | None,
    completion_phrase: str | None,
    delay_seconds: float | None,
    verbose: bool,
    no_auto_instruction: bool,
    timeout_seconds: float | None,
    always_spawn: bool,
) -> None:
    """Run a coding agent in a loop until it reports completion."""

    if prompt_file is not None and prompt_text is not None:
        raise click.UsageError("Pass either PROMPT_FILE or --prompt, not both.")

    _configure_logging(verbose=verbose)
    try:
        result = RUN_CONTROLLER.run(
            RunCommand(
                prompt_file=prompt_file,
                prompt_text=prompt_text,
                agent=agent,
                agent_args=agent_args,
                max_iterations=max_iterations,
                state_file=state_file,
                completion_phrase=completion_phrase,
                delay_seconds=delay_seconds,
                verbose=verbose,
                auto_instruction=not no_auto_instruction,
                timeout_seconds=timeout_seconds,
                always_spawn=always_spawn,
            ),
            _emit_line,
        )
    except ConfigError as error:
        raise click.ClickException(str(error)) from error
    sys.exit(EXIT_CODES[result.state])


def _emit_line(line: str) -> None:
    click.echo(line)


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


if __name__ == "__main__":  # pragma: no cover
    wiggle_puppy()
