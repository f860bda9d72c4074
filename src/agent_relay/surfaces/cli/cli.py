import typer

from ... import __version__
from .commands.run import register_run_commands
from .commands.sandbox import register_sandbox_commands
from .commands.state import register_state_commands
from .commands.utils import raise_exit as _raise_exit
from .commands.utils import require_config as _require_config

app = typer.Typer(add_completion=False)
state_app = typer.Typer(add_completion=False)
sandbox_app = typer.Typer(add_completion=False)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"agent-relay {__version__}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


register_run_commands(app, require_config=_require_config, raise_exit=_raise_exit)
app.add_typer(state_app, name="state")
register_state_commands(
    state_app, require_config=_require_config, raise_exit=_raise_exit
)
app.add_typer(sandbox_app, name="sandbox")
register_sandbox_commands(
    sandbox_app, require_config=_require_config, raise_exit=_raise_exit
)
