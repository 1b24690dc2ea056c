"""remtex - continuously compile a LaTeX document on a remote host."""
from __future__ import annotations

import click

from remtex_core.errors import SetupError
from remtex_core.protocol import POLL_INTERVAL
from remtex_session.loop import Session, SessionConfig, resolve_source


@click.command()
@click.argument("host")
@click.argument("source")
@click.option(
    "--interval",
    type=float,
    default=POLL_INTERVAL,
    show_default=True,
    envvar="REMTEX_INTERVAL",
    help="Change polling interval and settle threshold, in seconds.",
)
@click.option("--compiler", default=None, help="Remote compiler command; {job} is the job name.")
@click.option("--remote-python", default=None, help="Python interpreter on the remote host.")
@click.option("--once", is_flag=True, help="Compile once and exit.")
@click.option("--verbose", "-v", is_flag=True, help="Always show compiler output.")
@click.option("--bell", is_flag=True, help="Ring the terminal bell after each compile.")
def remtex(
    host: str,
    source: str,
    interval: float,
    compiler: str | None,
    remote_python: str | None,
    once: bool,
    verbose: bool,
    bell: bool,
) -> None:
    """Compile SOURCE on HOST whenever it changes ('-' for this machine)."""
    try:
        config = SessionConfig(
            host=host,
            source=resolve_source(source),
            interval=interval,
            compiler=compiler,
            python=remote_python,
            verbose=verbose,
            bell=bell,
        )
    except SetupError as e:
        click.echo(f"FATAL: {e}", err=True)
        raise SystemExit(1)

    session = Session(config)
    try:
        status = session.run(once=once)
    except SetupError as e:
        click.echo(f"FATAL: {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        status = session.status
    raise SystemExit(status if 0 <= status < 256 else 1)


def main() -> None:
    # Usage errors exit 1, like setup errors.
    try:
        remtex.main(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        raise SystemExit(1)
    except click.exceptions.Abort:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
