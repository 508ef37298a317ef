"""UNetBridge — command-line entry point.

Runs one job (stage, execute, fetch, clean up) locally or on an SSH host
and prints its progress.  Ctrl-C cancels the job and waits for cleanup.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer

from unetbridge.config import ConfigManager
from unetbridge.connection import (
    HostIdentity,
    KeyFileCredential,
    PasswordCredential,
    SessionPool,
    UnknownHostError,
    accept_host_key,
    store_password,
)
from unetbridge.errors import ConfigurationError
from unetbridge.job import Job, JobParameters, JobSnapshot, JobState

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

_EXIT_CODES = {JobState.READY: 0, JobState.FAILED: 1, JobState.CANCELLED: 130}

app = typer.Typer(
    name="unetbridge",
    help="Stage data, run a worker locally or over SSH, and fetch its results",
    add_completion=False,
)

log = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def _split_pair(value: str, option: str) -> tuple[str, str]:
    left, sep, right = value.partition(":")
    if not sep or not left or not right:
        raise typer.BadParameter(f"expected A:B, got {value!r}", param_hint=option)
    return left, right


class _ProgressPrinter:
    """Prints ``[ 42.0%] label`` whenever the label or the tenth-percent changes."""

    def __init__(self) -> None:
        self._last: tuple[str, int] | None = None

    def __call__(self, snapshot: JobSnapshot) -> None:
        key = (snapshot.label, int(snapshot.progress * 1000))
        if key == self._last:
            return
        self._last = key
        typer.echo(f"[{snapshot.progress * 100:5.1f}%] {snapshot.label}")


def _configure_job(job: Job, params: JobParameters) -> None:
    """Configure *job*, offering to trust an unknown host key once."""
    try:
        job.configure(params)
        return
    except ConfigurationError as exc:
        cause = exc.__cause__
        if not isinstance(cause, UnknownHostError) or cause.key is None:
            raise
        typer.echo(str(cause), err=True)
        if not typer.confirm("Trust this host and continue?", default=False):
            raise
        accept_host_key(cause.hostname, cause.key)
    job.configure(params)


@app.command()
def run(
    command: Annotated[list[str], typer.Argument(help="Worker executable and its arguments (after --)")],
    host: Annotated[Optional[str], typer.Option("--host", "-H", help="Worker host; omit to run locally")] = None,
    port: Annotated[int, typer.Option("--port", "-p", help="SSH port")] = 22,
    user: Annotated[str, typer.Option("--user", "-u", help="SSH username")] = "",
    key: Annotated[Optional[Path], typer.Option("--key", "-i", help="Private key file")] = None,
    password_from_keyring: Annotated[
        bool, typer.Option("--password-from-keyring", help="Use the password stored in the OS keyring")
    ] = False,
    save_password: Annotated[bool, typer.Option("--save-password", help="Store the entered password in the keyring")] = False,
    trust_host: Annotated[bool, typer.Option("--trust-host", help="Accept unknown host keys without asking")] = False,
    upload: Annotated[
        Optional[list[str]], typer.Option("--upload", help="LOCAL:NAME, staged as NAME in the job folder")
    ] = None,
    download: Annotated[
        Optional[list[str]], typer.Option("--download", help="NAME:LOCAL, fetched from the job folder")
    ] = None,
    parser: Annotated[str, typer.Option("--parser", help="segmentation, finetune or none")] = "none",
    iterations: Annotated[int, typer.Option("--iterations", help="Iteration count for the finetune parser")] = 0,
    process_folder: Annotated[Optional[str], typer.Option("--process-folder", help="Staging root on the worker")] = None,
    keep_files: Annotated[bool, typer.Option("--keep-files", help="Keep staged files after success")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Run one job and exit with 0 (ready), 1 (failed) or 130 (cancelled).

    Example:
        unetbridge run -H gpu01 -u alice --upload in.h5:in.h5 \\
            --download out.h5:result.h5 -- caffe_unet tiled_predict -infileH5 {folder}/in.h5
    """
    _configure_logging(verbose)
    config = ConfigManager()

    identity = None
    credential = None
    if host:
        identity = HostIdentity(host, port, user)
        if key is not None:
            credential = KeyFileCredential(str(key))
        elif password_from_keyring:
            credential = PasswordCredential()
        else:
            password = typer.prompt(f"Password for {identity.account}", hide_input=True)
            credential = PasswordCredential(password)
            if save_password:
                store_password(identity, password)

    params = JobParameters(
        executable=command[0],
        arguments=command[1:],
        uploads=[_split_pair(u, "--upload") for u in upload or []],
        downloads=[_split_pair(d, "--download") for d in download or []],
        process_folder=process_folder or config.get("process_folder"),
        parser=parser,
        parser_options={"iterations": iterations} if parser == "finetune" else {},
        identity=identity,
        credential=credential,
        trust_unknown_hosts=trust_host,
        keep_remote_files=keep_files,
        progress_ranges=config.progress_ranges(),
    )

    pool = SessionPool(
        timeout=float(config.get("ssh_timeout")),
        keepalive_interval=int(config.get("keepalive_interval")),
        trust_unknown_hosts=trust_host,
    )
    job = Job(
        session_pool=pool,
        grace_period=float(config.get("grace_period")),
        poll_interval=float(config.get("poll_interval")),
        chunk_size=int(config.get("chunk_size")),
    )

    try:
        try:
            _configure_job(job, params)
        except ConfigurationError as exc:
            typer.echo(f"Configuration error: {exc}", err=True)
            raise typer.Exit(2) from exc

        if identity is not None:
            config.remember_host(
                identity,
                auth_method="key" if key is not None else "password",
                key_path=str(key) if key is not None else None,
            )

        job.subscribe(_ProgressPrinter())
        job.start()
        try:
            while not job.wait(0.5):
                pass
        except KeyboardInterrupt:
            typer.echo("Cancelling — waiting for the worker to stop and cleanup to finish", err=True)
            job.cancel()
            job.wait()
    finally:
        pool.close()

    outcome = job.outcome
    if outcome == JobState.FAILED and job.error is not None:
        typer.echo(f"Failed: {job.error}", err=True)
    for error in job.cleanup_errors:
        typer.echo(f"Cleanup: {error}", err=True)
    log.info("Job %s finished: %s", job.job_id, outcome.name if outcome else "unknown")
    raise typer.Exit(_EXIT_CODES.get(outcome, 1))


@app.command()
def hosts() -> None:
    """List hosts remembered after successful connections."""
    for entry in ConfigManager().get_hosts():
        typer.echo(f"{entry['username']}@{entry['host']}:{entry['port']}  ({entry.get('auth_method', 'password')})")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
