"""CLI for the reproducible test harness."""

import logging
import shlex
import signal
import uuid
from contextlib import contextmanager
from pathlib import Path

import click
from dotenv import load_dotenv

from .cancellation import CancelToken
from .config import HarnessConfig, load_config
from .errors import HarnessError
from .execution import RunOrchestrator
from .logging import TraceLogger
from .policy import ENV_VARS, KNOWN_GUARDS, NETWORK, EnvScope, IsolationPolicy, NetworkMode
from .protocol import Mount, RunSpec, RunStatus
from .sandbox import SandboxTier, select_sandbox

# Load .env file if present
load_dotenv()

# 2 is click's usage error.
EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.ERRORED: 3,
}

NETWORK_CHOICES = [m.value for m in NetworkMode]
ENV_MODE_CHOICES = [m.value for m in EnvScope]
SANDBOX_CHOICES = [t.value for t in SandboxTier]


@click.group()
@click.version_option(package_name="repro-harness")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug)")
def cli(verbose: int):
    """Reproducible test harness - run test commands in isolation."""
    level = logging.WARNING - 10 * min(verbose, 2)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _policy_options(fn):
    """Options shared by every command that computes an isolation policy."""
    options = [
        click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
                     help="Config file (default: ./repro-harness.yaml if present)"),
        click.option("--network", type=click.Choice(NETWORK_CHOICES), help="Network reachability"),
        click.option("--allow-host", "allow_hosts", multiple=True, help="Host the network guard lets through"),
        click.option("--env-mode", type=click.Choice(ENV_MODE_CHOICES), help="Environment isolation scope"),
        click.option("--keep-env", multiple=True, help="Host variable kept through env isolation"),
        click.option("--guard", "enable", multiple=True, type=click.Choice(KNOWN_GUARDS), help="Enable a guard"),
        click.option("--no-guard", "disable", multiple=True, type=click.Choice(KNOWN_GUARDS), help="Disable a guard"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _image_options(fn):
    options = [
        click.option("--dockerfile", type=click.Path(exists=True, dir_okay=False), help="Dockerfile for the sandbox image"),
        click.option("--context", type=click.Path(exists=True, file_okay=False), help="Build context (default: Dockerfile's dir)"),
        click.option("--target", help="Build stage to use (default: test)"),
        click.option("--tag", help="Image tag (default: repro-harness:test)"),
        click.option("--image-input", "image_inputs", multiple=True, type=click.Path(exists=True, dir_okay=False),
                     help="Dependency file that invalidates the image (repeatable)"),
        click.option("--sandbox", type=click.Choice(SANDBOX_CHOICES), help="Sandbox backend"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def resolve_policy(
    config: HarnessConfig,
    *,
    network: str | None = None,
    allow_hosts: tuple[str, ...] = (),
    env_mode: str | None = None,
    keep_env: tuple[str, ...] = (),
    enable: tuple[str, ...] = (),
    disable: tuple[str, ...] = (),
) -> IsolationPolicy:
    """Merge config and flags into one policy.  Flags win.

    Without a ``policy`` section in the config the flags alone build it;
    otherwise they adjust the configured guards.
    """
    mode = NetworkMode(network) if network else config.network
    scope = EnvScope(env_mode) if env_mode else config.env_mode

    if config.policy is None:
        policy = IsolationPolicy.from_flags(
            network=mode or NetworkMode.BLOCKED,
            allow_hosts=allow_hosts,
            env_isolation=scope != EnvScope.OFF,
            keep_env=keep_env,
        )
    else:
        policy = config.policy
        hosts = set(policy.allow(NETWORK)) | set(allow_hosts)
        if mode == NetworkMode.ALLOWED:
            policy = policy.with_guard(NETWORK, enabled=False, allow=hosts)
        elif mode is not None or allow_hosts:
            policy = policy.with_guard(NETWORK, enabled=True, allow=hosts)

        kept = set(policy.allow(ENV_VARS)) | set(keep_env)
        if scope == EnvScope.OFF:
            policy = policy.with_guard(ENV_VARS, enabled=False, allow=kept)
        elif scope is not None or keep_env:
            policy = policy.with_guard(ENV_VARS, enabled=policy.enabled(ENV_VARS) or scope is not None, allow=kept)

    for name in enable:
        policy = policy.with_guard(name, enabled=True, allow=policy.allow(name))
    for name in disable:
        policy = policy.with_guard(name, enabled=False, allow=policy.allow(name))
    return policy


@contextmanager
def _signals_cancel(token: CancelToken):
    """Turn SIGINT/SIGTERM into cancellation of ``token`` for the block."""
    def handler(signum, frame):
        token.cancel(f"received {signal.Signals(signum).name}")

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:
            # Not the main thread (e.g. CliRunner in a worker); no handler.
            pass
    try:
        yield token
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _fail(message: str) -> None:
    click.echo(f"✗ harness could not execute tests: {message}", err=True)
    raise SystemExit(EXIT_CODES[RunStatus.ERRORED])


@cli.command("run")
@click.argument("command", nargs=-1, required=True)
@click.option("--mount", "mounts", multiple=True, help="HOST:SANDBOX[:ro] (repeatable)")
@click.option("--workdir", help="Working directory inside the sandbox")
@click.option("--report", help="Sandbox path of the structured test report")
@click.option("--coverage", help="Sandbox path of the coverage data file")
@click.option("--timeout", type=float, help="Cancel the run after this many seconds")
@click.option("--trace", type=click.Path(dir_okay=False), help="Append a JSONL trace of the run to this file")
@click.option("-e", "--env", "env_pairs", multiple=True, help="KEY=VALUE passed to the command (repeatable)")
@_image_options
@_policy_options
def run(
    command: tuple[str, ...],
    mounts: tuple[str, ...],
    workdir: str | None,
    report: str | None,
    coverage: str | None,
    timeout: float | None,
    trace: str | None,
    env_pairs: tuple[str, ...],
    dockerfile: str | None,
    context: str | None,
    target: str | None,
    tag: str | None,
    image_inputs: tuple[str, ...],
    sandbox: str | None,
    config_path: str | None,
    network: str | None,
    allow_hosts: tuple[str, ...],
    env_mode: str | None,
    keep_env: tuple[str, ...],
    enable: tuple[str, ...],
    disable: tuple[str, ...],
):
    """Run COMMAND (e.g. "pytest -q tests") in an isolated sandbox."""
    try:
        config = load_config(config_path)
        policy = resolve_policy(
            config, network=network, allow_hosts=allow_hosts, env_mode=env_mode,
            keep_env=keep_env, enable=enable, disable=disable,
        )
        env = dict(config.env)
        for pair in env_pairs:
            key, sep, value = pair.partition("=")
            if not sep or not key:
                raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="-e")
            env[key] = value

        spec = RunSpec(
            command=command[0] if len(command) == 1 else shlex.join(command),
            mounts=tuple(config.parsed_mounts()) + tuple(Mount.parse(m) for m in mounts),
            workdir=workdir or config.workdir,
            env_mode=EnvScope(env_mode) if env_mode else (config.env_mode or EnvScope.TEST),
            network=NetworkMode(network) if network else (config.network or NetworkMode.BLOCKED),
            report_path=report or config.report,
            coverage_path=coverage or config.coverage,
            env=env,
            timeout=timeout or config.timeout,
        )
        image = config.image_definition(
            dockerfile=dockerfile, context=context, target=target, tag=tag,
            inputs=list(image_inputs) or None,
        )
    except HarnessError as e:
        _fail(str(e))

    tier = SandboxTier(sandbox) if sandbox else config.sandbox

    logger = None
    if trace:
        logger = TraceLogger(output_path=Path(trace), run_id=str(uuid.uuid4())[:8])

    orchestrator = RunOrchestrator(image=image, tier=tier, trace=logger)
    try:
        with _signals_cancel(CancelToken()) as token:
            result = orchestrator.execute(spec, policy, cancel=token)
    finally:
        if logger:
            logger.close()

    if result.stdout:
        click.echo(result.stdout, nl=not result.stdout.endswith("\n"))
    if result.stderr:
        click.echo(result.stderr, err=True, nl=not result.stderr.endswith("\n"))

    mark = "✓" if result.ok else "✗"
    click.echo(f"{mark} {result.summary()}", err=not result.ok)
    if result.report_path:
        click.echo(f"Report: {result.report_path}")
    if result.coverage_path:
        click.echo(f"Coverage: {result.coverage_path}")
    raise SystemExit(EXIT_CODES[result.status])


@cli.command("build")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="Config file (default: ./repro-harness.yaml if present)")
@_image_options
def build(
    config_path: str | None,
    dockerfile: str | None,
    context: str | None,
    target: str | None,
    tag: str | None,
    image_inputs: tuple[str, ...],
    sandbox: str | None,
):
    """Build (or reuse) the sandbox image without running anything."""
    try:
        config = load_config(config_path)
        image = config.image_definition(
            dockerfile=dockerfile, context=context, target=target, tag=tag,
            inputs=list(image_inputs) or None,
        )
        tier = SandboxTier(sandbox) if sandbox else config.sandbox
        with select_sandbox(tier, image=image) as box, _signals_cancel(CancelToken()) as token:
            built = box.build(image, token)
            report = box.last_build
    except HarnessError as e:
        log = getattr(e, "log", "")
        if log:
            click.echo(log, err=True)
        _fail(str(e))

    layers = report.rebuilt_layers if report else 0
    click.echo(f"✓ {built.tag} ({built.digest[:12]}): {layers} layer(s) rebuilt")


@cli.command("guards")
@click.option("--json", "as_json", is_flag=True, help="Print the policy as JSON")
@_policy_options
def guards(
    as_json: bool,
    config_path: str | None,
    network: str | None,
    allow_hosts: tuple[str, ...],
    env_mode: str | None,
    keep_env: tuple[str, ...],
    enable: tuple[str, ...],
    disable: tuple[str, ...],
):
    """List known guards and the effective isolation policy."""
    try:
        config = load_config(config_path)
        policy = resolve_policy(
            config, network=network, allow_hosts=allow_hosts, env_mode=env_mode,
            keep_env=keep_env, enable=enable, disable=disable,
        )
    except HarnessError as e:
        _fail(str(e))

    if as_json:
        click.echo(policy.to_json())
        return

    for name in KNOWN_GUARDS:
        state = "on " if policy.enabled(name) else "off"
        allow = ", ".join(sorted(policy.allow(name)))
        line = f"{name:<14} {state}"
        if allow:
            line += f"  allow: {allow}"
        click.echo(line)


if __name__ == "__main__":
    cli()
