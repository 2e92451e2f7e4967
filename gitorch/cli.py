"""
CLI interface for the gitorch deployment orchestrator.

Provides commands to initialize configuration, inspect artifact bundles
and run the deployment pipeline for a bundle directory.

A bundle directory holds the generated artifact files plus an optional
bundle.yaml manifest (name, owner, description, version, metadata).
"""

import json
import signal
import sys
from pathlib import Path

import click

from gitorch import __version__
from gitorch.providers import SUPPORTED_PROVIDERS


@click.group()
@click.version_option(version=__version__, prog_name="gitorch")
@click.pass_context
def main(ctx):
    """
    gitorch - GitOps deployment orchestrator.

    Push an artifact bundle through review, validation, merge, deployment
    and catalog registration.
    """
    from gitorch.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except Exception as e:
        # init runs without a config; other commands check ctx.obj["config"]
        ctx.obj["config_error"] = str(e)


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'gitorch init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _load_bundle_or_exit(bundle_dir: str):
    from gitorch.bundle import BundleError, load_bundle

    try:
        return load_bundle(Path(bundle_dir))
    except BundleError as e:
        click.echo(f"✗ Invalid bundle: {e}", err=True)
        raise SystemExit(1)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize gitorch configuration."""
    from gitorch.config import GitorchConfig, get_gitorch_home
    import yaml

    home = get_gitorch_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(GitorchConfig.default_dict(home), sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# GITORCH_PORTAL_TOKEN=...\n")

    click.echo(f"Initialized gitorch config at {cfg_path}")


@main.command("run")
@click.argument("bundle_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--dry-run", is_flag=True, help="Run against in-memory clients (no git, CI or portal calls)")
@click.option("--provider", type=click.Choice(SUPPORTED_PROVIDERS),
              help="Override the configured validation provider")
@click.option("--message", "-m", default="", help="Commit message for the artifact commit")
@click.option("--no-rollback", is_flag=True, help="Leave completed stages in place on failure")
@click.option("--no-recovery", is_flag=True, help="Disable recovery strategies")
@click.option("--json", "as_json", is_flag=True, help="Print the pipeline result as JSON")
@click.pass_context
def run(ctx, bundle_dir: str, dry_run: bool, provider: str, message: str,
        no_rollback: bool, no_recovery: bool, as_json: bool):
    """
    Run the deployment pipeline for a bundle.

    BUNDLE_DIR is a directory of generated artifact files.

    Examples:

        gitorch run ./my-template

        gitorch run ./my-template --dry-run

        gitorch run ./my-template --provider gitlab-ci --json
    """
    from gitorch.clients import create_clients
    from gitorch.orchestrator import Orchestrator, PipelineInput
    from gitorch.schemas import RunStatus
    from gitorch.stages.base import CancelToken
    from gitorch.utils import (
        format_duration,
        print_banner,
        print_error,
        print_info,
        print_success,
        print_warning,
        setup_logging,
    )

    config = _require_config(ctx)
    if provider:
        config.validation.provider = provider
    if no_rollback:
        config.error_handling.enable_rollback = False
    if no_recovery:
        config.error_handling.enable_recovery = False

    setup_logging(
        log_file=config.logging.get_log_file_path(config.home),
        log_level=config.logging.get_log_level(),
        log_format=config.logging.format,
        console_output=config.logging.console and not as_json,
    )

    bundle = _load_bundle_or_exit(bundle_dir)

    token = CancelToken()

    def _cancel(signum, frame):
        token.cancel(f"received {signal.Signals(signum).name}")

    previous = {sig: signal.signal(sig, _cancel) for sig in (signal.SIGINT, signal.SIGTERM)}

    if not as_json:
        print_banner(f"gitorch: {bundle.name}" + (" (dry run)" if dry_run else ""))

    try:
        orchestrator = Orchestrator(create_clients(config, dry_run=dry_run), config)
        result = orchestrator.execute(PipelineInput(bundle=bundle, commit_message=message), cancel_token=token)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    elif result.success:
        print_success(f"{bundle.name} deployed and registered ({result.final_state.value})")
        if result.deployment:
            print_info(f"Serving from {result.deployment.serving_path}")
    elif result.degraded:
        print_warning(f"{bundle.name} finished degraded ({result.final_state.value})")
        for msg in result.messages:
            print_warning(msg)
    else:
        print_error(f"{bundle.name} failed in state {result.final_state.value}: {result.error}")
        for record in result.compensation:
            print_info(f"rollback {record.action_id}: {record.status.value}")

    if not as_json:
        print_info(f"Operation {result.operation_id} took {format_duration(result.duration_ms / 1000)}")

    if result.status == RunStatus.FAILED:
        sys.exit(1)


@main.command("providers")
def list_providers():
    """List supported validation providers and their workflow files."""
    from gitorch.providers import ProviderKind, workflow_file

    for kind in ProviderKind:
        click.echo(f"{kind.value:<16} {workflow_file(kind)}")


@main.group("config")
def config_group():
    """Inspect configuration."""
    pass


@config_group.command("show")
@click.pass_context
def show_config(ctx):
    """Show the loaded configuration."""
    import yaml

    config = _require_config(ctx)
    click.echo(yaml.safe_dump(config.to_dict(), sort_keys=False))


@main.group("bundle")
def bundle_group():
    """Inspect artifact bundles."""
    pass


@bundle_group.command("inspect")
@click.argument("bundle_dir", type=click.Path(exists=True, file_okay=False))
def inspect_bundle(bundle_dir: str):
    """Show a bundle's manifest, files and the impact its review request would carry."""
    from gitorch.stages import analyze_impact, sanitize_repository_name

    bundle = _load_bundle_or_exit(bundle_dir)
    click.echo(f"Bundle: {bundle.name}")
    click.echo(f"Repository: {sanitize_repository_name(bundle.name)}")
    click.echo(f"Owner: {bundle.owner}")
    click.echo(f"Version: {bundle.version}")
    click.echo(f"Files ({len(bundle.files)}):")
    for f in bundle.files:
        click.echo(f"  {f.path} ({f.line_count} lines)")

    impact = analyze_impact(bundle.as_mapping())
    click.echo(f"Risk: {impact.risk_level.value} (security impact: {impact.security_impact.value})")
    click.echo(f"Required reviewers: {impact.required_reviewers}")
    click.echo(f"Estimated review: {impact.estimated_review_minutes} minutes")


if __name__ == "__main__":
    main()
