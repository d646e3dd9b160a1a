"""Main CLI entry point."""

import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from eb_converge.cli.output import render_manual_dns, render_summary, render_validation_errors
from eb_converge.config.parser import Config, ConfigValidationError
from eb_converge.config.specs import DesiredSpecs, build_desired_specs
from eb_converge.orchestrator.driver import ConvergenceDriver
from eb_converge.utils.aws_client import AWSClientManager
from eb_converge.utils.confirm import PromptConfirmer, StaticConfirmer
from eb_converge.utils.errors import ConvergenceError
from eb_converge.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)


@click.group()
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--log-dir', default='.eb-converge/logs', show_default=True, help='Directory for JSON-lines logs')
@click.pass_context
def cli(ctx, profile, region, log_level, log_dir):
    """Converge an Elastic Beanstalk application stack on AWS."""
    ctx.ensure_object(dict)
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level

    setup_logging(log_level, log_dir or None)


def load_config(config_path: str) -> Config:
    """Load and validate configuration, exiting with status 1 on failure."""
    config = Config(config_path)
    try:
        config.load()
    except ConfigValidationError as e:
        console.print(f"[red]Configuration validation failed:[/red] {e.message}")
        if e.errors:
            render_validation_errors(console, e.errors, config_path)
        sys.exit(1)
    return config


def build_specs(config: Config, skip_ssl: bool) -> DesiredSpecs:
    try:
        return build_desired_specs(config.settings, skip_ssl=skip_ssl)
    except ConvergenceError as e:
        console.print(f"[red]Configuration error:[/red] {e.to_user_message()}")
        sys.exit(1)


def _plan_table(specs: DesiredSpecs) -> Table:
    table = Table(show_header=True, header_style="bold", title="Managed Resources")
    table.add_column("Resource Type", style="cyan")
    table.add_column("Resource", style="white")

    table.add_row("s3_bucket", specs.static_bucket.name)
    table.add_row("s3_bucket", specs.uploads_bucket.name)
    if specs.role:
        table.add_row("iam_role", specs.role.role_name)
        table.add_row("iam_policy", specs.s3_policy.policy_name)
        table.add_row("iam_instance_profile", specs.instance_profile.profile_name)
    else:
        table.add_row("iam_role", f"{specs.instance_profile_name} (existing)")
    table.add_row("eb_application", specs.application.application_name)
    table.add_row("eb_environment", specs.environment.environment_name)
    if specs.https_listener:
        table.add_row("https_listener", specs.https_listener.certificate_arn)
    if specs.http_redirect:
        table.add_row("http_redirect", specs.http_redirect.environment_name)
    if specs.database:
        table.add_row("db_instance", specs.database.identifier)
        if specs.database.replicas.enabled:
            table.add_row("db_read_replicas", f"{specs.database.replicas.count} replica(s)")
    if specs.dns:
        mode = "Route 53" if specs.dns.auto_configure else "manual"
        table.add_row("route53_record", f"{specs.dns.domain} ({mode})")
    return table


@cli.command()
@click.option('--config', 'config_path', default='eb-converge.yaml', help='Path to configuration file (YAML or .env)')
@click.option('--yes', '-y', is_flag=True, help='Approve every update without prompting')
@click.option('--no-input', is_flag=True, help='Decline every update that needs approval')
@click.option('--skip-ssl', is_flag=True, help='Leave the HTTPS listener and redirect unmanaged')
@click.option('--dry-run', is_flag=True, help='Validate configuration and show managed resources only')
@click.pass_context
def converge(ctx, config_path, yes, no_input, skip_ssl, dry_run):
    """Converge AWS resources toward the configuration."""
    if yes and no_input:
        raise click.UsageError("--yes and --no-input are mutually exclusive")

    config = load_config(config_path)
    settings = config.settings
    if ctx.obj.get('region'):
        settings.aws.region = ctx.obj['region']
    profile = ctx.obj.get('profile') or settings.aws.profile

    specs = build_specs(config, skip_ssl)

    console.print(Panel.fit(
        f"[bold]Converging {settings.application.name}/{settings.application.environment}[/bold]\n"
        f"Region: {settings.aws.region}\n"
        f"Profile: {profile or 'default'}\n"
        f"Database: {'enabled' if specs.database else 'disabled'}\n"
        f"HTTPS: {'managed' if specs.https_listener else 'unmanaged'}",
        title="Convergence Configuration",
        border_style="cyan"
    ))

    if dry_run:
        console.print(_plan_table(specs))
        console.print("[green]✓ Configuration is valid[/green] (dry run, no AWS calls made)")
        return

    if yes:
        confirmer = StaticConfirmer(True)
    elif no_input:
        confirmer = StaticConfirmer(False)
    else:
        confirmer = PromptConfirmer()

    try:
        clients = AWSClientManager(profile=profile, region=settings.aws.region)
        clients.validate_credentials()
    except ConvergenceError as e:
        console.print(f"[red]AWS credential error:[/red] {e.to_user_message()}")
        sys.exit(1)

    driver = ConvergenceDriver(clients, specs, confirmer=confirmer, polling=settings.polling)
    summary = driver.run()

    console.print()
    render_summary(console, summary)
    if summary.manual_dns:
        console.print()
        render_manual_dns(console, summary.manual_dns)

    sys.exit(summary.exit_code)


@cli.command()
@click.option('--config', 'config_path', default='eb-converge.yaml', help='Path to configuration file (YAML or .env)')
@click.option('--skip-ssl', is_flag=True, help='Validate as if the HTTPS listener were unmanaged')
def validate(config_path, skip_ssl):
    """Validate configuration without contacting AWS."""
    config = load_config(config_path)
    specs = build_specs(config, skip_ssl)
    console.print(_plan_table(specs))
    console.print(f"[green]✓ Configuration is valid:[/green] {config_path}")


if __name__ == '__main__':
    cli()
