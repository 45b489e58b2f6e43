"""CLI entrypoint for stackshift."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from stackshift.artifact import StackArtifact
from stackshift.aws.session import AwsSession
from stackshift.deploy import DeployStackOptions, deploy_stack, destroy_stack
from stackshift.errors import ConfigurationError, StackshiftError
from stackshift.models import (
    ChangeSetDeployment,
    DirectDeployment,
    HotswapMode,
    NeedRollbackFirstDeployStackResult,
    ReplacementRequiresNoRollbackStackResult,
    StackActivityProgress,
)

EXIT_FAILURE = 1
EXIT_INTERVENTION = 2


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_time=False, show_path=False)],
        force=True,
    )
    # botocore is very chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)


def _parse_pairs(values: tuple[str, ...], option: str) -> dict[str, str]:
    pairs = {}
    for value in values:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{value}'", param_hint=option)
        pairs[key] = val
    return pairs


@click.group()
@click.option("-v", "--verbose", is_flag=True, envvar="STACKSHIFT_VERBOSE", help="Show debug logging.")
@click.option("--region", default=None, envvar="STACKSHIFT_REGION", help="AWS region.")
@click.pass_context
def main(ctx, verbose, region):
    """Deploy CloudFormation stacks, hotswapping where possible."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["region"] = region


@main.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.option("--stack", "stack_name", required=True, envvar="STACKSHIFT_STACK", help="Stack name.")
@click.option("--parameter", multiple=True, help="Template parameter (KEY=VALUE).")
@click.option("--tag", multiple=True, help="Stack tag (KEY=VALUE).")
@click.option("--notification-arn", multiple=True, help="SNS topic ARN for stack notifications.")
@click.option("--role-arn", default=None, envvar="STACKSHIFT_ROLE_ARN", help="Role CloudFormation assumes.")
@click.option(
    "--method",
    type=click.Choice(["change-set", "direct"]),
    default="change-set",
    envvar="STACKSHIFT_METHOD",
    help="Deployment method.",
)
@click.option("--change-set-name", default="cdk-deploy-change-set", help="Name of the change set.")
@click.option("--no-execute", is_flag=True, help="Create the change set but do not execute it.")
@click.option(
    "--import-resources",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON file with the resources to import.",
)
@click.option("--force", is_flag=True, help="Deploy even if nothing changed.")
@click.option("--no-rollback", is_flag=True, help="Do not roll back a failed deployment.")
@click.option("--hotswap", "hotswap_only", is_flag=True, help="Only hotswap, never deploy through CloudFormation.")
@click.option("--hotswap-fallback", is_flag=True, help="Hotswap, falling back to a full deployment.")
@click.option(
    "--previous-parameters/--no-previous-parameters",
    default=True,
    help="Reuse the deployed values of parameters that are not supplied.",
)
@click.option(
    "--progress",
    type=click.Choice([p.value for p in StackActivityProgress]),
    default=StackActivityProgress.BAR.value,
    envvar="STACKSHIFT_PROGRESS",
    help="How to show stack activity.",
)
@click.option("--ci", is_flag=True, envvar="CI", help="Running in CI; print events to stdout.")
@click.option("--quiet", is_flag=True, help="Do not show stack activity.")
@click.option("--manifest", type=click.Path(exists=True, dir_okay=False), default=None, help="Assembly manifest.")
@click.option("--termination-protection", is_flag=True, help="Enable termination protection.")
@click.pass_context
def deploy(
    ctx,
    template,
    stack_name,
    parameter,
    tag,
    notification_arn,
    role_arn,
    method,
    change_set_name,
    no_execute,
    import_resources,
    force,
    no_rollback,
    hotswap_only,
    hotswap_fallback,
    previous_parameters,
    progress,
    ci,
    quiet,
    manifest,
    termination_protection,
):
    """Deploy TEMPLATE as a stack."""
    if hotswap_only and hotswap_fallback:
        raise click.UsageError("--hotswap and --hotswap-fallback are mutually exclusive")
    if hotswap_only:
        hotswap = HotswapMode.HOTSWAP_ONLY
    elif hotswap_fallback:
        hotswap = HotswapMode.FALL_BACK
    else:
        hotswap = HotswapMode.FULL_DEPLOYMENT

    if method == "direct":
        deployment_method = DirectDeployment()
    else:
        deployment_method = ChangeSetDeployment(change_set_name=change_set_name, execute=not no_execute)

    tags = [{"Key": k, "Value": v} for k, v in _parse_pairs(tag, "--tag").items()]
    artifact = StackArtifact.from_files(
        template,
        stack_name,
        manifest_file=manifest,
        termination_protection=termination_protection,
    )

    options = DeployStackOptions(
        stack=artifact,
        session=AwsSession(region=ctx.obj["region"]),
        parameters=dict(_parse_pairs(parameter, "--parameter")),
        use_previous_parameters=previous_parameters,
        notification_arns=list(notification_arn) or None,
        tags=tags or None,
        role_arn=role_arn,
        deployment_method=deployment_method,
        force=force,
        quiet=quiet,
        ci=ci,
        progress=StackActivityProgress(progress),
        rollback=not no_rollback,
        hotswap=hotswap,
        resources_to_import=json.loads(Path(import_resources).read_text()) if import_resources else None,
    )

    try:
        result = asyncio.run(deploy_stack(options))
    except ConfigurationError as err:
        click.echo(f"Error: {err}", err=True)
        sys.exit(EXIT_INTERVENTION)
    except StackshiftError as err:
        click.echo(f"Error: {err}", err=True)
        sys.exit(EXIT_FAILURE)

    if isinstance(result, NeedRollbackFirstDeployStackResult):
        click.echo(
            f"Stack {stack_name} is in a paused fail state ({result.reason}) and needs to be rolled back "
            "before it can be deployed. Roll it back, or deploy with --no-rollback.",
            err=True,
        )
        sys.exit(EXIT_INTERVENTION)
    if isinstance(result, ReplacementRequiresNoRollbackStackResult):
        click.echo(
            f"The deployment of {stack_name} replaces resources, which is not possible with --no-rollback. "
            "Deploy again without --no-rollback.",
            err=True,
        )
        sys.exit(EXIT_INTERVENTION)

    if result.no_op:
        click.echo(f" ✅  {stack_name} (no changes)")
    else:
        click.echo(f" ✅  {stack_name}")
    if result.stack_arn:
        click.echo(f"Stack ARN:\n{result.stack_arn}")
    if result.outputs:
        click.echo("Outputs:")
        for key, value in sorted(result.outputs.items()):
            click.echo(f"{stack_name}.{key} = {value}")
    sys.exit(0)


@main.command()
@click.option("--stack", "stack_name", required=True, envvar="STACKSHIFT_STACK", help="Stack name.")
@click.option("--role-arn", default=None, envvar="STACKSHIFT_ROLE_ARN", help="Role CloudFormation assumes.")
@click.option("--ci", is_flag=True, envvar="CI", help="Running in CI; print events to stdout.")
@click.option("--quiet", is_flag=True, help="Do not show stack activity.")
@click.pass_context
def destroy(ctx, stack_name, role_arn, ci, quiet):
    """Delete a stack."""
    session = AwsSession(region=ctx.obj["region"])
    try:
        asyncio.run(destroy_stack(session, stack_name, role_arn=role_arn, quiet=quiet, ci=ci))
    except StackshiftError as err:
        click.echo(f"Error: {err}", err=True)
        sys.exit(EXIT_FAILURE)
    click.echo(f" ✅  {stack_name}: destroyed")
    sys.exit(0)
