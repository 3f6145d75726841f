# cli.py
import functools
import json
import logging

import click

from ecs_rollout import __version__
from ecs_rollout.aws.clients import AWSClientManager
from ecs_rollout.aws.gateway import ECSGateway
from ecs_rollout.deploy.orchestrator import DeploymentOrchestrator
from ecs_rollout.deploy.progress import select_reporter
from ecs_rollout.deploy.state import DeployOptions
from ecs_rollout.exceptions import DeploymentError, UsageError
from ecs_rollout.settings import Settings, get_settings
from ecs_rollout.templates.render import parse_run_task, parse_task_definition, resolve_template_path
from ecs_rollout.templates.values import merge_values

# Configure logging
logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.effective_log_level,
        format=LOG_FORMAT,
    )


def handle_errors(func):
    """Map deployment failures onto exit codes: usage errors 2, everything else 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except UsageError as e:
            raise click.UsageError(e.message)
        except DeploymentError as e:
            logger.debug("Deployment failed", exc_info=True)
            click.echo(f"❌ {e.message}", err=True)
            click.get_current_context().exit(1)
    return wrapper


def template_options(func):
    """--balances / --set / --set-string / --strict, shared by template-taking commands."""
    func = click.option("--strict", is_flag=True, default=False,
                        help="Fail when the template references a missing value")(func)
    func = click.option("--set-string", "string_values", multiple=True,
                        help="Set STRING values on the command line (can repeat or use comma-separated values)")(func)
    func = click.option("--set", "values", multiple=True,
                        help="Set values on the command line (can repeat or use comma-separated values)")(func)
    func = click.option("--balances", "-f", "balance_files", multiple=True,
                        help="Values in a JSON file, S3 URL or HTTP(S) URL (can repeat)")(func)
    return func


class CommandContext:
    """Per-invocation settings plus lazily built AWS objects."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.clients = AWSClientManager(settings)
        self._orchestrator = None

    def s3_client_for(self, *locations):
        if any(location and location.startswith("s3://") for location in locations):
            return self.clients.get_s3_client()
        return None

    def load_values(self, balance_files, values, string_values):
        merged = merge_values(balance_files, values, string_values,
                              s3_client=self.s3_client_for(*balance_files))
        logger.debug(f"Values used for template: {merged}")
        return merged

    def render_definition(self, path, template_values, strict):
        location = resolve_template_path(path, self.settings.definition_filename)
        return parse_task_definition(location, template_values, strict=strict,
                                     s3_client=self.s3_client_for(location))

    @property
    def orchestrator(self) -> DeploymentOrchestrator:
        if self._orchestrator is None:
            gateway = ECSGateway(self.clients.get_ecs_client())
            reporter = select_reporter(quiet=self.settings.quiet, debug=self.settings.debug)
            self._orchestrator = DeploymentOrchestrator(gateway, settings=self.settings, reporter=reporter)
        return self._orchestrator


pass_command_context = click.make_pass_decorator(CommandContext)


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Enable verbose output")
@click.option("--quiet", "-q", is_flag=True, default=False,
              help="Do not output to console; use the exit code to determine success/failure")
@click.pass_context
def cli(ctx, debug, quiet):
    """Manage deployment of task definitions and services on Amazon ECS.

    Renders a task definition template with user provided values, registers
    it, and creates or updates the ECS service, waiting until it is stable.
    """
    settings = get_settings()
    settings = settings.model_copy(update={
        'debug': debug or settings.debug,
        'quiet': quiet or settings.quiet,
    })
    configure_logging(settings)
    ctx.obj = CommandContext(settings)


@cli.command()
@click.argument("path")
@click.option("--execute", "-x", "templates", multiple=True,
              help="Only render the given template files in PATH (can repeat)")
@template_options
@pass_command_context
@handle_errors
def template(context, path, templates, balance_files, values, string_values, strict):
    """Render task definition templates in PATH and print them as JSON."""
    template_values = context.load_values(balance_files, values, string_values)
    for name in templates or (context.settings.definition_filename,):
        location = f"{path.rstrip('/')}/{name}"
        document = parse_task_definition(location, template_values, strict=strict,
                                         s3_client=context.s3_client_for(location))
        click.echo(json.dumps(document, indent=2))


@cli.command()
@click.argument("template_path", metavar="TEMPLATE")
@click.option("--dry-run", is_flag=True, default=False,
              help="Do not register; print the rendered task definition instead")
@template_options
@pass_command_context
@handle_errors
def register(context, template_path, dry_run, balance_files, values, string_values, strict):
    """Register a new revision of a task definition and print its ARN."""
    template_values = context.load_values(balance_files, values, string_values)
    document = context.render_definition(template_path, template_values, strict)
    arn = context.orchestrator.register(document, dry_run=dry_run)
    click.echo(json.dumps(document, indent=2) if dry_run else arn)


@cli.command()
@click.argument("cluster")
@click.argument("path", required=False)
@click.option("--name", "-n", "service", required=True, help="Name of the service to create")
@click.option("--task-definition-arn", default=None, help="Use an existing task definition instead of a template")
@click.option("--rollback", is_flag=True, default=False,
              help="Delete the service if it does not become stable")
@click.option("--timeout", type=click.IntRange(min=0), default=None,
              help="Seconds to wait for the service to become stable (0 waits forever)")
@click.option("--desired-count", type=click.IntRange(min=0), default=None,
              help="Number of tasks to run")
@template_options
@pass_command_context
@handle_errors
def install(context, cluster, path, service, task_definition_arn, rollback, timeout, desired_count,
            balance_files, values, string_values, strict):
    """Create SERVICE in CLUSTER from the task definition template in PATH."""
    document = _document_or_arn(context, path, task_definition_arn, balance_files, values, string_values, strict)
    options = DeployOptions(rollback=rollback, timeout_s=timeout, desired_count=desired_count)
    result = context.orchestrator.install(cluster, service, document=document,
                                          task_definition_arn=task_definition_arn, options=options)
    click.echo(result.task_definition_arn)


@cli.command()
@click.argument("cluster")
@click.argument("service")
@click.argument("path", required=False)
@click.option("--task-definition-arn", default=None, help="Use an existing task definition instead of a template")
@click.option("--rollback", is_flag=True, default=False,
              help="Return to the previous task definition if the service does not become stable")
@click.option("--deregister", is_flag=True, default=False,
              help="Deregister the previous task definition after a successful upgrade")
@click.option("--timeout", type=click.IntRange(min=0), default=None,
              help="Seconds to wait for the service to become stable (0 waits forever)")
@template_options
@pass_command_context
@handle_errors
def upgrade(context, cluster, service, path, task_definition_arn, rollback, deregister, timeout,
            balance_files, values, string_values, strict):
    """Point SERVICE in CLUSTER at a new task definition rendered from PATH."""
    document = _document_or_arn(context, path, task_definition_arn, balance_files, values, string_values, strict)
    options = DeployOptions(rollback=rollback, deregister=deregister, timeout_s=timeout)
    result = context.orchestrator.upgrade(cluster, service, document=document,
                                          task_definition_arn=task_definition_arn, options=options)
    click.echo(result.task_definition_arn)


@cli.command()
@click.argument("run_task_path", metavar="RUN_TASK_JSON", required=False)
@click.option("--task-definition", "task_definition_path", default=None,
              help="Task definition template to register and run")
@click.option("--task-definition-arn", default=None,
              help="Task definition ARN to use, overriding any in the task JSON")
@click.option("--cluster", default=None, help="Cluster to use, overriding any in the task JSON")
@click.option("--count", type=click.IntRange(min=1), default=None, help="Number of task instances to run")
@click.option("--timeout", type=click.IntRange(min=0), default=None,
              help="Seconds to wait for the tasks to stop (0 waits forever)")
@template_options
@pass_command_context
@handle_errors
def task(context, run_task_path, task_definition_path, task_definition_arn, cluster, count, timeout,
         balance_files, values, string_values, strict):
    """Run a one-shot task and wait for every container to exit successfully."""
    if task_definition_path and task_definition_arn:
        raise UsageError("--task-definition and --task-definition-arn are mutually exclusive")
    template_values = context.load_values(balance_files, values, string_values)
    run_input = {}
    if run_task_path:
        run_input = parse_run_task(run_task_path, template_values, strict=strict,
                                   s3_client=context.s3_client_for(run_task_path))
    document = None
    if task_definition_path:
        document = context.render_definition(task_definition_path, template_values, strict)
    result = context.orchestrator.run_task(run_input, document=document,
                                           task_definition_arn=task_definition_arn,
                                           cluster=cluster, count=count,
                                           options=DeployOptions(timeout_s=timeout))
    click.echo(result.task_definition_arn)


@cli.command()
def version():
    """Print the version"""
    click.echo(__version__)


def _document_or_arn(context, path, task_definition_arn, balance_files, values, string_values, strict):
    if path and task_definition_arn:
        raise UsageError("Provide either a template PATH or --task-definition-arn, not both")
    if not path and not task_definition_arn:
        raise UsageError("Provide a template PATH or --task-definition-arn")
    if not path:
        return None
    template_values = context.load_values(balance_files, values, string_values)
    return context.render_definition(path, template_values, strict)


if __name__ == "__main__":
    cli()
