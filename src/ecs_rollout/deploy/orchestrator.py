"""
Deployment orchestrator.

Drives one install, upgrade, one-shot task run or registration through the
DeploymentState machine:

    IDLE -> REGISTERING -> CONVERGING -> STABLE
                                      -> FAILED -> ROLLING_BACK -> ROLLED_BACK
                                                                -> ROLLBACK_FAILED

Failures before convergence go straight to FAILED. Every DeploymentError that
leaves this module carries the state the run ended in as ``final_state``.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from ecs_rollout.deploy.progress import ProgressReporter
from ecs_rollout.deploy.registrar import DefinitionRegistrar
from ecs_rollout.deploy.state import DeploymentResult, DeploymentRun, DeploymentState, DeployOptions
from ecs_rollout.deploy.waiter import ConvergenceWaiter, deployment_origin, is_missing, match_services
from ecs_rollout.exceptions import (
    AlreadyExistsError,
    DeploymentError,
    GatewayError,
    NotFoundError,
    PartialFailure,
    RollbackError,
    UsageError,
)
from ecs_rollout.settings import Settings, get_settings
from ecs_rollout.utils.decorators import log_operation

logger = logging.getLogger(__name__)

CLOUDWATCH_URL = (
    "https://{region}.console.aws.amazon.com/cloudwatch/home?region={region}"
    "#logEventViewer:group={group};stream={prefix}/{container}/{task_id}"
)


def deregister_command(task_definition_arn: str) -> str:
    return f"aws ecs deregister-task-definition --task-definition {task_definition_arn}"


def task_id_from_arn(task_arn: str) -> str:
    """``arn:aws:ecs:region:acct:task/cluster/abc123`` -> ``abc123``."""
    return task_arn.split(":")[-1].split("/")[-1]


class DeploymentOrchestrator:
    """Runs deployments against one ECS gateway."""

    def __init__(self, gateway, settings: Optional[Settings] = None,
                 reporter: Optional[ProgressReporter] = None,
                 waiter: Optional[ConvergenceWaiter] = None,
                 registrar: Optional[DefinitionRegistrar] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.waiter = waiter or ConvergenceWaiter(
            gateway,
            reporter=reporter,
            sleep=sleep,
            failure_markers=self.settings.failure_markers,
        )
        self.registrar = registrar or DefinitionRegistrar(gateway)

    # Operations

    @log_operation("Register task definition")
    def register(self, document: Dict[str, Any], dry_run: bool = False) -> Optional[str]:
        """Register a task definition; on dry run return None without calling ECS."""
        if dry_run:
            logger.info("Dry run: task definition not registered")
            return None
        return self.registrar.register(document)

    @log_operation("Install service")
    def install(self, cluster: str, service: str, document: Optional[Dict[str, Any]] = None,
                task_definition_arn: Optional[str] = None,
                options: Optional[DeployOptions] = None) -> DeploymentResult:
        """Create a service running a new (or existing) task definition and wait until stable.

        Raises:
            UsageError: both or neither of document / task_definition_arn given
            AlreadyExistsError: the service exists and is not INACTIVE
            ConvergenceError: the service did not stabilise (original error
                re-raised after a successful rollback)
            RollbackError: deleting the failed service did not complete
        """
        options = options or DeployOptions()
        self._require_one_source(document, task_definition_arn)
        run = DeploymentRun("install", f"{cluster}/{service}")

        try:
            existing = self._find_service(cluster, service)
        except DeploymentError as e:
            self._mark_failed(run, e)
            raise
        if existing is not None and existing.get('status') != 'INACTIVE':
            error = AlreadyExistsError(
                f"Service {service} already exists in cluster {cluster}. Use upgrade to update it"
            )
            self._mark_failed(run, error)
            raise error

        run.transition(DeploymentState.REGISTERING)
        try:
            arn, owned = self._obtain_definition(document, task_definition_arn)
        except DeploymentError as e:
            self._mark_failed(run, e)
            raise

        desired_count = options.desired_count
        if desired_count is None:
            desired_count = self.settings.desired_count
        try:
            created = self.gateway.create_service(cluster, service, arn, desired_count)
        except DeploymentError as e:
            self._mark_failed(run, e)
            if options.rollback:
                # No service was created; only the new registration is compensated
                run.transition(DeploymentState.ROLLING_BACK)
                if owned:
                    self._deregister_quietly(run, arn)
                run.transition(DeploymentState.ROLLED_BACK)
                e.final_state = run.state
            raise

        run.transition(DeploymentState.CONVERGING)
        origin = deployment_origin(created, 'createdAt')
        target = created.get('serviceArn') or service
        try:
            self.waiter.wait_for_stable(cluster, target, origin, self._stable_timeout(options),
                                        self.settings.poll_interval_s)
        except DeploymentError as e:
            self._mark_failed(run, e)
            if not options.rollback:
                if owned:
                    logger.warning(f"Service {service} left in place; task definition {arn} is still registered")
                raise
            self._rollback_install(run, cluster, service, arn, owned, e)
            raise

        run.transition(DeploymentState.STABLE)
        logger.info(f"✅ Service {service} is stable on {arn}")
        return DeploymentResult.from_run(run, arn)

    @log_operation("Upgrade service")
    def upgrade(self, cluster: str, service: str, document: Optional[Dict[str, Any]] = None,
                task_definition_arn: Optional[str] = None,
                options: Optional[DeployOptions] = None) -> DeploymentResult:
        """Point an existing service at a new (or existing) task definition and wait until stable.

        Raises:
            UsageError: both or neither of document / task_definition_arn given
            NotFoundError: the service does not exist (or is INACTIVE)
            ConvergenceError: the service did not stabilise (original error
                re-raised after a successful rollback)
            RollbackError: the service did not stabilise on the previous
                task definition either
        """
        options = options or DeployOptions()
        self._require_one_source(document, task_definition_arn)
        run = DeploymentRun("upgrade", f"{cluster}/{service}")

        try:
            existing = self._find_service(cluster, service)
            if existing is None or existing.get('status') == 'INACTIVE':
                raise NotFoundError(
                    f"Service {service} does not exist in cluster {cluster}. Use install to create it",
                    code="MISSING",
                )
            old_arn = existing.get('taskDefinition')
            if not old_arn:
                raise GatewayError(
                    f"Error retrieving information about service {service}: "
                    f"no current task definition in response"
                )
        except DeploymentError as e:
            self._mark_failed(run, e)
            raise
        logger.info(f"Current task definition of {service}: {old_arn}")

        run.transition(DeploymentState.REGISTERING)
        try:
            arn, owned = self._obtain_definition(document, task_definition_arn)
        except DeploymentError as e:
            self._mark_failed(run, e)
            raise

        run.transition(DeploymentState.CONVERGING)
        try:
            self._converge_upgrade(cluster, service, arn, options)
        except DeploymentError as e:
            self._mark_failed(run, e)
            if not options.rollback:
                raise
            self._rollback_upgrade(run, cluster, service, old_arn, arn, owned, options, e)
            raise

        run.transition(DeploymentState.STABLE)
        logger.info(f"✅ Service {service} is stable on {arn}")
        if options.deregister and old_arn != arn:
            self._deregister_quietly(run, old_arn)
        return DeploymentResult.from_run(run, arn)

    @log_operation("Run task")
    def run_task(self, run_input: Optional[Dict[str, Any]] = None,
                 document: Optional[Dict[str, Any]] = None,
                 task_definition_arn: Optional[str] = None,
                 cluster: Optional[str] = None,
                 count: Optional[int] = None,
                 options: Optional[DeployOptions] = None) -> DeploymentResult:
        """Run a one-shot task and require every container to exit with code 0.

        The task definition is, in order of precedence: a document to
        register, an explicit ARN, or the run input's own ``taskDefinition``.

        Raises:
            UsageError: conflicting or missing task definition
            PartialFailure: start failures, or tasks/containers that did not
                stop cleanly; ``failures`` lists every offending task/container
            ConvergenceTimeout: the tasks did not stop in time
        """
        options = options or DeployOptions()
        if document is not None and task_definition_arn:
            raise UsageError("Provide either a task definition document or a task definition ARN, not both")
        run_input = dict(run_input or {})
        if cluster:
            run_input['cluster'] = cluster
        if count is not None:
            run_input['count'] = count
        if document is None and not task_definition_arn and not run_input.get('taskDefinition'):
            raise UsageError("No task definition: supply a document, an ARN, or taskDefinition in the run input")
        task_cluster = run_input.get('cluster')
        run = DeploymentRun("task", run_input.get('taskDefinition') or task_definition_arn or "<document>")

        run.transition(DeploymentState.REGISTERING)
        try:
            if document is not None:
                arn = self.registrar.register(document)
                definition = document
            else:
                definition = self.registrar.resolve(task_definition_arn or run_input['taskDefinition'])
                arn = definition['taskDefinitionArn']
        except DeploymentError as e:
            self._mark_failed(run, e)
            raise
        run_input['taskDefinition'] = arn

        run.transition(DeploymentState.CONVERGING)
        try:
            self._run_and_verify(run_input, definition, options)
        except DeploymentError as e:
            self._mark_failed(run, e)
            raise

        run.transition(DeploymentState.STABLE)
        logger.info(f"✅ All tasks of {arn} completed successfully")
        return DeploymentResult.from_run(run, arn)

    # Install / upgrade helpers

    def _require_one_source(self, document, task_definition_arn) -> None:
        if document is not None and task_definition_arn:
            raise UsageError("Provide either a task definition document or a task definition ARN, not both")
        if document is None and not task_definition_arn:
            raise UsageError("Provide a task definition document or a task definition ARN")

    def _find_service(self, cluster: str, service: str) -> Optional[Dict[str, Any]]:
        """The matching service, or None when ECS reports it MISSING."""
        response = self.gateway.describe_services(cluster, [service])
        matched = match_services(response, service)
        if matched:
            return matched[0]
        if is_missing(response):
            return None
        if response.get('failures'):
            raise GatewayError(
                f"Error retrieving information about service {service}: {response['failures']}"
            )
        raise GatewayError(
            f"Error retrieving information about service {service}: "
            f"no failure reported but service not found in response"
        )

    def _obtain_definition(self, document, task_definition_arn) -> Tuple[str, bool]:
        """Register the document, or resolve the supplied ARN.

        Returns:
            (arn, owned) where owned is True when this run registered it
        """
        if document is not None:
            return self.registrar.register(document), True
        task_definition = self.registrar.resolve(task_definition_arn)
        return task_definition['taskDefinitionArn'], False

    def _stable_timeout(self, options: DeployOptions) -> int:
        if options.timeout_s is not None:
            return options.timeout_s
        return self.settings.stable_timeout_s

    def _converge_upgrade(self, cluster: str, service: str, arn: str, options: DeployOptions) -> None:
        updated = self.gateway.update_service(cluster, service, arn)
        origin = deployment_origin(updated, 'updatedAt')
        target = updated.get('serviceArn') or service
        self.waiter.wait_for_stable(cluster, target, origin, self._stable_timeout(options),
                                    self.settings.poll_interval_s)

    # Rollback

    def _rollback_install(self, run: DeploymentRun, cluster: str, service: str, arn: str,
                          owned: bool, original: DeploymentError) -> None:
        """Delete the new service and wait for it to drain. Raises RollbackError on failure."""
        run.transition(DeploymentState.ROLLING_BACK)
        logger.warning(f"⚠️ Rolling back install of {service}: deleting service")
        try:
            self.gateway.delete_service(cluster, service)
            self.waiter.wait_for_inactive(cluster, service, self.settings.inactive_timeout_s,
                                          self.settings.poll_interval_s)
        except DeploymentError as e:
            run.transition(DeploymentState.ROLLBACK_FAILED)
            run.cleanup_hints.append(
                f"aws ecs delete-service --cluster {cluster} --service {service} --force"
            )
            if owned:
                run.cleanup_hints.append(deregister_command(arn))
            for hint in run.cleanup_hints:
                logger.error(f"❌ Manual cleanup required: {hint}")
            error = RollbackError(f"Rollback of install of {service} failed: {e.message}", original=original)
            error.final_state = run.state
            raise error from e

        if owned:
            self._deregister_quietly(run, arn)
        run.transition(DeploymentState.ROLLED_BACK)
        original.final_state = run.state
        logger.warning(f"Rolled back install of {service}")

    def _rollback_upgrade(self, run: DeploymentRun, cluster: str, service: str, old_arn: str,
                          new_arn: str, owned: bool, options: DeployOptions,
                          original: DeploymentError) -> None:
        """Point the service back at the old definition. Raises RollbackError on failure."""
        run.transition(DeploymentState.ROLLING_BACK)
        logger.warning(f"⚠️ Rolling back {service} to {old_arn}")
        try:
            self._converge_upgrade(cluster, service, old_arn, options)
        except DeploymentError as e:
            run.transition(DeploymentState.ROLLBACK_FAILED)
            if owned:
                run.cleanup_hints.append(deregister_command(new_arn))
                logger.error(f"❌ Manual cleanup required: {deregister_command(new_arn)}")
            error = RollbackError(f"Rollback of {service} to {old_arn} failed: {e.message}", original=original)
            error.final_state = run.state
            raise error from e

        if owned:
            self._deregister_quietly(run, new_arn)
        run.transition(DeploymentState.ROLLED_BACK)
        original.final_state = run.state
        logger.warning(f"Rolled back {service} to {old_arn}")

    def _deregister_quietly(self, run: DeploymentRun, arn: str) -> None:
        try:
            self.gateway.deregister_task_definition(arn)
        except DeploymentError as e:
            hint = deregister_command(arn)
            logger.warning(f"⚠️ Could not deregister task definition {arn}: {e.message}. "
                           f"Clean up manually with: {hint}")
            run.cleanup_hints.append(hint)

    def _mark_failed(self, run: DeploymentRun, error: DeploymentError) -> None:
        run.transition(DeploymentState.FAILED)
        error.final_state = run.state

    # Task helpers

    def _run_and_verify(self, run_input: Dict[str, Any], definition: Dict[str, Any],
                        options: DeployOptions) -> None:
        arn = run_input['taskDefinition']
        logger.info(f"Running task {arn}")
        response = self.gateway.run_task(run_input)
        task_arns = [task['taskArn'] for task in response['tasks']]
        logger.debug(f"Run task output: task ARNs {task_arns}, failures {response['failures']}")

        self._log_task_locations(task_arns, definition)

        # Checked after logging so the locations of tasks that did start are shown
        if response['failures']:
            raise PartialFailure(
                f"Failed to start all instances of task {arn}; failures {response['failures']}",
                failures=[
                    {'task': f.get('arn'), 'container': None, 'reason': f.get('reason')}
                    for f in response['failures']
                ],
            )
        if not task_arns:
            raise PartialFailure(f"No tasks were started for {arn}")

        cluster = run_input.get('cluster')
        timeout = options.timeout_s if options.timeout_s is not None else self.settings.task_timeout_s
        self.waiter.wait_for_tasks_stopped(cluster, task_arns, timeout, self.settings.task_poll_interval_s)

        described = self.gateway.describe_tasks(cluster, task_arns)
        failures = self._task_failures(described, task_arns)
        if failures:
            raise PartialFailure(
                f"{len(failures)} task/container failure(s) for {arn}: "
                + "; ".join(f['reason'] for f in failures),
                failures=failures,
            )

    def _task_failures(self, described: Dict[str, Any], task_arns: List[str]) -> List[Dict[str, Any]]:
        failures = [
            {'task': f.get('arn'), 'container': None,
             'reason': f"failure while describing task: {f.get('reason')}"}
            for f in described['failures']
        ]
        returned = {task.get('taskArn') for task in described['tasks']}
        for task_arn in task_arns:
            if task_arn not in returned and not any(f['task'] == task_arn for f in failures):
                failures.append({'task': task_arn, 'container': None,
                                 'reason': f"task {task_arn} was not returned by DescribeTasks"})

        for task in described['tasks']:
            task_arn = task.get('taskArn')
            if task.get('lastStatus') != 'STOPPED':
                failures.append({'task': task_arn, 'container': None,
                                 'reason': f"task {task_arn} is {task.get('lastStatus')}, expected STOPPED"})
                continue
            for container in task.get('containers', []):
                name = container.get('name')
                exit_code = container.get('exitCode')
                if exit_code is None:
                    failures.append({
                        'task': task_arn, 'container': name, 'exit_code': None,
                        'reason': f"container {name} in task {task_arn} has no exit code; "
                                  f"task may have failed before container started",
                    })
                elif exit_code != 0:
                    failures.append({
                        'task': task_arn, 'container': name, 'exit_code': exit_code,
                        'reason': f"container {name} in task {task_arn} exited with non-zero "
                                  f"exit code {exit_code}; see logs for details",
                    })
        return failures

    def _log_task_locations(self, task_arns: List[str], definition: Dict[str, Any]) -> None:
        for task_arn in task_arns:
            task_id = task_id_from_arn(task_arn)
            for container in definition.get('containerDefinitions', []):
                log_configuration = container.get('logConfiguration') or {}
                if log_configuration.get('logDriver') != 'awslogs':
                    continue
                log_options = log_configuration.get('options') or {}
                # Without an explicit stream prefix the stream name cannot be predicted
                prefix = log_options.get('awslogs-stream-prefix')
                region = log_options.get('awslogs-region') or self.settings.aws_region
                group = log_options.get('awslogs-group')
                if not (prefix and region and group):
                    continue
                url = CLOUDWATCH_URL.format(region=region, group=group, prefix=prefix,
                                            container=container.get('name'), task_id=task_id)
                logger.info(f"Task log location: {url}")
