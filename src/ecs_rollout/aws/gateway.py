"""
ECS gateway.

Thin wrapper over a boto3 ECS client exposing exactly the calls the deployment
core consumes. Each method makes one API call, returns the plain response
payload and translates botocore errors into the project's exception taxonomy
with the operation named in the message. Nothing here retries.
"""
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ecs_rollout.exceptions import GatewayError, NotFoundError, RegistrationError

logger = logging.getLogger(__name__)

# DescribeServices failure reason for a service that does not exist
MISSING_REASON = "MISSING"

# Error codes ECS returns when a task definition cannot be found
_TASK_DEFINITION_NOT_FOUND_CODES = ("ClientException", "InvalidParameterException")


def _error_code(error: Exception) -> Optional[str]:
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code')
    return None


class ECSGateway:
    """Remote cluster gateway over the ECS API."""

    def __init__(self, ecs_client):
        self.ecs_client = ecs_client

    # Task definitions

    def register_task_definition(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Register a task definition. Returns the registered taskDefinition."""
        params = self._known_params('RegisterTaskDefinition', document)
        family = params.get('family', '<no family>')
        try:
            response = self.ecs_client.register_task_definition(**params)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to register task definition {family}: {e}")
            raise RegistrationError(f"cannot register task definition {family}: {e}",
                                    code=_error_code(e)) from e
        return response['taskDefinition']

    def deregister_task_definition(self, task_definition_arn: str) -> None:
        try:
            self.ecs_client.deregister_task_definition(taskDefinition=task_definition_arn)
        except (ClientError, BotoCoreError) as e:
            raise GatewayError(f"cannot deregister task definition {task_definition_arn}: {e}",
                               code=_error_code(e)) from e
        logger.info(f"Deregistered task definition: {task_definition_arn}")

    def describe_task_definition(self, task_definition: str) -> Dict[str, Any]:
        """Describe a task definition by ARN or family[:revision]."""
        try:
            response = self.ecs_client.describe_task_definition(taskDefinition=task_definition)
        except ClientError as e:
            code = _error_code(e)
            if code in _TASK_DEFINITION_NOT_FOUND_CODES:
                raise NotFoundError(f"task definition {task_definition} does not exist: {e}",
                                    code=code) from e
            raise GatewayError(f"cannot describe task definition {task_definition}: {e}",
                               code=code) from e
        except BotoCoreError as e:
            raise GatewayError(f"cannot describe task definition {task_definition}: {e}") from e
        return response['taskDefinition']

    # Services

    def create_service(self, cluster: str, service: str, task_definition_arn: str,
                       desired_count: Optional[int] = None) -> Dict[str, Any]:
        kwargs = {
            'cluster': cluster,
            'serviceName': service,
            'taskDefinition': task_definition_arn,
        }
        if desired_count is not None:
            kwargs['desiredCount'] = desired_count
        response = self._call('create_service', f"cannot create service {service} in cluster {cluster}", **kwargs)
        logger.info(f"Created service: {service}")
        return response['service']

    def update_service(self, cluster: str, service: str, task_definition_arn: str) -> Dict[str, Any]:
        response = self._call(
            'update_service',
            f"cannot update service {service} in cluster {cluster}",
            cluster=cluster,
            service=service,
            taskDefinition=task_definition_arn,
        )
        logger.info(f"Updated service {service} to {task_definition_arn}")
        return response['service']

    def delete_service(self, cluster: str, service: str) -> Dict[str, Any]:
        # force: a service still scaled above zero cannot be deleted otherwise
        response = self._call(
            'delete_service',
            f"cannot delete service {service} in cluster {cluster}",
            cluster=cluster,
            service=service,
            force=True,
        )
        logger.info(f"Deleted service: {service}")
        return response['service']

    def describe_services(self, cluster: str, services: List[str]) -> Dict[str, Any]:
        """Returns ``{'services': [...], 'failures': [...]}``."""
        response = self._call(
            'describe_services',
            f"cannot describe services {services} in cluster {cluster}",
            cluster=cluster,
            services=services,
        )
        return {
            'services': response.get('services', []),
            'failures': response.get('failures', []),
        }

    # Tasks

    def describe_tasks(self, cluster: Optional[str], tasks: List[str]) -> Dict[str, Any]:
        """Returns ``{'tasks': [...], 'failures': [...]}``."""
        kwargs = {'tasks': tasks}
        if cluster:
            kwargs['cluster'] = cluster
        response = self._call('describe_tasks', f"cannot describe tasks {tasks}", **kwargs)
        return {
            'tasks': response.get('tasks', []),
            'failures': response.get('failures', []),
        }

    def run_task(self, run_input: Dict[str, Any]) -> Dict[str, Any]:
        """Start tasks. Returns ``{'tasks': [...], 'failures': [...]}``."""
        params = self._known_params('RunTask', run_input)
        response = self._call(
            'run_task',
            f"cannot run task {params.get('taskDefinition')}",
            **params,
        )
        return {
            'tasks': response.get('tasks', []),
            'failures': response.get('failures', []),
        }

    # Helpers

    def _call(self, method: str, context: str, **kwargs) -> Dict[str, Any]:
        try:
            return getattr(self.ecs_client, method)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            logger.debug(f"{method} failed: {e}")
            raise GatewayError(f"{context}: {e}", code=_error_code(e)) from e

    def _known_params(self, operation_name: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Drop top-level keys that are not members of the operation's input shape."""
        if not isinstance(document, dict):
            raise RegistrationError(f"{operation_name} input must be a JSON object, got {type(document).__name__}")
        try:
            members = self.ecs_client.meta.service_model.operation_model(operation_name).input_shape.members
        except AttributeError:
            # Clients without a botocore service model (test doubles) get the document as-is
            return dict(document)
        params = {}
        for key, value in document.items():
            if key in members:
                params[key] = value
            else:
                logger.warning(f"Ignoring unknown {operation_name} field: {key}")
        return params
