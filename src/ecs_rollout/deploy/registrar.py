"""Task definition registration."""
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


class DefinitionRegistrar:
    """Turns rendered task definition documents into registered ARNs.

    One gateway call per operation; failures propagate unchanged
    (RegistrationError / NotFoundError / GatewayError) and are never retried.
    """

    def __init__(self, gateway):
        self.gateway = gateway

    def register(self, document: Dict[str, Any]) -> str:
        """Register a task definition document and return its ARN."""
        family = document.get('family', '<no family>') if isinstance(document, dict) else '<invalid>'
        logger.info(f"Registering task definition: {family}")
        task_definition = self.gateway.register_task_definition(document)
        arn = task_definition['taskDefinitionArn']
        logger.info(f"✅ Task definition registered: {arn}")
        return arn

    def resolve(self, task_definition_arn: str) -> Dict[str, Any]:
        """Check that an existing task definition is registered and return it."""
        task_definition = self.gateway.describe_task_definition(task_definition_arn)
        logger.info(f"Using existing task definition: {task_definition['taskDefinitionArn']}")
        return task_definition
