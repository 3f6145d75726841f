"""AWS client management."""
import logging
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError

from ecs_rollout.exceptions import GatewayError
from ecs_rollout.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class AWSClientManager:
    """Builds and caches boto3 clients for one deployment run.

    Credentials come from boto3's default chain; only the region and the
    endpoint URL are taken from settings.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self._clients: Dict[str, Any] = {}

        logger.debug(f"Initializing AWSClientManager (region={self.region}, endpoint={self.endpoint_url})")

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        client_kwargs = {}
        if self.region:
            client_kwargs['region_name'] = self.region
        if self.endpoint_url:
            client_kwargs['endpoint_url'] = self.endpoint_url

        try:
            client = boto3.client(service_name, **client_kwargs)
        except BotoCoreError as e:
            logger.error(f"Error creating {service_name} client: {str(e)}")
            raise GatewayError(f"Cannot create {service_name} client: {e}") from e
        self._clients[service_name] = client
        logger.debug(f"Created {service_name} client")
        return client

    def get_ecs_client(self):
        """Get the ECS client."""
        return self.get_client('ecs')

    def get_s3_client(self):
        """Get the S3 client."""
        return self.get_client('s3')

    def clear_clients(self):
        """Clear all cached clients."""
        self._clients.clear()
        logger.debug("Cleared all AWS clients")
