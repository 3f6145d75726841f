"""
ECS test fixtures.

``mocked_aws`` runs a test inside moto; ``fake_gateway`` is an in-memory
gateway whose describe responses are scripted per test, for orchestrator and
waiter scenarios that moto cannot drive (service events, running counts).
"""
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from moto import mock_aws

from ecs_rollout.exceptions import NotFoundError
from ecs_rollout.settings import Settings

from tests.consts import ACCOUNT_ID, TEST_CLUSTER, TEST_REGION, TEST_SERVICE

ORIGIN = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
OLD_ARN = f"arn:aws:ecs:{TEST_REGION}:{ACCOUNT_ID}:task-definition/web:1"
SERVICE_ARN = f"arn:aws:ecs:{TEST_REGION}:{ACCOUNT_ID}:service/{TEST_CLUSTER}/{TEST_SERVICE}"


def task_definition_document(family="web", **extra):
    document = {
        "family": family,
        "containerDefinitions": [
            {"name": "app", "image": "nginx:latest", "memory": 128, "essential": True},
        ],
    }
    document.update(extra)
    return document


def service_description(name=TEST_SERVICE, task_definition=OLD_ARN, status="ACTIVE",
                        running=1, desired=1, deployments=None, events=None,
                        created_at=ORIGIN, updated_at=ORIGIN):
    if deployments is None:
        deployments = [{
            "status": "PRIMARY",
            "taskDefinition": task_definition,
            "createdAt": created_at,
            "updatedAt": updated_at,
        }]
    return {
        "serviceName": name,
        "serviceArn": f"arn:aws:ecs:{TEST_REGION}:{ACCOUNT_ID}:service/{TEST_CLUSTER}/{name}",
        "status": status,
        "taskDefinition": task_definition,
        "runningCount": running,
        "desiredCount": desired,
        "deployments": deployments,
        "events": events or [],
    }


def rolling_description(task_definition=OLD_ARN, events=None):
    """A service mid-deployment: two deployments, not stable yet."""
    deployments = [
        {"status": "PRIMARY", "taskDefinition": task_definition, "createdAt": ORIGIN, "updatedAt": ORIGIN},
        {"status": "ACTIVE", "taskDefinition": OLD_ARN, "createdAt": ORIGIN, "updatedAt": ORIGIN},
    ]
    return service_description(task_definition=task_definition, running=0, deployments=deployments,
                               events=events)


def services_response(*services, failures=()):
    return {"services": list(services), "failures": list(failures)}


def missing_response(name=TEST_SERVICE):
    return services_response(failures=[{"arn": f"arn:aws:ecs:{TEST_REGION}:{ACCOUNT_ID}:service/{name}",
                                        "reason": "MISSING"}])


def service_event(message, seconds_after_origin):
    return {
        "id": f"evt-{seconds_after_origin}",
        "createdAt": ORIGIN + timedelta(seconds=seconds_after_origin),
        "message": message,
    }


def task_arn(task_id):
    return f"arn:aws:ecs:{TEST_REGION}:{ACCOUNT_ID}:task/{TEST_CLUSTER}/{task_id}"


def task_description(arn, last_status="STOPPED", exit_codes=None):
    exit_codes = exit_codes if exit_codes is not None else {"app": 0}
    return {
        "taskArn": arn,
        "lastStatus": last_status,
        "containers": [{"name": name, "exitCode": code} for name, code in exit_codes.items()],
    }


class FakeGateway:
    """Scripted stand-in for ECSGateway.

    ``service_responses`` / ``task_responses`` are consumed one per describe
    call; the last one repeats. ``errors`` maps a method name to an exception,
    or to a list of exceptions (None entries let that call through).
    """

    def __init__(self):
        self.calls = []
        self.errors = {}
        self.service_responses = []
        self.task_responses = []
        self.run_task_response = {"tasks": [], "failures": []}
        self.task_definitions = {OLD_ARN: {"taskDefinitionArn": OLD_ARN, "family": "web", "revision": 1}}
        self._revision = 1

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        error = self.errors.get(method)
        if isinstance(error, list):
            error = error.pop(0) if error else None
        if error is not None:
            raise error

    def called(self, method):
        return [call for call in self.calls if call[0] == method]

    @property
    def call_names(self):
        return [call[0] for call in self.calls]

    @staticmethod
    def _next(responses):
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]

    def register_task_definition(self, document):
        self._record("register_task_definition", document)
        self._revision += 1
        arn = f"arn:aws:ecs:{TEST_REGION}:{ACCOUNT_ID}:task-definition/{document.get('family')}:{self._revision}"
        task_definition = dict(document, taskDefinitionArn=arn, revision=self._revision)
        self.task_definitions[arn] = task_definition
        return task_definition

    def deregister_task_definition(self, arn):
        self._record("deregister_task_definition", arn)

    def describe_task_definition(self, arn):
        self._record("describe_task_definition", arn)
        if arn not in self.task_definitions:
            raise NotFoundError(f"task definition {arn} does not exist", code="ClientException")
        return self.task_definitions[arn]

    def create_service(self, cluster, service, task_definition_arn, desired_count=None):
        self._record("create_service", cluster, service, task_definition_arn, desired_count)
        return service_description(name=service, task_definition=task_definition_arn, running=0,
                                   desired=desired_count or 0)

    def update_service(self, cluster, service, task_definition_arn):
        self._record("update_service", cluster, service, task_definition_arn)
        return service_description(name=service, task_definition=task_definition_arn)

    def delete_service(self, cluster, service):
        self._record("delete_service", cluster, service)
        return service_description(name=service, status="DRAINING")

    def describe_services(self, cluster, services):
        self._record("describe_services", cluster, list(services))
        return self._next(self.service_responses)

    def describe_tasks(self, cluster, tasks):
        self._record("describe_tasks", cluster, list(tasks))
        return self._next(self.task_responses)

    def run_task(self, run_input):
        self._record("run_task", dict(run_input))
        return self.run_task_response


class SleepRecorder:
    """Injectable sleep that records the delays instead of blocking."""

    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)


@pytest.fixture
def mocked_aws(aws_credentials):
    with mock_aws():
        yield


@pytest.fixture
def ecs_client(mocked_aws):
    client = boto3.client("ecs", region_name=TEST_REGION)
    client.create_cluster(clusterName=TEST_CLUSTER)
    return client


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def test_settings():
    return Settings(
        aws_region=TEST_REGION,
        poll_interval_s=15,
        task_poll_interval_s=6,
        stable_timeout_s=60,
        inactive_timeout_s=30,
        task_timeout_s=30,
    )
