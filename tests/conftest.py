from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog

from cloudrun_export_kit.gcloud import GcloudError
from cloudrun_export_kit.models import ExportConfig, FailureKind, ResourceRef

PROJECT_ID = "demo-project"
REGION = "us-central1"


def make_service(
    name: str,
    region: str = REGION,
    image: str = "gcr.io/demo-project/app:1.0",
    service_account: str | None = None,
    env: list[dict[str, Any]] | None = None,
    memory: str = "512Mi",
    cpu: str = "1",
    template_annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    """A ``gcloud run services describe --format=json`` document (v1 shape)."""
    annotations = {
        "autoscaling.knative.dev/maxScale": "10",
        "run.googleapis.com/client-name": "gcloud",
    }
    annotations.update(template_annotations or {})
    template_spec: dict[str, Any] = {
        "containerConcurrency": 80,
        "timeoutSeconds": 300,
        "containers": [
            {
                "image": image,
                "ports": [{"containerPort": 8080, "name": "http1"}],
                "resources": {"limits": {"cpu": cpu, "memory": memory}},
                "env": env or [],
            }
        ],
    }
    if service_account:
        template_spec["serviceAccountName"] = service_account

    return {
        "apiVersion": "serving.knative.dev/v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "namespace": "123456789",
            "uid": f"uid-{name}",
            "generation": 3,
            "resourceVersion": "AAYz",
            "creationTimestamp": "2024-01-01T00:00:00.000000Z",
            "labels": {"cloud.googleapis.com/location": region, "team": "payments"},
            "annotations": {
                "run.googleapis.com/ingress": "all",
                "serving.knative.dev/creator": "dev@example.com",
                "run.googleapis.com/operation-id": "op-123",
            },
        },
        "spec": {
            "template": {"metadata": {"annotations": annotations}, "spec": template_spec},
            "traffic": [{"percent": 100, "latestRevision": True}],
        },
        "status": {"url": f"https://{name}-abc-uc.a.run.app", "observedGeneration": 3},
    }


def make_service_account(email: str, display_name: str = "Runtime") -> dict[str, Any]:
    return {
        "email": email,
        "displayName": display_name,
        "uniqueId": "1234567890",
        "projectId": email.split("@", 1)[1].split(".", 1)[0],
        "name": f"projects/{PROJECT_ID}/serviceAccounts/{email}",
    }


class FakeCloudRunClient:
    """In-memory stand-in for ``GcloudRunner``."""

    def __init__(self) -> None:
        self.services: dict[ResourceRef, dict[str, Any]] = {}
        self.iam_policies: dict[ResourceRef, dict[str, Any]] = {}
        self.accounts: dict[str, dict[str, Any]] = {}
        self.failures: dict[tuple[str, str], GcloudError] = {}
        self.list_error: GcloudError | None = None
        self.on_describe: Callable[[ResourceRef], None] | None = None
        self.calls: list[tuple[str, str]] = []
        self.project_id: str | None = None
        self._lock = threading.Lock()

    def add_service(
        self,
        name: str,
        region: str = REGION,
        iam: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> ResourceRef:
        ref = ResourceRef(name=name, region=region)
        self.services[ref] = make_service(name, region=region, **kwargs)
        self.iam_policies[ref] = iam or {
            "bindings": [{"role": "roles/run.invoker", "members": ["allUsers"]}],
            "etag": "BwYz",
        }
        return ref

    def fail(self, operation: str, key: str, kind: FailureKind = FailureKind.ERROR) -> None:
        self.failures[(operation, key)] = GcloudError(f"{operation} {key} failed", kind)

    def _record(self, operation: str, key: str) -> None:
        with self._lock:
            self.calls.append((operation, key))
        error = self.failures.get((operation, key))
        if error is not None:
            raise error

    def list_services(self) -> list[dict[str, Any]]:
        if self.list_error is not None:
            raise self.list_error
        return [copy.deepcopy(doc) for doc in self.services.values()]

    def describe_service(self, ref: ResourceRef) -> dict[str, Any]:
        self._record("describe", ref.key)
        if self.on_describe is not None:
            self.on_describe(ref)
        if ref not in self.services:
            raise GcloudError(f"Service {ref.name} not found", FailureKind.NOT_FOUND)
        return copy.deepcopy(self.services[ref])

    def get_iam_policy(self, ref: ResourceRef) -> dict[str, Any]:
        self._record("iam", ref.key)
        return copy.deepcopy(self.iam_policies.get(ref, {"etag": "ACAB"}))

    def describe_service_account(self, email: str) -> dict[str, Any]:
        self._record("service_account", email)
        if email not in self.accounts:
            raise GcloudError(f"NOT_FOUND: {email}", FailureKind.NOT_FOUND)
        return copy.deepcopy(self.accounts[email])

    def list_vpc_connectors(self, region: str) -> list[dict[str, Any]]:
        self._record("vpc_connectors", region)
        return [{"name": f"projects/{PROJECT_ID}/locations/{region}/connectors/main"}]

    def list_secrets(self) -> list[dict[str, Any]]:
        self._record("secrets", "-")
        return [
            {
                "name": f"projects/{PROJECT_ID}/secrets/db-password",
                "createTime": "2024-01-01T00:00:00Z",
                "replication": {"automatic": {}},
                "etag": '"abc"',
            }
        ]

    def get_config_value(self, key: str) -> str | None:
        return None


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


@pytest.fixture
def config(tmp_path: Path) -> ExportConfig:
    return ExportConfig(
        project_id=PROJECT_ID,
        output_dir=tmp_path / "terraform_export",
        region=REGION,
        max_workers=4,
        timeout_seconds=5.0,
    )


@pytest.fixture
def fake_client() -> FakeCloudRunClient:
    client = FakeCloudRunClient()
    client.add_service("svc-a")
    client.add_service("svc-b", image="gcr.io/demo-project/other:2.0")
    return client
