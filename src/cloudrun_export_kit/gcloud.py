from __future__ import annotations

import json
import re
import shutil
import subprocess
from typing import Any, Protocol

import structlog

from cloudrun_export_kit.models import FailureKind, ResourceRef

logger = structlog.get_logger()

NOT_FOUND_PATTERNS = [
    r"NOT_FOUND",
    r"\b404\b",
    r"not found",
    r"does not exist",
]

PERMISSION_DENIED_PATTERNS = [
    r"PERMISSION_DENIED",
    r"\b403\b",
    r"does not have permission",
    r"Permission .* denied",
]

UNSET_CONFIG_VALUE = "(unset)"


class GcloudError(Exception):
    def __init__(self, message: str, kind: FailureKind = FailureKind.ERROR) -> None:
        super().__init__(message)
        self.kind = kind


class CloudRunClient(Protocol):
    def list_services(self) -> list[dict[str, Any]]: ...

    def describe_service(self, ref: ResourceRef) -> dict[str, Any]: ...

    def get_iam_policy(self, ref: ResourceRef) -> dict[str, Any]: ...

    def describe_service_account(self, email: str) -> dict[str, Any]: ...

    def list_vpc_connectors(self, region: str) -> list[dict[str, Any]]: ...

    def list_secrets(self) -> list[dict[str, Any]]: ...


def classify_failure(stderr: str) -> FailureKind:
    for pattern in PERMISSION_DENIED_PATTERNS:
        if re.search(pattern, stderr, re.IGNORECASE):
            return FailureKind.PERMISSION_DENIED
    for pattern in NOT_FOUND_PATTERNS:
        if re.search(pattern, stderr, re.IGNORECASE):
            return FailureKind.NOT_FOUND
    return FailureKind.ERROR


class GcloudRunner:
    """Read-only Cloud Run client backed by the ``gcloud`` CLI."""

    def __init__(self, project_id: str | None = None, timeout: float = 60.0) -> None:
        self.project_id = project_id
        self.timeout = timeout
        self._gcloud_path: str | None = None

    def check_gcloud_installed(self) -> bool:
        self._gcloud_path = shutil.which("gcloud")
        return self._gcloud_path is not None

    def get_gcloud_version(self) -> str | None:
        if not self._gcloud_path and not self.check_gcloud_installed():
            return None
        try:
            result = subprocess.run(
                [self._gcloud_path or "gcloud", "version", "--format=json"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            data: dict[str, str] = json.loads(result.stdout)
            return data.get("Google Cloud SDK")
        except (subprocess.SubprocessError, OSError, json.JSONDecodeError):
            return None

    def get_config_value(self, key: str) -> str | None:
        try:
            result = subprocess.run(
                [self._gcloud_path or "gcloud", "config", "get-value", key],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (subprocess.SubprocessError, OSError):
            return None
        value = result.stdout.strip()
        if result.returncode != 0 or not value or value == UNSET_CONFIG_VALUE:
            return None
        return value

    def list_services(self) -> list[dict[str, Any]]:
        return self._run_list(["run", "services", "list"])

    def describe_service(self, ref: ResourceRef) -> dict[str, Any]:
        return self._run_object(
            ["run", "services", "describe", ref.name, f"--region={ref.region}"]
        )

    def get_iam_policy(self, ref: ResourceRef) -> dict[str, Any]:
        return self._run_object(
            ["run", "services", "get-iam-policy", ref.name, f"--region={ref.region}"]
        )

    def describe_service_account(self, email: str) -> dict[str, Any]:
        return self._run_object(["iam", "service-accounts", "describe", email])

    def list_vpc_connectors(self, region: str) -> list[dict[str, Any]]:
        return self._run_list(
            ["compute", "networks", "vpc-access", "connectors", "list", f"--region={region}"]
        )

    def list_secrets(self) -> list[dict[str, Any]]:
        return self._run_list(["secrets", "list"])

    def _run_object(self, args: list[str]) -> dict[str, Any]:
        data = self._run_json(args)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise GcloudError(
                f"gcloud {' '.join(args)} returned a {type(data).__name__}, expected an object"
            )
        return data

    def _run_list(self, args: list[str]) -> list[dict[str, Any]]:
        data = self._run_json(args)
        if data is None:
            return []
        if not isinstance(data, list):
            raise GcloudError(
                f"gcloud {' '.join(args)} returned a {type(data).__name__}, expected a list"
            )
        return data

    def _build_command(self, args: list[str]) -> list[str]:
        cmd = [self._gcloud_path or "gcloud", *args, "--format=json", "--quiet"]
        if self.project_id:
            cmd.append(f"--project={self.project_id}")
        return cmd

    def _run_json(self, args: list[str]) -> Any:
        cmd = self._build_command(args)
        logger.debug("gcloud_call", args=args)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise GcloudError(
                f"gcloud {' '.join(args)} timed out after {self.timeout:g}s",
                FailureKind.TIMEOUT,
            ) from e
        except OSError as e:
            raise GcloudError(f"Failed to run gcloud: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            raise GcloudError(
                f"gcloud {' '.join(args)} failed: {stderr}",
                classify_failure(stderr),
            )

        if not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise GcloudError(f"gcloud {' '.join(args)} returned invalid JSON: {e}") from e
