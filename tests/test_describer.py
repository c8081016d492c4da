import json
import subprocess
import threading
import time
from typing import Any

import pytest
from conftest import PROJECT_ID, REGION, FakeCloudRunClient, make_service_account

from cloudrun_export_kit.describer import (
    DescribeError,
    ResourceDescriber,
    bindings_from_policy,
)
from cloudrun_export_kit.gcloud import GcloudRunner
from cloudrun_export_kit.models import (
    ExportConfig,
    FailureKind,
    IamBinding,
    IdentityStatus,
    ResourceRef,
)

SA_EMAIL = f"runner@{PROJECT_ID}.iam.gserviceaccount.com"
SVC_A = ResourceRef(name="svc-a", region=REGION)
SVC_B = ResourceRef(name="svc-b", region=REGION)


@pytest.fixture
def describer(fake_client: FakeCloudRunClient, config: ExportConfig) -> ResourceDescriber:
    return ResourceDescriber(fake_client, config)


class TestDescribe:
    def test_collects_config_and_bindings(self, describer: ResourceDescriber) -> None:
        result = describer.describe(SVC_A)

        assert result.config["metadata"]["name"] == "svc-a"
        assert result.bindings == [
            IamBinding(role="roles/run.invoker", members=frozenset({"allUsers"}))
        ]
        assert result.raw_iam_policy is not None
        assert result.identity_status is IdentityStatus.NONE
        assert result.warnings == []

    def test_resolves_service_account(
        self, fake_client: FakeCloudRunClient, describer: ResourceDescriber
    ) -> None:
        ref = fake_client.add_service("svc-c", service_account=SA_EMAIL)
        fake_client.accounts[SA_EMAIL] = make_service_account(SA_EMAIL, display_name="Runner")

        result = describer.describe(ref)

        assert result.identity_status is IdentityStatus.FOUND
        assert result.identity is not None
        assert result.identity.display_name == "Runner"
        assert result.raw_identity == fake_client.accounts[SA_EMAIL]

    def test_missing_service_account_is_not_a_warning(
        self, fake_client: FakeCloudRunClient, describer: ResourceDescriber
    ) -> None:
        ref = fake_client.add_service("svc-c", service_account=SA_EMAIL)

        result = describer.describe(ref)

        assert result.identity_status is IdentityStatus.NOT_FOUND
        assert result.identity is None
        assert result.warnings == []

    def test_unavailable_service_account_is_a_warning(
        self, fake_client: FakeCloudRunClient, describer: ResourceDescriber
    ) -> None:
        ref = fake_client.add_service("svc-c", service_account=SA_EMAIL)
        fake_client.fail("service_account", SA_EMAIL, FailureKind.PERMISSION_DENIED)

        result = describer.describe(ref)

        assert result.identity_status is IdentityStatus.UNAVAILABLE
        assert len(result.warnings) == 1
        assert "permission_denied" in result.warnings[0]

    def test_iam_failure_keeps_config(
        self, fake_client: FakeCloudRunClient, describer: ResourceDescriber
    ) -> None:
        fake_client.fail("iam", SVC_A.key, FailureKind.TIMEOUT)

        result = describer.describe(SVC_A)

        assert result.config["metadata"]["name"] == "svc-a"
        assert result.bindings == []
        assert result.raw_iam_policy is None
        assert "timeout" in result.warnings[0]

    def test_config_failure_raises_with_kind(
        self, fake_client: FakeCloudRunClient, describer: ResourceDescriber
    ) -> None:
        fake_client.fail("describe", SVC_A.key, FailureKind.PERMISSION_DENIED)

        with pytest.raises(DescribeError) as exc_info:
            describer.describe(SVC_A)

        assert exc_info.value.ref == SVC_A
        assert exc_info.value.kind is FailureKind.PERMISSION_DENIED

    def test_vanished_service_is_not_found(self, describer: ResourceDescriber) -> None:
        with pytest.raises(DescribeError) as exc_info:
            describer.describe(ResourceRef(name="gone", region=REGION))

        assert exc_info.value.kind is FailureKind.NOT_FOUND


class TestDescribeAll:
    def test_describes_every_ref_in_order(self, describer: ResourceDescriber) -> None:
        batch = describer.describe_all([SVC_B, SVC_A])

        assert [r.ref for r in batch.results] == [SVC_A, SVC_B]
        assert batch.skipped == []
        assert batch.cancelled == []

    def test_one_failure_does_not_abort_the_batch(
        self, fake_client: FakeCloudRunClient, describer: ResourceDescriber
    ) -> None:
        fake_client.fail("describe", SVC_A.key, FailureKind.TIMEOUT)

        batch = describer.describe_all([SVC_A, SVC_B])

        assert [r.ref for r in batch.results] == [SVC_B]
        assert len(batch.skipped) == 1
        assert batch.skipped[0].ref == SVC_A
        assert batch.skipped[0].kind is FailureKind.TIMEOUT

    def test_unexpected_payload_shape_skips_the_service(
        self, config: ExportConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def run(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
            return subprocess.CompletedProcess(cmd, 0, json.dumps(["svc-a"]), "")

        monkeypatch.setattr(subprocess, "run", run)
        describer = ResourceDescriber(GcloudRunner(project_id=PROJECT_ID), config)

        batch = describer.describe_all([SVC_A])

        assert batch.results == []
        assert [s.ref for s in batch.skipped] == [SVC_A]
        assert batch.skipped[0].kind is FailureKind.ERROR
        assert "expected an object" in batch.skipped[0].reason

    def test_concurrency_is_bounded(self, config: ExportConfig) -> None:
        client = FakeCloudRunClient()
        refs = [client.add_service(f"svc-{i:02d}") for i in range(12)]
        lock = threading.Lock()
        active = 0
        peak = 0

        def track(ref: ResourceRef) -> None:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1

        client.on_describe = track
        batch = ResourceDescriber(client, config).describe_all(refs)

        assert len(batch.results) == 12
        assert peak <= config.max_workers

    def test_preset_cancel_event_describes_nothing(self, describer: ResourceDescriber) -> None:
        cancel_event = threading.Event()
        cancel_event.set()

        batch = describer.describe_all([SVC_A, SVC_B], cancel_event)

        assert batch.results == []
        assert batch.cancelled == [SVC_A, SVC_B]

    def test_cancel_finishes_in_flight_work(
        self, fake_client: FakeCloudRunClient, config: ExportConfig
    ) -> None:
        config.max_workers = 1
        cancel_event = threading.Event()
        fake_client.on_describe = lambda ref: cancel_event.set()

        batch = ResourceDescriber(fake_client, config).describe_all([SVC_A, SVC_B], cancel_event)

        assert [r.ref for r in batch.results] == [SVC_A]
        assert batch.cancelled == [SVC_B]
        assert ("describe", SVC_B.key) not in fake_client.calls


class TestBindingsFromPolicy:
    def test_merges_roles_and_sorts(self) -> None:
        policy = {
            "bindings": [
                {"role": "roles/run.invoker", "members": ["user:b@x.io"]},
                {"role": "roles/run.admin", "members": ["group:ops@x.io"]},
                {"role": "roles/run.invoker", "members": ["allUsers"]},
            ]
        }
        bindings, warnings = bindings_from_policy(policy)

        assert [b.role for b in bindings] == ["roles/run.admin", "roles/run.invoker"]
        assert bindings[1].members == frozenset({"allUsers", "user:b@x.io"})
        assert warnings == []

    def test_empty_policy(self) -> None:
        assert bindings_from_policy({"etag": "ACAB"}) == ([], [])

    def test_malformed_entries_become_warnings(self) -> None:
        policy = {
            "bindings": [
                "garbage",
                {"role": "roles/run.invoker", "members": "allUsers"},
                {"role": "roles/run.viewer", "members": ["user:a@x.io"]},
            ]
        }
        bindings, warnings = bindings_from_policy(policy)

        assert [b.role for b in bindings] == ["roles/run.viewer"]
        assert len(warnings) == 2

    def test_conditional_binding_is_flagged(self) -> None:
        policy = {
            "bindings": [
                {
                    "role": "roles/run.invoker",
                    "members": ["user:a@x.io"],
                    "condition": {"title": "expires", "expression": "request.time < ..."},
                }
            ]
        }
        bindings, warnings = bindings_from_policy(policy)

        assert len(bindings) == 1
        assert "Conditional" in warnings[0]

    def test_non_mapping_policy(self) -> None:
        bindings, warnings = bindings_from_policy(None)
        assert bindings == []
        assert warnings
