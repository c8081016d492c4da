from pathlib import Path

import pytest

from cloudrun_export_kit.models import (
    CanonicalResource,
    DuplicateResourceError,
    ExportConfig,
    ExportManifest,
    IamBinding,
    ResourceRef,
    ServiceAccountInfo,
)


def _resource(name: str, region: str = "us-central1", **config: object) -> CanonicalResource:
    return CanonicalResource(ref=ResourceRef(name=name, region=region), config=dict(config))


class TestResourceRef:
    def test_key(self) -> None:
        ref = ResourceRef(name="svc-a", region="us-central1")
        assert ref.key == "us-central1/svc-a"
        assert str(ref) == "us-central1/svc-a"

    def test_from_key_round_trip(self) -> None:
        ref = ResourceRef(name="svc-a", region="europe-west1")
        assert ResourceRef.from_key(ref.key) == ref

    def test_from_key_rejects_missing_name(self) -> None:
        with pytest.raises(ValueError):
            ResourceRef.from_key("us-central1")

    def test_sorted_by_region_then_name(self) -> None:
        refs = [
            ResourceRef(name="b", region="us-central1"),
            ResourceRef(name="a", region="us-east1"),
            ResourceRef(name="a", region="us-central1"),
        ]
        assert [r.key for r in sorted(refs)] == [
            "us-central1/a",
            "us-central1/b",
            "us-east1/a",
        ]


class TestIamBinding:
    def test_to_dict_sorts_members(self) -> None:
        binding = IamBinding(role="roles/run.invoker", members=frozenset({"user:b", "allUsers"}))
        assert binding.to_dict() == {"role": "roles/run.invoker", "members": ["allUsers", "user:b"]}


class TestServiceAccountInfo:
    def test_account_id(self) -> None:
        info = ServiceAccountInfo(email="runner@demo.iam.gserviceaccount.com")
        assert info.account_id == "runner"

    def test_to_dict_omits_empty_fields(self) -> None:
        info = ServiceAccountInfo(email="runner@demo.iam.gserviceaccount.com")
        assert info.to_dict() == {"email": "runner@demo.iam.gserviceaccount.com", "disabled": False}


class TestCanonicalResource:
    def test_identity_email_from_config(self) -> None:
        resource = _resource("svc-a", service_account="runner@demo.iam.gserviceaccount.com")
        assert resource.identity_email == "runner@demo.iam.gserviceaccount.com"

    def test_identity_email_absent(self) -> None:
        assert _resource("svc-a").identity_email is None


class TestExportManifest:
    def test_add_rejects_duplicate_ref(self) -> None:
        manifest = ExportManifest(project_id="demo", region="us-central1")
        manifest.add(_resource("svc-a"))
        with pytest.raises(DuplicateResourceError):
            manifest.add(_resource("svc-a", image="other"))

    def test_same_name_in_two_regions_is_allowed(self) -> None:
        manifest = ExportManifest(project_id="demo", region="us-central1")
        manifest.add(_resource("svc-a"))
        manifest.add(_resource("svc-a", region="europe-west1"))
        assert len(manifest.resources) == 2

    def test_json_round_trip_is_stable(self) -> None:
        manifest = ExportManifest(project_id="demo", region="us-central1")
        resource = _resource("svc-b", image="gcr.io/demo/app:1", env={"B": "2", "A": "1"})
        resource.bindings = [
            IamBinding(role="roles/run.invoker", members=frozenset({"allUsers"})),
        ]
        resource.identity = ServiceAccountInfo(
            email="runner@demo.iam.gserviceaccount.com", display_name="Runner"
        )
        manifest.add(resource)
        manifest.add(_resource("svc-a", image="gcr.io/demo/app:1"))

        text = manifest.to_json()
        reloaded = ExportManifest.from_json(text)

        assert reloaded.to_json() == text
        assert reloaded.get(ResourceRef(name="svc-b", region="us-central1")) == resource

    def test_json_is_independent_of_insertion_order(self) -> None:
        first = ExportManifest(project_id="demo", region="us-central1")
        first.add(_resource("svc-a"))
        first.add(_resource("svc-b"))
        second = ExportManifest(project_id="demo", region="us-central1")
        second.add(_resource("svc-b"))
        second.add(_resource("svc-a"))
        assert first.to_json() == second.to_json()

    def test_json_ends_with_newline(self) -> None:
        manifest = ExportManifest(project_id="demo", region="us-central1")
        assert manifest.to_json().endswith("}\n")

    def test_from_json_rejects_unknown_format_version(self) -> None:
        with pytest.raises(ValueError):
            ExportManifest.from_json(
                '{"format_version": 99, "project_id": "demo", "region": "us-central1"}'
            )


class TestExportConfig:
    def test_default_config(self) -> None:
        config = ExportConfig(project_id="demo", output_dir=Path("/tmp/output"))
        assert config.region == "us-central1"
        assert config.max_workers == 8
        assert config.write_snapshots is True
        assert config.fail_on_unresolved_references is False
