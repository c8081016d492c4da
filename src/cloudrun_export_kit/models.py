from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

MANIFEST_FORMAT_VERSION = 1


class FailureKind(Enum):
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    ERROR = "error"


class IdentityStatus(Enum):
    NONE = "none"
    FOUND = "found"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, order=True)
class ResourceRef:
    # Field order gives (region, name) sorting.
    region: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.region}/{self.name}"

    @classmethod
    def from_key(cls, key: str) -> ResourceRef:
        region, _, name = key.partition("/")
        if not name:
            raise ValueError(f"Invalid resource key: {key!r}")
        return cls(region=region, name=name)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class IamBinding:
    role: str
    members: frozenset[str] = field(default_factory=frozenset)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "members": sorted(self.members)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IamBinding:
        return cls(role=data["role"], members=frozenset(data.get("members", [])))


@dataclass(frozen=True)
class ServiceAccountInfo:
    email: str
    display_name: str | None = None
    description: str | None = None
    disabled: bool = False
    unique_id: str | None = None
    project_id: str | None = None

    @property
    def account_id(self) -> str:
        return self.email.split("@", 1)[0]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"email": self.email, "disabled": self.disabled}
        for key in ("display_name", "description", "unique_id", "project_id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceAccountInfo:
        return cls(
            email=data["email"],
            display_name=data.get("display_name"),
            description=data.get("description"),
            disabled=bool(data.get("disabled", False)),
            unique_id=data.get("unique_id"),
            project_id=data.get("project_id"),
        )


@dataclass
class CanonicalResource:
    ref: ResourceRef
    config: dict[str, Any] = field(default_factory=dict)
    bindings: list[IamBinding] = field(default_factory=list)
    identity: ServiceAccountInfo | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.ref.name

    @property
    def region(self) -> str:
        return self.ref.region

    @property
    def identity_email(self) -> str | None:
        email = self.config.get("service_account")
        return email if isinstance(email, str) and email else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.ref.name,
            "region": self.ref.region,
            "config": self.config,
            "bindings": [binding.to_dict() for binding in self.bindings],
        }
        if self.identity is not None:
            data["identity"] = self.identity.to_dict()
        if self.extra:
            data["extra"] = self.extra
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CanonicalResource:
        identity = data.get("identity")
        return cls(
            ref=ResourceRef(region=data["region"], name=data["name"]),
            config=dict(data.get("config", {})),
            bindings=[IamBinding.from_dict(b) for b in data.get("bindings", [])],
            identity=ServiceAccountInfo.from_dict(identity) if identity else None,
            extra=dict(data.get("extra", {})),
        )

    def fingerprint(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


class DuplicateResourceError(ValueError):
    pass


@dataclass
class ExportManifest:
    project_id: str
    region: str
    resources: dict[str, CanonicalResource] = field(default_factory=dict)

    def add(self, resource: CanonicalResource) -> None:
        key = resource.ref.key
        if key in self.resources:
            raise DuplicateResourceError(f"Resource already in manifest: {key}")
        self.resources[key] = resource

    def get(self, ref: ResourceRef) -> CanonicalResource | None:
        return self.resources.get(ref.key)

    def sorted_resources(self) -> list[CanonicalResource]:
        return [self.resources[key] for key in sorted(self.resources, key=_sort_key)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": MANIFEST_FORMAT_VERSION,
            "project_id": self.project_id,
            "region": self.region,
            "resources": {
                resource.ref.key: resource.to_dict() for resource in self.sorted_resources()
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True, ensure_ascii=False) + "\n"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExportManifest:
        version = data.get("format_version", MANIFEST_FORMAT_VERSION)
        if version != MANIFEST_FORMAT_VERSION:
            raise ValueError(f"Unsupported manifest format version: {version}")
        manifest = cls(project_id=data["project_id"], region=data["region"])
        for entry in data.get("resources", {}).values():
            manifest.add(CanonicalResource.from_dict(entry))
        return manifest

    @classmethod
    def from_json(cls, text: str) -> ExportManifest:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Manifest must be a JSON object")
        return cls.from_dict(data)


def _sort_key(key: str) -> tuple[str, str]:
    ref = ResourceRef.from_key(key)
    return (ref.region, ref.name)


@dataclass
class DescribeResult:
    ref: ResourceRef
    config: dict[str, Any]
    bindings: list[IamBinding] = field(default_factory=list)
    identity: ServiceAccountInfo | None = None
    identity_status: IdentityStatus = IdentityStatus.NONE
    raw_iam_policy: dict[str, Any] | None = None
    raw_identity: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class SkippedResource:
    ref: ResourceRef
    reason: str
    kind: FailureKind = FailureKind.ERROR


@dataclass
class ResourceSnapshot:
    config: dict[str, Any]
    iam_policy: dict[str, Any] | None = None
    service_account: dict[str, Any] | None = None


@dataclass
class ManifestDiff:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.changed)


@dataclass
class Artifact:
    name: str
    content: str


@dataclass
class TerraformVariable:
    name: str
    var_type: str = "string"
    default: Any = None
    description: str = ""


@dataclass
class TerraformResource:
    resource_type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"


@dataclass
class ExportConfig:
    project_id: str
    output_dir: Path
    region: str = "us-central1"
    max_workers: int = 8
    timeout_seconds: float = 60.0
    write_snapshots: bool = True
    include_inventory: bool = True
    fail_on_unresolved_references: bool = False
    terraform_version: str = ">= 1.5.0"
    google_provider_version: str = "~> 5.0"


@dataclass
class ExportResult:
    success: bool
    output_path: Path
    exit_code: int = 0
    exported: list[str] = field(default_factory=list)
    skipped: list[SkippedResource] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    diff: ManifestDiff | None = None
    cancelled: list[str] = field(default_factory=list)

    @property
    def resources_exported(self) -> int:
        return len(self.exported)
