from __future__ import annotations

import json
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import hcl2
import structlog

from cloudrun_export_kit.models import (
    Artifact,
    CanonicalResource,
    ExportConfig,
    ExportManifest,
    IamBinding,
    ResourceRef,
    ServiceAccountInfo,
    TerraformResource,
    TerraformVariable,
)

logger = structlog.get_logger()

SERVICE_RESOURCE_TYPE = "google_cloud_run_v2_service"
IAM_BINDING_RESOURCE_TYPE = "google_cloud_run_v2_service_iam_binding"
SERVICE_ACCOUNT_RESOURCE_TYPE = "google_service_account"

GLOBAL_VARIABLE_NAMES = ("project_id", "region")

MANAGED_SERVICE_ACCOUNT_SUFFIX = ".iam.gserviceaccount.com"

# Attributes never turned into shared variables.
NON_EXTRACTABLE_ATTRIBUTES = {"traffic"}

TRAFFIC_TYPE_LATEST = "TRAFFIC_TARGET_ALLOCATION_TYPE_LATEST"
TRAFFIC_TYPE_REVISION = "TRAFFIC_TARGET_ALLOCATION_TYPE_REVISION"

ASSIGNMENT_PATTERN = re.compile(r'^(\s*)([A-Za-z_][A-Za-z0-9_-]*|"(?:[^"\\]|\\.)*") = (.*)$')

LeafPath = tuple[str, ...]


class SynthesisError(Exception):
    pass


@dataclass(frozen=True)
class SynthesisWarning:
    message: str
    resource: str | None = None

    def __str__(self) -> str:
        if self.resource:
            return f"{self.resource}: {self.message}"
        return self.message


@dataclass(frozen=True)
class Expression:
    """Raw HCL expression, rendered without quoting."""

    text: str


@dataclass
class Block:
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class SynthesisResult:
    artifacts: list[Artifact] = field(default_factory=list)
    variables: list[TerraformVariable] = field(default_factory=list)
    resources: list[TerraformResource] = field(default_factory=list)
    warnings: list[SynthesisWarning] = field(default_factory=list)

    def artifact(self, name: str) -> Artifact | None:
        return next((a for a in self.artifacts if a.name == name), None)


class TemplateSynthesizer:
    def __init__(self, config: ExportConfig) -> None:
        self.config = config

    def synthesize(self, manifest: ExportManifest) -> SynthesisResult:
        result = SynthesisResult()
        resources = manifest.sorted_resources()

        service_labels = self._build_service_labels(resources)
        account_labels = self._build_service_account_labels(resources)
        extracted = self._extract_shared_values(manifest, resources, account_labels)

        result.variables = self._global_variables(manifest) + sorted(
            extracted.values(), key=lambda v: v.name
        )

        for email in sorted(account_labels):
            identity = self._identity_for(resources, email)
            result.resources.append(
                self._service_account_resource(manifest, identity, account_labels[email])
            )

        for resource in resources:
            label = service_labels[resource.ref]
            result.resources.append(
                self._service_resource(
                    manifest, resource, label, extracted, account_labels, result.warnings
                )
            )
            result.resources.extend(self._iam_binding_resources(resource, label, account_labels))

        result.artifacts = [
            Artifact("main.tf", self._render_main(result.resources)),
            Artifact("variables.tf", self._render_variables(result.variables)),
            Artifact("terraform.tfvars", self._render_tfvars(result.variables)),
        ]
        for artifact in result.artifacts:
            self._validate_hcl(artifact)

        logger.info(
            "templates_synthesized",
            resources=len(result.resources),
            variables=len(result.variables),
            warnings=len(result.warnings),
        )
        return result

    def _global_variables(self, manifest: ExportManifest) -> list[TerraformVariable]:
        return [
            TerraformVariable(
                name="project_id",
                default=manifest.project_id,
                description="The GCP project ID",
            ),
            TerraformVariable(
                name="region",
                default=manifest.region,
                description="The GCP region",
            ),
        ]

    def _build_service_labels(
        self, resources: list[CanonicalResource]
    ) -> dict[ResourceRef, str]:
        name_counts: dict[str, int] = defaultdict(int)
        for resource in resources:
            name_counts[resource.ref.name] += 1

        labels: dict[ResourceRef, str] = {}
        used: set[str] = set()
        for resource in resources:
            base = resource.ref.name
            if name_counts[base] > 1:
                base = f"{base}_{resource.ref.region}"
            labels[resource.ref] = self._ensure_unique_name(self._sanitize_name(base), used)
        return labels

    def _build_service_account_labels(self, resources: list[CanonicalResource]) -> dict[str, str]:
        emails = sorted(
            {
                resource.identity.email
                for resource in resources
                if resource.identity is not None and self._is_managed_account(resource.identity)
            }
        )
        used: set[str] = set()
        return {
            email: self._ensure_unique_name(self._sanitize_name(email.split("@", 1)[0]), used)
            for email in emails
        }

    def _is_managed_account(self, identity: ServiceAccountInfo) -> bool:
        return identity.email.endswith(MANAGED_SERVICE_ACCOUNT_SUFFIX)

    def _identity_for(self, resources: list[CanonicalResource], email: str) -> ServiceAccountInfo:
        for resource in resources:
            if resource.identity is not None and resource.identity.email == email:
                return resource.identity
        raise SynthesisError(f"No service account description for {email}")

    def _leaf_values(
        self,
        manifest: ExportManifest,
        resource: CanonicalResource,
        account_labels: dict[str, str],
    ) -> list[tuple[LeafPath, Any]]:
        leaves: list[tuple[LeafPath, Any]] = []
        if resource.ref.region != manifest.region:
            leaves.append((("location",), resource.ref.region))

        for key, value in sorted(resource.config.items()):
            if key in NON_EXTRACTABLE_ATTRIBUTES:
                continue
            if key == "service_account" and value in account_labels:
                continue
            leaves.extend(self._flatten((key,), value))
        return leaves

    def _flatten(self, path: LeafPath, value: Any) -> list[tuple[LeafPath, Any]]:
        if isinstance(value, dict):
            leaves: list[tuple[LeafPath, Any]] = []
            for key, nested in sorted(value.items()):
                leaves.extend(self._flatten((*path, str(key)), nested))
            return leaves
        if value is None or isinstance(value, list):
            return []
        return [(path, value)]

    def _extract_shared_values(
        self,
        manifest: ExportManifest,
        resources: list[CanonicalResource],
        account_labels: dict[str, str],
    ) -> dict[tuple[LeafPath, str], TerraformVariable]:
        """Turn every value shared by two or more services into a variable.

        Names are the first service (by name) sharing the value plus the
        attribute path, so one value group never renames another. Processing
        order is sorted, so names are stable across runs.
        """
        occurrences: dict[tuple[LeafPath, str], list[CanonicalResource]] = defaultdict(list)
        raw_values: dict[tuple[LeafPath, str], Any] = {}
        for resource in resources:
            for path, value in self._leaf_values(manifest, resource, account_labels):
                key = (path, self._encode(value))
                occurrences[key].append(resource)
                raw_values[key] = value

        by_path: dict[LeafPath, list[tuple[str, list[CanonicalResource]]]] = defaultdict(list)
        for (path, encoded), users in sorted(occurrences.items()):
            if len(users) >= 2:
                by_path[path].append((encoded, users))

        used = set(GLOBAL_VARIABLE_NAMES)
        extracted: dict[tuple[LeafPath, str], TerraformVariable] = {}
        for path in sorted(by_path):
            attribute = "_".join(path)
            for encoded, users in by_path[path]:
                owners = sorted(users, key=lambda r: (r.ref.name, r.ref.region))
                name = self._ensure_unique_name(
                    self._sanitize_name(f"{owners[0].ref.name}_{attribute}"), used
                )
                value = raw_values[(path, encoded)]
                extracted[(path, encoded)] = TerraformVariable(
                    name=name,
                    var_type=self._variable_type(value),
                    default=value,
                    description=(
                        f"Shared {'.'.join(path)} for "
                        f"{', '.join(r.ref.name for r in owners)}"
                    ),
                )
        return extracted

    def _variable_type(self, value: Any) -> str:
        if isinstance(value, bool):
            return "bool"
        if isinstance(value, (int, float)):
            return "number"
        return "string"

    def _encode(self, value: Any) -> str:
        return json.dumps(value, sort_keys=True)

    def _resolve(
        self,
        path: LeafPath,
        value: Any,
        extracted: dict[tuple[LeafPath, str], TerraformVariable],
    ) -> Any:
        if isinstance(value, dict):
            return {
                key: self._resolve((*path, str(key)), nested, extracted)
                for key, nested in sorted(value.items())
            }
        variable = extracted.get((path, self._encode(value)))
        if variable is not None:
            return Expression(f"var.{variable.name}")
        return value

    def _service_account_resource(
        self,
        manifest: ExportManifest,
        identity: ServiceAccountInfo,
        label: str,
    ) -> TerraformResource:
        attributes: dict[str, Any] = {"account_id": identity.account_id}
        if identity.project_id and identity.project_id != manifest.project_id:
            attributes["project"] = identity.project_id
        else:
            attributes["project"] = Expression("var.project_id")
        if identity.display_name:
            attributes["display_name"] = identity.display_name
        if identity.description:
            attributes["description"] = identity.description
        if identity.disabled:
            attributes["disabled"] = True
        return TerraformResource(SERVICE_ACCOUNT_RESOURCE_TYPE, label, attributes)

    def _service_resource(
        self,
        manifest: ExportManifest,
        resource: CanonicalResource,
        label: str,
        extracted: dict[tuple[LeafPath, str], TerraformVariable],
        account_labels: dict[str, str],
        warnings: list[SynthesisWarning],
    ) -> TerraformResource:
        config = {
            key: self._resolve((key,), value, extracted)
            for key, value in resource.config.items()
        }

        attributes: dict[str, Any] = {"name": resource.ref.name}
        if resource.ref.region == manifest.region:
            attributes["location"] = Expression("var.region")
        else:
            attributes["location"] = self._resolve(("location",), resource.ref.region, extracted)
        attributes["project"] = Expression("var.project_id")

        for key in ("ingress", "launch_stage"):
            if key in config:
                attributes[key] = config[key]
        if config.get("labels"):
            attributes["labels"] = config["labels"]

        template: dict[str, Any] = {}
        email = resource.identity_email
        if email is not None:
            template["service_account"] = self._service_account_reference(
                resource, email, config["service_account"], account_labels, warnings
            )
        if "timeout_seconds" in config:
            template["timeout"] = self._duration(config["timeout_seconds"])
        if "container_concurrency" in config:
            template["max_instance_request_concurrency"] = config["container_concurrency"]
        if "execution_environment" in config:
            template["execution_environment"] = config["execution_environment"]
        if "session_affinity" in config:
            template["session_affinity"] = config["session_affinity"]

        scaling = self._pick(
            config, {"min_instances": "min_instance_count", "max_instances": "max_instance_count"}
        )
        if scaling:
            template["scaling"] = Block(scaling)
        vpc_access = self._pick(config, {"vpc_connector": "connector", "vpc_egress": "egress"})
        if vpc_access:
            template["vpc_access"] = Block(vpc_access)

        template["containers"] = Block(self._container_attributes(config))
        attributes["template"] = Block(template)

        traffic = resource.config.get("traffic")
        if traffic:
            attributes["traffic"] = [self._traffic_block(entry) for entry in traffic]

        return TerraformResource(SERVICE_RESOURCE_TYPE, label, attributes)

    def _service_account_reference(
        self,
        resource: CanonicalResource,
        email: str,
        literal: Any,
        account_labels: dict[str, str],
        warnings: list[SynthesisWarning],
    ) -> Any:
        if email in account_labels:
            return Expression(f"{SERVICE_ACCOUNT_RESOURCE_TYPE}.{account_labels[email]}.email")

        message = f"service account {email} is not part of this export; kept as a literal"
        if self.config.fail_on_unresolved_references:
            raise SynthesisError(f"{resource.ref}: {message}")
        warnings.append(SynthesisWarning(message=message, resource=resource.ref.key))
        logger.warning("unresolved_reference", service=resource.ref.key, email=email)
        return literal

    def _container_attributes(self, config: dict[str, Any]) -> dict[str, Any]:
        container: dict[str, Any] = {}
        if "image" in config:
            container["image"] = config["image"]

        if "container_port" in config:
            container["ports"] = Block({"container_port": config["container_port"]})

        resources: dict[str, Any] = {}
        limits = {key: config[key] for key in ("cpu", "memory") if key in config}
        if limits:
            resources["limits"] = limits
        if "cpu_throttling" in config:
            resources["cpu_idle"] = config["cpu_throttling"]
        if "startup_cpu_boost" in config:
            resources["startup_cpu_boost"] = config["startup_cpu_boost"]
        if resources:
            container["resources"] = Block(resources)

        env = config.get("env") or {}
        if env:
            container["env"] = [self._env_block(name, value) for name, value in env.items()]
        return container

    def _env_block(self, name: str, value: Any) -> Block:
        if isinstance(value, dict):
            secret_ref = Block(
                {"secret": value.get("secret"), "version": value.get("version", "latest")}
            )
            return Block(
                {"name": name, "value_source": Block({"secret_key_ref": secret_ref})}
            )
        return Block({"name": name, "value": value})

    def _traffic_block(self, entry: dict[str, Any]) -> Block:
        attributes: dict[str, Any] = {}
        if entry.get("latest"):
            attributes["type"] = TRAFFIC_TYPE_LATEST
        else:
            attributes["type"] = TRAFFIC_TYPE_REVISION
            if entry.get("revision"):
                attributes["revision"] = entry["revision"]
        attributes["percent"] = entry.get("percent", 0)
        if entry.get("tag"):
            attributes["tag"] = entry["tag"]
        return Block(attributes)

    def _iam_binding_resources(
        self,
        resource: CanonicalResource,
        service_label: str,
        account_labels: dict[str, str],
    ) -> list[TerraformResource]:
        service_address = f"{SERVICE_RESOURCE_TYPE}.{service_label}"
        used: set[str] = set()
        blocks: list[TerraformResource] = []
        for binding in resource.bindings:
            label = self._ensure_unique_name(
                f"{service_label}_{self._sanitize_name(binding.role.rsplit('/', 1)[-1])}", used
            )
            blocks.append(
                TerraformResource(
                    IAM_BINDING_RESOURCE_TYPE,
                    label,
                    {
                        "project": Expression(f"{service_address}.project"),
                        "location": Expression(f"{service_address}.location"),
                        "name": Expression(f"{service_address}.name"),
                        "role": binding.role,
                        "members": self._binding_members(binding, account_labels),
                    },
                )
            )
        return blocks

    def _binding_members(self, binding: IamBinding, account_labels: dict[str, str]) -> list[Any]:
        members: list[Any] = []
        for member in sorted(binding.members):
            kind, _, email = member.partition(":")
            if kind == "serviceAccount" and email in account_labels:
                reference = f"{SERVICE_ACCOUNT_RESOURCE_TYPE}.{account_labels[email]}.email"
                members.append(Expression(f'"serviceAccount:${{{reference}}}"'))
            else:
                members.append(member)
        return members

    def _pick(self, config: dict[str, Any], mapping: dict[str, str]) -> dict[str, Any]:
        return {target: config[source] for source, target in mapping.items() if source in config}

    def _duration(self, value: Any) -> Any:
        if isinstance(value, Expression):
            return Expression(f'"${{{value.text}}}s"')
        if isinstance(value, int) and not isinstance(value, bool):
            return f"{value}s"
        return value

    # Rendering

    def _render_main(self, resources: list[TerraformResource]) -> str:
        lines = [
            "terraform {",
            f"  required_version = {self._format_value(self.config.terraform_version)}",
            "",
            "  required_providers {",
            "    google = {",
            '      source  = "hashicorp/google"',
            f"      version = {self._format_value(self.config.google_provider_version)}",
            "    }",
            "  }",
            "}",
            "",
            'provider "google" {',
            "  project = var.project_id",
            "  region  = var.region",
            "}",
        ]
        for resource in resources:
            lines.append("")
            lines.extend(self._format_resource(resource))
        return "\n".join(self._align_assignments(lines)) + "\n"

    def _render_variables(self, variables: list[TerraformVariable]) -> str:
        lines: list[str] = []
        for var in variables:
            if lines:
                lines.append("")
            lines.append(f'variable "{var.name}" {{')
            if var.description:
                lines.append(f"  description = {self._format_value(var.description)}")
            lines.append(f"  type = {var.var_type}")
            if var.default is not None:
                lines.append(f"  default = {self._format_value(var.default)}")
            lines.append("}")
        return "\n".join(self._align_assignments(lines)) + "\n"

    def _render_tfvars(self, variables: list[TerraformVariable]) -> str:
        lines = [
            f"{var.name} = {self._format_value(var.default)}"
            for var in variables
            if var.default is not None
        ]
        return "\n".join(self._align_assignments(lines)) + "\n"

    def _format_resource(self, resource: TerraformResource) -> list[str]:
        lines = [f'resource "{resource.resource_type}" "{resource.name}" {{']
        lines.extend(self._format_body(resource.attributes, indent=1))
        lines.append("}")
        return lines

    def _format_body(self, attributes: dict[str, Any], indent: int) -> list[str]:
        prefix = "  " * indent
        simple: list[str] = []
        nested: list[str] = []

        for key, value in attributes.items():
            if isinstance(value, Block):
                nested.append("")
                nested.extend(self._format_block(key, value, indent))
            elif isinstance(value, list) and value and all(isinstance(v, Block) for v in value):
                for item in value:
                    nested.append("")
                    nested.extend(self._format_block(key, item, indent))
            elif isinstance(value, dict):
                if value:
                    simple.extend(self._format_map(key, value, indent))
            else:
                simple.append(f"{prefix}{key} = {self._format_value(value)}")

        if not simple and nested:
            nested = nested[1:]
        return simple + nested

    def _format_block(self, key: str, block: Block, indent: int) -> list[str]:
        prefix = "  " * indent
        lines = [f"{prefix}{key} {{"]
        lines.extend(self._format_body(block.attributes, indent + 1))
        lines.append(f"{prefix}}}")
        return lines

    def _format_map(self, key: str, value: dict[str, Any], indent: int) -> list[str]:
        prefix = "  " * indent
        lines = [f"{prefix}{key} = {{"]
        for map_key, map_value in sorted(value.items()):
            lines.append(
                f"{prefix}  {self._format_hcl_key(map_key)} = {self._format_value(map_value)}"
            )
        lines.append(f"{prefix}}}")
        return lines

    def _format_value(self, value: Any) -> str:
        if isinstance(value, Expression):
            return value.text
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str):
            return self._quote(value)
        if isinstance(value, list):
            return f"[{', '.join(self._format_value(item) for item in value)}]"
        if isinstance(value, dict):
            items = [
                f"{self._format_hcl_key(k)} = {self._format_value(v)}"
                for k, v in sorted(value.items())
            ]
            return "{ " + ", ".join(items) + " }"
        return self._quote(json.dumps(value, sort_keys=True))

    def _quote(self, value: str) -> str:
        escaped = (
            value.replace("\\", "\\\\")
            .replace('"', '\\"')
            .replace("\n", "\\n")
            .replace("\r", "\\r")
            .replace("\t", "\\t")
            .replace("${", "$${")
            .replace("%{", "%%{")
        )
        return f'"{escaped}"'

    def _is_valid_identifier(self, value: str) -> bool:
        return bool(re.match(r"^[A-Za-z_][A-Za-z0-9_-]*$", value))

    def _format_hcl_key(self, key: str) -> str:
        if self._is_valid_identifier(key):
            return key
        return self._quote(key)

    def _align_assignments(self, lines: list[str]) -> list[str]:
        """Pad runs of ``key = value`` lines at one indent the way terraform fmt does."""
        aligned = list(lines)
        run: list[tuple[int, str, str, str]] = []

        def flush() -> None:
            if len(run) > 1:
                width = max(len(key) for _, _, key, _ in run)
                for index, indent, key, rest in run:
                    aligned[index] = f"{indent}{key.ljust(width)} = {rest}"
            run.clear()

        for index, line in enumerate(lines):
            match = ASSIGNMENT_PATTERN.match(line)
            if match is None:
                flush()
                continue
            indent, key, rest = match.groups()
            if run and run[0][1] != indent:
                flush()
            run.append((index, indent, key, rest))
        flush()
        return aligned

    def _sanitize_name(self, name: str) -> str:
        normalized = re.sub(r"[^a-zA-Z0-9]", "_", name)
        normalized = re.sub(r"_+", "_", normalized).lower().strip("_")
        if not normalized:
            return "res"
        if normalized[0].isdigit():
            normalized = f"n{normalized}"
        return normalized

    def _ensure_unique_name(self, base_name: str, used_names: set[str]) -> str:
        name = base_name
        counter = 2
        while name in used_names:
            name = f"{base_name}_{counter}"
            counter += 1
        used_names.add(name)
        return name

    def _validate_hcl(self, artifact: Artifact) -> None:
        try:
            hcl2.loads(artifact.content)  # type: ignore[attr-defined]
        except Exception as e:
            raise SynthesisError(f"Generated {artifact.name} is not valid HCL: {e}") from e
