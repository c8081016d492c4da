from __future__ import annotations

import re
from typing import Any

from cloudrun_export_kit.models import (
    CanonicalResource,
    DescribeResult,
    IamBinding,
    ResourceRef,
    ServiceAccountInfo,
)

FieldPath = tuple[str | int, ...]

V1 = "v1"
V2 = "v2"

V1_API_VERSIONS = {"serving.knative.dev/v1", "run.googleapis.com/v1"}

_V1_TEMPLATE: FieldPath = ("spec", "template")
_V1_TEMPLATE_ANNOTATIONS: FieldPath = ("spec", "template", "metadata", "annotations")
_V1_CONTAINER: FieldPath = ("spec", "template", "spec", "containers", 0)

# Canonical attribute -> candidate paths, tried in order. Older field locations
# stay listed after the current one so both shapes keep normalizing.
FIELD_ALIASES: dict[str, dict[str, list[FieldPath]]] = {
    V1: {
        "image": [(*_V1_CONTAINER, "image")],
        "service_account": [
            ("spec", "template", "spec", "serviceAccountName"),
            ("spec", "template", "serviceAccount"),
        ],
        "container_port": [(*_V1_CONTAINER, "ports", 0, "containerPort")],
        "cpu": [(*_V1_CONTAINER, "resources", "limits", "cpu")],
        "memory": [(*_V1_CONTAINER, "resources", "limits", "memory")],
        "container_concurrency": [("spec", "template", "spec", "containerConcurrency")],
        "timeout_seconds": [("spec", "template", "spec", "timeoutSeconds")],
        "min_instances": [
            (*_V1_TEMPLATE_ANNOTATIONS, "autoscaling.knative.dev/minScale"),
            ("metadata", "annotations", "run.googleapis.com/minScale"),
        ],
        "max_instances": [(*_V1_TEMPLATE_ANNOTATIONS, "autoscaling.knative.dev/maxScale")],
        "ingress": [("metadata", "annotations", "run.googleapis.com/ingress")],
        "vpc_connector": [(*_V1_TEMPLATE_ANNOTATIONS, "run.googleapis.com/vpc-access-connector")],
        "vpc_egress": [(*_V1_TEMPLATE_ANNOTATIONS, "run.googleapis.com/vpc-access-egress")],
        "execution_environment": [
            (*_V1_TEMPLATE_ANNOTATIONS, "run.googleapis.com/execution-environment")
        ],
        "cpu_throttling": [(*_V1_TEMPLATE_ANNOTATIONS, "run.googleapis.com/cpu-throttling")],
        "startup_cpu_boost": [(*_V1_TEMPLATE_ANNOTATIONS, "run.googleapis.com/startup-cpu-boost")],
        "session_affinity": [(*_V1_TEMPLATE_ANNOTATIONS, "run.googleapis.com/sessionAffinity")],
        "launch_stage": [("metadata", "annotations", "run.googleapis.com/launch-stage")],
        "env": [(*_V1_CONTAINER, "env")],
        "labels": [("metadata", "labels")],
        "traffic": [("spec", "traffic")],
    },
    V2: {
        "image": [("template", "containers", 0, "image")],
        "service_account": [("template", "serviceAccount")],
        "container_port": [("template", "containers", 0, "ports", 0, "containerPort")],
        "cpu": [("template", "containers", 0, "resources", "limits", "cpu")],
        "memory": [("template", "containers", 0, "resources", "limits", "memory")],
        "container_concurrency": [
            ("template", "maxInstanceRequestConcurrency"),
            ("template", "containerConcurrency"),
        ],
        "timeout_seconds": [("template", "timeout")],
        "min_instances": [
            ("template", "scaling", "minInstanceCount"),
            ("scaling", "minInstanceCount"),
        ],
        "max_instances": [("template", "scaling", "maxInstanceCount")],
        "ingress": [("ingress",)],
        "vpc_connector": [("template", "vpcAccess", "connector")],
        "vpc_egress": [("template", "vpcAccess", "egress")],
        "execution_environment": [("template", "executionEnvironment")],
        "cpu_throttling": [("template", "containers", 0, "resources", "cpuIdle")],
        "startup_cpu_boost": [("template", "containers", 0, "resources", "startupCpuBoost")],
        "session_affinity": [("template", "sessionAffinity")],
        "launch_stage": [("launchStage",)],
        "env": [("template", "containers", 0, "env")],
        "labels": [("labels",)],
        "traffic": [("traffic",)],
    },
}

INTEGER_ATTRIBUTES = {"container_port", "container_concurrency", "min_instances", "max_instances"}
BOOLEAN_ATTRIBUTES = {"cpu_throttling", "startup_cpu_boost", "session_affinity"}

INGRESS_VALUES = {
    "all": "INGRESS_TRAFFIC_ALL",
    "internal": "INGRESS_TRAFFIC_INTERNAL_ONLY",
    "internal-and-cloud-load-balancing": "INGRESS_TRAFFIC_INTERNAL_LOAD_BALANCER",
}

VPC_EGRESS_VALUES = {
    "all-traffic": "ALL_TRAFFIC",
    "all": "ALL_TRAFFIC",
    "private-ranges-only": "PRIVATE_RANGES_ONLY",
}

EXECUTION_ENVIRONMENT_VALUES = {
    "gen1": "EXECUTION_ENVIRONMENT_GEN1",
    "gen2": "EXECUTION_ENVIRONMENT_GEN2",
}

SYSTEM_LABEL_PREFIXES = (
    "cloud.googleapis.com/",
    "run.googleapis.com/",
    "serving.knative.dev/",
    "client.knative.dev/",
    "goog-",
    "commit-sha",
    "gcb-",
    "managed-by",
)

# Annotations that change on every deploy or are owned by the control plane.
VOLATILE_ANNOTATION_PREFIXES = (
    "serving.knative.dev/",
    "client.knative.dev/",
    "run.googleapis.com/client-",
    "run.googleapis.com/operation-id",
    "run.googleapis.com/urls",
    "run.googleapis.com/build-",
    "run.googleapis.com/source-location",
)

VOLATILE_TOP_LEVEL_FIELDS = {
    V1: {"status"},
    V2: {
        "name",
        "uid",
        "generation",
        "createTime",
        "updateTime",
        "deleteTime",
        "expireTime",
        "creator",
        "lastModifier",
        "etag",
        "observedGeneration",
        "terminalCondition",
        "conditions",
        "latestReadyRevision",
        "latestCreatedRevision",
        "trafficStatuses",
        "uri",
        "urls",
        "reconciling",
        "satisfiesPzs",
        "client",
        "clientVersion",
    },
}

VOLATILE_METADATA_FIELDS = {
    "name",
    "namespace",
    "uid",
    "generation",
    "resourceVersion",
    "creationTimestamp",
    "selfLink",
}

DURATION_PATTERN = re.compile(r"^(?P<seconds>\d+)(?:\.(?P<fraction>\d+))?s$")

_MISSING = object()


class NormalizationError(Exception):
    pass


def detect_api_version(config: dict[str, Any]) -> str:
    api_version = config.get("apiVersion")
    if isinstance(api_version, str) and api_version in V1_API_VERSIONS:
        return V1
    if "spec" in config and "metadata" in config:
        return V1
    if "template" in config:
        return V2
    return V1


def extract_identity_email(config: Any) -> str | None:
    if not isinstance(config, dict):
        return None
    version = detect_api_version(config)
    value = _first_present(config, FIELD_ALIASES[version]["service_account"])
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def normalize_result(result: DescribeResult) -> CanonicalResource:
    return normalize_resource(result.ref, result.config, result.bindings, result.identity)


def normalize_resource(
    ref: ResourceRef,
    config: Any,
    bindings: Any = None,
    identity: ServiceAccountInfo | None = None,
) -> CanonicalResource:
    """Build the canonical model for one described service.

    Missing optional fields are left out of the attribute map. Only input that
    is not shaped like a service document at all raises ``NormalizationError``.
    """
    if not isinstance(config, dict):
        raise NormalizationError(
            f"{ref}: config must be a mapping, got {type(config).__name__}"
        )

    version = detect_api_version(config)
    attributes: dict[str, Any] = {}
    for attribute, paths in FIELD_ALIASES[version].items():
        value = _first_present(config, paths)
        if value is _MISSING or value is None:
            continue
        normalized = _normalize_attribute(ref, attribute, value)
        if normalized is None or normalized == {} or normalized == []:
            continue
        attributes[attribute] = normalized

    identity_email = attributes.get("service_account")
    if identity is not None and identity_email and identity.email != identity_email:
        identity = None

    return CanonicalResource(
        ref=ref,
        config=attributes,
        bindings=_normalize_bindings(ref, bindings),
        identity=identity,
        extra=_collect_extra(config, version),
    )


def _first_present(document: Any, paths: list[FieldPath]) -> Any:
    for path in paths:
        value = _get_path(document, path)
        if value is not _MISSING:
            return value
    return _MISSING


def _get_path(document: Any, path: FieldPath) -> Any:
    current = document
    for part in path:
        if isinstance(part, int):
            if not isinstance(current, list) or len(current) <= part:
                return _MISSING
            current = current[part]
        else:
            if not isinstance(current, dict) or part not in current:
                return _MISSING
            current = current[part]
    return current


def _normalize_attribute(ref: ResourceRef, attribute: str, value: Any) -> Any:
    if attribute in INTEGER_ATTRIBUTES:
        return _to_int(value)
    if attribute in BOOLEAN_ATTRIBUTES:
        return _to_bool(value)
    if attribute == "timeout_seconds":
        return _to_seconds(value)
    if attribute == "ingress":
        return _map_enum(value, INGRESS_VALUES)
    if attribute == "vpc_egress":
        return _map_enum(value, VPC_EGRESS_VALUES)
    if attribute == "execution_environment":
        return _map_enum(value, EXECUTION_ENVIRONMENT_VALUES)
    if attribute == "launch_stage":
        stage = str(value).upper()
        return None if stage == "GA" else stage
    if attribute == "env":
        return _normalize_env(ref, value)
    if attribute == "labels":
        return _normalize_labels(value)
    if attribute == "traffic":
        return _normalize_traffic(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _to_int(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if re.fullmatch(r"-?\d+", stripped):
            return int(stripped)
    return value


def _to_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return value


def _to_seconds(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return int(stripped)
        match = DURATION_PATTERN.match(stripped)
        if match and not (match.group("fraction") or "").strip("0"):
            return int(match.group("seconds"))
    return value


def _map_enum(value: Any, mapping: dict[str, str]) -> Any:
    if not isinstance(value, str):
        return value
    return mapping.get(value.strip().lower(), value.strip().upper())


def _normalize_env(ref: ResourceRef, value: Any) -> dict[str, Any]:
    if not isinstance(value, list):
        raise NormalizationError(f"{ref}: container env must be a list")

    env: dict[str, Any] = {}
    for item in value:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise NormalizationError(f"{ref}: env entries must be mappings with a name")
        name = item["name"]
        if "value" in item:
            env[name] = "" if item["value"] is None else str(item["value"])
            continue

        # v1 uses valueFrom.secretKeyRef {name, key}; v2 valueSource.secretKeyRef
        # {secret, version}.
        secret_ref = _get_path(item, ("valueSource", "secretKeyRef"))
        if secret_ref is _MISSING:
            secret_ref = _get_path(item, ("valueFrom", "secretKeyRef"))
        if isinstance(secret_ref, dict):
            secret = secret_ref.get("secret", secret_ref.get("name"))
            version = secret_ref.get("version", secret_ref.get("key", "latest"))
            env[name] = {"secret": str(secret), "version": str(version)}
        else:
            env[name] = ""
    return dict(sorted(env.items()))


def _normalize_labels(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {
        str(key): str(label)
        for key, label in sorted(value.items())
        if not str(key).startswith(SYSTEM_LABEL_PREFIXES)
    }


def _normalize_traffic(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []

    traffic: list[dict[str, Any]] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        entry: dict[str, Any] = {"percent": _to_int(item.get("percent", 0))}
        latest = item.get("latestRevision")
        if latest is None:
            latest = item.get("type") == "TRAFFIC_TARGET_ALLOCATION_TYPE_LATEST"
        entry["latest"] = bool(latest)
        revision = item.get("revisionName", item.get("revision"))
        if revision and not entry["latest"]:
            entry["revision"] = str(revision)
        if item.get("tag"):
            entry["tag"] = str(item["tag"])
        traffic.append(entry)

    # A single 100% route to the latest revision is the default and carries no signal.
    if traffic == [{"percent": 100, "latest": True}]:
        return []
    return traffic


def _normalize_bindings(ref: ResourceRef, bindings: Any) -> list[IamBinding]:
    if bindings is None:
        return []
    if not isinstance(bindings, list):
        raise NormalizationError(f"{ref}: bindings must be a list")

    merged: dict[str, set[str]] = {}
    for binding in bindings:
        if not isinstance(binding, IamBinding):
            raise NormalizationError(f"{ref}: unexpected binding entry {binding!r}")
        merged.setdefault(binding.role, set()).update(binding.members)

    return [
        IamBinding(role=role, members=frozenset(members))
        for role, members in sorted(merged.items())
        if members
    ]


def _collect_extra(config: dict[str, Any], version: str) -> dict[str, Any]:
    if version == V1:
        return _collect_extra_v1(config)
    return _collect_extra_v2(config)


def _collect_extra_v1(config: dict[str, Any]) -> dict[str, Any]:
    extra: dict[str, Any] = {}

    for key, value in config.items():
        if key in {"apiVersion", "kind", "metadata", "spec"}:
            continue
        if key in VOLATILE_TOP_LEVEL_FIELDS[V1]:
            continue
        extra[key] = value

    metadata = config.get("metadata")
    if isinstance(metadata, dict):
        for key, value in metadata.items():
            if key in VOLATILE_METADATA_FIELDS or key in {"labels", "annotations"}:
                continue
            extra.setdefault("metadata", {})[key] = value
        annotations = _unknown_annotations(
            metadata.get("annotations"), _alias_annotation_keys(V1, ("metadata", "annotations"))
        )
        if annotations:
            extra["annotations"] = annotations

    template = _get_path(config, _V1_TEMPLATE)
    if isinstance(template, dict):
        template_labels = _normalize_labels(_get_path(template, ("metadata", "labels")))
        if template_labels:
            extra["template_labels"] = template_labels
        revision = _get_path(template, ("metadata", "name"))
        if revision:
            extra.setdefault("template", {})["revision"] = revision
        template_annotations = _unknown_annotations(
            _get_path(template, ("metadata", "annotations")),
            _alias_annotation_keys(V1, _V1_TEMPLATE_ANNOTATIONS),
        )
        if template_annotations:
            extra["template_annotations"] = template_annotations

        template_spec = template.get("spec")
        if isinstance(template_spec, dict):
            _collect_template_extra(
                template_spec,
                extra,
                consumed={
                    "containers",
                    "serviceAccountName",
                    "containerConcurrency",
                    "timeoutSeconds",
                },
            )

    spec = config.get("spec")
    if isinstance(spec, dict):
        for key, value in spec.items():
            if key in {"template", "traffic"}:
                continue
            extra.setdefault("spec", {})[key] = value

    return extra


def _collect_extra_v2(config: dict[str, Any]) -> dict[str, Any]:
    extra: dict[str, Any] = {}
    consumed_top_level = {"template", "ingress", "labels", "launchStage", "traffic", "scaling"}

    for key, value in config.items():
        if key in consumed_top_level or key in VOLATILE_TOP_LEVEL_FIELDS[V2]:
            continue
        if key == "annotations":
            annotations = _unknown_annotations(value, set())
            if annotations:
                extra["annotations"] = annotations
            continue
        extra[key] = value

    scaling = config.get("scaling")
    if isinstance(scaling, dict):
        rest = {k: v for k, v in scaling.items() if k != "minInstanceCount"}
        if rest:
            extra["scaling"] = rest

    template = config.get("template")
    if isinstance(template, dict):
        _collect_template_extra(
            template,
            extra,
            consumed={
                "containers",
                "serviceAccount",
                "maxInstanceRequestConcurrency",
                "containerConcurrency",
                "timeout",
                "scaling",
                "vpcAccess",
                "executionEnvironment",
                "sessionAffinity",
                "labels",
                "annotations",
            },
        )
        template_scaling = template.get("scaling")
        if isinstance(template_scaling, dict):
            rest = {
                k: v
                for k, v in template_scaling.items()
                if k not in {"minInstanceCount", "maxInstanceCount"}
            }
            if rest:
                extra.setdefault("template", {})["scaling"] = rest
        vpc_access = template.get("vpcAccess")
        if isinstance(vpc_access, dict):
            rest = {k: v for k, v in vpc_access.items() if k not in {"connector", "egress"}}
            if rest:
                extra.setdefault("template", {})["vpcAccess"] = rest
        template_annotations = _unknown_annotations(template.get("annotations"), set())
        if template_annotations:
            extra["template_annotations"] = template_annotations
        template_labels = _normalize_labels(template.get("labels"))
        if template_labels:
            extra["template_labels"] = template_labels

    return extra


def _collect_template_extra(
    template_spec: dict[str, Any], extra: dict[str, Any], consumed: set[str]
) -> None:
    for key, value in template_spec.items():
        if key in consumed:
            continue
        extra.setdefault("template", {})[key] = value

    containers = template_spec.get("containers")
    if not isinstance(containers, list) or not containers:
        return

    primary = containers[0]
    if isinstance(primary, dict):
        container_extra = _container_extra(primary)
        if container_extra:
            extra["container"] = container_extra
    if len(containers) > 1:
        extra["sidecars"] = containers[1:]


def _container_extra(container: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in container.items():
        if key in {"image", "env"}:
            continue
        if key == "ports":
            if isinstance(value, list) and len(value) == 1 and isinstance(value[0], dict):
                rest = {k: v for k, v in value[0].items() if k != "containerPort"}
                if rest:
                    result["ports"] = [rest]
            elif value:
                result["ports"] = value
            continue
        if key == "resources" and isinstance(value, dict):
            rest_resources: dict[str, Any] = {}
            for res_key, res_value in value.items():
                if res_key in {"cpuIdle", "startupCpuBoost"}:
                    continue
                if res_key == "limits" and isinstance(res_value, dict):
                    limits = {k: v for k, v in res_value.items() if k not in {"cpu", "memory"}}
                    if limits:
                        rest_resources["limits"] = limits
                    continue
                rest_resources[res_key] = res_value
            if rest_resources:
                result["resources"] = rest_resources
            continue
        if key == "name" and not value:
            continue
        result[key] = value
    return result


def _alias_annotation_keys(version: str, prefix: FieldPath) -> set[str]:
    keys: set[str] = set()
    for paths in FIELD_ALIASES[version].values():
        for path in paths:
            if path[: len(prefix)] == prefix and len(path) == len(prefix) + 1:
                keys.add(str(path[-1]))
    return keys


def _unknown_annotations(annotations: Any, known: set[str]) -> dict[str, Any]:
    if not isinstance(annotations, dict):
        return {}
    return {
        str(key): value
        for key, value in sorted(annotations.items())
        if str(key) not in known and not str(key).startswith(VOLATILE_ANNOTATION_PREFIXES)
    }
