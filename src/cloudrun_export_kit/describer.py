from __future__ import annotations

import threading
from collections.abc import Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

import structlog

from cloudrun_export_kit.gcloud import CloudRunClient, GcloudError
from cloudrun_export_kit.models import (
    DescribeResult,
    ExportConfig,
    FailureKind,
    IamBinding,
    IdentityStatus,
    ResourceRef,
    ServiceAccountInfo,
    SkippedResource,
)
from cloudrun_export_kit.normalizer import extract_identity_email

logger = structlog.get_logger()


class DescribeError(Exception):
    def __init__(
        self, ref: ResourceRef, reason: str, kind: FailureKind = FailureKind.ERROR
    ) -> None:
        super().__init__(f"{ref}: {reason}")
        self.ref = ref
        self.reason = reason
        self.kind = kind


@dataclass
class DescribeBatch:
    results: list[DescribeResult] = field(default_factory=list)
    skipped: list[SkippedResource] = field(default_factory=list)
    cancelled: list[ResourceRef] = field(default_factory=list)


def bindings_from_policy(policy: Any) -> tuple[list[IamBinding], list[str]]:
    """Convert a raw IAM policy document into bindings.

    Malformed entries are dropped and reported back as warnings.
    """
    warnings: list[str] = []
    if not isinstance(policy, dict):
        return [], ["IAM policy is not a mapping"]

    raw_bindings = policy.get("bindings") or []
    if not isinstance(raw_bindings, list):
        return [], ["IAM policy bindings is not a list"]

    members_by_role: dict[str, set[str]] = {}
    for entry in raw_bindings:
        if not isinstance(entry, dict) or not isinstance(entry.get("role"), str):
            warnings.append(f"Ignoring malformed IAM binding: {entry!r}")
            continue
        members = entry.get("members") or []
        if not isinstance(members, list):
            warnings.append(f"Ignoring IAM binding with invalid members for {entry['role']}")
            continue
        if entry.get("condition"):
            warnings.append(
                f"Conditional IAM binding for {entry['role']} exported without condition"
            )
        members_by_role.setdefault(entry["role"], set()).update(str(m) for m in members)

    bindings = [
        IamBinding(role=role, members=frozenset(members))
        for role, members in sorted(members_by_role.items())
    ]
    return bindings, warnings


def parse_service_account(data: dict[str, Any], email: str) -> ServiceAccountInfo:
    return ServiceAccountInfo(
        email=str(data.get("email") or email),
        display_name=data.get("displayName") or None,
        description=data.get("description") or None,
        disabled=bool(data.get("disabled", False)),
        unique_id=data.get("uniqueId") or None,
        project_id=data.get("projectId") or None,
    )


class ResourceDescriber:
    def __init__(self, client: CloudRunClient, config: ExportConfig) -> None:
        self.client = client
        self.config = config

    def describe(self, ref: ResourceRef) -> DescribeResult:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"describe-{ref.name}") as pool:
            config_future = pool.submit(self.client.describe_service, ref)
            iam_future = pool.submit(self.client.get_iam_policy, ref)

            try:
                config = config_future.result()
            except GcloudError as e:
                raise DescribeError(ref, str(e), e.kind) from e

            if not isinstance(config, dict):
                raise DescribeError(ref, "service description is not a mapping")

            result = DescribeResult(ref=ref, config=config)
            self._fetch_identity(result)
            self._collect_iam(result, iam_future)

        logger.debug(
            "service_described",
            service=ref.key,
            bindings=len(result.bindings),
            identity=result.identity_status.value,
        )
        return result

    def describe_all(
        self,
        refs: Iterable[ResourceRef],
        cancel_event: threading.Event | None = None,
    ) -> DescribeBatch:
        batch = DescribeBatch()
        pending = iter(refs)
        in_flight: dict[Future[DescribeResult], ResourceRef] = {}
        max_workers = max(1, self.config.max_workers)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="describer") as pool:

            def submit_next() -> bool:
                if cancel_event is not None and cancel_event.is_set():
                    return False
                ref = next(pending, None)
                if ref is None:
                    return False
                in_flight[pool.submit(self.describe, ref)] = ref
                return True

            while len(in_flight) < max_workers and submit_next():
                pass

            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    ref = in_flight.pop(future)
                    try:
                        batch.results.append(future.result())
                    except DescribeError as e:
                        logger.warning(
                            "describe_failed", service=ref.key, kind=e.kind.value, reason=e.reason
                        )
                        batch.skipped.append(SkippedResource(ref=ref, reason=e.reason, kind=e.kind))
                    submit_next()

        batch.cancelled = sorted(pending)
        if batch.cancelled:
            logger.warning("describe_cancelled", remaining=len(batch.cancelled))

        batch.results.sort(key=lambda r: r.ref)
        batch.skipped.sort(key=lambda s: s.ref)
        return batch

    def _collect_iam(self, result: DescribeResult, iam_future: Future[dict[str, Any]]) -> None:
        try:
            policy = iam_future.result()
        except GcloudError as e:
            message = f"IAM policy unavailable ({e.kind.value}): {e}"
            logger.warning("iam_fetch_failed", service=result.ref.key, kind=e.kind.value)
            result.warnings.append(f"{result.ref}: {message}")
            return

        result.raw_iam_policy = policy
        bindings, warnings = bindings_from_policy(policy)
        result.bindings = bindings
        result.warnings.extend(f"{result.ref}: {warning}" for warning in warnings)

    def _fetch_identity(self, result: DescribeResult) -> None:
        email = extract_identity_email(result.config)
        if email is None:
            result.identity_status = IdentityStatus.NONE
            return

        try:
            data = self.client.describe_service_account(email)
        except GcloudError as e:
            if e.kind is FailureKind.NOT_FOUND:
                result.identity_status = IdentityStatus.NOT_FOUND
                logger.info("service_account_not_found", service=result.ref.key, email=email)
                return
            result.identity_status = IdentityStatus.UNAVAILABLE
            logger.warning(
                "service_account_fetch_failed",
                service=result.ref.key,
                email=email,
                kind=e.kind.value,
            )
            result.warnings.append(
                f"{result.ref}: service account {email} unavailable ({e.kind.value}): {e}"
            )
            return

        result.raw_identity = data
        result.identity = parse_service_account(data, email)
        result.identity_status = IdentityStatus.FOUND
