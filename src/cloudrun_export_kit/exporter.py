from __future__ import annotations

import threading
from typing import Any

import structlog

from cloudrun_export_kit.describer import DescribeBatch, ResourceDescriber
from cloudrun_export_kit.enumerator import EnumerationError, ResourceEnumerator
from cloudrun_export_kit.gcloud import CloudRunClient, GcloudError, GcloudRunner
from cloudrun_export_kit.models import (
    DescribeResult,
    ExportConfig,
    ExportManifest,
    ExportResult,
    ResourceRef,
    ResourceSnapshot,
)
from cloudrun_export_kit.normalizer import NormalizationError, normalize_result
from cloudrun_export_kit.synthesizer import SynthesisError, TemplateSynthesizer
from cloudrun_export_kit.writer import ExportWriter, WriteError

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_ENUMERATION_FAILED = 2
EXIT_FATAL = 3

VPC_CONNECTORS_FILENAME = "vpc_connectors.yaml"
SECRETS_FILENAME = "secrets.yaml"

# Secret listings keep names and metadata only, never payloads.
SECRET_FIELDS = ("name", "createTime", "labels", "replication", "expireTime", "rotation")


class CloudRunExporter:
    def __init__(self, config: ExportConfig, client: CloudRunClient | None = None) -> None:
        self.config = config
        self.client: CloudRunClient = client or GcloudRunner(
            project_id=config.project_id, timeout=config.timeout_seconds
        )
        self.enumerator = ResourceEnumerator(self.client, config)
        self.describer = ResourceDescriber(self.client, config)
        self.synthesizer = TemplateSynthesizer(config)
        self.writer = ExportWriter(config)

    def run(self, cancel_event: threading.Event | None = None) -> ExportResult:
        output_path = self.config.output_dir

        try:
            refs = self.enumerator.enumerate()
        except EnumerationError as e:
            logger.error("enumeration_failed", error=str(e))
            return ExportResult(
                success=False,
                output_path=output_path,
                exit_code=EXIT_ENUMERATION_FAILED,
                errors=[str(e)],
            )

        batch = self.describer.describe_all(refs, cancel_event)
        warnings = [warning for result in batch.results for warning in result.warnings]

        try:
            manifest = self._build_manifest(batch.results)
            synthesis = self.synthesizer.synthesize(manifest)
            warnings.extend(str(warning) for warning in synthesis.warnings)

            inventory: dict[str, Any] = {}
            if self.config.include_inventory:
                inventory = self._collect_inventory(warnings)

            snapshots = self._build_snapshots(batch) if self.config.write_snapshots else {}
            diff = self.writer.write(
                manifest,
                synthesis.artifacts,
                output_path,
                snapshots=snapshots,
                inventory=inventory,
                preserve=[s.ref for s in batch.skipped] + batch.cancelled,
            )
        except (NormalizationError, SynthesisError, WriteError) as e:
            logger.error("export_failed", error=str(e))
            return ExportResult(
                success=False,
                output_path=output_path,
                exit_code=EXIT_FATAL,
                skipped=batch.skipped,
                warnings=warnings,
                errors=[str(e)],
                cancelled=[ref.key for ref in batch.cancelled],
            )

        complete = not batch.skipped and not batch.cancelled
        return ExportResult(
            success=True,
            output_path=output_path,
            exit_code=EXIT_OK if complete else EXIT_PARTIAL,
            exported=sorted(manifest.resources),
            skipped=batch.skipped,
            warnings=warnings,
            diff=diff,
            cancelled=[ref.key for ref in batch.cancelled],
        )

    def _build_manifest(self, results: list[DescribeResult]) -> ExportManifest:
        manifest = ExportManifest(project_id=self.config.project_id, region=self.config.region)
        for result in results:
            try:
                manifest.add(normalize_result(result))
            except NormalizationError as e:
                raise NormalizationError(f"Cannot normalize {result.ref}: {e}") from e
        return manifest

    def _build_snapshots(self, batch: DescribeBatch) -> dict[ResourceRef, ResourceSnapshot]:
        return {
            result.ref: ResourceSnapshot(
                config=result.config,
                iam_policy=result.raw_iam_policy,
                service_account=result.raw_identity,
            )
            for result in batch.results
        }

    def _collect_inventory(self, warnings: list[str]) -> dict[str, Any]:
        inventory: dict[str, Any] = {}

        try:
            inventory[VPC_CONNECTORS_FILENAME] = self.client.list_vpc_connectors(
                self.config.region
            )
        except GcloudError as e:
            logger.warning("vpc_connector_listing_failed", kind=e.kind.value)
            warnings.append(f"VPC connector listing unavailable ({e.kind.value}): {e}")

        try:
            secrets = self.client.list_secrets()
        except GcloudError as e:
            logger.warning("secret_listing_failed", kind=e.kind.value)
            warnings.append(f"Secret Manager listing unavailable ({e.kind.value}): {e}")
        else:
            inventory[SECRETS_FILENAME] = [
                {key: secret[key] for key in SECRET_FIELDS if key in secret}
                for secret in secrets
                if isinstance(secret, dict)
            ]

        return inventory
