from __future__ import annotations

import re
from typing import Any

import structlog

from cloudrun_export_kit.gcloud import CloudRunClient, GcloudError
from cloudrun_export_kit.models import ExportConfig, ResourceRef

logger = structlog.get_logger()

LOCATION_LABEL = "cloud.googleapis.com/location"

FULL_SERVICE_NAME_PATTERN = re.compile(
    r"^projects/(?P<project>[^/]+)/locations/(?P<region>[^/]+)/services/(?P<name>[^/]+)$"
)


class EnumerationError(Exception):
    pass


class ResourceEnumerator:
    def __init__(self, client: CloudRunClient, config: ExportConfig) -> None:
        self.client = client
        self.config = config

    def enumerate(self) -> list[ResourceRef]:
        try:
            items = self.client.list_services()
        except GcloudError as e:
            raise EnumerationError(f"Failed to list Cloud Run services: {e}") from e

        seen: set[ResourceRef] = set()
        for item in items:
            ref = self._parse_item(item)
            if ref is None:
                logger.warning("enumerate_unparseable_item", item=item)
                continue
            seen.add(ref)

        refs = sorted(seen)
        logger.info("enumerated_services", count=len(refs), project=self.config.project_id)
        return refs

    def _parse_item(self, item: Any) -> ResourceRef | None:
        if not isinstance(item, dict):
            return None

        name = item.get("name")
        region = item.get("region")

        if isinstance(name, str):
            match = FULL_SERVICE_NAME_PATTERN.match(name)
            if match:
                return ResourceRef(name=match.group("name"), region=match.group("region"))

        metadata = item.get("metadata")
        if isinstance(metadata, dict):
            name = metadata.get("name", name)
            labels = metadata.get("labels") or {}
            if isinstance(labels, dict):
                region = labels.get(LOCATION_LABEL, region)

        if not isinstance(name, str) or not name:
            return None
        if not isinstance(region, str) or not region:
            region = self.config.region
        return ResourceRef(name=name, region=region)
