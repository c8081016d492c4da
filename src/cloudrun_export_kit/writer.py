from __future__ import annotations

import os
import tempfile
from collections import Counter
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
import yaml

from cloudrun_export_kit.models import (
    Artifact,
    ExportConfig,
    ExportManifest,
    ManifestDiff,
    ResourceRef,
    ResourceSnapshot,
)

logger = structlog.get_logger()

MANIFEST_FILENAME = "manifest.json"
CONFIG_SNAPSHOT_SUFFIX = "_config.yaml"
IAM_SNAPSHOT_SUFFIX = "_iam.yaml"
SERVICE_ACCOUNT_SNAPSHOT_SUFFIX = "_sa.yaml"
SNAPSHOT_SUFFIXES = (CONFIG_SNAPSHOT_SUFFIX, IAM_SNAPSHOT_SUFFIX, SERVICE_ACCOUNT_SNAPSHOT_SUFFIX)
TEMP_SUFFIX = ".tmp"
# Applied to staged files, which mkstemp creates as 0600.
FILE_MODE = 0o644


class WriteError(Exception):
    pass


def snapshot_basenames(refs: Iterable[ResourceRef]) -> dict[ResourceRef, str]:
    """File name stem per resource; the region is only added when names collide."""
    unique_refs = sorted(set(refs))
    counts = Counter(ref.name for ref in unique_refs)
    return {
        ref: ref.name if counts[ref.name] == 1 else f"{ref.name}.{ref.region}"
        for ref in unique_refs
    }


def render_yaml(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=True, default_flow_style=False, allow_unicode=True)


class ExportWriter:
    def __init__(self, config: ExportConfig) -> None:
        self.config = config

    def load_manifest(self, output_dir: Path) -> ExportManifest | None:
        manifest_path = output_dir / MANIFEST_FILENAME
        if not manifest_path.exists():
            return None
        return load_manifest_file(manifest_path)

    def diff(self, previous: ExportManifest | None, current: ExportManifest) -> ManifestDiff:
        old = previous.resources if previous is not None else {}
        new = current.resources
        result = ManifestDiff()
        for key in sorted(set(old) | set(new)):
            if key not in old:
                result.added.append(key)
            elif key not in new:
                result.removed.append(key)
            elif old[key].fingerprint() != new[key].fingerprint():
                result.changed.append(key)
            else:
                result.unchanged.append(key)
        return result

    def write(
        self,
        manifest: ExportManifest,
        artifacts: list[Artifact],
        output_dir: Path,
        snapshots: dict[ResourceRef, ResourceSnapshot] | None = None,
        inventory: dict[str, Any] | None = None,
        preserve: Iterable[ResourceRef] = (),
    ) -> ManifestDiff:
        """Write every export file and return the change set against the prior manifest.

        Files are staged as temporaries in ``output_dir`` and renamed into place
        only once all of them were written, with ``manifest.json`` last. Snapshot
        files of resources listed in ``preserve`` are kept even when the resource
        is missing from ``manifest``, so a failed describe never deletes the
        previous audit trail.
        """
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WriteError(f"Cannot create output directory {output_dir}: {e}") from e

        self._remove_stray_temp_files(output_dir)
        previous = self.load_manifest(output_dir)
        diff = self.diff(previous, manifest)

        files = self._plan_files(manifest, artifacts, snapshots or {}, inventory or {})
        self._commit(output_dir, files)
        self._remove_stale_snapshots(output_dir, previous, manifest, snapshots or {}, preserve)

        logger.info(
            "export_written",
            output_dir=str(output_dir),
            files=len(files),
            added=len(diff.added),
            removed=len(diff.removed),
            changed=len(diff.changed),
        )
        return diff

    def _plan_files(
        self,
        manifest: ExportManifest,
        artifacts: list[Artifact],
        snapshots: dict[ResourceRef, ResourceSnapshot],
        inventory: dict[str, Any],
    ) -> list[tuple[str, str]]:
        files: list[tuple[str, str]] = []

        basenames = snapshot_basenames([*manifest_refs(manifest), *snapshots])
        for ref in sorted(snapshots):
            snapshot = snapshots[ref]
            base = basenames[ref]
            files.append((f"{base}{CONFIG_SNAPSHOT_SUFFIX}", render_yaml(snapshot.config)))
            files.append((f"{base}{IAM_SNAPSHOT_SUFFIX}", render_yaml(snapshot.iam_policy or {})))
            if snapshot.service_account is not None:
                sa_yaml = render_yaml(snapshot.service_account)
                files.append((f"{base}{SERVICE_ACCOUNT_SNAPSHOT_SUFFIX}", sa_yaml))

        for filename in sorted(inventory):
            files.append((filename, render_yaml(inventory[filename])))

        for artifact in artifacts:
            if artifact.name == MANIFEST_FILENAME:
                raise WriteError(f"Artifact name {MANIFEST_FILENAME} is reserved")
            files.append((artifact.name, artifact.content))

        files.append((MANIFEST_FILENAME, manifest.to_json()))
        return files

    def _commit(self, output_dir: Path, files: list[tuple[str, str]]) -> None:
        staged: list[tuple[Path, Path]] = []
        try:
            for name, content in files:
                target = output_dir / name
                data = content.encode("utf-8")
                if target.is_file() and target.read_bytes() == data:
                    continue
                staged.append((self._write_temp(output_dir, name, data), target))

            while staged:
                temp, target = staged[0]
                os.replace(temp, target)
                staged.pop(0)
        except OSError as e:
            for temp, _ in staged:
                temp.unlink(missing_ok=True)
            raise WriteError(f"Failed to write export to {output_dir}: {e}") from e

    def _write_temp(self, output_dir: Path, name: str, data: bytes) -> Path:
        fd, temp_name = tempfile.mkstemp(dir=output_dir, prefix=f".{name}.", suffix=TEMP_SUFFIX)
        temp = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                os.fchmod(f.fileno(), FILE_MODE)
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError:
            temp.unlink(missing_ok=True)
            raise
        return temp

    def _remove_stray_temp_files(self, output_dir: Path) -> None:
        for temp in output_dir.glob(f".*{TEMP_SUFFIX}"):
            logger.debug("removing_stray_temp_file", path=str(temp))
            temp.unlink(missing_ok=True)

    def _remove_stale_snapshots(
        self,
        output_dir: Path,
        previous: ExportManifest | None,
        current: ExportManifest,
        snapshots: dict[ResourceRef, ResourceSnapshot],
        preserve: Iterable[ResourceRef],
    ) -> None:
        keep = set(manifest_refs(current)) | set(preserve) | set(snapshots)
        stale_names: set[str] = set()

        if previous is not None:
            previous_names = snapshot_basenames(manifest_refs(previous))
            for ref, base in previous_names.items():
                if ref not in keep:
                    stale_names.update(f"{base}{suffix}" for suffix in SNAPSHOT_SUFFIXES)

        current_names = snapshot_basenames([*manifest_refs(current), *snapshots])
        for ref, snapshot in snapshots.items():
            if snapshot.service_account is None:
                stale_names.add(f"{current_names[ref]}{SERVICE_ACCOUNT_SNAPSHOT_SUFFIX}")

        written = {
            f"{current_names[ref]}{suffix}"
            for ref in snapshots
            for suffix in SNAPSHOT_SUFFIXES
            if suffix != SERVICE_ACCOUNT_SNAPSHOT_SUFFIX
            or snapshots[ref].service_account is not None
        }
        for name in sorted(stale_names - written):
            path = output_dir / name
            if path.is_file():
                try:
                    path.unlink()
                except OSError as e:
                    raise WriteError(f"Failed to remove stale snapshot {path}: {e}") from e
                logger.info("stale_snapshot_removed", path=str(path))


def manifest_refs(manifest: ExportManifest) -> list[ResourceRef]:
    return [resource.ref for resource in manifest.resources.values()]


def load_manifest_file(path: Path) -> ExportManifest:
    """Load a manifest from a file or an export directory."""
    manifest_path = path / MANIFEST_FILENAME if path.is_dir() else path
    try:
        return ExportManifest.from_json(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise WriteError(f"Failed to read manifest {manifest_path}: {e}") from e
