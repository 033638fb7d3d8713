from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .errors import BundleIdMismatchError, BundleVersionMismatchError, InvalidManifestError
from .logging import get_logger
from .models import (
    BundleDescriptor,
    BundleSettings,
    CommonSection,
    DeploymentManifest,
    ManifestMetadata,
    utc_now,
)

logger = get_logger("manifest")

MANIFEST_FILENAME = "deployment-manifest.yml"
LATEST = "latest"
REQUIRED_FIELDS = ("id", "version", "name")


def generate_bundle_id(repo_slug: str, collection_id: str, version: str) -> str:
    """Canonical composite id: ``owner-repo-collection-v1.2.3``."""
    return f"{repo_slug.replace('/', '-', 1)}-{collection_id}-v{version}"


def is_manifest_id_match(manifest_id: str, manifest_version: str, bundle_id: str) -> bool:
    """Exact match, or ``bundle_id`` ends with ``-<manifest_id>-[v]<manifest_version>``.

    Any composite id with the right tail matches, so unrelated prefixes that share a
    collection id and version are indistinguishable here.
    """
    if manifest_id == bundle_id:
        return True
    if not manifest_id or not manifest_version:
        return False
    return bundle_id.endswith(f"-{manifest_id}-v{manifest_version}") or bundle_id.endswith(
        f"-{manifest_id}-{manifest_version}"
    )


def synthesize_manifest(descriptor: BundleDescriptor) -> DeploymentManifest:
    return DeploymentManifest(
        id=descriptor.id,
        version=descriptor.version,
        name=descriptor.name or descriptor.id,
        description=descriptor.description,
        common=CommonSection(),
        bundle_settings=BundleSettings(
            include_common_in_environment_bundles=True,
            create_common_bundle=True,
            compression="none",
            naming={"environment_bundle": descriptor.id},
        ),
        metadata=ManifestMetadata(
            manifest_version="1.0",
            description=descriptor.description or f"Bundle {descriptor.id}",
            author=descriptor.source_id,
            last_updated=utc_now(),
        ),
        synthesized=True,
    )


def load_manifest_data(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise InvalidManifestError(f"Could not parse {path.name}: {e}") from e
    except OSError as e:
        raise InvalidManifestError(f"Could not read {path}: {e}") from e
    if not isinstance(raw, dict):
        raise InvalidManifestError(f"{path.name} must contain a mapping at the top level.")
    return raw


def read_manifest(bundle_dir: Path) -> DeploymentManifest | None:
    """Parse the manifest under ``bundle_dir`` fresh from disk, or None if absent."""
    path = bundle_dir / MANIFEST_FILENAME
    if not path.is_file():
        return None
    return DeploymentManifest.from_dict(load_manifest_data(path))


def validate_bundle(extracted_dir: Path, descriptor: BundleDescriptor) -> DeploymentManifest:
    path = extracted_dir / MANIFEST_FILENAME
    if not path.is_file():
        logger.info("No %s in bundle %s, using a synthesized manifest", MANIFEST_FILENAME, descriptor.id)
        return synthesize_manifest(descriptor)

    manifest = DeploymentManifest.from_dict(load_manifest_data(path))
    missing = [key for key in REQUIRED_FIELDS if getattr(manifest, key) is None]
    if missing or manifest.id is None or manifest.version is None:
        raise InvalidManifestError(f"Invalid manifest: missing required fields {', '.join(missing)}")

    if not is_manifest_id_match(manifest.id, manifest.version, descriptor.id):
        raise BundleIdMismatchError(descriptor.id, manifest.id)

    if descriptor.version != LATEST and manifest.version != descriptor.version:
        raise BundleVersionMismatchError(descriptor.version, manifest.version)

    logger.debug("Manifest for %s@%s validated", manifest.id, manifest.version)
    return manifest
