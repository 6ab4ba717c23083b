"""Conversion of box root filesystems into LXD unified image tarballs.

A box ships `rootfs.tar.gz`. LXD wants the same tarball with a
`metadata.yaml` at its root. The converted tarball is cached in a sibling
`lxd/` directory together with a copy of that metadata, whose
`source_fingerprint` decides whether the cache is still valid.
"""
import hashlib
import platform
import shutil
import tarfile
import tempfile
import time
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from lxdbox.core.errors import ImageCreationFailure
from lxdbox.core.logger import get_logger
from lxdbox.core.messenger import Messenger, NullMessenger

logger = get_logger(__name__)

ROOTFS_NAME = "rootfs.tar.gz"
METADATA_NAME = "metadata.yaml"
CACHE_DIR_NAME = "lxd"

_CHUNK_SIZE = 1024 * 1024


@dataclass
class PreparedImage:
    """A unified tarball ready for import."""
    path: Path
    fingerprint: str
    source_fingerprint: str
    converted: bool = False


def file_sha256(path: Path) -> str:
    """Return the hex sha256 digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ImagePreparer:
    """Prepares (and caches) LXD images from box root filesystems."""

    def __init__(self, messenger: Optional[Messenger] = None, architecture: Optional[str] = None):
        self.messenger = messenger or NullMessenger()
        self.architecture = architecture or platform.machine()

    def prepare_box(self, box_directory: Path, machine_name: str = None) -> PreparedImage:
        """Prepare the image for a box directory.

        The source is `<box>/rootfs.tar.gz`; the cache is `<box>/../lxd`.
        """
        box_directory = Path(box_directory)
        return self.prepare(
            box_directory / ROOTFS_NAME,
            box_directory.parent / CACHE_DIR_NAME,
            machine_name=machine_name,
        )

    def prepare(self, source: Path, cache_dir: Path, machine_name: str = None) -> PreparedImage:
        """Return a unified tarball for source, converting only when needed.

        Args:
            source: Source root filesystem archive (gzip tarball)
            cache_dir: Directory holding the converted tarball and its metadata
            machine_name: Used in error messages

        Returns:
            PreparedImage describing the cached tarball

        Raises:
            ImageCreationFailure: If the source cannot be read or converted
        """
        source = Path(source)
        cache_dir = Path(cache_dir)
        output = cache_dir / ROOTFS_NAME

        try:
            source_fingerprint = file_sha256(source)
            converted = False

            if self._cache_matches(cache_dir, source_fingerprint):
                logger.debug(f"Reusing converted image {output} (source {source_fingerprint})")
            else:
                self.messenger.info("Converting LXC image to LXD format...")
                self._convert(source, cache_dir, source_fingerprint)
                converted = True

            return PreparedImage(
                path=output,
                fingerprint=file_sha256(output),
                source_fingerprint=source_fingerprint,
                converted=converted,
            )
        except ImageCreationFailure:
            raise
        except Exception as e:
            self.messenger.error("Failed to create LXD image for container")
            logger.error(f"Error preparing LXD image from {source}: {e}")
            raise ImageCreationFailure(machine_name=machine_name, error_message=str(e)) from e

    def read_metadata(self, cache_dir: Path) -> Optional[Dict[str, Any]]:
        """Load the cached metadata descriptor, or None if missing or unreadable."""
        metadata_path = Path(cache_dir) / METADATA_NAME
        try:
            with open(metadata_path) as f:
                metadata = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.debug(f"No usable image metadata at {metadata_path}: {e}")
            return None
        return metadata if isinstance(metadata, dict) else None

    def _cache_matches(self, cache_dir: Path, source_fingerprint: str) -> bool:
        if not (cache_dir / ROOTFS_NAME).is_file():
            return False
        metadata = self.read_metadata(cache_dir)
        return bool(metadata) and metadata.get("source_fingerprint") == source_fingerprint

    def _metadata(self, source_fingerprint: str) -> Dict[str, Any]:
        return {
            "architecture": self.architecture,
            "creation_date": int(time.time()),
            "source_fingerprint": source_fingerprint,
        }

    def _convert(self, source: Path, cache_dir: Path, source_fingerprint: str) -> None:
        """Build the unified tarball in a scratch directory, then publish it.

        The scratch directory lives next to the cache so the final move stays
        on one filesystem; it is removed whether or not conversion succeeds.
        """
        scratch_parent = cache_dir.parent
        scratch_parent.mkdir(parents=True, exist_ok=True)

        metadata = self._metadata(source_fingerprint)
        metadata_bytes = yaml.safe_dump(metadata, default_flow_style=False).encode()

        with tempfile.TemporaryDirectory(prefix=".lxdbox-image-", dir=scratch_parent) as scratch:
            scratch_dir = Path(scratch)
            scratch_rootfs = scratch_dir / ROOTFS_NAME
            scratch_metadata = scratch_dir / METADATA_NAME

            scratch_metadata.write_bytes(metadata_bytes)

            with tarfile.open(source, "r:gz") as src, tarfile.open(scratch_rootfs, "w:gz") as dst:
                for member in src:
                    if member.name.lstrip("./") == METADATA_NAME:
                        continue
                    fileobj = src.extractfile(member) if member.isreg() else None
                    dst.addfile(member, fileobj)

                info = tarfile.TarInfo(METADATA_NAME)
                info.size = len(metadata_bytes)
                info.mtime = metadata["creation_date"]
                info.mode = 0o644
                dst.addfile(info, BytesIO(metadata_bytes))

            cache_dir.mkdir(parents=True, exist_ok=True)
            # Metadata goes last so a half-published cache never matches
            (cache_dir / METADATA_NAME).unlink(missing_ok=True)
            shutil.move(str(scratch_rootfs), str(cache_dir / ROOTFS_NAME))
            shutil.move(str(scratch_metadata), str(cache_dir / METADATA_NAME))

        logger.info(f"Converted {source} into {cache_dir / ROOTFS_NAME}")
