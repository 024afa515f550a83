"""Artifact materialisation into a release workspace.

Accepted artifact references:
- a local directory (copied)
- a local ``.tar.gz``/``.tgz``/``.tar.xz``/``.txz``/``.zip`` archive (extracted)
- an ``http://`` or ``https://`` URL of such an archive (downloaded, extracted)

Extraction never writes outside the workspace: absolute paths, ``..``
components and links inside archives are skipped.
"""

from __future__ import annotations

import contextlib
import hashlib
import os
import shutil
import stat
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from cutover.core.result import Err, Ok, Result
from cutover.platform.http import HttpClient, RealHttpClient

__all__ = ["ArtifactError", "ArtifactFetcher", "FetchResult", "sha256_file", "sha256_tree"]


@dataclass(frozen=True, slots=True)
class ArtifactError:
    artifact: str
    message: str
    # False when another attempt would read the same bytes and fail the same way
    retryable: bool = True

    def __str__(self) -> str:
        return f"{self.message}: {self.artifact}"


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of materialising an artifact.

    Attributes:
        workspace: Directory the artifact was materialised into
        files_count: Number of regular files written
        checksum: SHA-256 of the archive, or of the tree for directories
    """

    workspace: Path
    files_count: int
    checksum: str


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def sha256_tree(root: Path) -> str:
    """Digest of a directory: relative paths and file contents, in sorted order."""
    h = hashlib.sha256()
    for path in sorted(p for p in root.rglob("*") if p.is_file() and not p.is_symlink()):
        h.update(path.relative_to(root).as_posix().encode("utf-8"))
        h.update(b"\0")
        with path.open("rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                h.update(chunk)
        h.update(b"\0")
    return h.hexdigest()


def _is_url(ref: str) -> bool:
    return urlparse(ref).scheme in ("http", "https")


def _archive_kind(name: str) -> str | None:
    # Path.suffixes is unreliable for names like "app-1.2.3.tar.gz"
    lowered = name.lower()
    if lowered.endswith((".tar.gz", ".tgz")):
        return "gz"
    if lowered.endswith((".tar.xz", ".txz")):
        return "xz"
    if lowered.endswith(".zip"):
        return "zip"
    return None


def _empty_dir(path: Path) -> None:
    """Remove everything inside ``path``, keeping the directory itself."""
    path.mkdir(parents=True, exist_ok=True)
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


class ArtifactFetcher:
    """Copy, download and extract artifacts.

    Usage:
        fetcher = ArtifactFetcher()
        result = fetcher.fetch("build/app.tar.gz", workspace, timeout=300)
    """

    def __init__(self, *, http: HttpClient | None = None, strip_components: int = 0) -> None:
        self._http = http or RealHttpClient()
        self._strip = strip_components

    def fetch(
        self,
        ref: str,
        workspace: Path,
        *,
        timeout: float,
        expected_sha256: str | None = None,
    ) -> Result[FetchResult, ArtifactError]:
        """Materialise ``ref`` into ``workspace``, replacing its contents.

        Args:
            ref: Artifact reference (directory, archive path or URL)
            workspace: Release workspace (emptied first, so retries start clean)
            timeout: Network timeout for URL downloads
            expected_sha256: Optional digest the artifact must match
        """
        try:
            _empty_dir(workspace)
        except OSError as e:
            return Err(ArtifactError(artifact=ref, message=f"cannot reset workspace: {e}"))

        if _is_url(ref):
            return self._fetch_url(ref, workspace, timeout=timeout, expected_sha256=expected_sha256)

        source = Path(ref).expanduser()
        if source.is_dir():
            return self._copy_dir(ref, source, workspace, expected_sha256=expected_sha256)
        if source.is_file():
            return self._extract_verified(ref, source, workspace, expected_sha256=expected_sha256)
        return Err(ArtifactError(artifact=ref, message="Artifact not found", retryable=False))

    def _fetch_url(
        self,
        ref: str,
        workspace: Path,
        *,
        timeout: float,
        expected_sha256: str | None,
    ) -> Result[FetchResult, ArtifactError]:
        name = PurePosixPath(urlparse(ref).path).name or "artifact"
        if _archive_kind(name) is None:
            return Err(
                ArtifactError(artifact=ref, message=f"Unsupported archive format: {name}", retryable=False)
            )

        # Download next to the workspace, never inside it
        download = workspace.parent / f".{workspace.name}.{name}"
        try:
            got = self._http.download(ref, download, timeout=timeout)
            if isinstance(got, Err):
                return Err(ArtifactError(artifact=ref, message=f"download failed: {got.error}"))
            return self._extract_verified(ref, download, workspace, expected_sha256=expected_sha256)
        finally:
            download.unlink(missing_ok=True)

    def _copy_dir(
        self,
        ref: str,
        source: Path,
        workspace: Path,
        *,
        expected_sha256: str | None,
    ) -> Result[FetchResult, ArtifactError]:
        try:
            checksum = sha256_tree(source)
        except OSError as e:
            return Err(ArtifactError(artifact=ref, message=f"IO error: {e}"))
        if expected_sha256 and checksum != expected_sha256.lower():
            return Err(
                ArtifactError(artifact=ref, message=f"checksum mismatch (got {checksum})", retryable=False)
            )

        try:
            shutil.copytree(source, workspace, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as e:
            return Err(ArtifactError(artifact=ref, message=f"copy failed: {e}"))

        files_count = sum(1 for p in workspace.rglob("*") if p.is_file())
        return Ok(FetchResult(workspace=workspace, files_count=files_count, checksum=checksum))

    def _extract_verified(
        self,
        ref: str,
        archive: Path,
        workspace: Path,
        *,
        expected_sha256: str | None,
    ) -> Result[FetchResult, ArtifactError]:
        kind = _archive_kind(archive.name)
        if kind is None:
            return Err(
                ArtifactError(artifact=ref, message=f"Unsupported archive format: {archive.name}", retryable=False)
            )

        try:
            checksum = sha256_file(archive)
        except OSError as e:
            return Err(ArtifactError(artifact=ref, message=f"IO error: {e}"))
        if expected_sha256 and checksum != expected_sha256.lower():
            return Err(
                ArtifactError(artifact=ref, message=f"checksum mismatch (got {checksum})", retryable=False)
            )

        if kind == "zip":
            extracted = self._extract_zip(ref, archive, workspace)
        else:
            extracted = self._extract_tar(ref, archive, workspace, kind)
        if isinstance(extracted, Err):
            return extracted
        return Ok(FetchResult(workspace=workspace, files_count=extracted.value, checksum=checksum))

    def _safe_relative_path(self, member_name: str) -> Path | None:
        """Return a sanitized relative extraction path, or None if unsafe."""
        normalized = member_name.replace("\\", "/")
        if normalized.startswith("/"):
            return None

        parts = PurePosixPath(normalized).parts
        if len(parts) <= self._strip:
            return None

        kept = parts[self._strip :]
        if any(part in {"", ".", ".."} for part in kept):
            return None
        if kept[0].endswith(":"):
            return None
        return Path(*kept)

    def _is_within_root(self, root: Path, target: Path) -> bool:
        try:
            return target.resolve().is_relative_to(root.resolve())
        except OSError:
            return False

    def _extract_tar(self, ref: str, archive: Path, workspace: Path, compression: str) -> Result[int, ArtifactError]:
        try:
            files_count = 0
            with tarfile.open(archive, f"r:{compression}") as tar:
                for member in tar.getmembers():
                    # Skip directories and non-regular entries (symlink, hardlink, device, fifo)
                    if member.isdir() or not member.isreg():
                        continue

                    rel_path = self._safe_relative_path(member.name)
                    if rel_path is None:
                        continue

                    full_path = workspace / rel_path
                    if not self._is_within_root(workspace, full_path):
                        continue

                    src = tar.extractfile(member)
                    if src is None:
                        continue

                    full_path.parent.mkdir(parents=True, exist_ok=True)
                    with src, open(full_path, "wb") as dst:
                        shutil.copyfileobj(src, dst)

                    mode = member.mode & 0o777
                    if mode:
                        with contextlib.suppress(OSError):
                            os.chmod(full_path, mode)
                    files_count += 1
            return Ok(files_count)
        except tarfile.TarError as e:
            return Err(ArtifactError(artifact=ref, message=f"Tar extraction failed: {e}"))
        except OSError as e:
            return Err(ArtifactError(artifact=ref, message=f"IO error: {e}"))

    def _extract_zip(self, ref: str, archive: Path, workspace: Path) -> Result[int, ArtifactError]:
        try:
            files_count = 0
            with zipfile.ZipFile(archive, "r") as zf:
                for info in zf.infolist():
                    if info.is_dir():
                        continue

                    rel_path = self._safe_relative_path(info.filename)
                    if rel_path is None:
                        continue

                    unix_attrs = info.external_attr >> 16
                    if (unix_attrs & 0o170000) == stat.S_IFLNK:
                        continue

                    full_path = workspace / rel_path
                    if not self._is_within_root(workspace, full_path):
                        continue

                    full_path.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info) as src, open(full_path, "wb") as dst:
                        shutil.copyfileobj(src, dst)

                    if unix_attrs & 0o777:
                        with contextlib.suppress(OSError):
                            full_path.chmod(unix_attrs & 0o777)
                    files_count += 1
            return Ok(files_count)
        except zipfile.BadZipFile as e:
            return Err(ArtifactError(artifact=ref, message=f"Invalid zip file: {e}"))
        except OSError as e:
            return Err(ArtifactError(artifact=ref, message=f"IO error: {e}"))
