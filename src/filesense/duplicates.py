"""Duplicate and near-duplicate file detection.

Three passes run over the files found under the scan roots:

- exact: same size, same MD5, then confirmed byte-for-byte;
- similar images: 64-bit average hash, grouped by Hamming distance;
- similar text: first 8 KiB embedded with the text model, grouped by
  cosine similarity.

Files that are already members of an exact group take part in the two
near-duplicate passes only through the group's first member.
"""

from __future__ import annotations

import filecmp
import hashlib
import json
import os
import stat
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Event

import numpy as np
import structlog
from PIL import Image

from filesense.embeddings import TextProvider
from filesense.errors import (
    FilesenseError,
    InvalidInputError,
    OperationCancelled,
    TooManyFilesError,
)
from filesense.file_types import extension_of
from filesense.trash import move_to_trash
from filesense.vectors import cosine_scores

logger = structlog.get_logger(__name__)

MAX_FILES = 10_000
HASH_CHUNK_SIZE = 8192
TEXT_SAMPLE_BYTES = 8192
HASH_BITS = 64
ENCODE_BATCH_SIZE = 32

DUP_IMAGE_EXTENSIONS = frozenset(
    {"jpg", "jpeg", "png", "gif", "bmp", "webp", "tiff", "tif"}
)
DUP_TEXT_EXTENSIONS = frozenset(
    {
        "txt", "md", "c", "h", "py", "js", "json", "xml", "html", "css",
        "yml", "yaml",
    }
)  # fmt: skip


class DuplicateType(Enum):
    EXACT = "exact"
    SIMILAR_IMAGE = "similar_image"
    SIMILAR_TEXT = "similar_text"


class KeepPolicy(Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    LARGEST = "largest"
    SHORTEST_PATH = "shortest_path"
    MOST_ACCESSED = "most_accessed"
    USER_CHOICE = "user_choice"


class ScanStatus(Enum):
    OK = "OK"
    NOT_INITIALIZED = "Not initialized"
    FILE_ERROR = "File error"
    MEMORY_ERROR = "Memory error"
    CANCELLED = "Cancelled"
    TOO_MANY_FILES = "Too many files"

    @property
    def message(self) -> str:
        return self.value


@dataclass
class DuplicateConfig:
    detect_exact: bool = True
    detect_similar_images: bool = True
    detect_similar_text: bool = True
    similarity_threshold: float = 0.90
    min_file_size: int = 1
    max_file_size: int = 1024 * 1024 * 1024
    recursive: bool = True
    # substring match against the full path
    exclude_patterns: list[str] = field(default_factory=list)
    max_files: int = MAX_FILES
    keep_policy: KeepPolicy = KeepPolicy.NEWEST
    cancel_event: Event = field(default_factory=Event, repr=False)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelled("Cancelled")


@dataclass
class DuplicateFile:
    path: str
    size: int
    modified_at: float = 0.0
    accessed_at: float = 0.0
    similarity: float = 1.0
    is_suggested_keep: bool = False

    @classmethod
    def from_stat(cls, path: str, st: os.stat_result) -> DuplicateFile:
        return cls(
            path=path,
            size=st.st_size,
            modified_at=st.st_mtime,
            accessed_at=st.st_atime,
        )


@dataclass
class DuplicateGroup:
    type: DuplicateType
    files: list[DuplicateFile] = field(default_factory=list)
    total_size: int = 0
    reclaimable_size: int = 0

    @property
    def file_count(self) -> int:
        return len(self.files)

    @property
    def kept(self) -> DuplicateFile | None:
        for f in self.files:
            if f.is_suggested_keep:
                return f
        return None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "file_count": self.file_count,
            "total_size": self.total_size,
            "reclaimable_size": self.reclaimable_size,
            "files": [
                {
                    "path": f.path,
                    "size": f.size,
                    "similarity": round(f.similarity, 6),
                    "suggested_keep": f.is_suggested_keep,
                }
                for f in self.files
            ],
        }


@dataclass
class DuplicateAnalysis:
    groups: list[DuplicateGroup] = field(default_factory=list)
    total_files_scanned: int = 0
    total_duplicates_found: int = 0
    total_reclaimable_size: int = 0
    files_unreadable: int = 0
    scan_time_ms: float = 0.0
    status: ScanStatus = ScanStatus.OK

    @property
    def success(self) -> bool:
        return self.status is ScanStatus.OK

    @property
    def message(self) -> str:
        return self.status.message

    def to_dict(self) -> dict:
        return {
            "status": self.status.message,
            "total_files_scanned": self.total_files_scanned,
            "total_duplicates_found": self.total_duplicates_found,
            "total_reclaimable_bytes": self.total_reclaimable_size,
            "files_unreadable": self.files_unreadable,
            "scan_time_ms": round(self.scan_time_ms, 3),
            "groups": [g.to_dict() for g in self.groups],
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


ProgressCallback = Callable[[str, int, int], None]


def average_hash(path: str | Path) -> int:
    """64-bit average hash: 8x8 grayscale, one bit per pixel above the mean."""
    with Image.open(path) as img:
        small = img.convert("L").resize((8, 8), Image.Resampling.BOX)
        pixels = np.asarray(small, dtype=np.float64).ravel()
    mean = pixels.mean()
    value = 0
    for bit in pixels > mean:
        value = (value << 1) | int(bit)
    return value


def hamming_distance(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def max_hash_distance(threshold: float) -> int:
    return round((1.0 - threshold) * HASH_BITS)


def file_md5(path: str) -> str:
    digest = hashlib.md5(usedforsecurity=False)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def suggest_keep(
    group: DuplicateGroup,
    policy: KeepPolicy,
    choice: int | None = None,
) -> DuplicateFile | None:
    """Flag exactly one file in ``group`` as the one to keep.

    With ``KeepPolicy.USER_CHOICE`` the file at index ``choice`` is kept;
    without a choice the current flag (or the first file) stays.
    """
    if not group.files:
        return None

    files = group.files
    if policy is KeepPolicy.USER_CHOICE:
        if choice is not None:
            if not 0 <= choice < len(files):
                raise InvalidInputError(f"no file at index {choice}")
            index = choice
        else:
            current = group.kept
            index = files.index(current) if current is not None else 0
    elif policy is KeepPolicy.NEWEST:
        index = max(range(len(files)), key=lambda i: files[i].modified_at)
    elif policy is KeepPolicy.OLDEST:
        index = min(range(len(files)), key=lambda i: files[i].modified_at)
    elif policy is KeepPolicy.LARGEST:
        index = max(range(len(files)), key=lambda i: files[i].size)
    elif policy is KeepPolicy.SHORTEST_PATH:
        index = min(range(len(files)), key=lambda i: len(files[i].path))
    else:
        index = max(range(len(files)), key=lambda i: files[i].accessed_at)

    for i, f in enumerate(files):
        f.is_suggested_keep = i == index
    return files[index]


def _partition_identical(
    files: list[DuplicateFile],
    on_error: Callable[[DuplicateFile], None],
) -> list[list[DuplicateFile]]:
    """Split same-hash files into classes of byte-identical content."""
    classes: list[list[DuplicateFile]] = []
    for f in files:
        for members in classes:
            try:
                same = filecmp.cmp(members[0].path, f.path, shallow=False)
            except OSError:
                on_error(f)
                break
            if same:
                members.append(f)
                break
        else:
            classes.append([f])
    return classes


class DuplicateAnalyzer:
    """Runs duplicate scans and cleans up the resulting groups."""

    def __init__(
        self,
        provider: TextProvider | None = None,
        trash: Callable[[str], object] = move_to_trash,
    ) -> None:
        self._provider = provider
        self._trash = trash

    def set_provider(self, provider: TextProvider | None) -> None:
        self._provider = provider

    # -- discovery ---------------------------------------------------------

    def _excluded(self, path: str, config: DuplicateConfig) -> bool:
        return any(p and p in path for p in config.exclude_patterns)

    def _discover(
        self, roots: Iterable[str | Path], config: DuplicateConfig
    ) -> tuple[list[DuplicateFile], int]:
        files: list[DuplicateFile] = []
        seen: set[str] = set()
        unreadable = 0
        stack = [os.path.abspath(os.fspath(r)) for r in roots][::-1]

        while stack:
            config.check_cancelled()
            directory = stack.pop()
            try:
                entries = os.scandir(directory)
            except OSError as e:
                logger.debug("cannot open directory %s: %s", directory, e)
                unreadable += 1
                continue
            subdirs: list[str] = []
            with entries:
                for entry in entries:
                    path = entry.path
                    if self._excluded(path, config):
                        continue
                    try:
                        if entry.is_symlink():
                            continue
                        if entry.is_dir(follow_symlinks=False):
                            if config.recursive:
                                subdirs.append(path)
                            continue
                        st = entry.stat(follow_symlinks=False)
                    except OSError:
                        unreadable += 1
                        continue
                    if not stat.S_ISREG(st.st_mode) or path in seen:
                        continue
                    if not (
                        config.min_file_size
                        <= st.st_size
                        <= config.max_file_size
                    ):
                        continue
                    if len(files) >= config.max_files:
                        raise TooManyFilesError(
                            f"more than {config.max_files} files"
                        )
                    seen.add(path)
                    files.append(DuplicateFile.from_stat(path, st))
            stack.extend(reversed(subdirs))
        return files, unreadable

    # -- passes ------------------------------------------------------------

    def _find_exact(
        self,
        files: list[DuplicateFile],
        config: DuplicateConfig,
        progress: ProgressCallback | None,
    ) -> tuple[list[DuplicateGroup], int]:
        by_size: dict[int, list[DuplicateFile]] = defaultdict(list)
        for f in files:
            by_size[f.size].append(f)
        candidates = [g for g in by_size.values() if len(g) > 1]
        total = sum(len(g) for g in candidates)

        unreadable: list[DuplicateFile] = []
        groups: list[DuplicateGroup] = []
        done = 0
        for same_size in candidates:
            by_hash: dict[str, list[DuplicateFile]] = defaultdict(list)
            for f in same_size:
                config.check_cancelled()
                try:
                    by_hash[file_md5(f.path)].append(f)
                except OSError as e:
                    logger.debug("cannot hash %s: %s", f.path, e)
                    unreadable.append(f)
                done += 1
                if progress is not None:
                    progress("exact", done, total)

            for same_hash in by_hash.values():
                if len(same_hash) < 2:
                    continue
                for members in _partition_identical(
                    same_hash, unreadable.append
                ):
                    if len(members) < 2:
                        continue
                    group_total = sum(f.size for f in members)
                    groups.append(
                        DuplicateGroup(
                            type=DuplicateType.EXACT,
                            files=members,
                            total_size=group_total,
                            reclaimable_size=group_total - members[0].size,
                        )
                    )
        return groups, len(unreadable)

    def _find_similar_images(
        self,
        files: list[DuplicateFile],
        config: DuplicateConfig,
        progress: ProgressCallback | None,
    ) -> tuple[list[DuplicateGroup], int]:
        images = [
            f for f in files if extension_of(f.path) in DUP_IMAGE_EXTENSIONS
        ]
        hashed: list[tuple[DuplicateFile, int]] = []
        unreadable = 0
        for i, f in enumerate(images, 1):
            config.check_cancelled()
            try:
                hashed.append((f, average_hash(f.path)))
            except OSError as e:
                logger.debug("cannot hash image %s: %s", f.path, e)
                unreadable += 1
            if progress is not None:
                progress("images", i, len(images))

        limit = max_hash_distance(config.similarity_threshold)
        groups: list[DuplicateGroup] = []
        used = [False] * len(hashed)
        for i, (seed, seed_hash) in enumerate(hashed):
            if used[i]:
                continue
            members = [_copy_with(seed, 1.0)]
            for j in range(i + 1, len(hashed)):
                if used[j]:
                    continue
                other, other_hash = hashed[j]
                distance = hamming_distance(seed_hash, other_hash)
                if distance <= limit:
                    used[j] = True
                    members.append(
                        _copy_with(other, 1.0 - distance / HASH_BITS)
                    )
            if len(members) < 2:
                continue
            used[i] = True
            group_total = sum(f.size for f in members)
            groups.append(
                DuplicateGroup(
                    type=DuplicateType.SIMILAR_IMAGE,
                    files=members,
                    total_size=group_total,
                    reclaimable_size=group_total
                    - max(f.size for f in members),
                )
            )
        return groups, unreadable

    def _read_sample(self, path: str) -> str:
        with open(path, "rb") as f:
            data = f.read(TEXT_SAMPLE_BYTES)
        return data.decode("utf-8", errors="replace")

    def _find_similar_text(
        self,
        files: list[DuplicateFile],
        config: DuplicateConfig,
        progress: ProgressCallback | None,
    ) -> tuple[list[DuplicateGroup], int]:
        provider = self._provider
        if provider is None or not provider.is_loaded():
            logger.info("text model not loaded, skipping similar text pass")
            return [], 0

        candidates = [
            f for f in files if extension_of(f.path) in DUP_TEXT_EXTENSIONS
        ]
        samples: list[tuple[DuplicateFile, str]] = []
        unreadable = 0
        for f in candidates:
            config.check_cancelled()
            try:
                text = self._read_sample(f.path)
            except OSError as e:
                logger.debug("cannot read %s: %s", f.path, e)
                unreadable += 1
                continue
            if text.strip():
                samples.append((f, text))

        vectors: list[np.ndarray] = []
        kept: list[DuplicateFile] = []
        for start in range(0, len(samples), ENCODE_BATCH_SIZE):
            config.check_cancelled()
            chunk = samples[start : start + ENCODE_BATCH_SIZE]
            try:
                encoded = provider.encode_batch([t for _, t in chunk])
            except FilesenseError as e:
                logger.warning("text encode failed: %s", e)
                unreadable += len(chunk)
                continue
            vectors.extend(encoded)
            kept.extend(f for f, _ in chunk)
            if progress is not None:
                progress("text", len(kept), len(samples))

        if len(kept) < 2:
            return [], unreadable

        matrix = np.stack(vectors)
        threshold = config.similarity_threshold
        groups: list[DuplicateGroup] = []
        used = [False] * len(kept)
        for i in range(len(kept)):
            if used[i]:
                continue
            scores = cosine_scores(matrix[i], matrix)
            members = [_copy_with(kept[i], 1.0)]
            for j in range(i + 1, len(kept)):
                if not used[j] and scores[j] >= threshold:
                    used[j] = True
                    members.append(_copy_with(kept[j], float(scores[j])))
            if len(members) < 2:
                continue
            used[i] = True
            group_total = sum(f.size for f in members)
            newest = max(members, key=lambda f: f.modified_at)
            groups.append(
                DuplicateGroup(
                    type=DuplicateType.SIMILAR_TEXT,
                    files=members,
                    total_size=group_total,
                    reclaimable_size=group_total - newest.size,
                )
            )
        return groups, unreadable

    # -- entry points ------------------------------------------------------

    def scan(
        self,
        roots: Iterable[str | Path],
        config: DuplicateConfig | None = None,
        progress: ProgressCallback | None = None,
    ) -> DuplicateAnalysis:
        config = config or DuplicateConfig()
        started = time.perf_counter()
        analysis = DuplicateAnalysis()

        try:
            files, unreadable = self._discover(roots, config)
            analysis.total_files_scanned = len(files)
            logger.info("duplicate scan found %d candidate files", len(files))

            groups: list[DuplicateGroup] = []
            if config.detect_exact:
                exact, failed = self._find_exact(files, config, progress)
                groups.extend(exact)
                unreadable += failed

            # non-first members of exact groups are already accounted for
            redundant = {
                id(f) for g in groups for f in g.files[1:]
            }
            remaining = [f for f in files if id(f) not in redundant]

            if config.detect_similar_images:
                similar, failed = self._find_similar_images(
                    remaining, config, progress
                )
                groups.extend(similar)
                unreadable += failed
            if config.detect_similar_text:
                similar, failed = self._find_similar_text(
                    remaining, config, progress
                )
                groups.extend(similar)
                unreadable += failed
        except OperationCancelled:
            logger.info("duplicate scan cancelled")
            analysis.status = ScanStatus.CANCELLED
            analysis.scan_time_ms = (time.perf_counter() - started) * 1000
            return analysis
        except TooManyFilesError as e:
            logger.warning("duplicate scan aborted: %s", e)
            analysis.status = ScanStatus.TOO_MANY_FILES
            analysis.scan_time_ms = (time.perf_counter() - started) * 1000
            return analysis

        if config.cancelled:
            analysis.status = ScanStatus.CANCELLED
        else:
            for group in groups:
                suggest_keep(group, config.keep_policy)
            analysis.groups = groups
            analysis.total_duplicates_found = sum(
                g.file_count - 1 for g in groups
            )
            analysis.total_reclaimable_size = sum(
                g.reclaimable_size for g in groups
            )
        analysis.files_unreadable = unreadable
        analysis.scan_time_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "duplicate scan: %d groups, %d reclaimable bytes in %.0fms",
            len(analysis.groups),
            analysis.total_reclaimable_size,
            analysis.scan_time_ms,
        )
        return analysis

    def find_copies(
        self,
        path: str | Path,
        search_dir: str | Path,
        config: DuplicateConfig | None = None,
    ) -> DuplicateGroup | None:
        """Exact copies of ``path`` under ``search_dir``.

        The source file comes first in the group and is flagged to keep.
        Returns None when no copy exists.
        """
        config = config or DuplicateConfig()
        source_path = os.path.abspath(os.fspath(path))
        st = os.stat(source_path)
        source = DuplicateFile.from_stat(source_path, st)
        source_hash = file_md5(source_path)

        # size bounds do not apply; only the source's size matters
        search = DuplicateConfig(
            min_file_size=source.size,
            max_file_size=source.size,
            recursive=config.recursive,
            exclude_patterns=list(config.exclude_patterns),
            max_files=config.max_files,
            cancel_event=config.cancel_event,
        )
        candidates, _ = self._discover([search_dir], search)

        members = [source]
        for f in candidates:
            if f.path == source_path:
                continue
            search.check_cancelled()
            try:
                if file_md5(f.path) != source_hash:
                    continue
                if filecmp.cmp(source_path, f.path, shallow=False):
                    members.append(f)
            except OSError as e:
                logger.debug("cannot compare %s: %s", f.path, e)

        if len(members) < 2:
            return None
        source.is_suggested_keep = True
        total = sum(f.size for f in members)
        return DuplicateGroup(
            type=DuplicateType.EXACT,
            files=members,
            total_size=total,
            reclaimable_size=total - source.size,
        )

    def suggest_keep(
        self,
        group: DuplicateGroup,
        policy: KeepPolicy,
        choice: int | None = None,
    ) -> DuplicateFile | None:
        return suggest_keep(group, policy, choice)

    def cleanup_group(
        self, group: DuplicateGroup, use_trash: bool = True
    ) -> int:
        """Remove every file in ``group`` except the kept one.

        Missing files and permission failures are skipped. Returns the
        number of files actually removed.
        """
        if group.kept is None:
            suggest_keep(group, KeepPolicy.NEWEST)

        removed = 0
        for f in group.files:
            if f.is_suggested_keep:
                continue
            try:
                if use_trash:
                    self._trash(f.path)
                else:
                    os.remove(f.path)
            except OSError as e:
                logger.debug("cannot remove %s: %s", f.path, e)
                continue
            removed += 1
        logger.info(
            "cleaned up %d of %d duplicate(s)", removed, group.file_count - 1
        )
        return removed


def _copy_with(f: DuplicateFile, similarity: float) -> DuplicateFile:
    return DuplicateFile(
        path=f.path,
        size=f.size,
        modified_at=f.modified_at,
        accessed_at=f.accessed_at,
        similarity=similarity,
    )
