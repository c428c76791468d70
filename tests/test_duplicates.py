"""Tests for duplicate detection and cleanup."""

import json
import os
from pathlib import Path

import pytest
from PIL import Image

from filesense.duplicates import (
    DuplicateAnalyzer,
    DuplicateConfig,
    DuplicateFile,
    DuplicateGroup,
    DuplicateType,
    KeepPolicy,
    ScanStatus,
    average_hash,
    hamming_distance,
    max_hash_distance,
    suggest_keep,
)
from filesense.embeddings import StubTextEmbeddingProvider
from filesense.errors import InvalidInputError

HIGH = 200
LOW = 50


def checkerboard(flipped: int = 0) -> Image.Image:
    """8x8 grayscale board; the first ``flipped`` dark cells made light."""
    img = Image.new("L", (8, 8))
    dark = 0
    for y in range(8):
        for x in range(8):
            light = (x + y) % 2 == 0
            if not light:
                if dark < flipped:
                    light = True
                dark += 1
            img.putpixel((x, y), HIGH if light else LOW)
    return img


def exact_only(**kw) -> DuplicateConfig:
    return DuplicateConfig(
        detect_similar_images=False, detect_similar_text=False, **kw
    )


def set_mtime(path: Path, when: int) -> None:
    os.utime(path, (when, when))


class TestHashing:
    def test_hamming_distance(self):
        assert hamming_distance(0b1011, 0b0001) == 2
        assert hamming_distance(0, 2**64 - 1) == 64

    def test_max_distance(self):
        assert max_hash_distance(0.90) == 6
        assert max_hash_distance(0.98) == 1
        assert max_hash_distance(1.0) == 0

    def test_average_hash_of_crafted_images(self, tmp_path: Path):
        a = tmp_path / "a.png"
        b = tmp_path / "b.png"
        checkerboard().save(a)
        checkerboard(flipped=3).save(b)
        assert hamming_distance(average_hash(a), average_hash(b)) == 3


class TestExactDuplicates:
    def test_groups_identical_files(self, tmp_path: Path):
        (tmp_path / "one.txt").write_text("X")
        (tmp_path / "two.txt").write_text("X")
        (tmp_path / "three.txt").write_text("Y")

        analysis = DuplicateAnalyzer().scan([tmp_path], exact_only())
        assert analysis.success
        assert analysis.total_files_scanned == 3
        [group] = analysis.groups
        assert group.type is DuplicateType.EXACT
        assert {Path(f.path).name for f in group.files} == {
            "one.txt",
            "two.txt",
        }
        assert group.reclaimable_size == 1
        assert analysis.total_duplicates_found == 1
        assert analysis.total_reclaimable_size == 1

    def test_nested_directories(self, tmp_path: Path):
        (tmp_path / "a" / "b").mkdir(parents=True)
        (tmp_path / "top.bin").write_bytes(b"payload")
        (tmp_path / "a" / "b" / "deep.bin").write_bytes(b"payload")
        analysis = DuplicateAnalyzer().scan([tmp_path], exact_only())
        assert len(analysis.groups) == 1

    def test_not_recursive(self, tmp_path: Path):
        (tmp_path / "a").mkdir()
        (tmp_path / "top.bin").write_bytes(b"payload")
        (tmp_path / "a" / "deep.bin").write_bytes(b"payload")
        analysis = DuplicateAnalyzer().scan(
            [tmp_path], exact_only(recursive=False)
        )
        assert analysis.groups == []

    def test_same_size_different_content(self, tmp_path: Path):
        (tmp_path / "a.bin").write_bytes(b"aaaa")
        (tmp_path / "b.bin").write_bytes(b"bbbb")
        assert DuplicateAnalyzer().scan([tmp_path], exact_only()).groups == []

    def test_size_bounds(self, tmp_path: Path):
        (tmp_path / "e1").write_bytes(b"")
        (tmp_path / "e2").write_bytes(b"")
        (tmp_path / "big1").write_bytes(b"z" * 100)
        (tmp_path / "big2").write_bytes(b"z" * 100)
        analysis = DuplicateAnalyzer().scan(
            [tmp_path], exact_only(max_file_size=50)
        )
        assert analysis.total_files_scanned == 0
        assert analysis.groups == []

    def test_exclude_substring(self, tmp_path: Path):
        (tmp_path / "keep").mkdir()
        (tmp_path / "skipme").mkdir()
        (tmp_path / "keep" / "a.txt").write_text("same")
        (tmp_path / "skipme" / "b.txt").write_text("same")
        analysis = DuplicateAnalyzer().scan(
            [tmp_path], exact_only(exclude_patterns=["skipme"])
        )
        assert analysis.groups == []
        assert analysis.total_files_scanned == 1

    def test_symlinks_ignored(self, tmp_path: Path):
        (tmp_path / "a.txt").write_text("same")
        os.symlink(tmp_path / "a.txt", tmp_path / "link.txt")
        analysis = DuplicateAnalyzer().scan([tmp_path], exact_only())
        assert analysis.groups == []

    def test_newest_suggested_by_default(self, tmp_path: Path):
        old = tmp_path / "old.txt"
        new = tmp_path / "new.txt"
        old.write_text("data")
        new.write_text("data")
        set_mtime(old, 1_000_000)
        set_mtime(new, 2_000_000)
        [group] = DuplicateAnalyzer().scan([tmp_path], exact_only()).groups
        assert group.kept.path == str(new)
        assert sum(f.is_suggested_keep for f in group.files) == 1


class TestSimilarImages:
    @pytest.fixture
    def images(self, tmp_path: Path) -> Path:
        checkerboard().save(tmp_path / "a.png")
        checkerboard(flipped=3).save(tmp_path / "b.png")
        return tmp_path

    def _scan(self, root: Path, threshold: float):
        config = DuplicateConfig(
            detect_exact=False,
            detect_similar_text=False,
            similarity_threshold=threshold,
        )
        return DuplicateAnalyzer().scan([root], config)

    def test_grouped_within_threshold(self, images: Path):
        [group] = self._scan(images, 0.90).groups
        assert group.type is DuplicateType.SIMILAR_IMAGE
        assert group.files[0].similarity == 1.0
        assert group.files[1].similarity == pytest.approx(1 - 3 / 64)
        sizes = [f.size for f in group.files]
        assert group.reclaimable_size == sum(sizes) - max(sizes)

    def test_not_grouped_above_threshold(self, images: Path):
        assert self._scan(images, 0.98).groups == []

    def test_corrupt_image_counted(self, images: Path):
        (images / "broken.png").write_bytes(b"not a png")
        analysis = self._scan(images, 0.90)
        assert analysis.files_unreadable == 1
        assert len(analysis.groups) == 1


class TestSimilarText:
    def test_shared_prefix_grouped(self, tmp_path: Path):
        body = "a" * 9000
        first = tmp_path / "first.txt"
        second = tmp_path / "second.txt"
        first.write_text(body + "x")
        second.write_text(body + "yy")
        set_mtime(first, 1_000_000)
        set_mtime(second, 2_000_000)
        (tmp_path / "other.txt").write_text("unrelated content")

        analyzer = DuplicateAnalyzer(provider=StubTextEmbeddingProvider())
        config = DuplicateConfig(
            detect_exact=False, detect_similar_images=False
        )
        [group] = analyzer.scan([tmp_path], config).groups
        assert group.type is DuplicateType.SIMILAR_TEXT
        assert {Path(f.path).name for f in group.files} == {
            "first.txt",
            "second.txt",
        }
        # newest is kept, so the older file is what can be reclaimed
        assert group.reclaimable_size == first.stat().st_size

    def test_skipped_without_model(self, tmp_path: Path):
        (tmp_path / "a.txt").write_text("same text, different file 1")
        (tmp_path / "b.txt").write_text("same text, different file 1!")
        config = DuplicateConfig(
            detect_exact=False, detect_similar_images=False
        )
        analysis = DuplicateAnalyzer().scan([tmp_path], config)
        assert analysis.success
        assert analysis.groups == []

    def test_exact_copies_enter_once(self, tmp_path: Path):
        body = "b" * 9000
        (tmp_path / "orig.md").write_text(body + "1")
        (tmp_path / "copy.md").write_text(body + "1")
        (tmp_path / "variant.md").write_text(body + "22")

        analyzer = DuplicateAnalyzer(provider=StubTextEmbeddingProvider())
        analysis = analyzer.scan(
            [tmp_path], DuplicateConfig(detect_similar_images=False)
        )
        exact = [g for g in analysis.groups if g.type is DuplicateType.EXACT]
        text = [
            g for g in analysis.groups if g.type is DuplicateType.SIMILAR_TEXT
        ]
        assert len(exact) == 1 and len(text) == 1
        exact_paths = {f.path for f in exact[0].files}
        text_paths = {f.path for f in text[0].files}
        assert len(text_paths) == 2
        assert len(exact_paths & text_paths) == 1


class TestScanLimits:
    def test_cancel_before_scan(self, tmp_path: Path):
        (tmp_path / "a.txt").write_text("X")
        (tmp_path / "b.txt").write_text("X")
        config = exact_only()
        config.cancel()
        analysis = DuplicateAnalyzer().scan([tmp_path], config)
        assert analysis.status is ScanStatus.CANCELLED
        assert analysis.message == "Cancelled"
        assert analysis.groups == []

    def test_cancel_during_scan(self, tmp_path: Path):
        for i in range(4):
            (tmp_path / f"{i}.txt").write_text("X")
        config = exact_only()

        def on_progress(phase, done, total):
            config.cancel()

        analysis = DuplicateAnalyzer().scan([tmp_path], config, on_progress)
        assert analysis.status is ScanStatus.CANCELLED
        assert analysis.groups == []

    def test_too_many_files(self, tmp_path: Path):
        for i in range(3):
            (tmp_path / f"{i}.txt").write_text(str(i))
        analysis = DuplicateAnalyzer().scan(
            [tmp_path], exact_only(max_files=2)
        )
        assert analysis.status is ScanStatus.TOO_MANY_FILES
        assert not analysis.success


class TestSuggestKeep:
    @pytest.fixture
    def group(self) -> DuplicateGroup:
        files = [
            DuplicateFile("/a/long/path/one", 10, 100.0, 500.0),
            DuplicateFile("/b/two", 30, 300.0, 100.0),
            DuplicateFile("/c/three", 20, 200.0, 900.0),
        ]
        return DuplicateGroup(DuplicateType.SIMILAR_TEXT, files, 60, 0)

    @pytest.mark.parametrize(
        ("policy", "expected"),
        [
            (KeepPolicy.NEWEST, "/b/two"),
            (KeepPolicy.OLDEST, "/a/long/path/one"),
            (KeepPolicy.LARGEST, "/b/two"),
            (KeepPolicy.SHORTEST_PATH, "/b/two"),
            (KeepPolicy.MOST_ACCESSED, "/c/three"),
        ],
    )
    def test_policies(self, group, policy, expected):
        kept = suggest_keep(group, policy)
        assert kept.path == expected
        assert [f.is_suggested_keep for f in group.files].count(True) == 1

    def test_user_choice(self, group):
        kept = DuplicateAnalyzer().suggest_keep(
            group, KeepPolicy.USER_CHOICE, 2
        )
        assert kept.path == "/c/three"
        with pytest.raises(InvalidInputError):
            suggest_keep(group, KeepPolicy.USER_CHOICE, 7)

    def test_empty_group(self):
        empty = DuplicateGroup(DuplicateType.EXACT)
        assert suggest_keep(empty, KeepPolicy.NEWEST) is None


class TestCleanup:
    @pytest.fixture
    def group(self, tmp_path: Path) -> DuplicateGroup:
        paths = []
        for name in ("keep.txt", "dup1.txt", "dup2.txt"):
            path = tmp_path / name
            path.write_text("same")
            paths.append(path)
        files = [DuplicateFile(str(p), 4) for p in paths]
        files[0].is_suggested_keep = True
        return DuplicateGroup(DuplicateType.EXACT, files, 12, 8)

    def test_moves_non_kept_to_trash(self, group, tmp_path: Path):
        trashed = []
        analyzer = DuplicateAnalyzer(trash=trashed.append)
        assert analyzer.cleanup_group(group) == 2
        assert sorted(Path(p).name for p in trashed) == [
            "dup1.txt",
            "dup2.txt",
        ]

    def test_permanent_delete(self, group, tmp_path: Path):
        assert DuplicateAnalyzer().cleanup_group(group, use_trash=False) == 2
        assert (tmp_path / "keep.txt").exists()
        assert not (tmp_path / "dup1.txt").exists()

    def test_missing_files_skipped(self, group, tmp_path: Path):
        (tmp_path / "dup1.txt").unlink()
        assert DuplicateAnalyzer().cleanup_group(group, use_trash=False) == 1

    def test_real_trash(self, group, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        assert DuplicateAnalyzer().cleanup_group(group) == 2
        trash = tmp_path / "home" / ".local" / "share" / "Trash"
        assert sorted(p.name for p in (trash / "files").iterdir()) == [
            "dup1.txt",
            "dup2.txt",
        ]
        info = (trash / "info" / "dup1.txt.trashinfo").read_text()
        assert info.startswith("[Trash Info]")
        assert "dup1.txt" in info


class TestFindCopies:
    def test_finds_byte_identical_copies(self, tmp_path: Path):
        source = tmp_path / "source.bin"
        source.write_bytes(b"content")
        search = tmp_path / "search"
        (search / "nested").mkdir(parents=True)
        (search / "copy.bin").write_bytes(b"content")
        (search / "nested" / "copy2.bin").write_bytes(b"content")
        (search / "impostor.bin").write_bytes(b"CONTENT")

        group = DuplicateAnalyzer().find_copies(source, search)
        assert group is not None
        assert group.files[0].path == str(source)
        assert group.files[0].is_suggested_keep
        assert group.file_count == 3
        assert group.total_size == 3 * len(b"content")
        assert group.reclaimable_size == 2 * len(b"content")

    def test_no_copies(self, tmp_path: Path):
        source = tmp_path / "source.bin"
        source.write_bytes(b"unique")
        (tmp_path / "search").mkdir()
        group = DuplicateAnalyzer().find_copies(source, tmp_path / "search")
        assert group is None

    def test_source_inside_search_dir(self, tmp_path: Path):
        source = tmp_path / "a.txt"
        source.write_text("dup")
        (tmp_path / "b.txt").write_text("dup")
        group = DuplicateAnalyzer().find_copies(source, tmp_path)
        assert group.file_count == 2


class TestReport:
    def test_to_json(self, tmp_path: Path):
        (tmp_path / "a.txt").write_text("X")
        (tmp_path / "b.txt").write_text("X")
        analysis = DuplicateAnalyzer().scan([tmp_path], exact_only())
        data = json.loads(analysis.to_json())
        assert data["status"] == "OK"
        assert data["total_files_scanned"] == 2
        assert data["total_duplicates_found"] == 1
        assert data["total_reclaimable_bytes"] == 1
        [group] = data["groups"]
        assert group["type"] == "exact"
        assert group["file_count"] == 2
        assert {f["size"] for f in group["files"]} == {1}
        assert sum(f["suggested_keep"] for f in group["files"]) == 1
