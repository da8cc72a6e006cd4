"""Tests for PathClassifier and walk_tree."""

from unittest.mock import MagicMock

import pytest

from dirpush_client import Classification, PathClassifier, UploadJob, WatchRegistry, walk_tree


@pytest.fixture
def classifier(watch_root):
    return PathClassifier(watch_root)


class TestClassify:
    def test_regular_file(self, watch_root, classifier):
        f = watch_root / "notes.txt"
        f.write_text("x")
        assert classifier.classify(f) is Classification.FILE_TO_UPLOAD

    def test_directory(self, watch_root, classifier):
        d = watch_root / "src"
        d.mkdir()
        assert classifier.classify(d) is Classification.DIRECTORY_TO_WATCH

    def test_backup_file_ignored(self, watch_root, classifier):
        f = watch_root / "notes.txt~"
        f.write_text("x")
        assert classifier.classify(f) is Classification.IGNORE

    def test_backup_directory_ignored(self, watch_root, classifier):
        d = watch_root / "old~"
        d.mkdir()
        assert classifier.classify(d) is Classification.IGNORE

    def test_hidden_directory_ignored(self, watch_root, classifier):
        d = watch_root / ".git"
        d.mkdir()
        assert classifier.classify(d) is Classification.IGNORE

    def test_file_under_hidden_directory_ignored(self, watch_root, classifier):
        d = watch_root / "a" / ".cache"
        d.mkdir(parents=True)
        f = d / "blob"
        f.write_text("x")
        assert classifier.classify(f) is Classification.IGNORE

    def test_hidden_file_is_uploaded(self, watch_root, classifier):
        """Only hidden directories are skipped, not hidden files."""
        f = watch_root / ".env"
        f.write_text("x")
        assert classifier.classify(f) is Classification.FILE_TO_UPLOAD

    def test_root_is_always_watched(self, tmp_path):
        root = tmp_path / ".hidden-root"
        root.mkdir()
        assert PathClassifier(root).classify(root) is Classification.DIRECTORY_TO_WATCH

    def test_outside_root_ignored(self, tmp_path, classifier):
        f = tmp_path / "elsewhere.txt"
        f.write_text("x")
        assert classifier.classify(f) is Classification.IGNORE

    def test_missing_path_assumed_file(self, watch_root, classifier):
        assert classifier.classify(watch_root / "gone") is Classification.FILE_TO_UPLOAD

    def test_is_dir_hint_skips_stat(self, watch_root, classifier):
        assert classifier.classify(watch_root / "gone", is_dir=True) is Classification.DIRECTORY_TO_WATCH

    def test_extra_patterns(self, watch_root):
        classifier = PathClassifier(watch_root, ("*.pyc", "build/"))
        assert classifier.classify(watch_root / "m.pyc", is_dir=False) is Classification.IGNORE
        assert classifier.classify(watch_root / "build", is_dir=True) is Classification.IGNORE
        assert classifier.classify(watch_root / "m.py", is_dir=False) is Classification.FILE_TO_UPLOAD


class TestWalkTree:
    def test_registers_directories_and_collects_files(self, watch_root, classifier):
        (watch_root / "a" / "b").mkdir(parents=True)
        (watch_root / ".git" / "objects").mkdir(parents=True)
        (watch_root / "top.txt").write_text("1")
        (watch_root / "top.txt~").write_text("1")
        (watch_root / "a" / "b" / "deep.txt").write_text("2")
        (watch_root / ".git" / "objects" / "pack").write_text("3")

        observer = MagicMock()
        registry = WatchRegistry(observer)
        registry.attach(MagicMock())
        registry.watch_root(watch_root)

        files = walk_tree(watch_root, classifier, registry)

        assert files == [watch_root / "top.txt", watch_root / "a" / "b" / "deep.txt"]
        assert registry.watched == {watch_root, watch_root / "a", watch_root / "a" / "b"}

    def test_without_registry(self, watch_root, classifier):
        (watch_root / "x.txt").write_text("1")
        assert walk_tree(watch_root, classifier, None) == [watch_root / "x.txt"]


class TestUploadJob:
    def test_relative_and_target_paths(self, watch_root):
        job = UploadJob.for_path(watch_root, watch_root / "a" / "b.txt", "/t")
        assert str(job.relative_path) == "a/b.txt"
        assert job.target_path == "/t/a/b.txt"

    def test_target_root_trailing_slash(self, watch_root):
        job = UploadJob.for_path(watch_root, watch_root / "b.txt", "/t/")
        assert job.target_path == "/t/b.txt"

    def test_outside_root_rejected(self, tmp_path, watch_root):
        with pytest.raises(ValueError):
            UploadJob.for_path(watch_root, tmp_path / "x.txt", "/t")
