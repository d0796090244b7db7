"""Tests for the classification rule table."""

from __future__ import annotations

import os
import time

import pytest

from pulito.core.classifier import Classifier, ClassifierPolicy
from pulito.models.scan_result import Category, RiskTier

from conftest import write_file


@pytest.fixture
def classifier(fake_home, tmp_path):
    return Classifier(ClassifierPolicy(
        home=fake_home,
        large_threshold=1000,
        old_download_days=90,
        temp_age_days=7,
        protected_paths=(tmp_path / "data",),
    ))


def _classify(classifier, path, **kwargs):
    return classifier.classify(path, os.lstat(path), **kwargs)


class TestCategories:
    def test_cache_file(self, classifier, fake_home):
        f = write_file(fake_home / ".cache" / "app" / "blob", 10)
        found = _classify(classifier, f)
        assert (found.category, found.tier) == (Category.CACHE, RiskTier.SAFE)

    def test_pycache_anywhere(self, classifier, fake_home):
        f = write_file(fake_home / "src" / "__pycache__" / "mod.cpython-312.pyc", 10)
        assert _classify(classifier, f).category is Category.CACHE

    def test_log_file(self, classifier, fake_home):
        for name in ("app.log", "app.log.1", "app.log.2.gz"):
            f = write_file(fake_home / "logs" / name, 10)
            assert _classify(classifier, f).category is Category.LOG, name

    def test_stale_temp_file(self, classifier, fake_home):
        f = write_file(fake_home / "work" / "draft.tmp", 10, age_days=10)
        found = _classify(classifier, f)
        assert found.category is Category.ORPHANED_TEMP_FILE

    def test_recent_temp_file_ignored(self, classifier, fake_home):
        f = write_file(fake_home / "work" / "draft.tmp", 10, age_days=1)
        assert _classify(classifier, f) is None

    def test_file_in_home_tmp_dir(self, classifier, fake_home):
        f = write_file(fake_home / "tmp" / "anything.dat", 10, age_days=30)
        assert _classify(classifier, f).category is Category.ORPHANED_TEMP_FILE

    def test_old_download(self, classifier, fake_home):
        f = write_file(fake_home / "Downloads" / "report.pdf", 10, age_days=120)
        found = _classify(classifier, f)
        assert (found.category, found.tier) == (Category.OLD_DOWNLOAD, RiskTier.OLD_DOWNLOAD)

    def test_recent_download_ignored(self, classifier, fake_home):
        f = write_file(fake_home / "Downloads" / "report.pdf", 10, age_days=5)
        assert _classify(classifier, f) is None

    def test_large_file(self, classifier, fake_home):
        f = write_file(fake_home / "Videos" / "movie.mkv", 2000)
        found = _classify(classifier, f)
        assert (found.category, found.tier) == (Category.LARGE_FILE, RiskTier.LARGE_FILE)

    def test_large_regenerable_file_is_not_large(self, classifier, fake_home):
        f = write_file(fake_home / "logs" / "huge.log", 5000)
        assert _classify(classifier, f).category is Category.LOG

    def test_package_artifact(self, classifier, fake_home):
        for name in ("tool.deb", "lib.whl", "app.AppImage", "pkg-1.0-x86_64.pkg.tar.zst"):
            f = write_file(fake_home / "pkgs" / name, 10)
            found = _classify(classifier, f)
            assert (found.category, found.tier) == (Category.PACKAGE_ARTIFACT, RiskTier.PACKAGE), name

    def test_plain_file_unclassified(self, classifier, fake_home):
        f = write_file(fake_home / "Documents" / "thesis.odt", 10)
        assert _classify(classifier, f) is None


class TestPrecedence:
    def test_old_large_download_is_large(self, classifier, fake_home):
        f = write_file(fake_home / "Downloads" / "disk.iso", 2000, age_days=200)
        assert _classify(classifier, f).category is Category.LARGE_FILE

    def test_package_in_downloads_is_package(self, classifier, fake_home):
        f = write_file(fake_home / "Downloads" / "tool.deb", 10, age_days=200)
        assert _classify(classifier, f).tier is RiskTier.PACKAGE

    def test_protected_beats_everything(self, classifier, fake_home):
        f = write_file(fake_home / ".ssh" / "known_hosts.log", 10)
        found = _classify(classifier, f)
        assert (found.category, found.tier) == (Category.PROTECTED, RiskTier.PROTECTED)

    def test_credential_names_protected(self, classifier, fake_home):
        for name in ("id_rsa", "id_ed25519.pub", "vault.kdbx", "server.pem"):
            f = write_file(fake_home / "keys" / name, 10)
            assert _classify(classifier, f).tier is RiskTier.PROTECTED, name

    def test_configured_protected_tree(self, classifier, tmp_path):
        f = write_file(tmp_path / "data" / "quarantine" / "x.log", 10)
        assert _classify(classifier, f).tier is RiskTier.PROTECTED
        assert classifier.is_protected(tmp_path / "data")

    def test_git_directory_protected(self, classifier, fake_home):
        assert classifier.is_protected(fake_home / "project" / ".git" / "objects")
        assert not classifier.is_protected(fake_home / "project" / "src")


class TestFlags:
    def test_broken_symlink(self, classifier, fake_home):
        link = fake_home / "dangling"
        link.symlink_to(fake_home / "missing")
        found = _classify(classifier, link, link_broken=True)
        assert (found.category, found.tier) == (Category.BROKEN_SYMLINK, RiskTier.SAFE)

    def test_empty_directory(self, classifier, fake_home):
        d = fake_home / "empty"
        d.mkdir()
        found = _classify(classifier, d, empty_dir=True)
        assert found.category is Category.EMPTY_DIRECTORY

    def test_empty_dir_in_cache_is_empty_dir(self, classifier, fake_home):
        d = fake_home / ".cache" / "app" / "empty"
        d.mkdir(parents=True)
        assert _classify(classifier, d, empty_dir=True).category is Category.EMPTY_DIRECTORY


def test_pinned_clock(fake_home):
    f = write_file(fake_home / "Downloads" / "old.pdf", 10)
    now = time.time()
    fresh = Classifier(ClassifierPolicy(home=fake_home, now=now))
    later = Classifier(ClassifierPolicy(home=fake_home, now=now + 100 * 86_400))
    assert fresh.classify(f, os.lstat(f)) is None
    assert later.classify(f, os.lstat(f)).category is Category.OLD_DOWNLOAD


def test_default_downloads_dir(fake_home):
    assert ClassifierPolicy(home=fake_home).downloads_dir == fake_home / "Downloads"
