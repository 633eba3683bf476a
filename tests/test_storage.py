"""Tests for vbmh.storage module."""

from __future__ import annotations

import xml.etree.ElementTree as ET

import pytest

from vbmh.exceptions import NotFound, PoolDefinitionError, VolumeCreateError
from vbmh.storage import StorageProvisioner, VolumeManager, render_pool_xml, render_volume_xml


class TestRenderXml:
    def test_pool(self, tmp_path):
        root = ET.fromstring(render_pool_xml("vbmh", tmp_path))
        assert root.get("type") == "dir"
        assert root.findtext("name") == "vbmh"
        assert root.findtext("target/path") == str(tmp_path)

    def test_volume(self):
        root = ET.fromstring(render_volume_xml("vol-1", 1024))
        assert root.findtext("name") == "vol-1"
        assert root.find("capacity").get("unit") == "bytes"
        assert root.findtext("capacity") == "1024"
        assert root.find("target/format").get("type") == "raw"


class TestEnsurePool:
    def test_creates_directory_and_pool(self, fake_client, tmp_path):
        path = tmp_path / "pool"
        StorageProvisioner(fake_client).ensure_pool("vbmh", path)
        assert path.is_dir()
        record = fake_client.record("pool", "vbmh")
        assert record["built"] is True
        assert record["active"] is True
        assert record["autostart"] is True

    def test_build_failure_is_only_a_warning(self, fake_client, tmp_path, capsys):
        fake_client.fail("build", "pool", "vbmh")
        StorageProvisioner(fake_client).ensure_pool("vbmh", tmp_path / "pool")
        assert fake_client.record("pool", "vbmh")["active"] is True
        assert "build failed" in capsys.readouterr().out

    def test_active_pool_untouched(self, fake_client, tmp_path):
        fake_client.add("pool", "vbmh", active=True)
        StorageProvisioner(fake_client).ensure_pool("vbmh", tmp_path / "pool")
        assert fake_client.actions("define", "pool") == []
        assert not (tmp_path / "pool").exists()

    def test_inactive_pool_started(self, fake_client, tmp_path):
        fake_client.add("pool", "vbmh", active=False)
        StorageProvisioner(fake_client).ensure_pool("vbmh", tmp_path / "pool")
        assert fake_client.record("pool", "vbmh")["active"] is True

    def test_define_rejected(self, fake_client, tmp_path):
        fake_client.fail("define", "pool", "vbmh")
        with pytest.raises(PoolDefinitionError):
            StorageProvisioner(fake_client).ensure_pool("vbmh", tmp_path / "pool")


class TestDeleteMatching:
    def test_deletes_only_anchored_matches(self, fake_client):
        fake_client.add("pool", "vbmh", active=True)
        for name in ("vol-1", "vol-2", "vol-10", "vol-1.bak", "volume-1", "data"):
            fake_client.add("volume", name, scope="vbmh")
        assert VolumeManager(fake_client).delete_matching("vbmh", "vol") == 3
        assert fake_client.names("volume", scope="vbmh") == ["data", "vol-1.bak", "volume-1"]

    def test_undefined_pool(self, fake_client):
        assert VolumeManager(fake_client).delete_matching("vbmh", "vol") == 0

    def test_inactive_pool_skipped(self, fake_client):
        fake_client.add("pool", "vbmh", active=False)
        fake_client.add("volume", "vol-1", scope="vbmh")
        assert VolumeManager(fake_client).delete_matching("vbmh", "vol") == 0
        assert fake_client.names("volume", scope="vbmh") == ["vol-1"]

    def test_concurrently_removed_volume_counts_as_gone(self, fake_client):
        fake_client.add("pool", "vbmh", active=True)
        fake_client.add("volume", "vol-1", scope="vbmh")
        fake_client.add("volume", "vol-2", scope="vbmh")
        fake_client.fail("lookup", "volume", "vol-1", exc=NotFound("gone"))
        assert VolumeManager(fake_client).delete_matching("vbmh", "vol") == 1


class TestCreateVolume:
    def test_returns_volume(self, fake_client):
        fake_client.add("pool", "vbmh", active=True)
        volume = VolumeManager(fake_client).create("vbmh", "vol-1", 2048)
        assert volume.name == "vol-1"
        assert volume.pool == "vbmh"
        assert volume.capacity_bytes == 2048
        assert volume.path == "/pool/vol-1"

    def test_missing_pool(self, fake_client):
        with pytest.raises(VolumeCreateError):
            VolumeManager(fake_client).create("vbmh", "vol-1", 2048)
