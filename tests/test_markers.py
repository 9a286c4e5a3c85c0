"""
Tests for sysfleet.markers

Covers:
- write_marker / read_port / remove_marker
- scan_markers prefix filtering and tolerance of junk files
"""
import os

from sysfleet.markers import marker_path, read_port, remove_marker, scan_markers, write_marker


class TestMarkerFiles:
    def test_write_and_read(self, tmp_path):
        path = write_marker(str(tmp_path), "SVRaidBot", 4242, 8083)
        assert os.path.basename(path) == "SVRaidBot_4242.port"
        assert read_port(path) == 8083
        assert not os.path.exists(path + ".tmp")

    def test_read_skips_blank_lines(self, tmp_path):
        path = tmp_path / "PokeBot_1.port"
        path.write_text("\n\n 8090 \n")
        assert read_port(str(path)) == 8090

    def test_read_junk_is_none(self, tmp_path):
        path = tmp_path / "PokeBot_1.port"
        path.write_text("not a port")
        assert read_port(str(path)) is None
        assert read_port(str(tmp_path / "missing.port")) is None

    def test_remove_is_idempotent(self, tmp_path):
        path = write_marker(str(tmp_path), "PokeBot", 7, 8081)
        remove_marker(path)
        remove_marker(path)
        remove_marker(None)
        assert not os.path.exists(path)


class TestScanMarkers:
    def test_filters_by_prefix(self, tmp_path):
        write_marker(str(tmp_path), "SVRaidBot", 100, 8081)
        write_marker(str(tmp_path), "PokeBot", 200, 8082)
        write_marker(str(tmp_path), "Other", 300, 8083)
        (tmp_path / "PokeBot_x.port").write_text("8084")
        (tmp_path / "PokeBot_400.port").write_text("garbage")
        (tmp_path / "notes.txt").write_text("hello")

        found = scan_markers(str(tmp_path), {"SVRaidBot", "PokeBot"})
        assert found == {100: 8081, 200: 8082}

    def test_missing_directory(self, tmp_path):
        assert scan_markers(str(tmp_path / "nope"), {"PokeBot"}) == {}

    def test_marker_path(self, tmp_path):
        assert marker_path(str(tmp_path), "PokeBot", 9) == os.path.join(str(tmp_path), "PokeBot_9.port")
