"""
Test module for utility functions in varianttriage/utils.py.

Covers tool lookup, gzip-aware opening and bounded log tail reading.
"""

import gzip
from unittest.mock import patch

from varianttriage.utils import (
    check_external_tools,
    format_command,
    is_nonempty_file,
    read_tail,
    smart_open,
)


class TestCheckExternalTools:
    """Tests for check_external_tools."""

    def test_all_found(self):
        """No missing tools when every lookup succeeds."""
        with patch("varianttriage.utils.shutil.which", return_value="/usr/bin/tool"):
            assert check_external_tools(["docker", "snpEff"]) == []

    def test_reports_missing(self):
        """Missing tools are returned in order."""

        def fake_which(tool):
            return None if tool == "snpEff" else f"/usr/bin/{tool}"

        with patch("varianttriage.utils.shutil.which", side_effect=fake_which):
            assert check_external_tools(["docker", "snpEff"]) == ["snpEff"]


class TestSmartOpen:
    """Tests for smart_open."""

    def test_plain_text(self, tmp_path):
        path = tmp_path / "a.vcf"
        path.write_text("##fileformat=VCFv4.2\n")
        with smart_open(path) as f:
            assert f.read() == "##fileformat=VCFv4.2\n"

    def test_gzip_binary(self, tmp_path):
        """Binary mode returns raw bytes from gzipped files."""
        path = tmp_path / "a.vcf.gz"
        with gzip.open(path, "wb") as f:
            f.write(b"chr1\t\xff\n")
        with smart_open(str(path), "rb") as f:
            assert f.read() == b"chr1\t\xff\n"

    def test_gzip(self, tmp_path):
        path = tmp_path / "a.vcf.gz"
        with gzip.open(path, "wt") as f:
            f.write("chr1\t1\n")
        with smart_open(str(path), "r") as f:
            assert f.read() == "chr1\t1\n"


class TestReadTail:
    """Tests for read_tail."""

    def test_missing_file(self, tmp_path):
        assert read_tail(str(tmp_path / "none.log"), 100) == ""

    def test_short_file_is_returned_whole(self, tmp_path):
        path = tmp_path / "call.log"
        path.write_text("line 1\nline 2\n")
        assert read_tail(str(path), 100) == "line 1\nline 2\n"

    def test_long_file_is_truncated(self, tmp_path):
        """Only the last bytes are kept, with a note on what was cut."""
        path = tmp_path / "call.log"
        path.write_text("x" * 1000 + "ERROR: out of memory\n")

        tail = read_tail(str(path), 21)

        assert tail.endswith("ERROR: out of memory\n")
        assert tail.startswith("[... 1000 bytes truncated ...]")

    def test_cut_multibyte_character(self, tmp_path):
        """A multi-byte character split by the cut does not raise."""
        path = tmp_path / "call.log"
        path.write_bytes("é".encode("utf-8") * 10)
        assert read_tail(str(path), 3)


class TestSmallHelpers:
    """Tests for is_nonempty_file and format_command."""

    def test_is_nonempty_file(self, tmp_path):
        empty = tmp_path / "empty.vcf"
        empty.write_text("")
        full = tmp_path / "full.vcf"
        full.write_text("x")
        assert not is_nonempty_file(empty)
        assert is_nonempty_file(full)
        assert not is_nonempty_file(tmp_path)
        assert not is_nonempty_file(tmp_path / "absent.vcf")

    def test_format_command_quotes_arguments(self):
        assert format_command(["snpEff", "-Xmx8g", "GRCh38.99", "my file.vcf"]) == (
            "snpEff -Xmx8g GRCh38.99 'my file.vcf'"
        )
