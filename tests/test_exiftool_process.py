"""Tests for the stay_open exiftool wrapper, driven by a fake shell executable."""
import os
import stat
import sys

import pytest

from plugins.exiftool_process import ExifToolProcess

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake exiftool is a POSIX shell script")

ECHO_SCRIPT = """#!/bin/sh
args=""
while IFS= read -r line; do
  case "$line" in
    -execute*) printf 'echo:%s\\n' "$args"; printf '{ready%s}\\n' "${line#-execute}"; args="";;
    -stay_open) ;;
    False) exit 0;;
    *) args="$args$line ";;
  esac
done
"""

JSON_SCRIPT = """#!/bin/sh
while IFS= read -r line; do
  case "$line" in
    -execute*) printf '[{"Rating": 3, "Model": "R5"}]\\n'; printf '{ready%s}\\n' "${line#-execute}";;
    False) exit 0;;
  esac
done
"""

SILENT_SCRIPT = """#!/bin/sh
while IFS= read -r line; do :; done
"""


def _fake(tmp_path, body, name="exiftool"):
    path = tmp_path / name
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


class TestExifToolProcess:
    def test_requests_are_framed(self, tmp_path):
        with ExifToolProcess(_fake(tmp_path, ECHO_SCRIPT), timeout=5) as proc:
            assert proc.execute(["-Rating", "/p/a.cr2"]) == b"echo:-Rating /p/a.cr2 \n"
            assert proc.execute(["-Model"]) == b"echo:-Model \n"

    def test_json(self, tmp_path):
        with ExifToolProcess(_fake(tmp_path, JSON_SCRIPT), timeout=5) as proc:
            assert proc.execute_json(["/p/a.cr2"]) == [{"Rating": 3, "Model": "R5"}]

    def test_invalid_json_gives_empty_list(self, tmp_path):
        with ExifToolProcess(_fake(tmp_path, ECHO_SCRIPT), timeout=5) as proc:
            assert proc.execute_json(["/p/a.cr2"]) == []

    def test_restarts_after_process_died(self, tmp_path):
        proc = ExifToolProcess(_fake(tmp_path, ECHO_SCRIPT), timeout=5)
        try:
            proc.execute(["-a"])
            first_pid = proc._process.pid
            proc._process.kill()
            proc._process.wait()
            assert proc.execute(["-b"]) == b"echo:-b \n"
            assert proc._process.pid != first_pid
        finally:
            proc.close()

    def test_timeout(self, tmp_path):
        proc = ExifToolProcess(_fake(tmp_path, SILENT_SCRIPT), timeout=0.2)
        try:
            with pytest.raises(TimeoutError):
                proc.execute(["-a"])
        finally:
            proc.close()
        assert proc._process is None

    def test_missing_executable(self, tmp_path):
        proc = ExifToolProcess(os.path.join(str(tmp_path), "no-exiftool"))
        with pytest.raises(OSError):
            proc.execute(["-a"])

    def test_close_is_idempotent(self, tmp_path):
        proc = ExifToolProcess(_fake(tmp_path, ECHO_SCRIPT))
        proc.execute(["-a"])
        proc.close()
        proc.close()
        assert proc._process is None
