"""Tests for bisync_watch.engine module."""

import sys
import threading

import pytest

from bisync_watch.config import write_engine_config
from bisync_watch.engine import EngineRunner, Precondition


@pytest.fixture
def script(tmp_path):
    def factory(body):
        path = tmp_path / "engine.py"
        path.write_text(body, encoding="utf-8")
        return EngineRunner([sys.executable, str(path)], poll_sec=0.05)

    return factory


class TestPreconditions:
    """Tests for EngineRunner.check()."""

    def test_empty_command_rejected(self):
        """An engine command needs at least one token."""
        with pytest.raises(ValueError):
            EngineRunner([])

    def test_drive_checked_first(self, make_profile, tmp_path):
        """A missing drive is reported before anything else."""
        runner = EngineRunner([str(tmp_path / "missing.sh")])
        p = make_profile("Docs", drive_path=str(tmp_path / "Ext"))
        assert runner.check(p) is Precondition.DRIVE_NOT_MOUNTED

    def test_script_and_config(self, make_profile, script):
        """The script must exist, then the profile's engine config."""
        p = make_profile("Docs")
        assert EngineRunner(["/nonexistent/engine.sh"]).check(p) is Precondition.SCRIPT_NOT_FOUND
        runner = script("pass\n")
        assert runner.check(p) is Precondition.CONFIG_NOT_FOUND
        write_engine_config(p)
        assert runner.check(p) is Precondition.OK

    def test_command_on_path(self, make_profile):
        """A bare command name is resolved on PATH."""
        p = make_profile("Docs")
        write_engine_config(p)
        assert EngineRunner(["sh"]).check(p) is Precondition.OK


class TestRun:
    """Tests for EngineRunner.run()."""

    def test_passes_config_and_returns_code(self, make_profile, script, tmp_path):
        """The config path is the last argument and the exit code comes back."""
        p = make_profile("Docs")
        write_engine_config(p)
        out = tmp_path / "argv.txt"
        runner = script(f"import sys\nopen({str(out)!r}, 'w').write(sys.argv[-1])\nsys.exit(3)\n")
        assert runner.run(p) == 3
        assert out.read_text() == str(p.config_path)
        assert runner.running == 0

    def test_spawn_failure_returns_none(self, make_profile, tmp_path):
        """A command that cannot be started yields None."""
        p = make_profile("Docs")
        assert EngineRunner([str(tmp_path / "nope")]).run(p) is None

    def test_shutdown_stops_waiting(self, make_profile, script):
        """After shutdown() a long run is abandoned."""
        p = make_profile("Docs")
        write_engine_config(p)
        runner = script("import time\ntime.sleep(5)\n")
        result = {}
        t = threading.Thread(target=lambda: result.setdefault("code", runner.run(p)))
        t.start()
        runner.shutdown()
        t.join(timeout=5)
        assert not t.is_alive()
        assert result["code"] is None
