"""Tests for options.py - command line option model."""

import logging
from pathlib import Path

import pytest

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from logdest import CONSOLE, SYSLOG, Destination
from options import (
    PARSEONLY_MESSAGE,
    InvalidOption,
    OptionSet,
    ServiceMode,
    parse_options,
)


class TestServiceMode:
    """Tests for mode derivation."""

    def test_no_flags_is_serve(self):
        """Without --compile the master serves."""
        assert parse_options([]).mode is ServiceMode.SERVE

    def test_compile_is_compile_once(self):
        """--compile NODE selects compile-once mode."""
        options = parse_options(["--compile", "web01"])
        assert options.mode is ServiceMode.COMPILE_ONCE
        assert options.target_client == "web01"

    def test_short_compile_flag(self):
        """-c is an alias for --compile."""
        assert parse_options(["-c", "db01"]).target_client == "db01"

    def test_empty_compile_target_rejected(self):
        """--compile with a blank node name is invalid."""
        with pytest.raises(InvalidOption):
            parse_options(["--compile", " "])

    def test_compile_without_value_rejected(self):
        """--compile needs a value."""
        with pytest.raises(InvalidOption):
            parse_options(["--compile"])


class TestFlags:
    """Tests for individual flags."""

    def test_defaults(self):
        """Defaults leave daemonize undecided and logging unset."""
        options = parse_options([])
        assert options == OptionSet()
        assert options.daemonize is None
        assert options.level is None

    def test_debug_wins_over_verbose(self):
        """--debug and --verbose together give DEBUG."""
        options = parse_options(["--verbose", "--debug"])
        assert options.level == logging.DEBUG

    def test_verbose_is_info(self):
        """--verbose alone gives INFO."""
        assert parse_options(["-v"]).level == logging.INFO

    def test_daemonize_flags(self):
        """--daemonize and --no-daemonize set an explicit choice."""
        assert parse_options(["--daemonize"]).daemonize is True
        assert parse_options(["-D"]).daemonize is True
        assert parse_options(["--no-daemonize"]).daemonize is False

    def test_rack_marks_embedded(self):
        """The internal --rack marker selects embedded mode."""
        assert parse_options(["--rack"]).embedded is True

    @pytest.mark.parametrize("flag", ["--ra", "--comp", "--no-daemon"])
    def test_abbreviations_rejected(self, flag):
        """Only full option names are accepted."""
        with pytest.raises(InvalidOption):
            parse_options([flag])

    def test_config_path(self, tmp_path):
        """--config is parsed as a Path."""
        options = parse_options(["--config", str(tmp_path / "master.yaml")])
        assert options.config_path == tmp_path / "master.yaml"

    def test_configprint_split(self):
        """--configprint accepts a comma-separated list."""
        options = parse_options(["--configprint", "vardir, ssldir,"])
        assert options.configprint == ("vardir", "ssldir")

    def test_unknown_flag(self):
        """Unknown flags raise InvalidOption instead of exiting."""
        with pytest.raises(InvalidOption):
            parse_options(["--bogus"])

    def test_options_are_immutable(self):
        """OptionSet cannot be changed after parsing."""
        options = parse_options([])
        with pytest.raises(AttributeError):
            options.debug = True


class TestLogDest:
    """Tests for --logdest handling."""

    def test_console(self):
        """--logdest console."""
        assert parse_options(["--logdest", "console"]).log_destination == CONSOLE

    def test_syslog(self):
        """-l syslog."""
        assert parse_options(["-l", "syslog"]).log_destination == SYSLOG

    def test_file_is_created(self, tmp_path):
        """A file destination is opened (and its directory created)."""
        path = tmp_path / "logs" / "master.log"
        options = parse_options(["--logdest", str(path)])
        assert options.log_destination == Destination("file", str(path))
        assert path.exists()

    def test_unopenable_destination_warns(self, tmp_path, capsys):
        """An unopenable destination is reported and parsing continues."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        options = parse_options(["--logdest", str(blocker / "master.log"), "--verbose"])

        assert options.log_destination is None
        assert options.verbose is True
        assert "Could not open log destination" in capsys.readouterr().err


class TestExitingFlags:
    """Tests for flags that end the process during parsing."""

    def test_parseonly_exits_1(self, capsys):
        """--parseonly prints the replacement command and exits 1."""
        with pytest.raises(SystemExit) as exc:
            parse_options(["--parseonly"])
        assert exc.value.code == 1
        assert PARSEONLY_MESSAGE in capsys.readouterr().out

    def test_help_exits_0(self, capsys):
        """--help prints usage and exits 0."""
        with pytest.raises(SystemExit) as exc:
            parse_options(["--help"])
        assert exc.value.code == 0
        assert "SIGUSR2" in capsys.readouterr().out

    def test_version_exits_0(self, capsys):
        """--version prints the version and exits 0."""
        with pytest.raises(SystemExit) as exc:
            parse_options(["--version"])
        assert exc.value.code == 0
        assert capsys.readouterr().out.strip()
