"""Shared pytest fixtures for sync tests."""

import logging
import shutil

import pytest

import sync
import synclog
from synclog import logger


@pytest.fixture(autouse=True)
def reset_output(monkeypatch):
    """Isolate tests from the environment and from each other's logging."""
    monkeypatch.delenv("MAILTO", raising=False)
    yield
    synclog.set_screen_output(True)
    synclog.set_verbose(False)
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def write_config(tmp_path):
    """Return a function writing a configuration file from settings."""
    def write(extra="", **settings):
        path = tmp_path / "test.conf.py"
        lines = [f"{name} = {value!r}\n" for name, value in settings.items()]
        path.write_text("".join(lines) + extra)
        return str(path)
    return write


@pytest.fixture
def source_dir(tmp_path):
    source = tmp_path / "source"
    (source / "docs").mkdir(parents=True)
    (source / "docs" / "notes.txt").write_text("some notes\n")
    (source / "hello.txt").write_text("hello\n")
    return source


@pytest.fixture
def dest_dir(tmp_path):
    dest = tmp_path / "dest"
    dest.mkdir()
    return dest


@pytest.fixture
def local_config_file(write_config, tmp_path, source_dir, dest_dir):
    return write_config(SOURCEDIR=str(source_dir),
                        SERVER="local",
                        DESTDIR=str(dest_dir),
                        LOCKDIR=str(tmp_path / "sync.lock"),
                        NDAYS=3,
                        NWEEKS=2)


@pytest.fixture
def make_config(tmp_path):
    """Return a function building a Config without a file."""
    def make(**settings):
        values = dict(sync.DEFAULTS, SOURCEDIR="/src", SERVER="local",
                      DESTDIR="/dest")
        values.update(settings)
        return sync.Config(str(tmp_path / "test.conf.py"), values)
    return make


@pytest.fixture
def fake_rsync(monkeypatch):
    """Replace rsync by a plain copy of the source into daily-00.

    Returns:
        List receiving the command lines rsync was called with
    """
    calls = []

    def run_rsync(command, cwd):
        calls.append(command)
        shutil.copytree(cwd, command[-1], dirs_exist_ok=True)
        return 0

    monkeypatch.setattr(sync, "run_rsync", run_rsync)
    monkeypatch.setattr(sync.LocalTarget, "copy_hard",
                        lambda self, reference, target:
                        shutil.copytree(reference, target,
                                        dirs_exist_ok=True))
    return calls


@pytest.fixture
def commands_available(monkeypatch):
    monkeypatch.setattr(sync.shutil, "which",
                        lambda command: "/usr/bin/" + command)
