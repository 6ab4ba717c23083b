"""Tests for CLI support utilities and host hooks."""
import os
import subprocess
from pathlib import Path

import pytest
from rich.console import Console

from lxdbox.cli_support import (
    CliHooks,
    CliOptions,
    find_config,
    machine_session,
    ssh_command,
    state_dir_for,
)
from lxdbox.config.loader import ProjectLoader
from lxdbox.core.errors import OperationTimeout, ProvisionFailure, SyncedFolderUnusable
from lxdbox.core.state_store import MachineIndex

PROJECT = """
machines:
  default:
    ssh_user: vagrant
    synced_folders:
      - name: src
        guest: /srv/src
        host: src
    provision:
      - apt-get update
      - make install
"""


@pytest.fixture
def loader(tmp_path):
    path = tmp_path / "lxdbox.yml"
    path.write_text(PROJECT)
    return ProjectLoader(path)


@pytest.fixture
def commands():
    """Recorded argv lists; every command succeeds unless told otherwise."""
    class Recorder:
        def __init__(self):
            self.argvs = []
            self.returncodes = {}

        def __call__(self, argv, check=False):
            self.argvs.append(argv)
            return subprocess.CompletedProcess(argv, self.returncodes.get(argv[-1], 0))

    return Recorder()


@pytest.fixture
def hooks(loader, messenger, settings, commands):
    return CliHooks(loader, "default", messenger, settings=settings, run=commands, probe_port=lambda host, port: True)


class TestFindConfig:
    """Test project file discovery."""

    def test_explicit_path(self):
        assert find_config("/custom/lxdbox.yml") == "/custom/lxdbox.yml"

    def test_env_variable(self, monkeypatch):
        """Should use LXDBOX_CONFIG environment variable."""
        monkeypatch.setenv("LXDBOX_CONFIG", "/env/lxdbox.yml")
        assert find_config() == "/env/lxdbox.yml"

    def test_hidden_file_found(self, tmp_path, monkeypatch):
        monkeypatch.delenv("LXDBOX_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".lxdbox.yml").write_text("machines: {default: {}}\n")

        assert find_config() == "./.lxdbox.yml"

    def test_fallback_to_default(self, tmp_path, monkeypatch):
        """Should fall back to lxdbox.yml if nothing found."""
        monkeypatch.delenv("LXDBOX_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)

        assert find_config() == "lxdbox.yml"


class TestStateDir:

    def test_relative_to_project(self, loader, settings, tmp_path):
        assert state_dir_for(loader, settings) == tmp_path.resolve() / ".lxdbox"

    def test_absolute(self, loader, settings, tmp_path):
        settings.state_dir = tmp_path / "elsewhere"
        assert state_dir_for(loader, settings) == tmp_path / "elsewhere"


def test_ssh_command():
    argv = ssh_command("vagrant", {"host": "10.0.3.15", "port": 22}, "uptime")

    assert argv[0] == "ssh"
    assert argv[-3:] == ["22", "vagrant@10.0.3.15", "uptime"]
    assert "StrictHostKeyChecking=no" in argv


class TestConfirmDestroy:

    def test_force_skips_prompt(self, loader, messenger, settings, monkeypatch):
        monkeypatch.setattr("lxdbox.cli_support.typer.confirm", lambda message: pytest.fail("prompted"))

        assert CliHooks(loader, "default", messenger, force=True, settings=settings).confirm_destroy("Sure?")

    def test_prompts_without_force(self, loader, messenger, settings, monkeypatch):
        asked = []
        monkeypatch.setattr("lxdbox.cli_support.typer.confirm", lambda message: asked.append(message) or False)

        assert not CliHooks(loader, "default", messenger, settings=settings).confirm_destroy("Sure?")
        assert asked == ["Sure?"]


class TestWaitForCommunicator:

    def test_waits_for_port(self, hooks, driver, bound, messenger, clock):
        bound("Running", address="10.0.3.20")
        answers = iter([False, False, True])
        hooks.probe_port = lambda host, port: next(answers)

        hooks.wait_for_communicator(driver)

        assert clock.sleeps == [1.0, 1.0]
        assert messenger.texts("detail") == ["SSH address: 10.0.3.20:22"]
        assert messenger.texts("info")[-1] == "Machine booted and ready!"

    def test_times_out(self, hooks, driver, bound, settings, clock):
        bound("Running", address="10.0.3.20")
        settings.communicator_timeout = 3
        hooks.probe_port = lambda host, port: False

        with pytest.raises(OperationTimeout) as exc:
            hooks.wait_for_communicator(driver)

        assert "failed to accept SSH connections within 3 seconds" in str(exc.value)

    def test_not_running(self, hooks, driver, bound, messenger):
        bound("Stopped")

        hooks.wait_for_communicator(driver)

        assert messenger.messages == []


class TestProvision:

    def test_runs_each_command_over_ssh(self, hooks, driver, bound, commands, messenger):
        bound("Running", address="10.0.3.20")

        hooks.provision(driver)

        assert [argv[-2:] for argv in commands.argvs] == [
            ["vagrant@10.0.3.20", "apt-get update"],
            ["vagrant@10.0.3.20", "make install"],
        ]
        assert messenger.texts("detail") == ["apt-get update", "make install"]

    def test_stops_at_first_failure(self, hooks, driver, bound, commands):
        bound("Running", address="10.0.3.20")
        commands.returncodes["apt-get update"] = 100

        with pytest.raises(ProvisionFailure) as exc:
            hooks.provision(driver)

        assert len(commands.argvs) == 1
        assert "`apt-get update' exited with status 100" in str(exc.value)

    def test_skips_when_not_running(self, hooks, driver, bound, commands, messenger):
        bound("Stopped")

        hooks.provision(driver)

        assert commands.argvs == []
        assert messenger.texts("warn") == ["Machine is not running, skipping provisioners."]

    def test_nothing_configured(self, tmp_path, messenger, settings, driver, commands):
        path = tmp_path / "bare.yml"
        path.write_text("machines:\n  default: {}\n")
        hooks = CliHooks(ProjectLoader(path), "default", messenger, settings=settings, run=commands)

        hooks.provision(driver)

        assert commands.argvs == []
        assert messenger.messages == []


class TestSyncedFolders:

    def test_mounts_project_folders(self, hooks, driver, bound, lxd, tmp_path):
        name = bound("Running", config={"raw.idmap": f"uid {os.getuid()} 1000\ngid {os.getgid()} 1000"})

        hooks.synced_folders(driver)

        assert lxd.records[name]["devices"]["src"] == {
            "type": "disk",
            "path": "/srv/src",
            "source": str((tmp_path / "src").resolve()),
        }

    def test_unusable_without_idmap(self, hooks, driver, bound):
        bound("Running")

        with pytest.raises(SyncedFolderUnusable):
            hooks.synced_folders(driver)


class TestMachineSession:
    """Session lifecycle around a command."""

    @pytest.fixture
    def make_driver(self, monkeypatch, lxd, image_preparer):
        from lxdbox.services.lxd.driver import Driver

        def factory(machine, messenger=None, settings=None):
            return Driver(machine, messenger=messenger, client=lxd, settings=settings, image_preparer=image_preparer)

        monkeypatch.setattr("lxdbox.cli_support.Driver", factory)
        return factory

    def test_id_change_is_persisted(self, loader, settings, make_driver, lxd):
        lxd.add_container("existing", "Stopped")
        options = CliOptions(config=str(loader.config_path))

        with machine_session(options, Console()) as session:
            session.provider.attach("existing")
            assert (session.state_dir / "machines" / "default" / "action.lock").exists()

        assert MachineIndex(session.state_dir).get_id("default") == "existing"
        assert not (session.state_dir / "machines" / "default" / "action.lock").exists()

    def test_id_persisted_when_command_fails(self, loader, settings, make_driver, lxd):
        lxd.add_container("existing", "Stopped")
        options = CliOptions(config=str(loader.config_path))

        with pytest.raises(RuntimeError):
            with machine_session(options, Console()) as session:
                session.provider.attach("existing")
                raise RuntimeError("later step failed")

        assert MachineIndex(session.state_dir).get_id("default") == "existing"

    def test_index_is_read(self, loader, settings, make_driver, lxd, tmp_path):
        MachineIndex(tmp_path.resolve() / ".lxdbox").set_id("default", "known")
        options = CliOptions(config=str(loader.config_path))

        with machine_session(options, Console(), lock=False) as session:
            assert session.machine.id == "known"
            assert session.machine.name == "default"
