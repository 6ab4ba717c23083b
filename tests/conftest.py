"""Shared test fixtures for lxdbox tests."""
import copy
import io
import tarfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from lxdbox.actions.plan import Hook
from lxdbox.actions.runner import HostHooks
from lxdbox.core.config import LxdboxSettings, set_settings
from lxdbox.core.messenger import LEVELS, Messenger
from lxdbox.models.config import ProviderConfig
from lxdbox.models.machine import MachineRecord
from lxdbox.services.lxd.client import LXDBadRequest, LXDConflict, LXDNotFound, RemoteOperation
from lxdbox.services.lxd.driver import Driver
from lxdbox.services.lxd.image import ImagePreparer, PreparedImage


class RecordingMessenger(Messenger):
    """Messenger that keeps every message for assertions."""

    def __init__(self):
        self.messages = []

    def say(self, level, message):
        assert level in LEVELS
        self.messages.append((level, message))

    def texts(self, level=None):
        return [text for lvl, text in self.messages if level is None or lvl == level]


class FakeHooks(HostHooks):
    """Records hook invocations; confirm answers are configurable."""

    def __init__(self, confirm=True, events=None):
        self.confirm = confirm
        self.events = events if events is not None else []

    def confirm_destroy(self, question):
        self.events.append(("confirm", question))
        return self.confirm

    def synced_folders(self, driver):
        self.events.append(("hook", Hook.SYNCED_FOLDERS))

    def wait_for_communicator(self, driver):
        self.events.append(("hook", Hook.WAIT_FOR_COMMUNICATOR))

    def provision(self, driver):
        self.events.append(("hook", Hook.PROVISION))


class FakeClock:
    """Stands in for the `time` module inside lxdbox.core.retry."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeLXDClient:
    """In-memory LXD server exposing the LXDClient methods the driver uses."""

    MUTATING = {
        "create_image_from_file",
        "create_image_alias",
        "delete_image",
        "create_container",
        "update_container",
        "delete_container",
        "start_container",
        "stop_container",
        "freeze_container",
        "unfreeze_container",
        "create_snapshot",
        "delete_snapshot",
        "restore_snapshot",
    }

    def __init__(self):
        self.records = {}
        self.image_fingerprints = set()
        self.calls = []
        self.failures = {}
        self.imported_fingerprint = "imported-fingerprint"
        self.boot_address = "10.0.3.15"

    # -- test helpers ---------------------------------------------------

    def add_container(self, name, status="Stopped", config=None, devices=None, address=None):
        network = {}
        if address:
            network = {"eth0": {"addresses": [{"family": "inet", "address": address}]}}
        self.records[name] = {
            "status": status,
            "config": dict(config or {}),
            "devices": dict(devices or {}),
            "snapshots": [],
            "network": network,
        }
        return self.records[name]

    def fail(self, method, *errors):
        """Make the next calls to method raise the given errors, in order."""
        self.failures.setdefault(method, []).extend(errors)

    @property
    def mutations(self):
        return [call for call in self.calls if call[0] in self.MUTATING]

    def called(self, method):
        return [call for call in self.calls if call[0] == method]

    def _record(self, method, *args, **kwargs):
        self.calls.append((method, args, kwargs))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _get_record(self, name):
        if name not in self.records:
            raise LXDNotFound(f"Container '{name}' not found")
        return self.records[name]

    # -- images ---------------------------------------------------------

    def images(self):
        self._record("images")
        return sorted(self.image_fingerprints)

    def image_exists(self, fingerprint):
        self._record("image_exists", fingerprint)
        return fingerprint in self.image_fingerprints

    def create_image_from_file(self, path, public=False):
        self._record("create_image_from_file", path)
        self.image_fingerprints.add(self.imported_fingerprint)
        return self.imported_fingerprint

    def create_image_alias(self, fingerprint, alias, description=""):
        self._record("create_image_alias", fingerprint, alias)

    def delete_image(self, fingerprint):
        self._record("delete_image", fingerprint)
        if fingerprint not in self.image_fingerprints:
            raise LXDNotFound("not found")
        self.image_fingerprints.discard(fingerprint)

    # -- containers -----------------------------------------------------

    def containers(self):
        self._record("containers")
        return sorted(self.records)

    def container(self, name):
        self._record("container", name)
        record = self._get_record(name)
        return {
            "name": name,
            "config": copy.deepcopy(record["config"]),
            "devices": copy.deepcopy(record["devices"]),
            "profiles": ["default"],
        }

    def container_state(self, name):
        self._record("container_state", name)
        record = self._get_record(name)
        return {"status": record["status"], "network": copy.deepcopy(record["network"])}

    def create_container(self, name, fingerprint, ephemeral=False, profiles=None, config=None, devices=None):
        self._record(
            "create_container", name,
            fingerprint=fingerprint, ephemeral=ephemeral,
            profiles=profiles, config=config, devices=devices,
        )
        if name in self.records:
            raise LXDConflict(f"Container '{name}' already exists")
        config = dict(config or {})
        config["volatile.base_image"] = fingerprint
        self.add_container(name, "Stopped", config=config, devices=devices)

    def update_container(self, name, container):
        self._record("update_container", name, container)
        record = self._get_record(name)
        record["config"] = dict(container.get("config") or {})
        record["devices"] = dict(container.get("devices") or {})

    def delete_container(self, name):
        self._record("delete_container", name)
        self._get_record(name)
        del self.records[name]

    def start_container(self, name, timeout=None):
        self._record("start_container", name, timeout=timeout)
        record = self._get_record(name)
        record["status"] = "Running"
        if not record["network"]:
            record["network"] = {"eth0": {"addresses": [{"family": "inet", "address": self.boot_address}]}}

    def stop_container(self, name, timeout=None, force=False):
        self._record("stop_container", name, timeout=timeout, force=force)
        self._get_record(name)["status"] = "Stopped"

    def freeze_container(self, name, timeout=None):
        self._record("freeze_container", name, timeout=timeout)
        self._get_record(name)["status"] = "Frozen"

    def unfreeze_container(self, name, timeout=None):
        self._record("unfreeze_container", name, timeout=timeout)
        self._get_record(name)["status"] = "Running"

    # -- snapshots ------------------------------------------------------

    def snapshots(self, name):
        self._record("snapshots", name)
        return list(self._get_record(name)["snapshots"])

    def create_snapshot(self, name, snapshot, stateful=False):
        self._record("create_snapshot", name, snapshot)
        self._get_record(name)["snapshots"].append(snapshot)

    def delete_snapshot(self, name, snapshot):
        self._record("delete_snapshot", name, snapshot)
        snapshots = self._get_record(name)["snapshots"]
        if snapshot not in snapshots:
            raise LXDNotFound(f"Snapshot '{snapshot}' not found")
        snapshots.remove(snapshot)

    def restore_snapshot(self, name, snapshot):
        self._record("restore_snapshot", name, snapshot)
        return RemoteOperation(id=f"restore-{snapshot}", metadata={"container": name, "snapshot": snapshot})

    def wait_for_operation(self, operation, timeout=None):
        self._record("wait_for_operation", operation.id, timeout=timeout)
        name = operation.metadata["container"]
        if operation.metadata["snapshot"] not in self._get_record(name)["snapshots"]:
            raise LXDBadRequest("Snapshot not found")
        return {"status_code": 200}


def _write_rootfs(path: Path, files=None) -> Path:
    """Write a small gzip tarball standing in for a box's rootfs."""
    files = files if files is not None else {"etc/hostname": b"box\n", "bin/sh": b"#!/bin/true\n"}
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def write_rootfs():
    return _write_rootfs


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every host path into tmp_path."""
    settings = LxdboxSettings(
        client_cert=tmp_path / "lxc" / "client.crt",
        client_key=tmp_path / "lxc" / "client.key",
        subid_dir=tmp_path / "etc",
        state_dir=Path(".lxdbox"),
    )
    set_settings(settings)
    yield settings
    set_settings(None)


@pytest.fixture
def clock(monkeypatch):
    """Fake monotonic clock for deadline-bounded loops."""
    fake = FakeClock()
    monkeypatch.setattr("lxdbox.core.retry.time", fake)
    return fake


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def lxd():
    return FakeLXDClient()


@pytest.fixture
def machine(tmp_path):
    return MachineRecord(
        name="default",
        provider_config=ProviderConfig(timeout=10),
        box_directory=tmp_path / "boxes" / "debian",
    )


@pytest.fixture
def image_preparer(tmp_path):
    """Image preparer double returning an already converted tarball."""
    preparer = MagicMock(spec=ImagePreparer)
    preparer.prepare_box.return_value = PreparedImage(
        path=tmp_path / "boxes" / "lxd" / "rootfs.tar.gz",
        fingerprint="prepared-fingerprint",
        source_fingerprint="source-fingerprint",
        converted=True,
    )
    return preparer


@pytest.fixture
def driver(machine, messenger, lxd, settings, image_preparer):
    return Driver(machine, messenger=messenger, client=lxd, settings=settings, image_preparer=image_preparer)


@pytest.fixture
def bound(machine, lxd):
    """Bind the machine to a container in the given status."""
    def _bind(status, name="lxdbox-test", **kwargs):
        lxd.add_container(name, status, **kwargs)
        machine.id = name
        return name
    return _bind


@pytest.fixture
def fake_hooks():
    """Factory for recording host hooks."""
    return FakeHooks
