"""Tests for the machine index."""
import json

from lxdbox.core.state_store import MachineIndex


class TestMachineIndex:
    """Persisting machine-to-container bindings."""

    def test_empty_when_missing(self, tmp_path):
        index = MachineIndex(tmp_path / ".lxdbox")

        assert index.get_id("default") is None
        assert index.all_ids() == {}
        assert not index.state_file.exists()

    def test_set_id_persists(self, tmp_path):
        state_dir = tmp_path / ".lxdbox"
        MachineIndex(state_dir).set_id("default", "lxdbox-project-default-abc")

        reloaded = MachineIndex(state_dir)
        assert reloaded.get_id("default") == "lxdbox-project-default-abc"
        assert reloaded.all_ids() == {"default": "lxdbox-project-default-abc"}

        data = json.loads((state_dir / "state.json").read_text())
        assert data["version"] == "1.0"
        assert "updated_at" in data["machines"]["default"]

    def test_clearing_removes_entry(self, tmp_path):
        index = MachineIndex(tmp_path)
        index.set_id("web", "c1")
        index.set_id("db", "c2")

        index.set_id("web", None)

        assert MachineIndex(tmp_path).all_ids() == {"db": "c2"}

    def test_corrupt_file_is_ignored(self, tmp_path):
        (tmp_path / "state.json").write_text("{not json")

        index = MachineIndex(tmp_path)

        assert index.all_ids() == {}

    def test_malformed_file_is_ignored(self, tmp_path):
        (tmp_path / "state.json").write_text(json.dumps({"machines": ["default"]}))

        assert MachineIndex(tmp_path).get_id("default") is None

    def test_save_leaves_no_temp_files(self, tmp_path):
        index = MachineIndex(tmp_path)
        index.set_id("default", "c1")
        index.set_id("default", "c2")

        assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json"]

    def test_defaults_to_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        index = MachineIndex()

        assert index.state_file == tmp_path / ".lxdbox" / "state.json"
