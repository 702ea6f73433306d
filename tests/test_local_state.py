import os
import stat

from toolspec_agent.local_state import LocalState, default_config_dir


def test_install_roundtrip_and_permissions(tmp_path):
    local = LocalState(tmp_path / "cfg")
    assert local.install_id() is None

    local.write_install({"install_id": "ins_a", "install_secret": "s", "secret_version": 1})
    assert local.install_id() == "ins_a"
    if os.name == "posix":
        assert stat.S_IMODE(os.stat(local.install_path).st_mode) == 0o600


def test_malformed_files_read_as_absent(tmp_path):
    local = LocalState(tmp_path)
    local.install_path.write_text("{broken", encoding="utf-8")
    local.state_path.write_text("[1, 2]", encoding="utf-8")

    assert local.read_install() is None
    assert local.install_id() is None
    assert local.read_state() == {}


def test_update_state_merges(tmp_path):
    local = LocalState(tmp_path)
    local.update_state(approval_required=True)
    state = local.update_state(approved_at_utc="2026-10-01T00:00:00.000Z", approval_required=False)
    assert state == {"approval_required": False, "approved_at_utc": "2026-10-01T00:00:00.000Z"}
    assert local.read_state() == state


def test_clear_removes_everything(tmp_path):
    local = LocalState(tmp_path)
    local.write_install({"install_id": "ins_a"})
    local.write_draft({"payload": {}})
    local.clear()
    local.clear()
    assert not local.install_path.exists()
    assert not local.draft_path.exists()


def test_config_dir_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("TOOLSPEC_CONFIG_DIR", str(tmp_path / "custom"))
    assert default_config_dir() == tmp_path / "custom"

    monkeypatch.delenv("TOOLSPEC_CONFIG_DIR")
    monkeypatch.setenv("HOME", str(tmp_path))
    assert default_config_dir() == tmp_path / ".toolspec"
