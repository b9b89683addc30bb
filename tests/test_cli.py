"""Tests for the n8n-backup command-line front-end.

Covers:
- exit code mapping
- profile management commands
- backup / restore / sync wiring against an in-memory client
- versions, show, diff, tag and retention output
"""

import json

import pytest
from conftest import FakeN8nClient, credential, tag, workflow

from n8n_backup import __version__, cli
from n8n_backup.config_loader import CONFIG_ENV_VAR
from n8n_backup.engine.models import RunStatus
from n8n_backup.store.profiles import ProfileStore

_ENV_KEYS = (
    CONFIG_ENV_VAR,
    "N8N_BACKUP_STORE_BACKEND",
    "N8N_BACKUP_STORE_PATH",
    "N8N_BACKUP_MAX_CONCURRENCY",
    "N8N_BACKUP_MAX_ATTEMPTS",
    "N8N_API_KEY",
    "LOG_LEVEL",
)


@pytest.fixture
def fake_client():
    return FakeN8nClient()


@pytest.fixture
def workspace(tmp_path, monkeypatch, fake_client):
    """Empty project dir, no config files, in-memory n8n client."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.setattr(cli, "setup_logging", lambda **kw: None)
    monkeypatch.setattr(cli, "N8nClient", lambda timeout: fake_client)
    return tmp_path


def _profiles(workspace) -> ProfileStore:
    return ProfileStore(workspace / ".n8n_backup" / "profiles.json")


def _add_profiles(fake_client, workspace):
    """Register prod (default) and staging; seed prod with objects."""
    profiles = _profiles(workspace)
    prod = profiles.add("prod", "https://prod.example.com", "k1")
    staging = profiles.add("staging", "https://staging.example.com", "k2")
    fake_client.instances[prod.id] = {
        obj.key: obj
        for obj in (credential("c1"), workflow("w1", credentials=["c1"]), tag("t1"))
    }
    fake_client.instances[staging.id] = {}
    return prod, staging


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class TestExitCodes:
    @pytest.mark.parametrize(
        "status, strict, expected",
        [
            (RunStatus.SUCCESS, False, 0),
            (RunStatus.SUCCESS, True, 0),
            (RunStatus.PARTIAL_SUCCESS, False, 0),
            (RunStatus.PARTIAL_SUCCESS, True, 3),
            (RunStatus.ABORTED, False, 2),
            (RunStatus.FAILED, False, 1),
        ],
    )
    def test_mapping(self, status, strict, expected):
        assert cli.exit_code_for(status, strict=strict) == expected

    def test_version_flag(self, capsys):
        with pytest.raises(SystemExit) as exc:
            cli.main(["--version"])
        assert exc.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_version_command(self, workspace, capsys):
        assert cli.main(["version"]) == 0
        assert f"n8n-backup v{__version__}" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class TestProfileCommands:
    def test_list_empty(self, workspace, capsys):
        assert cli.main(["profile", "list"]) == 0
        assert "No profiles configured." in capsys.readouterr().out

    def test_add_and_list(self, workspace, capsys):
        cli.main(["profile", "add", "prod", "https://prod.example.com/", "--api-key", "k1"])
        cli.main(["profile", "add", "staging", "https://staging.example.com", "--api-key", "k2"])
        capsys.readouterr()

        assert cli.main(["profile", "list"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("* prod")
        assert lines[0].endswith("https://prod.example.com")
        assert lines[1].startswith("  staging")

    def test_api_key_from_env(self, workspace, monkeypatch):
        monkeypatch.setenv("N8N_API_KEY", "from-env")
        assert cli.main(["profile", "add", "prod", "https://prod.example.com"]) == 0
        assert _profiles(workspace).get("prod").api_key.get_secret_value() == "from-env"

    def test_default_and_remove(self, workspace, capsys):
        cli.main(["profile", "add", "prod", "https://prod.example.com", "--api-key", "k1"])
        cli.main(["profile", "add", "staging", "https://staging.example.com", "--api-key", "k2"])

        assert cli.main(["profile", "default", "staging"]) == 0
        assert _profiles(workspace).default().name == "staging"

        assert cli.main(["profile", "remove", "staging"]) == 0
        assert _profiles(workspace).default().name == "prod"
        assert "Removed profile staging" in capsys.readouterr().out

    def test_duplicate_name_is_error(self, workspace, capsys):
        cli.main(["profile", "add", "prod", "https://prod.example.com", "--api-key", "k1"])
        assert cli.main(["profile", "add", "prod", "https://x.example.com", "--api-key", "k"]) == 1
        assert "already exists" in capsys.readouterr().err

    def test_profile_changes_are_audited(self, workspace):
        cli.main(["profile", "add", "prod", "https://prod.example.com", "--api-key", "k1"])
        audits = list((workspace / ".n8n_backup" / "store" / "audits").glob("*.json"))
        assert len(audits) == 1
        assert "k1" not in audits[0].read_text()


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestRunCommands:
    def test_backup_without_profiles(self, workspace, capsys):
        assert cli.main(["backup"]) == 1
        assert "No profiles configured" in capsys.readouterr().err

    def test_backup_json(self, workspace, fake_client, capsys):
        _add_profiles(fake_client, workspace)
        capsys.readouterr()

        assert cli.main(["backup", "--json", "--tag", "release"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["operation"] == "backup"
        assert data["status"] == "success"
        assert data["counts"]["total"] == 3

    def test_backup_to_custom_store_path(self, workspace, fake_client, tmp_path):
        _add_profiles(fake_client, workspace)
        custom = tmp_path / "elsewhere"

        assert cli.main(["--store-path", str(custom), "backup"]) == 0
        assert list((custom / "versions").iterdir())

    def test_backup_types_filter(self, workspace, fake_client, capsys):
        _add_profiles(fake_client, workspace)
        capsys.readouterr()

        assert cli.main(["backup", "--json", "--types", "workflow,tag"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert {r["resource_type"] for r in data["reports"]} == {"workflow", "tag"}

    def test_restore_then_versions(self, workspace, fake_client, capsys):
        _, staging = _add_profiles(fake_client, workspace)
        cli.main(["backup", "--json"])
        version_id = json.loads(capsys.readouterr().out)["version_id"]

        assert cli.main(["restore", version_id, "--profile", "staging"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("Restore SUCCESS")
        assert len(fake_client.instances[staging.id]) == 3

        assert cli.main(["versions", "--json"]) == 0
        listed = json.loads(capsys.readouterr().out)
        assert [v["operation"] for v in listed] == ["restore", "backup"]

    def test_restore_dry_run_pushes_nothing(self, workspace, fake_client, capsys):
        _add_profiles(fake_client, workspace)
        cli.main(["backup", "--json"])
        version_id = json.loads(capsys.readouterr().out)["version_id"]

        assert cli.main(["restore", version_id, "--profile", "staging", "--dry-run"]) == 0
        out = capsys.readouterr().out
        assert out.startswith(f"Restore preview: {version_id} -> staging")
        assert "[ADDED]" in out
        assert fake_client.push_calls == []

    def test_restore_unknown_strategy(self, workspace, fake_client, capsys):
        _add_profiles(fake_client, workspace)
        assert cli.main(["restore", "v1", "--strategy", "newest-wins"]) == 1
        assert "Unknown merge strategy" in capsys.readouterr().err

    def test_restore_aborted_exit_code(self, workspace, fake_client, capsys):
        _, staging = _add_profiles(fake_client, workspace)
        cli.main(["backup", "--json"])
        version_id = json.loads(capsys.readouterr().out)["version_id"]
        fake_client.versions[staging.id] = "2.0.0"

        assert cli.main(["restore", version_id, "--profile", "staging"]) == 2
        assert "ABORTED" in capsys.readouterr().out

    def test_partial_success_strict(self, workspace, fake_client, capsys):
        _add_profiles(fake_client, workspace)
        cli.main(["backup", "--json"])
        version_id = json.loads(capsys.readouterr().out)["version_id"]
        fake_client.fail_with["t1"] = [ValueError("bad tag")]

        assert cli.main(["restore", version_id, "--profile", "staging", "--strict"]) == 3

    def test_sync_same_profile_rejected(self, workspace, fake_client, capsys):
        _add_profiles(fake_client, workspace)
        assert cli.main(["sync", "--from", "prod", "--to", "prod"]) == 1
        assert "must differ" in capsys.readouterr().err

    def test_sync(self, workspace, fake_client, capsys):
        _, staging = _add_profiles(fake_client, workspace)
        assert cli.main(["sync", "--from", "prod", "--to", "staging"]) == 0
        assert capsys.readouterr().out.startswith("Sync SUCCESS")
        assert len(fake_client.instances[staging.id]) == 3


# ---------------------------------------------------------------------------
# Version inspection
# ---------------------------------------------------------------------------


class TestInspectionCommands:
    def _two_backups(self, workspace, fake_client, capsys):
        prod, _ = _add_profiles(fake_client, workspace)
        cli.main(["backup", "--json"])
        first = json.loads(capsys.readouterr().out)["version_id"]
        changed = workflow("w1", name="Renamed", credentials=["c1"])
        fake_client.instances[prod.id][changed.key] = changed
        cli.main(["backup", "--json"])
        second = json.loads(capsys.readouterr().out)["version_id"]
        return first, second

    def test_show(self, workspace, fake_client, capsys):
        first, _ = self._two_backups(workspace, fake_client, capsys)
        assert cli.main(["show", first]) == 0
        out = capsys.readouterr().out
        assert out.startswith(first)
        assert "  workflow:w1 (Workflow w1)  success" in out

    def test_show_missing_version(self, workspace, capsys):
        assert cli.main(["show", "nope"]) == 1
        assert "Error:" in capsys.readouterr().err

    def test_diff_json(self, workspace, fake_client, capsys):
        first, second = self._two_backups(workspace, fake_client, capsys)
        assert cli.main(["diff", first, second, "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["modified"] == ["workflow:w1 (Renamed)"]
        assert data["added"] == []

    def test_tag(self, workspace, fake_client, capsys):
        first, _ = self._two_backups(workspace, fake_client, capsys)
        assert cli.main(["tag", first, "keep"]) == 0
        assert capsys.readouterr().out.strip() == f"Version {first} tags: keep"

    def test_retention_dry_run_then_apply(self, workspace, fake_client, capsys):
        first, second = self._two_backups(workspace, fake_client, capsys)

        assert cli.main(["retention", "--keep-last", "1"]) == 0
        out = capsys.readouterr().out
        assert "DRY RUN" in out
        assert "Eligible for deletion: 1" in out

        assert cli.main(["retention", "--keep-last", "1", "--apply"]) == 0
        capsys.readouterr()
        cli.main(["versions", "--json"])
        remaining = [v["id"] for v in json.loads(capsys.readouterr().out)]
        assert remaining == [second]
