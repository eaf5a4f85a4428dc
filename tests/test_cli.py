"""Tests for the phoenixctl and phoenix-deploy command lines."""
from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from google.auth import exceptions as auth_exceptions

from phoenixctl import cli
from phoenixctl.cli import app, deploy_app, main, run
from phoenixctl.providers import compute as compute_module
from phoenixctl.providers.compute import GCEComputeProvider
from phoenixctl.provisioner import PrerequisiteError

from tests.conftest import BUCKET, PROJECT

runner = CliRunner()

LEGACY_KEYS = (
    "PROJECT_ID",
    "INSTANCE_NAME",
    "ZONE",
    "MACHINE_TYPE",
    "DISK_SIZE",
    "PHOENIX_PORT",
    "PHOENIX_VERSION",
    "BACKUP_BUCKET",
)


@pytest.fixture
def env(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    compute,
    storage,
    executor,
) -> dict[str, str]:
    """Point the CLI at fakes and an isolated config/log location."""
    monkeypatch.chdir(tmp_path)
    for key in LEGACY_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(cli, "GCEComputeProvider", lambda **kwargs: compute)
    monkeypatch.setattr(cli, "GCSStorageProvider", lambda **kwargs: storage)
    monkeypatch.setattr(cli, "GcloudSSHExecutor", lambda **kwargs: executor)
    monkeypatch.setattr(cli, "check_prerequisites", lambda config: None)
    values = {
        "PHOENIXCTL_CONFIG_FILE": str(tmp_path / "config.yml"),
        "PHOENIXCTL_LOGS_DIR": str(tmp_path / "logs"),
        "PROJECT_ID": PROJECT,
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    return values


def _placeholder_env(env: dict[str, str]) -> dict[str, str | None]:
    updated: dict[str, str | None] = dict(env)
    updated["PROJECT_ID"] = None
    return updated


def _last_operation(tmp_path: Path) -> dict[str, object]:
    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


@pytest.mark.parametrize(
    "args",
    [
        ["status"],
        ["start"],
        ["backup"],
        ["list-backups"],
        ["restore", "phoenix-backup-20240101-000000.tar.gz", "--yes"],
        ["delete", "--yes"],
        ["update"],
        ["deploy", "--yes"],
    ],
)
def test_placeholder_project_fails_before_external_calls(
    env, args, monkeypatch: pytest.MonkeyPatch, compute, storage, executor
) -> None:
    """Every command rejects the placeholder project before touching a provider."""
    monkeypatch.delenv("PROJECT_ID")
    compute.calls.clear()

    result = runner.invoke(app, args, env=_placeholder_env(env))

    assert result.exit_code == 1
    assert "Please set PROJECT_ID" in result.output
    assert compute.calls == []
    assert storage.calls == []
    assert executor.commands == []


def test_deploy_script_rejects_placeholder(env, monkeypatch: pytest.MonkeyPatch, compute) -> None:
    monkeypatch.delenv("PROJECT_ID")
    compute.calls.clear()

    result = runner.invoke(deploy_app, ["--yes"], env=_placeholder_env(env))

    assert result.exit_code == 1
    assert "Please set PROJECT_ID" in result.output
    assert compute.calls == []


def test_help_command_works_without_project(env, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PROJECT_ID")

    result = runner.invoke(app, ["help"], env=_placeholder_env(env))

    assert result.exit_code == 0
    assert "list-backups" in result.output
    assert "restore <backup-filename>" in result.output


def test_missing_command_is_an_error(env) -> None:
    result = runner.invoke(app, [], env=env)

    assert result.exit_code == 1
    assert "Please specify a command" in result.output


def test_unknown_command_exits_one(env) -> None:
    assert run(app, ["bogus"]) == 1
    assert run(app, ["--no-such-flag", "status"]) == 1


def test_help_exits_zero(env) -> None:
    assert run(app, ["--help"]) == 0
    assert run(app, ["help"]) == 0


def test_main_maps_usage_errors_to_one(env, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sys, "argv", ["phoenixctl", "restore", "--bogus"])

    with pytest.raises(SystemExit) as excinfo:
        main()

    assert excinfo.value.code == 1


def test_status_reports_instance_and_service(env) -> None:
    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 0, result.output
    assert "Instance Status: RUNNING" in result.output
    assert "External IP: 203.0.113.10" in result.output
    assert "Phoenix Service: active" in result.output
    assert "Phoenix URL: http://203.0.113.10:6006" in result.output


def test_status_skips_service_when_instance_stopped(env, compute, executor) -> None:
    compute.add_instance("phoenix-server", status="TERMINATED")

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 0
    assert "Instance Status: TERMINATED" in result.output
    assert executor.commands == []


def test_missing_instance_fails(env, compute, tmp_path: Path) -> None:
    compute.instances.clear()

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 1
    assert "Instance phoenix-server not found in zone us-central1-a" in result.output
    record = _last_operation(tmp_path)
    assert record["command"] == "status"
    assert record["result"]["status"] == "error"


def test_name_and_zone_flags_select_instance(env, compute) -> None:
    compute.add_instance("phoenix-eu", zone="europe-west1-b")

    result = runner.invoke(app, ["-n", "phoenix-eu", "-z", "europe-west1-b", "stop"], env=env)

    assert result.exit_code == 0, result.output
    assert ("stop", "phoenix-eu") in compute.calls


@pytest.mark.parametrize(
    ("command", "verb"),
    [("start", "start"), ("stop", "stop"), ("restart", "reset")],
)
def test_lifecycle_commands(env, compute, command: str, verb: str) -> None:
    result = runner.invoke(app, [command], env=env)

    assert result.exit_code == 0, result.output
    assert (verb, "phoenix-server") in compute.calls
    assert "successfully!" in result.output


def test_backup_command_uploads_archive(env, storage, tmp_path: Path) -> None:
    result = runner.invoke(app, ["backup"], env=env)

    assert result.exit_code == 0, result.output
    assert "Backup completed successfully!" in result.output
    (name,) = storage.buckets[BUCKET]
    assert f"gs://{BUCKET}/{name}" in result.output
    record = _last_operation(tmp_path)
    assert record["command"] == "backup"
    assert record["result"]["status"] == "success"
    assert record["lock_wait_ms"] == 0


def test_backup_command_honours_bucket_flag(env, storage) -> None:
    result = runner.invoke(app, ["--bucket", "other-bucket", "backup"], env=env)

    assert result.exit_code == 0, result.output
    assert list(storage.buckets) == ["other-bucket"]


def test_list_backups_empty(env, tmp_path: Path) -> None:
    result = runner.invoke(app, ["list-backups"], env=env)

    assert result.exit_code == 0
    assert f"No backups found in gs://{BUCKET}" in result.output
    record = _last_operation(tmp_path)
    assert record["result"]["status"] == "warning"
    assert record["result"]["context"] == {"count": 0}


def test_list_backups_table(env, storage) -> None:
    storage.buckets[BUCKET] = {}
    storage.rules[BUCKET] = [30]
    storage.put(BUCKET, "phoenix-backup-20240101-000000.tar.gz")
    storage.put(BUCKET, "phoenix-backup-20240102-000000.tar.gz")

    result = runner.invoke(app, ["list-backups"], env=env)

    assert result.exit_code == 0
    newer = result.output.index("phoenix-backup-20240102-000000.tar.gz")
    older = result.output.index("phoenix-backup-20240101-000000.tar.gz")
    assert newer < older


def test_restore_requires_name(env, executor) -> None:
    result = runner.invoke(app, ["restore"], env=env)

    assert result.exit_code == 1
    assert "Please specify a backup file to restore" in result.output
    assert "Available backups:" in result.output
    assert executor.systemctl_calls() == []


def test_restore_unknown_archive_lists_backups(env, storage, executor) -> None:
    storage.buckets[BUCKET] = {}
    storage.rules[BUCKET] = [30]
    storage.put(BUCKET, "phoenix-backup-20240101-000000.tar.gz")

    result = runner.invoke(
        app, ["restore", "phoenix-backup-20990101-000000.tar.gz", "--yes"], env=env
    )

    assert result.exit_code == 1
    assert "Backup file not found" in result.output
    assert "Available backups:" in result.output
    assert "phoenix-backup-20240101-000000.tar.gz" in result.output
    assert executor.systemctl_calls() == []


def test_restore_declined_exits_zero(env, storage, executor) -> None:
    storage.buckets[BUCKET] = {}
    storage.rules[BUCKET] = [30]
    storage.put(BUCKET, "phoenix-backup-20240101-000000.tar.gz", "old-data")

    result = runner.invoke(
        app, ["restore", "phoenix-backup-20240101-000000.tar.gz"], env=env, input="n\n"
    )

    assert result.exit_code == 0, result.output
    assert "This will replace all current Phoenix data!" in result.output
    assert "Restore cancelled" in result.output
    assert executor.systemctl_calls() == []
    assert executor.payloads["/opt/phoenix/data"] == "live-v1"


def test_restore_other_answer_declines(env, storage, executor) -> None:
    storage.buckets[BUCKET] = {}
    storage.rules[BUCKET] = [30]
    storage.put(BUCKET, "phoenix-backup-20240101-000000.tar.gz", "old-data")

    result = runner.invoke(
        app, ["restore", "phoenix-backup-20240101-000000.tar.gz"], env=env, input="q\n"
    )

    assert result.exit_code == 0, result.output
    assert "Restore cancelled" in result.output
    assert result.output.count("(y/N)") == 1
    assert executor.systemctl_calls() == []
    assert executor.payloads["/opt/phoenix/data"] == "live-v1"


def test_restore_end_of_input_declines(env, storage, executor) -> None:
    storage.buckets[BUCKET] = {}
    storage.rules[BUCKET] = [30]
    storage.put(BUCKET, "phoenix-backup-20240101-000000.tar.gz", "old-data")

    result = runner.invoke(
        app, ["restore", "phoenix-backup-20240101-000000.tar.gz"], env=env, input=""
    )

    assert result.exit_code == 0, result.output
    assert "Restore cancelled" in result.output
    assert executor.systemctl_calls() == []


def test_restore_confirmed(env, storage, executor) -> None:
    storage.buckets[BUCKET] = {}
    storage.rules[BUCKET] = [30]
    storage.put(BUCKET, "phoenix-backup-20240101-000000.tar.gz", "old-data")

    result = runner.invoke(
        app, ["restore", "phoenix-backup-20240101-000000.tar.gz"], env=env, input="y\n"
    )

    assert result.exit_code == 0, result.output
    assert "Restore completed successfully!" in result.output
    assert executor.payloads["/opt/phoenix/data"] == "old-data"
    assert executor.systemctl_calls() == ["stop", "start"]


def test_delete_declined_keeps_instance(env, compute) -> None:
    result = runner.invoke(app, ["delete"], env=env, input="n\n")

    assert result.exit_code == 0
    assert "Operation cancelled" in result.output
    assert "phoenix-server" in compute.instances


@pytest.mark.parametrize("answer", ["q\n", "x\n", "\n", ""])
def test_delete_other_answers_decline(env, compute, answer: str) -> None:
    result = runner.invoke(app, ["delete"], env=env, input=answer)

    assert result.exit_code == 0, result.output
    assert "Operation cancelled" in result.output
    assert "phoenix-server" in compute.instances
    assert ("delete", "phoenix-server") not in compute.calls


def test_delete_confirmed(env, compute) -> None:
    result = runner.invoke(app, ["delete", "--yes"], env=env)

    assert result.exit_code == 0, result.output
    assert "phoenix-server" not in compute.instances
    assert "Instance deleted successfully!" in result.output


def test_update_command(env, executor) -> None:
    result = runner.invoke(app, ["update"], env=env)

    assert result.exit_code == 0, result.output
    assert "Phoenix updated successfully!" in result.output
    assert ["sudo", "docker", "pull", "arizephoenix/phoenix:latest"] in executor.commands


def test_update_failure_exits_one(env, executor) -> None:
    executor.fail_pull = True

    result = runner.invoke(app, ["update"], env=env)

    assert result.exit_code == 1
    assert executor.service_state == "active"


def test_resources_command(env) -> None:
    result = runner.invoke(app, ["resources"], env=env)

    assert result.exit_code == 0, result.output
    assert "=== CPU and Memory Usage ===" in result.output
    assert "=== Disk Usage ===" in result.output
    assert "phoenix 1.5%" in result.output


def test_ssh_opens_interactive_session(env, executor) -> None:
    result = runner.invoke(app, ["ssh"], env=env)

    assert result.exit_code == 0
    assert executor.interactive_calls == [None]


def test_logs_failure_exits_one(env, executor) -> None:
    executor.interactive_rc = 255

    result = runner.invoke(app, ["logs"], env=env)

    assert result.exit_code == 1
    assert executor.interactive_calls == [["sudo", "journalctl", "-u", "phoenix", "-f"]]


def test_deploy_script_provisions(env, compute, tmp_path: Path) -> None:
    compute.instances.clear()
    out = tmp_path / "startup.sh"

    result = runner.invoke(
        deploy_app,
        ["--port", "7000", "-m", "e2-medium", "--startup-script-out", str(out)],
        env=env,
    )

    assert result.exit_code == 0, result.output
    assert "phoenix-allow-7000" in compute.firewalls
    assert compute.created[0].machine_type == "e2-medium"
    assert "Phoenix URL: http://203.0.113.10:7000" in result.output
    assert "-p 7000:6006" in out.read_text(encoding="utf-8")


def test_deploy_script_keeps_existing_instance_when_declined(env, compute) -> None:
    result = runner.invoke(deploy_app, [], env=env, input="n\n")

    assert result.exit_code == 0, result.output
    assert "Skipping instance creation" in result.output
    assert compute.created == []


def test_deploy_script_other_answer_keeps_instance(env, compute) -> None:
    result = runner.invoke(deploy_app, [], env=env, input="x\n")

    assert result.exit_code == 0, result.output
    assert "Skipping instance creation" in result.output
    assert compute.created == []


def test_deploy_prerequisite_failure(env, monkeypatch: pytest.MonkeyPatch, compute) -> None:
    def missing(config) -> None:
        raise PrerequisiteError("gcloud CLI not found. Please install Google Cloud SDK.")

    monkeypatch.setattr(cli, "check_prerequisites", missing)
    compute.calls.clear()

    result = runner.invoke(deploy_app, ["--yes"], env=env)

    assert result.exit_code == 1
    assert "gcloud CLI not found" in result.output
    assert compute.calls == []


def test_deploy_subcommand_uses_global_flags(env, compute) -> None:
    result = runner.invoke(
        app,
        ["-p", "other-project", "-n", "phoenix-two", "deploy", "--disk-size", "40GB", "--yes"],
        env=env,
    )

    assert result.exit_code == 0, result.output
    (spec,) = compute.created
    assert spec.name == "phoenix-two"
    assert spec.disk_size_gb == 40
    assert spec.service_account == "other-project@appspot.gserviceaccount.com"


def test_invalid_config_exits_one(env, tmp_path: Path) -> None:
    (tmp_path / "config.yml").write_text("service:\n  port: 0\n", encoding="utf-8")

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 1
    assert "service.port must be between 1 and 65535" in result.output


def test_missing_credentials_exit_one(env, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def no_credentials(**kwargs: object) -> None:
        raise auth_exceptions.DefaultCredentialsError("no default credentials")

    monkeypatch.setattr(compute_module.compute_v1, "InstancesClient", no_credentials)
    monkeypatch.setattr(cli, "GCEComputeProvider", GCEComputeProvider)

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 1
    assert "Failed to describe instance phoenix-server" in result.output
    assert _last_operation(tmp_path)["result"]["status"] == "error"
