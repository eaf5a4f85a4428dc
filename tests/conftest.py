"""Shared fixtures and in-memory provider fakes for the test suite."""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from phoenixctl.config import AppConfig, load_config
from phoenixctl.locking import RemoteLockManager
from phoenixctl.manager import BackupManager
from phoenixctl.providers.base import (
    FirewallRuleSpec,
    InstanceInfo,
    InstanceSpec,
    RemoteCommandError,
    StoredObject,
)
from phoenixctl.providers.docker import DockerProvider
from phoenixctl.providers.systemd import SystemdProvider

PROJECT = "demo-project"
BUCKET = f"{PROJECT}-phoenix-backups"
BASE_DIR = "/opt/phoenix"
DATA_DIR = f"{BASE_DIR}/data"
LOCK_DIR = f"{BASE_DIR}/.phoenixctl.lock"


class FakeClock:
    """Settable UTC wall clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self) -> None:
        self.value = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.value

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.value += seconds


class RecordingReporter:
    """Collects progress messages instead of printing them."""

    def __init__(self) -> None:
        self.infos: list[str] = []
        self.warnings: list[str] = []

    def info(self, message: str) -> None:
        self.infos.append(message)

    def warn(self, message: str) -> None:
        self.warnings.append(message)


class FakeCompute:
    """In-memory Compute Engine."""

    def __init__(self) -> None:
        self.instances: dict[str, InstanceInfo] = {}
        self.firewalls: dict[str, FirewallRuleSpec] = {}
        self.created: list[InstanceSpec] = []
        self.calls: list[tuple[str, str]] = []

    def add_instance(self, name: str, zone: str = "us-central1-a", status: str = "RUNNING") -> None:
        self.instances[name] = InstanceInfo(
            name=name,
            zone=zone,
            status=status,
            external_ip="203.0.113.10",
            internal_ip="10.128.0.2",
        )

    def get_instance(self, name: str, zone: str) -> InstanceInfo | None:
        self.calls.append(("get", name))
        info = self.instances.get(name)
        if info is None or info.zone != zone:
            return None
        return info

    def create_instance(self, spec: InstanceSpec) -> None:
        self.calls.append(("create", spec.name))
        self.created.append(spec)
        self.add_instance(spec.name, spec.zone)

    def delete_instance(self, name: str, zone: str) -> None:
        self.calls.append(("delete", name))
        self.instances.pop(name, None)

    def _set_status(self, name: str, status: str) -> None:
        info = self.instances[name]
        self.instances[name] = InstanceInfo(
            name=info.name,
            zone=info.zone,
            status=status,
            external_ip=info.external_ip,
            internal_ip=info.internal_ip,
        )

    def start_instance(self, name: str, zone: str) -> None:
        self.calls.append(("start", name))
        self._set_status(name, "RUNNING")

    def stop_instance(self, name: str, zone: str) -> None:
        self.calls.append(("stop", name))
        self._set_status(name, "TERMINATED")

    def reset_instance(self, name: str, zone: str) -> None:
        self.calls.append(("reset", name))
        self._set_status(name, "RUNNING")

    def firewall_exists(self, name: str) -> bool:
        self.calls.append(("firewall_exists", name))
        return name in self.firewalls

    def create_firewall(self, rule: FirewallRuleSpec) -> None:
        self.calls.append(("create_firewall", rule.name))
        self.firewalls[rule.name] = rule

    @property
    def mutating_calls(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] not in {"get", "firewall_exists"}]


class FakeStorage:
    """In-memory Cloud Storage."""

    def __init__(self) -> None:
        self.buckets: dict[str, dict[str, StoredObject]] = {}
        self.payloads: dict[tuple[str, str], str] = {}
        self.rules: dict[str, list[int]] = {}
        self.created_buckets: list[str] = []
        self.calls: list[str] = []

    def bucket_exists(self, bucket: str) -> bool:
        self.calls.append("bucket_exists")
        return bucket in self.buckets

    def create_bucket(self, bucket: str) -> None:
        self.calls.append("create_bucket")
        self.created_buckets.append(bucket)
        self.buckets[bucket] = {}

    def has_retention_rule(self, bucket: str, age_days: int) -> bool:
        return any(age <= age_days for age in self.rules.get(bucket, []))

    def set_retention_rule(self, bucket: str, age_days: int) -> None:
        self.calls.append("set_retention_rule")
        self.rules.setdefault(bucket, []).append(age_days)

    def list_objects(self, bucket: str, prefix: str) -> list[StoredObject]:
        self.calls.append("list_objects")
        objects = self.buckets.get(bucket, {})
        return [objects[name] for name in sorted(objects) if name.startswith(prefix)]

    def stat_object(self, bucket: str, name: str) -> StoredObject | None:
        return self.buckets.get(bucket, {}).get(name)

    def put(self, bucket: str, name: str, payload: str = "data") -> None:
        self.buckets.setdefault(bucket, {})[name] = StoredObject(
            name=name,
            size=len(payload),
            updated=datetime(2024, 1, 1, tzinfo=UTC),
        )
        self.payloads[(bucket, name)] = payload


class FakeExecutor:
    """Simulates the commands phoenixctl runs on the instance."""

    def __init__(self, storage: FakeStorage) -> None:
        self.storage = storage
        self.dirs: set[str] = {BASE_DIR, DATA_DIR}
        self.files: set[str] = set()
        self.payloads: dict[str, str] = {DATA_DIR: "live-v1"}
        self.service_state = "active"
        self.commands: list[list[str]] = []
        self.interactive_calls: list[list[str] | None] = []
        self.interactive_rc = 0
        self.fail_upload = False
        self.skip_upload = False
        self.fail_extract = False
        self.fail_pull = False
        self.fail_download = False
        self.unreachable = False

    # RemoteExecutor protocol --------------------------------------------
    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        args = list(argv)
        self.commands.append(args)
        if self.unreachable:
            rc, stdout = 255, ""
        else:
            rc, stdout = self._dispatch(args, input)
        if check and rc != 0:
            raise RemoteCommandError(f"{' '.join(args)} failed (exit {rc})", returncode=rc)
        return subprocess.CompletedProcess(args, rc, stdout, "")

    def interactive(self, argv: Sequence[str] | None = None) -> int:
        self.interactive_calls.append(None if argv is None else list(argv))
        return self.interactive_rc

    # Helpers ------------------------------------------------------------
    def systemctl_calls(self) -> list[str]:
        return [cmd[2] for cmd in self.commands if cmd[:2] == ["sudo", "systemctl"]]

    def _dispatch(self, args: list[str], input: str | None) -> tuple[int, str]:
        if args[0] == "sudo":
            args = args[1:]
        head = args[0]
        if head == "mkdir":
            return self._mkdir(args[1:])
        if head == "rm":
            return self._rm(args[1], args[2])
        if head == "tee":
            self.files.add(args[1])
            self.payloads[args[1]] = input or ""
            return 0, input or ""
        if head == "cat":
            if args[1] not in self.files:
                return 1, ""
            return 0, self.payloads.get(args[1], "")
        if head == "tar":
            return self._tar(args)
        if head == "gsutil":
            return self._gsutil(args)
        if head == "test":
            flag, path = args[1], args[2]
            present = path in self.dirs if flag == "-d" else path in self.files or path in self.dirs
            return (0 if present else 1), ""
        if head == "mv":
            source, dest = args[1], args[2]
            self.dirs.discard(source)
            self.dirs.add(dest)
            self.payloads[dest] = self.payloads.pop(source, "")
            return 0, ""
        if head == "chown":
            return 0, ""
        if head == "systemctl":
            return self._systemctl(args[1])
        if head == "docker":
            return self._docker(args)
        if head == "free":
            return 0, "Mem: 8Gi total\n"
        if head == "df":
            return 0, "/dev/sda1 20G 4G 16G 20% /\n"
        return 0, ""

    def _mkdir(self, args: list[str]) -> tuple[int, str]:
        if args[0] == "-p":
            self.dirs.add(args[1])
            return 0, ""
        parent = args[0].rsplit("/", 1)[0]
        if args[0] in self.dirs or parent not in self.dirs:
            return 1, ""
        self.dirs.add(args[0])
        return 0, ""

    def _rm(self, flag: str, path: str) -> tuple[int, str]:
        self.files.discard(path)
        if flag == "-rf":
            self.dirs.discard(path)
            for name in [f for f in self.files if f.startswith(path + "/")]:
                self.files.discard(name)
        return 0, ""

    def _tar(self, args: list[str]) -> tuple[int, str]:
        mode, archive, base = args[1], args[2], args[4]
        data_dir = f"{base.rstrip('/')}/data"
        if mode == "-czf":
            self.files.add(archive)
            self.payloads[archive] = self.payloads.get(data_dir, "")
            return 0, ""
        if self.fail_extract:
            return 2, ""
        self.dirs.add(data_dir)
        self.payloads[data_dir] = self.payloads.get(archive, "")
        return 0, ""

    def _gsutil(self, args: list[str]) -> tuple[int, str]:
        source, dest = args[2], args[3]
        if dest.startswith("gs://"):
            if self.fail_upload:
                return 1, ""
            if self.skip_upload:
                return 0, ""
            bucket, _, name = dest[len("gs://") :].partition("/")
            self.storage.put(bucket, name, self.payloads.get(source, ""))
            return 0, ""
        bucket, _, name = source[len("gs://") :].partition("/")
        if self.fail_download or (bucket, name) not in self.storage.payloads:
            return 1, ""
        self.files.add(dest)
        self.payloads[dest] = self.storage.payloads[(bucket, name)]
        return 0, ""

    def _systemctl(self, command: str) -> tuple[int, str]:
        if command == "start":
            self.service_state = "active"
        elif command == "stop":
            self.service_state = "inactive"
        elif command == "is-active":
            return (0 if self.service_state == "active" else 3), f"{self.service_state}\n"
        return 0, ""

    def _docker(self, args: list[str]) -> tuple[int, str]:
        if args[1] == "pull":
            return (1 if self.fail_pull else 0), ""
        if args[1] == "stats":
            if self.service_state != "active":
                return 1, ""
            return 0, "NAME CPU % MEM USAGE\nphoenix 1.5% 300MiB\n"
        return 0, ""


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration pointing at a real project with local logs."""
    return load_config(
        config_file=tmp_path / "config.yml",
        env={"PROJECT_ID": PROJECT, "PHOENIXCTL_LOGS_DIR": str(tmp_path / "logs")},
        search_dir=tmp_path,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 17, 10, 30, 0, tzinfo=UTC))


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def compute() -> FakeCompute:
    fake = FakeCompute()
    fake.add_instance("phoenix-server")
    return fake


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def executor(storage: FakeStorage) -> FakeExecutor:
    return FakeExecutor(storage)


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def make_manager(
    app_config: AppConfig,
    compute: FakeCompute,
    storage: FakeStorage,
    executor: FakeExecutor,
    reporter: RecordingReporter,
    clock: FakeClock,
    monotonic: FakeMonotonic,
):
    """Return a factory building a fresh manager (one per CLI invocation)."""

    def factory(config: AppConfig | None = None) -> BackupManager:
        cfg = config or app_config
        locks = RemoteLockManager(
            executor,
            LOCK_DIR,
            default_timeout=5.0,
            sleep=monotonic.sleep,
            clock=monotonic,
        )
        return BackupManager(
            cfg,
            compute=compute,
            storage=storage,
            executor=executor,
            systemd=SystemdProvider(executor=executor, service=cfg.service.name),
            docker=DockerProvider(executor=executor, container=cfg.service.name),
            locks=locks,
            reporter=reporter,
            clock=clock,
        )

    return factory
