import asyncio
import stat
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from backup_scheduler.domain.backup import BackupRequest, BackupSummary, Snapshot
from backup_scheduler.domain.device import Device, ProtocolType, Schedule, Share
from backup_scheduler.domain.progress import EngineProgress
from backup_scheduler.errors import EngineError
from backup_scheduler.events import ProgressChannel
from backup_scheduler.orchestrator import BackupOrchestrator
from backup_scheduler.plugin_registry import ProtocolPluginRegistry
from backup_scheduler.providers.in_memory import InMemoryConfigProvider
from backup_scheduler.storages.file import FileJobStorage


class FakeEngine:
    def __init__(self):
        self.requests: List[BackupRequest] = []
        self.delay: float = 0.0
        self.fail_shares: Set[str] = set()
        self.snapshots: Dict[Tuple[str, str], Snapshot] = {}
        self.snapshot_errors: Set[str] = set()
        self.snapshot_delay: float = 0.0
        self.snapshot_calls: int = 0
        self.warnings: Dict[str, str] = {}

    async def backup(self, request: BackupRequest, on_progress=None, on_warning=None, on_error=None) -> BackupSummary:
        self.requests.append(request)
        if on_progress is not None:
            on_progress(EngineProgress(percent_complete=50.0, files_processed=1, total_files=2, current_file="a.txt"))
            on_progress(EngineProgress(percent_complete=75.0, files_processed=2, total_files=2, current_file="b.txt"))
        if request.share_id in self.warnings:
            if on_error is not None:
                on_error(self.warnings[request.share_id])
            if on_warning is not None:
                on_warning("Some files could not be read")
        if self.delay:
            await asyncio.sleep(self.delay)
        if request.share_id in self.fail_shares:
            raise EngineError("restic backup failed with exit code 1: unable to open source")
        return BackupSummary(
            snapshot_id=f"snap{len(self.requests):04d}",
            files_new=2,
            data_added=50,
            total_files_processed=2,
            total_bytes_processed=100,
        )

    async def latest_snapshot(self, device: Device, share: Share) -> Optional[Snapshot]:
        self.snapshot_calls += 1
        if self.snapshot_delay:
            await asyncio.sleep(self.snapshot_delay)
        if share.id in self.snapshot_errors:
            raise EngineError("repository is already locked")
        return self.snapshots.get((device.id, share.id))


FAKE_RESTIC = """#!/bin/sh
cmd="$1"
case "$cmd" in
  init)
    mkdir -p "$RESTIC_REPOSITORY"
    touch "$RESTIC_REPOSITORY/config"
    echo "created restic repository"
    ;;
  snapshots)
    if [ -f "$RESTIC_REPOSITORY/snapshots.json" ]; then
      cat "$RESTIC_REPOSITORY/snapshots.json"
    else
      echo "[]"
    fi
    ;;
  backup)
    echo "$@" > "$RESTIC_REPOSITORY/last_args"
    case "$FAKE_RESTIC_MODE" in
      fail)
        echo "Fatal: unable to open source" >&2
        exit 1
        ;;
      partial)
        echo '{"message_type":"error","error":{"message":"permission denied"},"during":"archival","item":"/src/locked"}'
        echo '{"message_type":"summary","files_new":1,"files_changed":0,"files_unmodified":0,"data_added":10,"total_files_processed":1,"total_bytes_processed":10,"total_duration":0.1,"snapshot_id":"0123456789abcdef"}'
        echo "error: open /src/locked: permission denied" >&2
        exit 3
        ;;
      hang)
        sleep 30 &
        echo $! > "$RESTIC_REPOSITORY/child_pid"
        wait
        ;;
      flood)
        sleep 30 &
        echo $! > "$RESTIC_REPOSITORY/child_pid"
        printf '%01100000d\n' 0
        wait
        ;;
      stubborn)
        trap '' TERM
        sleep 30 &
        echo $! > "$RESTIC_REPOSITORY/child_pid"
        wait
        ;;
      *)
        echo 'not json'
        echo '{"message_type":"status","percent_done":0.5,"total_files":4,"files_done":2,"total_bytes":400,"bytes_done":200,"current_files":["/src/a.txt"]}'
        echo '{"message_type":"summary","files_new":3,"files_changed":1,"files_unmodified":0,"data_added":300,"total_files_processed":4,"total_bytes_processed":400,"total_duration":1.5,"snapshot_id":"abcdef1234567890"}'
        ;;
    esac
    ;;
  *)
    echo "unknown command $cmd" >&2
    exit 1
    ;;
esac
"""


@pytest.fixture
def fake_restic(tmp_path: Path) -> Path:
    script = tmp_path / "bin" / "restic"
    script.parent.mkdir()
    script.write_text(FAKE_RESTIC)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def device() -> Device:
    return Device(
        id="dev1",
        name="nas01",
        protocol=ProtocolType.SMB,
        host="127.0.0.1",
        schedule=Schedule(cron_expression="0 3 * * *"),
    )


@pytest.fixture
def provider(device: Device) -> InMemoryConfigProvider:
    return InMemoryConfigProvider(
        devices=[device],
        shares=[
            Share(id="share1", device_id=device.id, name="photos", path="/photos"),
            Share(id="share2", device_id=device.id, name="docs", path="/documents"),
        ],
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def registry(tmp_path: Path) -> ProtocolPluginRegistry:
    return ProtocolPluginRegistry.with_builtin_plugins(tmp_path / "mnt", connect_timeout=0.5)


@pytest.fixture
def progress() -> ProgressChannel:
    return ProgressChannel(maxsize=100, interval=1.0)


@pytest_asyncio.fixture
async def storage(tmp_path: Path, provider: InMemoryConfigProvider) -> FileJobStorage:
    storage = FileJobStorage(tmp_path / "jobs", provider)
    await storage.initialize()
    return storage


@pytest.fixture
def orchestrator(provider, storage, engine, registry, progress) -> BackupOrchestrator:
    return BackupOrchestrator(
        provider,
        storage,
        engine,
        registry,
        progress=progress,
        wake_delay_seconds=0,
        cancel_grace_seconds=1.0,
    )


async def wait_until_idle(orchestrator: BackupOrchestrator, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while orchestrator.get_active_job_count():
        if loop.time() > deadline:
            raise AssertionError("orchestrator still has active jobs")
        await asyncio.sleep(0.01)


@pytest.fixture
def idle():
    return wait_until_idle
