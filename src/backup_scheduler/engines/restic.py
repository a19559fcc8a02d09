import asyncio
import json
import logging
import os
import re
import signal
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from backup_scheduler.domain.backup import BackupRequest, BackupSummary, Snapshot
from backup_scheduler.domain.device import Device, Share
from backup_scheduler.domain.progress import EngineProgress
from backup_scheduler.engines.protocol import MessageCallback, ProgressCallback
from backup_scheduler.errors import EngineError, EngineTimeoutError

logger = logging.getLogger(__name__)

# Snapshot created, but some source files could not be read.
EXIT_INCOMPLETE = 3

STREAM_LIMIT = 1024 * 1024
SHORT_ID_LENGTH = 8

_FRACTION = re.compile(r"(\.\d{6})\d+")


class StatusMessage(BaseModel):
    message_type: str
    percent_done: float = 0.0
    total_files: Optional[int] = None
    files_done: int = 0
    total_bytes: Optional[int] = None
    bytes_done: int = 0
    current_files: List[str] = Field(default_factory=list)

    def to_progress(self) -> EngineProgress:
        return EngineProgress(
            percent_complete=min(max(self.percent_done * 100.0, 0.0), 100.0),
            files_processed=self.files_done,
            total_files=self.total_files,
            bytes_processed=self.bytes_done,
            total_bytes=self.total_bytes,
            current_file=self.current_files[0] if self.current_files else None,
        )


class SummaryMessage(BaseModel):
    message_type: str
    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    data_added: int = 0
    total_files_processed: int = 0
    total_bytes_processed: int = 0
    total_duration: float = 0.0
    snapshot_id: str

    def to_summary(self) -> BackupSummary:
        return BackupSummary(
            snapshot_id=self.snapshot_id[:SHORT_ID_LENGTH],
            files_new=self.files_new,
            files_changed=self.files_changed,
            files_unmodified=self.files_unmodified,
            data_added=self.data_added,
            total_files_processed=self.total_files_processed,
            total_bytes_processed=self.total_bytes_processed,
            total_duration=self.total_duration,
        )


class ErrorMessage(BaseModel):
    message_type: str
    error: Union[dict, str, None] = None
    during: Optional[str] = None
    item: Optional[str] = None

    def describe(self) -> str:
        text = self.error.get("message", "") if isinstance(self.error, dict) else (self.error or "")
        text = text or "unknown error"
        if self.item:
            return f"{self.item}: {text}"
        return text


class SnapshotSummary(BaseModel):
    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    data_added: int = 0
    total_bytes_processed: int = 0


class SnapshotEntry(BaseModel):
    id: str
    short_id: Optional[str] = None
    time: str
    hostname: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    summary: Optional[SnapshotSummary] = None


def parse_restic_time(value: str) -> datetime:
    # restic reports nanoseconds; datetime only holds microseconds.
    value = _FRACTION.sub(r"\1", value)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class ResticEngine:
    """
    Runs the restic CLI as a subprocess, one repository per share.

    Each invocation starts in its own session so that a timeout or cancellation can take
    down the whole process tree: SIGTERM to the group first, SIGKILL once the grace
    period has passed.
    """

    def __init__(
        self,
        repository_root: Path,
        password: Optional[str] = None,
        binary: str = "restic",
        timeout_seconds: float = 30 * 60,
        kill_grace_seconds: float = 5.0,
    ):
        self.repository_root = Path(repository_root)
        self.password = password
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds

    def repository_path(self, device_id: str, share_id: str) -> Path:
        return self.repository_root / device_id / share_id

    def _environment(self, repository: Path) -> dict:
        env = os.environ.copy()
        env["RESTIC_REPOSITORY"] = str(repository)
        if self.password is not None:
            env["RESTIC_PASSWORD"] = self.password
        return env

    def build_backup_args(self, request: BackupRequest) -> List[str]:
        rules = request.rules
        if rules.include_paths:
            sources = [os.path.join(request.source_path, path.lstrip("/")) for path in rules.include_paths]
        else:
            sources = [request.source_path]

        args = ["backup", *sources, "--json"]
        for pattern in rules.exclude_patterns:
            args.extend(["--exclude", pattern])
        for marker in rules.exclude_if_present:
            args.extend(["--exclude-if-present", marker])
        args.extend(["--tag", f"device:{request.device_id}", "--tag", f"share:{request.share_id}"])
        args.extend(["--host", request.device_name])
        if request.parent_snapshot_id:
            args.extend(["--parent", request.parent_snapshot_id])
        return args

    async def backup(
        self,
        request: BackupRequest,
        on_progress: Optional[ProgressCallback] = None,
        on_warning: Optional[MessageCallback] = None,
        on_error: Optional[MessageCallback] = None,
    ) -> BackupSummary:
        repository = self.repository_path(request.device_id, request.share_id)
        await self._ensure_repository(repository)

        proc = await self._spawn(self.build_backup_args(request), repository)
        stderr_task = asyncio.create_task(proc.stderr.read())
        try:
            summary = await asyncio.wait_for(
                self._consume(proc, on_progress, on_error), timeout=self.timeout_seconds
            )
            returncode = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        except asyncio.TimeoutError:
            logger.warning("restic backup of %s timed out after %ss", request.source_path, self.timeout_seconds)
            raise EngineTimeoutError(f"Backup timed out after {self.timeout_seconds} seconds")
        except asyncio.CancelledError:
            logger.warning("restic backup of %s cancelled, killing process group", request.source_path)
            raise
        except Exception as exc:
            logger.exception("Failed to process restic output for %s", request.source_path)
            raise EngineError(f"Failed to process restic output: {exc}") from exc
        finally:
            # No-op once restic has exited on its own.
            await self._terminate(proc)
            stderr_task.cancel()

        if returncode == EXIT_INCOMPLETE and summary is not None:
            logger.warning("restic could not read some files under %s: %s", request.source_path, stderr)
            if on_warning is not None:
                on_warning(f"Some files could not be read: {stderr}" if stderr else "Some files could not be read")
            return summary
        if returncode != 0:
            raise EngineError(f"restic backup failed with exit code {returncode}: {stderr}")
        if summary is None:
            raise EngineError("restic backup finished without a summary")
        return summary

    async def _consume(
        self,
        proc: asyncio.subprocess.Process,
        on_progress: Optional[ProgressCallback],
        on_error: Optional[MessageCallback] = None,
    ) -> Optional[BackupSummary]:
        summary: Optional[BackupSummary] = None
        while True:
            line = await proc.stdout.readline()
            if not line:
                return summary
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON restic output: %r", line)
                continue
            if not isinstance(message, dict):
                continue

            message_type = message.get("message_type")
            try:
                if message_type == "status":
                    if on_progress is not None:
                        on_progress(StatusMessage.model_validate(message).to_progress())
                elif message_type == "summary":
                    summary = SummaryMessage.model_validate(message).to_summary()
                elif message_type == "error":
                    error = ErrorMessage.model_validate(message).describe()
                    logger.warning("restic reported an error: %s", error)
                    if on_error is not None:
                        on_error(error)
            except ValidationError:
                logger.warning("Malformed restic %s message: %r", message_type, line)

    async def latest_snapshot(self, device: Device, share: Share) -> Optional[Snapshot]:
        repository = self.repository_path(device.id, share.id)
        if not (repository / "config").exists():
            return None

        stdout = await self._run(["snapshots", "--json", "--latest", "1"], repository)
        try:
            entries = [SnapshotEntry.model_validate(item) for item in json.loads(stdout or "[]")]
        except (json.JSONDecodeError, ValidationError, TypeError) as exc:
            raise EngineError(f"Unexpected output from restic snapshots: {exc}") from exc
        if not entries:
            return None

        latest_time, latest = max(((parse_restic_time(entry.time), entry) for entry in entries), key=lambda pair: pair[0])
        summary = latest.summary or SnapshotSummary()
        return Snapshot(
            id=latest.short_id or latest.id[:SHORT_ID_LENGTH],
            device_id=device.id,
            share_id=share.id,
            timestamp=latest_time,
            files_new=summary.files_new,
            files_changed=summary.files_changed,
            files_unmodified=summary.files_unmodified,
            data_added=summary.data_added,
            data_processed=summary.total_bytes_processed,
        )

    async def _ensure_repository(self, repository: Path) -> None:
        if (repository / "config").exists():
            return
        await asyncio.to_thread(repository.mkdir, parents=True, exist_ok=True)
        logger.info("Initialising restic repository at %s", repository)
        await self._run(["init"], repository)

    async def _run(self, args: List[str], repository: Path) -> str:
        proc = await self._spawn(args, repository)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            raise EngineTimeoutError(f"restic {args[0]} timed out after {self.timeout_seconds} seconds")
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise
        if proc.returncode != 0:
            raise EngineError(
                f"restic {args[0]} failed with exit code {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )
        return stdout.decode("utf-8", errors="replace")

    async def _spawn(self, args: List[str], repository: Path) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment(repository),
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise EngineError(f"restic executable not found: {self.binary}") from exc

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        self._signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            self._signal_group(proc, signal.SIGKILL)
            await proc.wait()

    def _signal_group(self, proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            # start_new_session made the child its own group leader.
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, OSError) as exc:
            logger.debug("Process group signal failed (may have already exited): %s", exc)
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                pass

